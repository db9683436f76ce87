"""OCR engines: real text recognition over rendered PDF pages."""

from __future__ import annotations

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
import pytesseract
from PIL import Image

from .models import OCROptions

logger = logging.getLogger(__name__)


@dataclass
class OCRResult:
    text: str
    confidence: float
    page_count: int


class OCREngine(ABC):
    @abstractmethod
    def recognize(self, pdf_path: Path, options: OCROptions) -> OCRResult:
        """Extract text from every page of ``pdf_path``."""


class TesseractOCREngine(OCREngine):
    """Renders each page with PyMuPDF and runs Tesseract on the image."""

    def __init__(self, tesseract_cmd: Optional[str] = None) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def recognize(self, pdf_path: Path, options: OCROptions) -> OCRResult:
        page_texts: list[str] = []
        confidences: list[float] = []

        with fitz.open(pdf_path) as doc:
            page_count = doc.page_count
            for page_number, page in enumerate(doc, start=1):
                pix = page.get_pixmap(dpi=options.dpi)
                image = Image.open(io.BytesIO(pix.tobytes("png")))
                try:
                    page_texts.append(pytesseract.image_to_string(image, lang=options.language))
                    data = pytesseract.image_to_data(image, lang=options.language, output_type=pytesseract.Output.DICT)
                except pytesseract.TesseractNotFoundError as exc:
                    raise RuntimeError("Tesseract is not installed or not in PATH.") from exc
                confidences.extend(float(conf) for conf in data.get("conf", []) if float(conf) >= 0)
                logger.debug(f"OCR processed page {page_number}/{page_count} of {pdf_path.name}")

        text = "\n".join(part.strip() for part in page_texts if part.strip())
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return OCRResult(text=text, confidence=round(confidence, 2), page_count=page_count)
