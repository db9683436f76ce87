"""
PDF Operation Adapter: the boundary between job orchestration and PyMuPDF.

``PDFOperationAdapter.apply`` runs one operation over one or more input files
and always returns an ``OperationResult``; library exceptions (corrupt file,
wrong password, unsupported feature) are normalized into
``success=False`` with the library's message in ``error``. Only caller
mistakes that no library call could fix (wrong number of inputs) raise.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import fitz  # PyMuPDF

from .errors import InvalidRequest
from .file_store import FileStore
from .models import (
    CompressOptions,
    ESignOptions,
    OCROptions,
    OperationKind,
    OperationOptions,
    RotateOptions,
    SplitOptions,
    UnlockOptions,
    WatermarkOptions,
)
from .ocr import OCREngine
from .utils import utcnow

logger = logging.getLogger(__name__)

# garbage collection level passed to Document.save, by requested output quality
GARBAGE_LEVELS = {"low": 4, "medium": 3, "high": 2}

WATERMARK_MARGIN = 50
SIGNATURE_BOX = (150, 50)


@dataclass
class OperationResult:
    success: bool
    output_path: Optional[Path] = None
    output_size: Optional[int] = None
    output_paths: List[Path] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        """Serializable result stored on the job and history rows."""
        data: Dict[str, Any] = {
            "filePath": str(self.output_path) if self.output_path else None,
            "fileSize": self.output_size,
        }
        if len(self.output_paths) > 1:
            data["filePaths"] = [str(path) for path in self.output_paths]
        data.update(self.metadata)
        return data


def decode_signature(signature_data: Optional[str]) -> bytes:
    """Decode a base64 image, with or without a ``data:image/...;base64,`` prefix."""
    if not signature_data:
        raise InvalidRequest("Signature data is required")
    encoded = signature_data.split(",", 1)[1] if signature_data.startswith("data:") else signature_data
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequest("Signature data must be a base64-encoded image") from exc
    if not raw:
        raise InvalidRequest("Signature data is empty")
    return raw


def _open_pdf(path: Path) -> fitz.Document:
    return fitz.open(str(path), filetype="pdf")


class PDFOperationAdapter:
    def __init__(self, file_store: FileStore, ocr_engine: Optional[OCREngine] = None) -> None:
        self.file_store = file_store
        self.ocr_engine = ocr_engine
        self._handlers: Dict[OperationKind, Callable[[List[Path], Any, List[Path]], OperationResult]] = {
            OperationKind.MERGE: self._merge,
            OperationKind.SPLIT: self._split,
            OperationKind.COMPRESS: self._compress,
            OperationKind.ROTATE: self._rotate,
            OperationKind.WATERMARK: self._watermark,
            OperationKind.UNLOCK: self._unlock,
            OperationKind.ESIGN: self._esign,
            OperationKind.OCR: self._ocr,
        }

    def apply(self, kind: OperationKind, input_paths: Sequence[Path], options: OperationOptions) -> OperationResult:
        if kind is OperationKind.MERGE:
            if len(input_paths) < 2:
                raise InvalidRequest("At least 2 files are required for merging")
        elif len(input_paths) != 1:
            raise InvalidRequest(f"{kind.value} operates on exactly one file")

        written: List[Path] = []
        try:
            result = self._handlers[kind]([Path(p) for p in input_paths], options, written)
        except Exception as exc:  # noqa: BLE001 - normalized into OperationResult
            for path in written:
                path.unlink(missing_ok=True)
            message = str(exc) or f"Failed to {kind.value} PDF"
            logger.warning(f"{kind.value} failed for {[str(p) for p in input_paths]}: {message}")
            return OperationResult(success=False, error=message)

        logger.info(f"{kind.value} produced {result.output_path} ({result.output_size} bytes)")
        return result

    def _new_output(self, operation: str, written: List[Path], extension: str = "pdf") -> Path:
        path = self.file_store.output_path(operation, extension)
        written.append(path)
        return path

    @staticmethod
    def _finish(paths: List[Path], **metadata: Any) -> OperationResult:
        return OperationResult(
            success=True,
            output_path=paths[0],
            output_size=paths[0].stat().st_size,
            output_paths=paths,
            metadata=metadata,
        )

    # --- operations ------------------------------------------------------------

    def _merge(self, paths: List[Path], options: OperationOptions, written: List[Path]) -> OperationResult:
        output = self._new_output("merge", written)
        with fitz.open() as merged:
            for path in paths:
                with _open_pdf(path) as source:
                    merged.insert_pdf(source)
            page_count = merged.page_count
            merged.save(str(output), garbage=3, deflate=True)
        return self._finish([output], pageCount=page_count)

    def _split(self, paths: List[Path], options: SplitOptions, written: List[Path]) -> OperationResult:
        outputs: List[Path] = []
        with _open_pdf(paths[0]) as source:
            total = source.page_count
            ranges = options.page_ranges or [[number] for number in range(1, total + 1)]
            for pages in ranges:
                valid = [number for number in pages if 1 <= number <= total]
                if not valid:
                    continue
                with fitz.open() as part:
                    for number in valid:
                        part.insert_pdf(source, from_page=number - 1, to_page=number - 1)
                    output = self._new_output("split", written)
                    part.save(str(output), garbage=3, deflate=True)
                outputs.append(output)
        if not outputs:
            raise ValueError("No valid pages in the requested page ranges")
        return self._finish(outputs, partCount=len(outputs))

    def _compress(self, paths: List[Path], options: CompressOptions, written: List[Path]) -> OperationResult:
        output = self._new_output("compress", written)
        original_size = paths[0].stat().st_size
        with _open_pdf(paths[0]) as doc:
            doc.save(
                str(output),
                garbage=GARBAGE_LEVELS[options.quality],
                deflate=True,
                deflate_images=True,
                deflate_fonts=True,
                clean=True,
            )
        compressed_size = output.stat().st_size
        ratio = round((1 - compressed_size / original_size) * 100, 2) if original_size else 0.0
        return self._finish([output], originalSize=original_size, compressionRatio=ratio)

    def _rotate(self, paths: List[Path], options: RotateOptions, written: List[Path]) -> OperationResult:
        output = self._new_output("rotate", written)
        with _open_pdf(paths[0]) as doc:
            if options.pages == "all":
                targets = list(range(doc.page_count))
            else:
                targets = sorted({number - 1 for number in options.pages if 1 <= number <= doc.page_count})
            for index in targets:
                page = doc[index]
                page.set_rotation((page.rotation + options.rotation) % 360)
            doc.save(str(output), garbage=1, deflate=True)
        return self._finish([output], rotatedPages=len(targets), rotation=options.rotation)

    def _watermark(self, paths: List[Path], options: WatermarkOptions, written: List[Path]) -> OperationResult:
        output = self._new_output("watermark", written)
        font_size = options.font_size
        text_width = fitz.get_text_length(options.text, fontname="helv", fontsize=font_size)
        with _open_pdf(paths[0]) as doc:
            for page in doc:
                width, height = page.rect.width, page.rect.height
                anchors = {
                    "center": (width / 2, height / 2),
                    "top-left": (WATERMARK_MARGIN, WATERMARK_MARGIN),
                    "top-right": (width - WATERMARK_MARGIN, WATERMARK_MARGIN),
                    "bottom-left": (WATERMARK_MARGIN, height - WATERMARK_MARGIN),
                    "bottom-right": (width - WATERMARK_MARGIN, height - WATERMARK_MARGIN),
                }
                x, y = anchors[options.position]
                # centred on the anchor, clamped to stay on the page
                left = min(max(x - text_width / 2, 0), max(width - text_width, 0))
                page.insert_text(
                    fitz.Point(left, y + font_size / 2),
                    options.text,
                    fontsize=font_size,
                    fontname="helv",
                    color=options.rgb,
                    fill_opacity=options.opacity,
                    stroke_opacity=options.opacity,
                    overlay=True,
                )
            page_count = doc.page_count
            doc.save(str(output), garbage=1, deflate=True)
        return self._finish([output], watermarkedPages=page_count, position=options.position)

    def _unlock(self, paths: List[Path], options: UnlockOptions, written: List[Path]) -> OperationResult:
        output = self._new_output("unlock", written)
        with _open_pdf(paths[0]) as doc:
            was_encrypted = bool(doc.is_encrypted or doc.needs_pass)
            if doc.needs_pass:
                if not options.password:
                    raise ValueError("This PDF is password-protected; a password is required to unlock it")
                if not doc.authenticate(options.password):
                    raise ValueError("Incorrect password")
            doc.save(str(output), encryption=fitz.PDF_ENCRYPT_NONE, garbage=1, deflate=True)
        return self._finish([output], wasEncrypted=was_encrypted)

    def _esign(self, paths: List[Path], options: ESignOptions, written: List[Path]) -> OperationResult:
        image = decode_signature(options.signature_data)
        signer = options.signer_name or "Unknown"
        signed_at: datetime = utcnow()
        output = self._new_output("esign", written)
        box_width, box_height = SIGNATURE_BOX
        caption_height = 30

        with _open_pdf(paths[0]) as doc:
            if doc.page_count == 0:
                doc.new_page()
            page = doc[min(options.page, doc.page_count) - 1]
            width, height = page.rect.width, page.rect.height
            bottom = height - WATERMARK_MARGIN - box_height - caption_height
            origins = {
                "top-left": (WATERMARK_MARGIN, WATERMARK_MARGIN),
                "top-right": (width - 200, WATERMARK_MARGIN),
                "bottom-left": (WATERMARK_MARGIN, bottom),
                "bottom-right": (width - 200, bottom),
                "center": (width / 2 - 100, height / 2),
            }
            x, y = origins[options.position]
            page.insert_image(fitz.Rect(x, y, x + box_width, y + box_height), stream=image, keep_proportion=True)
            page.insert_text(fitz.Point(x, y + box_height + 12), f"Digitally signed by {signer}", fontsize=10)
            page.insert_text(
                fitz.Point(x, y + box_height + 26),
                f"Signed on: {signed_at.date().isoformat()}",
                fontsize=8,
                color=(0.5, 0.5, 0.5),
            )
            doc.save(str(output), garbage=1, deflate=True)

        signature_info = {"signerName": signer, "signedAt": signed_at.isoformat(), "position": options.position}
        return self._finish([output], signatureInfo=signature_info)

    def _ocr(self, paths: List[Path], options: OCROptions, written: List[Path]) -> OperationResult:
        if self.ocr_engine is None:
            raise RuntimeError("OCR engine is not configured")
        recognized = self.ocr_engine.recognize(paths[0], options)
        output = self._new_output("ocr", written, extension="txt")
        output.write_text(recognized.text, encoding="utf-8")
        return self._finish(
            [output],
            text=recognized.text,
            confidence=recognized.confidence,
            pageCount=recognized.page_count,
        )
