"""Tests for the PDF Operation Adapter against real PyMuPDF documents."""

import base64

import fitz
import pytest

from easypdf_backend.errors import InvalidRequest
from easypdf_backend.file_store import FileStore
from easypdf_backend.models import (
    CompressOptions,
    ESignOptions,
    MergeOptions,
    OCROptions,
    OperationKind,
    RotateOptions,
    SplitOptions,
    UnlockOptions,
    WatermarkOptions,
)
from easypdf_backend.pdf_operations import OperationResult, PDFOperationAdapter, decode_signature


@pytest.fixture
def store(tmp_path):
    return FileStore(tmp_path / "store")


@pytest.fixture
def adapter(store, ocr_engine):
    return PDFOperationAdapter(store, ocr_engine)


@pytest.fixture
def write_pdf(store, make_pdf):
    def _write(name="input.pdf", pages=1, label="Page", data=None):
        path = store.upload_root / name
        path.write_bytes(data if data is not None else make_pdf(pages, label))
        return path

    return _write


@pytest.fixture
def encrypted_pdf(store, make_pdf):
    with fitz.open(stream=make_pdf(2), filetype="pdf") as doc:
        data = doc.tobytes(encryption=fitz.PDF_ENCRYPT_AES_256, owner_pw="owner-pass", user_pw="secret")
    path = store.upload_root / "locked.pdf"
    path.write_bytes(data)
    return path


def page_texts(path):
    with fitz.open(path) as doc:
        return [page.get_text().strip() for page in doc]


class TestMerge:
    def test_pages_concatenated_in_order(self, adapter, write_pdf, store):
        first = write_pdf("a.pdf", pages=2, label="A")
        second = write_pdf("b.pdf", pages=1, label="B")

        result = adapter.apply(OperationKind.MERGE, [first, second], MergeOptions())

        assert result.success
        assert result.output_path.parent == store.output_root
        assert result.output_path.name.startswith("merge_")
        assert result.output_size == result.output_path.stat().st_size
        assert result.metadata["pageCount"] == 3
        assert page_texts(result.output_path) == ["A 1", "A 2", "B 1"]

    def test_single_input_rejected(self, adapter, write_pdf):
        with pytest.raises(InvalidRequest):
            adapter.apply(OperationKind.MERGE, [write_pdf()], MergeOptions())

    def test_single_file_operation_with_two_inputs_rejected(self, adapter, write_pdf):
        with pytest.raises(InvalidRequest):
            adapter.apply(OperationKind.ROTATE, [write_pdf("a.pdf"), write_pdf("b.pdf")], RotateOptions())


class TestSplit:
    def test_one_file_per_page_by_default(self, adapter, write_pdf):
        result = adapter.apply(OperationKind.SPLIT, [write_pdf(pages=3)], SplitOptions())

        assert result.success
        assert result.metadata["partCount"] == 3
        assert [page_texts(path) for path in result.output_paths] == [["Page 1"], ["Page 2"], ["Page 3"]]
        assert result.output_path == result.output_paths[0]

    def test_page_ranges(self, adapter, write_pdf):
        options = SplitOptions(page_ranges=[[1, 2], [3]])
        result = adapter.apply(OperationKind.SPLIT, [write_pdf(pages=3)], options)

        assert [page_texts(path) for path in result.output_paths] == [["Page 1", "Page 2"], ["Page 3"]]

    def test_out_of_range_pages_skipped(self, adapter, write_pdf):
        options = SplitOptions(page_ranges=[[2, 9], [7]])
        result = adapter.apply(OperationKind.SPLIT, [write_pdf(pages=2)], options)

        assert result.metadata["partCount"] == 1
        assert page_texts(result.output_path) == ["Page 2"]

    def test_no_valid_pages_fails(self, adapter, write_pdf, store):
        result = adapter.apply(OperationKind.SPLIT, [write_pdf(pages=2)], SplitOptions(page_ranges=[[9]]))

        assert not result.success
        assert "No valid pages" in result.error
        assert list(store.output_root.iterdir()) == []


class TestCompress:
    @pytest.mark.parametrize("quality", ["low", "medium", "high"])
    def test_reports_sizes(self, adapter, write_pdf, quality):
        source = write_pdf(pages=4)
        result = adapter.apply(OperationKind.COMPRESS, [source], CompressOptions(quality=quality))

        assert result.success
        assert result.metadata["originalSize"] == source.stat().st_size
        assert isinstance(result.metadata["compressionRatio"], float)
        assert len(page_texts(result.output_path)) == 4


class TestRotate:
    def test_rotates_all_pages(self, adapter, write_pdf):
        result = adapter.apply(OperationKind.ROTATE, [write_pdf(pages=2)], RotateOptions(rotation=90))

        with fitz.open(result.output_path) as doc:
            assert [page.rotation for page in doc] == [90, 90]
        assert result.metadata == {"rotatedPages": 2, "rotation": 90}

    def test_rotates_selected_pages(self, adapter, write_pdf):
        options = RotateOptions(rotation=180, pages=[2, 5])
        result = adapter.apply(OperationKind.ROTATE, [write_pdf(pages=3)], options)

        with fitz.open(result.output_path) as doc:
            assert [page.rotation for page in doc] == [0, 180, 0]
        assert result.metadata["rotatedPages"] == 1

    def test_rotation_adds_to_existing(self, adapter, write_pdf):
        first = adapter.apply(OperationKind.ROTATE, [write_pdf()], RotateOptions(rotation=270))
        second = adapter.apply(OperationKind.ROTATE, [first.output_path], RotateOptions(rotation=180))

        with fitz.open(second.output_path) as doc:
            assert doc[0].rotation == 90


class TestWatermark:
    @pytest.mark.parametrize("position", ["center", "top-left", "bottom-right"])
    def test_text_drawn_on_every_page(self, adapter, write_pdf, position):
        options = WatermarkOptions(text="CONFIDENTIAL", position=position, color="#ff0000")
        result = adapter.apply(OperationKind.WATERMARK, [write_pdf(pages=2)], options)

        assert result.success
        assert all("CONFIDENTIAL" in text for text in page_texts(result.output_path))
        assert result.metadata["watermarkedPages"] == 2


class TestUnlock:
    def test_correct_password(self, adapter, encrypted_pdf):
        result = adapter.apply(OperationKind.UNLOCK, [encrypted_pdf], UnlockOptions(password="secret"))

        assert result.success
        assert result.metadata["wasEncrypted"] is True
        with fitz.open(result.output_path) as doc:
            assert not doc.needs_pass
            assert not doc.is_encrypted
            assert doc.page_count == 2

    def test_wrong_password(self, adapter, encrypted_pdf, store):
        result = adapter.apply(OperationKind.UNLOCK, [encrypted_pdf], UnlockOptions(password="nope"))

        assert not result.success
        assert result.error == "Incorrect password"
        assert list(store.output_root.iterdir()) == []

    def test_missing_password(self, adapter, encrypted_pdf):
        result = adapter.apply(OperationKind.UNLOCK, [encrypted_pdf], UnlockOptions())

        assert not result.success
        assert "password" in result.error

    def test_unencrypted_input_passes_through(self, adapter, write_pdf):
        result = adapter.apply(OperationKind.UNLOCK, [write_pdf()], UnlockOptions())

        assert result.success
        assert result.metadata["wasEncrypted"] is False


class TestESign:
    def test_signature_stamped(self, adapter, write_pdf, signature_data):
        options = ESignOptions(signature_data=signature_data, signer_name="Ada Lovelace", position="bottom-left")
        result = adapter.apply(OperationKind.ESIGN, [write_pdf(pages=2)], options)

        assert result.success
        with fitz.open(result.output_path) as doc:
            assert len(doc[0].get_images()) == 1
            assert "Digitally signed by Ada Lovelace" in doc[0].get_text()
            assert doc[1].get_images() == []
        info = result.metadata["signatureInfo"]
        assert info["signerName"] == "Ada Lovelace"
        assert info["position"] == "bottom-left"

    def test_page_past_end_signs_last_page(self, adapter, write_pdf, signature_data):
        options = ESignOptions(signature_data=signature_data, page=9)
        result = adapter.apply(OperationKind.ESIGN, [write_pdf(pages=2)], options)

        with fitz.open(result.output_path) as doc:
            assert len(doc[1].get_images()) == 1
        assert result.metadata["signatureInfo"]["signerName"] == "Unknown"

    def test_signature_data_not_serialized(self, signature_data):
        options = ESignOptions(signature_data=signature_data, signer_name="Ada")
        assert "signatureData" not in options.model_dump(by_alias=True)


class TestOCR:
    def test_text_written_to_output(self, adapter, write_pdf, ocr_engine):
        result = adapter.apply(OperationKind.OCR, [write_pdf(pages=2, label="Scan")], OCROptions(language="eng"))

        assert result.success
        assert result.output_path.suffix == ".txt"
        assert result.output_path.read_text(encoding="utf-8") == "Scan 1\nScan 2"
        assert result.metadata == {"text": "Scan 1\nScan 2", "confidence": 91.5, "pageCount": 2}
        assert ocr_engine.calls[0][1].language == "eng"

    def test_no_engine_configured(self, store, write_pdf):
        result = PDFOperationAdapter(store).apply(OperationKind.OCR, [write_pdf()], OCROptions())

        assert not result.success
        assert "OCR engine" in result.error


class TestFailureNormalization:
    @pytest.mark.parametrize(
        "kind, options",
        [
            (OperationKind.COMPRESS, CompressOptions()),
            (OperationKind.ROTATE, RotateOptions()),
            (OperationKind.WATERMARK, WatermarkOptions(text="x")),
        ],
    )
    def test_corrupt_input(self, adapter, write_pdf, store, kind, options):
        corrupt = write_pdf("corrupt.pdf", data=b"%PDF-1.4 this is not really a pdf")

        result = adapter.apply(kind, [corrupt], options)

        assert result == OperationResult(success=False, error=result.error)
        assert result.error
        assert list(store.output_root.iterdir()) == []

    def test_missing_input(self, adapter, store):
        result = adapter.apply(OperationKind.COMPRESS, [store.upload_root / "gone.pdf"], CompressOptions())
        assert not result.success


class TestPayload:
    def test_single_output(self, tmp_path):
        path = tmp_path / "out.pdf"
        result = OperationResult(success=True, output_path=path, output_size=10, output_paths=[path], metadata={"pageCount": 2})
        assert result.payload() == {"filePath": str(path), "fileSize": 10, "pageCount": 2}

    def test_multiple_outputs(self, tmp_path):
        paths = [tmp_path / "a.pdf", tmp_path / "b.pdf"]
        result = OperationResult(success=True, output_path=paths[0], output_size=1, output_paths=paths)
        assert result.payload()["filePaths"] == [str(p) for p in paths]


class TestDecodeSignature:
    def test_data_url(self, signature_data):
        assert decode_signature(signature_data).startswith(b"\x89PNG")

    def test_bare_base64(self):
        assert decode_signature(base64.b64encode(b"image-bytes").decode()) == b"image-bytes"

    @pytest.mark.parametrize("value", [None, "", "data:image/png;base64,", "not base64!!"])
    def test_invalid(self, value):
        with pytest.raises(InvalidRequest):
            decode_signature(value)
