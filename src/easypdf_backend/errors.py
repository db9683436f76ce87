"""Exception hierarchy for the EasyPDF backend.

Each exception carries the HTTP status it is surfaced with. Route handlers
raise these and the application factory turns them into JSON bodies of the
form ``{"detail": message, **extra}``.
"""

from typing import Any, Dict, Optional


class EasyPDFError(Exception):
    """Base exception for all errors surfaced to API callers."""

    error_type: str = "EasyPDFError"
    status_code: int = 500

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_body(self) -> Dict[str, Any]:
        return {"detail": self.message, **self.extra}


class InvalidRequest(EasyPDFError):
    """Missing or malformed request fields."""

    error_type = "InvalidRequest"
    status_code = 400


class Unauthorized(EasyPDFError):
    error_type = "Unauthorized"
    status_code = 401


class PermissionDenied(EasyPDFError):
    """Premium-gated operation attempted without entitlement."""

    error_type = "PermissionDenied"
    status_code = 403


class Forbidden(EasyPDFError):
    """Download path outside the allow-listed roots, or a bad download token."""

    error_type = "Forbidden"
    status_code = 403


class NotFound(EasyPDFError):
    error_type = "NotFound"
    status_code = 404


class PDFFileNotFound(NotFound):
    """One or more referenced PDFFile ids do not exist."""

    error_type = "FileNotFound"

    @staticmethod
    def for_ids(missing: list[str]) -> "PDFFileNotFound":
        if len(missing) == 1:
            return PDFFileNotFound(f"File not found: {missing[0]}")
        return PDFFileNotFound(f"Some files not found: {', '.join(missing)}")


class RateLimited(EasyPDFError):
    error_type = "RateLimited"
    status_code = 429


class AdapterFailure(EasyPDFError):
    """The PDF or OCR library raised while processing a document."""

    error_type = "AdapterFailure"
    status_code = 500


class StorageFailure(EasyPDFError):
    """A Persistence Layer read or write failed."""

    error_type = "StorageFailure"
    status_code = 500


class ServiceUnavailable(EasyPDFError):
    """An optional integration is not configured."""

    error_type = "ServiceUnavailable"
    status_code = 503
