from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidRequest


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PARTIAL}

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: TERMINAL_STATUSES,
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.PARTIAL: set(),
}


class OperationKind(str, Enum):
    MERGE = "merge"
    SPLIT = "split"
    COMPRESS = "compress"
    ROTATE = "rotate"
    WATERMARK = "watermark"
    UNLOCK = "unlock"
    ESIGN = "esign"
    OCR = "ocr"


BATCH_PREFIX = "batch_"
BATCH_OPERATIONS = (OperationKind.COMPRESS, OperationKind.ROTATE, OperationKind.WATERMARK, OperationKind.UNLOCK)
PREMIUM_OPERATIONS = {OperationKind.OCR, OperationKind.ESIGN}

Position = Literal["center", "top-left", "top-right", "bottom-left", "bottom-right"]
POSITIONS = ("center", "top-left", "top-right", "bottom-left", "bottom-right")


# --- Operation options --------------------------------------------------------


class OperationOptions(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class MergeOptions(OperationOptions):
    pass


class SplitOptions(OperationOptions):
    # 1-based page numbers per output file; empty means one file per page
    page_ranges: List[List[int]] = Field(default_factory=list)


class CompressOptions(OperationOptions):
    quality: Literal["low", "medium", "high"] = "medium"

    @field_validator("quality", mode="before")
    @classmethod
    def _default_quality(cls, value: Any) -> Any:
        return value if value in ("low", "medium", "high") else "medium"


class RotateOptions(OperationOptions):
    rotation: Literal[90, 180, 270] = 90
    pages: Union[Literal["all"], List[int]] = "all"

    @field_validator("rotation", mode="before")
    @classmethod
    def _default_rotation(cls, value: Any) -> Any:
        try:
            value = int(value) % 360
        except (TypeError, ValueError):
            return 90
        return value if value in (90, 180, 270) else 90

    @field_validator("pages", mode="before")
    @classmethod
    def _default_pages(cls, value: Any) -> Any:
        if isinstance(value, list) and value:
            return value
        return "all"


class WatermarkOptions(OperationOptions):
    text: str = Field(min_length=1)
    opacity: float = Field(default=0.3, ge=0.0, le=1.0)
    font_size: float = Field(default=24, gt=0, le=400)
    position: Position = "center"
    color: str = "#000000"

    @field_validator("position", mode="before")
    @classmethod
    def _default_position(cls, value: Any) -> Any:
        return value if value in POSITIONS else "center"

    @field_validator("color", mode="before")
    @classmethod
    def _default_color(cls, value: Any) -> Any:
        if isinstance(value, str) and re.fullmatch(r"#[0-9a-fA-F]{6}", value):
            return value
        return "#000000"

    @property
    def rgb(self) -> tuple[float, float, float]:
        return tuple(int(self.color[i:i + 2], 16) / 255 for i in (1, 3, 5))  # type: ignore[return-value]


class UnlockOptions(OperationOptions):
    password: Optional[str] = None


class ESignOptions(OperationOptions):
    position: Position = "bottom-right"
    page: int = Field(default=1, ge=1)
    signer_name: Optional[str] = None
    # Raw image payload; kept out of serialized parameters and history rows
    signature_data: Optional[str] = Field(default=None, exclude=True)

    @field_validator("position", mode="before")
    @classmethod
    def _default_position(cls, value: Any) -> Any:
        return value if value in POSITIONS else "bottom-right"


class OCROptions(OperationOptions):
    language: str = "eng"
    dpi: int = 300

    @field_validator("language", mode="before")
    @classmethod
    def _default_language(cls, value: Any) -> Any:
        if isinstance(value, str) and re.fullmatch(r"[a-z_]+(\+[a-z_]+)*", value):
            return value
        return "eng"

    @field_validator("dpi", mode="before")
    @classmethod
    def _clamp_dpi(cls, value: Any) -> Any:
        try:
            return min(max(int(value), 72), 600)
        except (TypeError, ValueError):
            return 300


OPTIONS_BY_OPERATION: Dict[OperationKind, Type[OperationOptions]] = {
    OperationKind.MERGE: MergeOptions,
    OperationKind.SPLIT: SplitOptions,
    OperationKind.COMPRESS: CompressOptions,
    OperationKind.ROTATE: RotateOptions,
    OperationKind.WATERMARK: WatermarkOptions,
    OperationKind.UNLOCK: UnlockOptions,
    OperationKind.ESIGN: ESignOptions,
    OperationKind.OCR: OCROptions,
}


def parse_options(kind: OperationKind, raw: Optional[Dict[str, Any]]) -> OperationOptions:
    """Validate a raw options mapping into the option record for ``kind``."""
    model = OPTIONS_BY_OPERATION[kind]
    try:
        return model.model_validate(raw or {})
    except ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or "options"
        if field == "text" and kind is OperationKind.WATERMARK:
            raise InvalidRequest("Watermark text is required") from exc
        raise InvalidRequest(f"Invalid {kind.value} option '{field}': {error.get('msg')}") from exc


def parse_operation(name: Optional[str]) -> tuple[OperationKind, bool]:
    """
    Resolve an operation identifier.

    Returns:
        ``(kind, is_batch)``; ``batch_compress`` resolves to ``(COMPRESS, True)``.
    """
    if not name:
        raise InvalidRequest("Operation is required")
    is_batch = name.startswith(BATCH_PREFIX)
    base = name[len(BATCH_PREFIX):] if is_batch else name
    try:
        kind = OperationKind(base)
    except ValueError as exc:
        raise InvalidRequest(f"Unknown operation: {name}") from exc
    if is_batch and kind not in BATCH_OPERATIONS:
        valid = ", ".join(op.value for op in BATCH_OPERATIONS)
        raise InvalidRequest(f"Invalid operation. Valid operations: {valid}")
    return kind, is_batch


# --- Requests -----------------------------------------------------------------


class CreateJobRequest(CamelModel):
    file_ids: List[str] = Field(default_factory=list)
    operation: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class MergeRequest(CamelModel):
    file_ids: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)


class FileOperationRequest(CamelModel):
    file_id: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class ESignRequest(FileOperationRequest):
    signature_data: Optional[str] = None


class BatchRequest(CamelModel):
    file_ids: List[str] = Field(default_factory=list)
    operation: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ProfileUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email")
        return value


class CloudExportRequest(CamelModel):
    path: str


class IssueKeyRequest(CamelModel):
    email: str
    name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email")
        return value


class GrantSubscriptionRequest(CamelModel):
    user_id: str
    status: str = "active"
    current_period_end: Optional[datetime] = None


# --- Responses ----------------------------------------------------------------


class JobView(CamelModel):
    id: str
    operation: str
    status: JobStatus
    progress: int
    error: Optional[str] = None
    file_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None


class JobStatusResponse(CamelModel):
    job: JobView


class SignatureInfo(CamelModel):
    signer_name: str
    signed_at: datetime
    position: str


class OperationResponse(CamelModel):
    success: bool = True
    job_id: str
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    download_url: Optional[str] = None
    file_paths: Optional[List[str]] = None
    signature_info: Optional[SignatureInfo] = None
    text: Optional[str] = None
    confidence: Optional[float] = None


class BatchFileResult(CamelModel):
    file_id: str
    success: bool
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    download_url: Optional[str] = None


class BatchSummary(CamelModel):
    total_files: int
    successful_files: int
    failed_files: int
    success_rate: float
    success_rate_label: str


class BatchResponse(CamelModel):
    success: bool = True
    job_id: str
    status: JobStatus
    results: List[BatchFileResult]
    summary: BatchSummary


class UploadedFile(CamelModel):
    id: str
    original_name: str
    file_name: str
    file_path: str
    size: int
    type: str


class UploadResponse(CamelModel):
    message: str
    files: List[UploadedFile]


class UserProfile(CamelModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None
    created_at: datetime


class HistoryEntry(CamelModel):
    id: str
    job_id: Optional[str] = None
    file_id: Optional[str] = None
    operation: str
    status: str
    error: Optional[str] = None
    created_at: datetime
    result: Optional[Any] = None


class HistoryResponse(CamelModel):
    history: List[HistoryEntry]


class UserStats(CamelModel):
    total_files: int
    total_operations: int
    this_month_operations: int
    premium_user: bool


class SubscriptionView(CamelModel):
    id: str
    user_id: str
    status: str
    cancel_at_period_end: bool
    current_period_end: Optional[datetime] = None


class CancelSubscriptionResponse(CamelModel):
    message: str
    subscription: SubscriptionView


class APIKeyView(CamelModel):
    id: str
    prefix: str
    user_id: str
    is_active: bool
    created_at: datetime


class IssuedKeyResponse(CamelModel):
    api_key: str
    record: APIKeyView


class CloudExportResponse(CamelModel):
    key: str
    url: str
    expires_in: int
