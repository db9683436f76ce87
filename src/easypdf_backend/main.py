from __future__ import annotations

import asyncio
import hmac
import json
import logging
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, File, Header, Query, Request, UploadFile, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from omegaconf import DictConfig, OmegaConf
from starlette.concurrency import run_in_threadpool

from .configuration import configured_oauth_providers, load_settings
from .database import Database
from .entitlements import EntitlementService, SubscriptionEntitlements
from .errors import (
    AdapterFailure,
    EasyPDFError,
    Forbidden,
    InvalidRequest,
    NotFound,
    ServiceUnavailable,
    StorageFailure,
    Unauthorized,
)
from .file_store import FileStore
from .job_manager import BatchOutcome, JobManager, JobOutcome, RequestContext
from .key_manager import KeyManager
from .middleware import (
    InMemoryRateLimiter,
    RateLimitGuard,
    RateLimiterFactory,
    SecurityHeadersMiddleware,
    client_ip,
    in_memory_factory,
)
from .models import (
    APIKeyView,
    BatchFileResult,
    BatchRequest,
    BatchResponse,
    BatchSummary,
    CancelSubscriptionResponse,
    CloudExportRequest,
    CloudExportResponse,
    CreateJobRequest,
    ESignRequest,
    FileOperationRequest,
    GrantSubscriptionRequest,
    HistoryEntry,
    HistoryResponse,
    IssuedKeyResponse,
    IssueKeyRequest,
    JobStatus,
    JobStatusResponse,
    JobView,
    MergeRequest,
    OperationKind,
    OperationResponse,
    ProfileUpdateRequest,
    SignatureInfo,
    SubscriptionView,
    UploadedFile,
    UploadResponse,
    UserProfile,
    UserStats,
    parse_operation,
)
from .ocr import OCREngine, TesseractOCREngine
from .pdf_operations import PDFOperationAdapter, decode_signature
from .progress import stream_job_progress
from .s3_service import S3Exporter
from .security import DownloadTokenSigner, FileCipher, content_type_for
from .utils import utcnow

logger = logging.getLogger(__name__)

FAILURE_MESSAGES = {
    OperationKind.MERGE: "Failed to merge PDFs",
    OperationKind.SPLIT: "Failed to split PDF",
    OperationKind.COMPRESS: "Failed to compress PDF",
    OperationKind.ROTATE: "Failed to rotate PDF",
    OperationKind.WATERMARK: "Failed to add watermark",
    OperationKind.UNLOCK: "Failed to unlock PDF",
    OperationKind.ESIGN: "Failed to sign PDF",
    OperationKind.OCR: "Failed to perform OCR",
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

router = APIRouter()


# --- dependencies -----------------------------------------------------------------


def get_settings(request: Request) -> DictConfig:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def get_file_store(request: Request) -> FileStore:
    return request.app.state.file_store


def get_signer(request: Request) -> DownloadTokenSigner:
    return request.app.state.token_signer


def optional_user(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Optional[Dict[str, Any]]:
    """Resolve ``X-API-Key`` to a user; no header means an anonymous caller."""
    if not x_api_key:
        return None
    record = request.app.state.key_manager.validate_key(x_api_key)
    user = request.app.state.db.get_user(record.user_id) if record else None
    if user is None:
        raise Unauthorized("Invalid API key")
    return user


def require_user(user: Optional[Dict[str, Any]] = Depends(optional_user)) -> Dict[str, Any]:
    if user is None:
        raise Unauthorized("Unauthorized")
    return user


def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
) -> None:
    expected = request.app.state.settings.security.admin_api_key
    if not expected:
        raise ServiceUnavailable("Admin API is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), str(expected).encode()):
        raise Unauthorized("Invalid admin key")


def request_context(
    request: Request,
    user: Optional[Dict[str, Any]] = Depends(optional_user),
) -> RequestContext:
    return RequestContext(
        user_id=user["id"] if user else None,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


rate_limit_upload = Depends(RateLimitGuard("upload"))
rate_limit_download = Depends(RateLimitGuard("download"))
rate_limit_pdf = Depends(RateLimitGuard("pdf"))


# --- helpers ------------------------------------------------------------------------


def _download_url(signer: DownloadTokenSigner, path: Path) -> str:
    token = signer.generate(path)
    return f"/download?path={quote(str(path))}&token={quote(token)}"


def _require_file_id(file_id: Optional[str]) -> List[str]:
    if not file_id:
        raise InvalidRequest("File ID is required")
    return [file_id]


def _operation_response(outcome: JobOutcome, kind: OperationKind, signer: DownloadTokenSigner) -> OperationResponse:
    if outcome.status is not JobStatus.COMPLETED:
        raise AdapterFailure(FAILURE_MESSAGES[kind], extra={"jobId": outcome.job_id})

    result = outcome.result
    response = OperationResponse(
        job_id=outcome.job_id,
        file_path=str(result.output_path),
        file_size=result.output_size,
        download_url=_download_url(signer, result.output_path),  # type: ignore[arg-type]
    )
    if len(result.output_paths) > 1:
        response.file_paths = [str(path) for path in result.output_paths]
    if "signatureInfo" in result.metadata:
        response.signature_info = SignatureInfo.model_validate(result.metadata["signatureInfo"])
    if "text" in result.metadata:
        response.text = result.metadata["text"]
        response.confidence = result.metadata.get("confidence")
    return response


def _batch_response(outcome: BatchOutcome, signer: DownloadTokenSigner) -> BatchResponse:
    results = []
    for item in outcome.items:
        entry = BatchFileResult(file_id=item.file_id, success=item.success, error=item.error)
        if item.success and item.result is not None:
            entry.file_path = str(item.result.output_path)
            entry.file_size = item.result.output_size
            entry.download_url = _download_url(signer, item.result.output_path)  # type: ignore[arg-type]
        results.append(entry)
    return BatchResponse(
        job_id=outcome.job_id,
        status=outcome.status,
        results=results,
        summary=BatchSummary(
            total_files=outcome.total_files,
            successful_files=outcome.successful_files,
            failed_files=outcome.failed_files,
            success_rate=outcome.success_rate,
            success_rate_label=outcome.success_rate_label,
        ),
    )


def _history_entry(row: Dict[str, Any]) -> HistoryEntry:
    result = None
    if row["result"]:
        try:
            result = json.loads(row["result"])
        except (TypeError, ValueError):
            result = None
    return HistoryEntry(
        id=row["id"],
        job_id=row["job_id"],
        file_id=row["file_id"],
        operation=row["operation"],
        status=row["status"],
        error=row["error"],
        created_at=row["created_at"],
        result=result,
    )


# --- health and identity ----------------------------------------------------------------


@router.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/auth/providers")
def auth_providers(settings: DictConfig = Depends(get_settings)) -> Dict[str, List[str]]:
    return {"providers": configured_oauth_providers(settings)}


# --- upload -------------------------------------------------------------------------------


@router.post("/upload", response_model=UploadResponse, dependencies=[rate_limit_upload])
def upload_files(
    files: List[UploadFile] = File(...),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
    settings: DictConfig = Depends(get_settings),
    store: FileStore = Depends(get_file_store),
    db: Database = Depends(get_db),
) -> UploadResponse:
    max_bytes = settings.storage.max_upload_bytes
    allowed_types = set(settings.storage.allowed_mime_types)

    payloads = []
    for upload in files:
        if (upload.content_type or "") not in allowed_types:
            raise InvalidRequest("Only PDF files are allowed")
        data = upload.file.read(max_bytes + 1)
        if len(data) > max_bytes:
            raise InvalidRequest(f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")
        payloads.append((upload.filename or "document.pdf", upload.content_type, data))

    uploaded = []
    for original_name, content_type, data in payloads:
        stored = store.store_upload(original_name, data)
        try:
            record = db.create_pdf_file(
                original_name=original_name,
                stored_file_name=stored.stored_file_name,
                file_path=stored.path,
                file_size=stored.size,
                mime_type=content_type,
                user_id=user["id"] if user else None,
            )
            file_id = record["id"]
        except StorageFailure as exc:
            logger.warning(f"Could not record upload {stored.stored_file_name}, using it as id: {exc}")
            file_id = stored.stored_file_name
        uploaded.append(
            UploadedFile(
                id=file_id,
                original_name=original_name,
                file_name=stored.stored_file_name,
                file_path=str(stored.path),
                size=stored.size,
                type=content_type,
            )
        )
    return UploadResponse(message="Files uploaded successfully", files=uploaded)


# --- jobs -----------------------------------------------------------------------------------


@router.post("/jobs", response_model=JobStatusResponse)
def create_job(
    payload: CreateJobRequest,
    user: Dict[str, Any] = Depends(require_user),
    context: RequestContext = Depends(request_context),
    manager: JobManager = Depends(get_job_manager),
) -> JobStatusResponse:
    _, is_batch = parse_operation(payload.operation)
    if is_batch:
        job_id = manager.run_batch(payload.file_ids, payload.operation, payload.parameters, context).job_id
    else:
        job_id = manager.run_job(payload.file_ids, payload.operation, payload.parameters, context).job_id  # type: ignore[arg-type]
    return JobStatusResponse(job=manager.get_status(job_id))


@router.get("/jobs", response_model=List[JobView])
def list_jobs(
    user: Dict[str, Any] = Depends(require_user),
    settings: DictConfig = Depends(get_settings),
    manager: JobManager = Depends(get_job_manager),
) -> List[JobView]:
    return manager.list_jobs(user["id"], limit=settings.jobs.history_limit)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobStatusResponse:
    return JobStatusResponse(job=manager.get_status(job_id))


@router.websocket("/ws/jobs/{job_id}")
async def job_progress(websocket: WebSocket, job_id: str) -> None:
    state = websocket.app.state
    await stream_job_progress(websocket, state.job_manager, job_id, state.settings.jobs.poll_interval_seconds)


# --- pdf tools --------------------------------------------------------------------------------


@router.post("/pdf/merge", response_model=OperationResponse, response_model_exclude_none=True, dependencies=[rate_limit_pdf])
def merge_pdfs(
    payload: MergeRequest,
    context: RequestContext = Depends(request_context),
    manager: JobManager = Depends(get_job_manager),
    signer: DownloadTokenSigner = Depends(get_signer),
) -> OperationResponse:
    outcome = manager.run_job(payload.file_ids, OperationKind.MERGE, payload.options, context)
    return _operation_response(outcome, OperationKind.MERGE, signer)


def _single_file_tool(kind: OperationKind):
    def handler(
        payload: FileOperationRequest,
        context: RequestContext = Depends(request_context),
        manager: JobManager = Depends(get_job_manager),
        signer: DownloadTokenSigner = Depends(get_signer),
    ) -> OperationResponse:
        file_ids = _require_file_id(payload.file_id)
        outcome = manager.run_job(file_ids, kind, payload.options, context)
        return _operation_response(outcome, kind, signer)

    handler.__name__ = f"{kind.value}_pdf"
    return handler


for _kind in (OperationKind.SPLIT, OperationKind.COMPRESS, OperationKind.ROTATE, OperationKind.WATERMARK, OperationKind.UNLOCK):
    router.add_api_route(
        f"/pdf/{_kind.value}",
        _single_file_tool(_kind),
        methods=["POST"],
        response_model=OperationResponse,
        response_model_exclude_none=True,
        dependencies=[rate_limit_pdf],
    )


@router.post("/pdf/esign", response_model=OperationResponse, response_model_exclude_none=True, dependencies=[rate_limit_pdf])
def esign_pdf(
    payload: ESignRequest,
    user: Optional[Dict[str, Any]] = Depends(optional_user),
    context: RequestContext = Depends(request_context),
    manager: JobManager = Depends(get_job_manager),
    signer: DownloadTokenSigner = Depends(get_signer),
) -> OperationResponse:
    file_ids = _require_file_id(payload.file_id)
    decode_signature(payload.signature_data)
    options = {
        **payload.options,
        "signerName": user["name"] if user else None,
        "signatureData": payload.signature_data,
    }
    outcome = manager.run_job(file_ids, OperationKind.ESIGN, options, context)
    return _operation_response(outcome, OperationKind.ESIGN, signer)


@router.post("/pdf/ocr", response_model=OperationResponse, response_model_exclude_none=True, dependencies=[rate_limit_pdf])
def ocr_pdf(
    payload: FileOperationRequest,
    context: RequestContext = Depends(request_context),
    manager: JobManager = Depends(get_job_manager),
    signer: DownloadTokenSigner = Depends(get_signer),
) -> OperationResponse:
    file_ids = _require_file_id(payload.file_id)
    outcome = manager.run_job(file_ids, OperationKind.OCR, payload.options, context)
    return _operation_response(outcome, OperationKind.OCR, signer)


@router.post("/pdf/batch", response_model=BatchResponse, response_model_exclude_none=True, dependencies=[rate_limit_pdf])
def batch_process(
    payload: BatchRequest,
    context: RequestContext = Depends(request_context),
    manager: JobManager = Depends(get_job_manager),
    signer: DownloadTokenSigner = Depends(get_signer),
) -> BatchResponse:
    outcome = manager.run_batch(payload.file_ids, payload.operation, payload.options, context)
    return _batch_response(outcome, signer)


# --- download gateway ----------------------------------------------------------------------------


@router.get("/download", dependencies=[rate_limit_download])
def download_file(
    path: Optional[str] = Query(default=None),
    token: Optional[str] = Query(default=None),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
    store: FileStore = Depends(get_file_store),
    signer: DownloadTokenSigner = Depends(get_signer),
) -> Response:
    resolved = store.resolve_allowed(path)
    user_id = user["id"] if user else None

    if token and not signer.validate(token, resolved, user_id):
        logger.warning(f"Rejected download token for {resolved}")
        raise Forbidden("Invalid or expired download token")
    if not resolved.is_file():
        raise NotFound("File not found")

    headers = {**NO_CACHE_HEADERS, "X-Download-Token": signer.generate(resolved, user_id)}
    if store.is_encrypted_file(resolved):
        return Response(
            content=store.read_plain(resolved),
            media_type=content_type_for(resolved),
            headers={**headers, "Content-Disposition": f'attachment; filename="{quote(resolved.name)}"'},
        )
    return FileResponse(
        resolved,
        media_type=content_type_for(resolved),
        filename=resolved.name,
        headers=headers,
    )


# --- user -----------------------------------------------------------------------------------------


def _profile(user: Dict[str, Any]) -> UserProfile:
    return UserProfile(
        id=user["id"],
        name=user["name"],
        email=user["email"],
        image=user["image"],
        created_at=user["created_at"],
    )


@router.get("/user/profile", response_model=UserProfile)
def get_profile(user: Dict[str, Any] = Depends(require_user)) -> UserProfile:
    return _profile(user)


@router.put("/user/profile", response_model=UserProfile)
def update_profile(
    payload: ProfileUpdateRequest,
    user: Dict[str, Any] = Depends(require_user),
    db: Database = Depends(get_db),
) -> UserProfile:
    if payload.email and payload.email != user["email"]:
        existing = db.get_user_by_email(payload.email)
        if existing and existing["id"] != user["id"]:
            raise InvalidRequest("Email already taken")
    updated = db.update_user(user["id"], name=payload.name, email=payload.email)
    return _profile(updated)  # type: ignore[arg-type]


@router.get("/user/history", response_model=HistoryResponse)
def user_history(
    user: Dict[str, Any] = Depends(require_user),
    settings: DictConfig = Depends(get_settings),
    db: Database = Depends(get_db),
) -> HistoryResponse:
    rows = db.list_history(user["id"], limit=settings.jobs.history_limit)
    return HistoryResponse(history=[_history_entry(row) for row in rows])


@router.get("/user/activity", response_model=HistoryResponse)
def user_activity(
    user: Dict[str, Any] = Depends(require_user),
    settings: DictConfig = Depends(get_settings),
    db: Database = Depends(get_db),
) -> HistoryResponse:
    rows = db.list_history(user["id"], limit=settings.jobs.activity_limit)
    return HistoryResponse(history=[_history_entry(row) for row in rows])


@router.get("/user/stats", response_model=UserStats)
def user_stats(
    request: Request,
    user: Dict[str, Any] = Depends(require_user),
    db: Database = Depends(get_db),
) -> UserStats:
    month_start = utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return UserStats(
        total_files=db.count_pdf_files(user["id"]),
        total_operations=db.count_history(user["id"]),
        this_month_operations=db.count_history(user["id"], since=month_start),
        premium_user=request.app.state.entitlements.is_premium(user["id"]),
    )


@router.post("/user/subscription/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    user: Dict[str, Any] = Depends(require_user),
    db: Database = Depends(get_db),
) -> CancelSubscriptionResponse:
    subscription = db.get_active_subscription(user["id"], include_cancelling=False)
    if subscription is None:
        raise NotFound("No active subscription found")
    updated = db.cancel_subscription_at_period_end(subscription["id"])
    logger.info(f"Subscription {subscription['id']} set to cancel at period end")
    return CancelSubscriptionResponse(
        message="Subscription will be cancelled at the end of the current billing period",
        subscription=SubscriptionView(**updated),  # type: ignore[arg-type]
    )


# --- cloud export ----------------------------------------------------------------------------------


@router.post("/cloud/export", response_model=CloudExportResponse)
def cloud_export(
    payload: CloudExportRequest,
    request: Request,
    user: Dict[str, Any] = Depends(require_user),
    store: FileStore = Depends(get_file_store),
) -> CloudExportResponse:
    exporter: S3Exporter = request.app.state.s3_exporter
    if not exporter.configured:
        raise ServiceUnavailable("Cloud export is not configured")
    resolved = store.resolve_allowed(payload.path)
    if not resolved.is_file():
        raise NotFound("File not found")
    with store.plaintext_paths([resolved]) as (readable,):
        exported = exporter.export(readable, user["id"], name=resolved.name)
    return CloudExportResponse(key=exported.key, url=exported.url, expires_in=exported.expires_in)


# --- admin -------------------------------------------------------------------------------------------


@router.post("/admin/keys", response_model=IssuedKeyResponse, status_code=201, dependencies=[Depends(require_admin)])
def issue_key(payload: IssueKeyRequest, request: Request, db: Database = Depends(get_db)) -> IssuedKeyResponse:
    user = db.get_user_by_email(payload.email) or db.create_user(payload.email, name=payload.name)
    key_manager: KeyManager = request.app.state.key_manager
    raw_key, record = key_manager.create_key(user["id"])
    logger.info(f"Issued API key {record.prefix}... for user {user['id']}")
    return IssuedKeyResponse(api_key=raw_key, record=APIKeyView(**key_manager.to_view(record)))


@router.get("/admin/keys", response_model=List[APIKeyView], dependencies=[Depends(require_admin)])
def list_keys(request: Request) -> List[APIKeyView]:
    key_manager: KeyManager = request.app.state.key_manager
    return [APIKeyView(**key_manager.to_view(record)) for record in key_manager.list_keys()]


@router.delete("/admin/keys/{key_id}", dependencies=[Depends(require_admin)])
def revoke_key(key_id: str, request: Request) -> Dict[str, str]:
    if not request.app.state.key_manager.revoke_key(key_id):
        raise NotFound("API key not found")
    return {"status": "revoked"}


@router.post("/admin/subscriptions", response_model=SubscriptionView, status_code=201, dependencies=[Depends(require_admin)])
def grant_subscription(payload: GrantSubscriptionRequest, db: Database = Depends(get_db)) -> SubscriptionView:
    if db.get_user(payload.user_id) is None:
        raise NotFound("User not found")
    subscription = db.create_subscription(payload.user_id, payload.status, payload.current_period_end)
    return SubscriptionView(**subscription)


# --- application factory -------------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval: float, max_age: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await run_in_threadpool(app.state.file_store.cleanup_old_files, max_age)
        except OSError as exc:
            logger.error(f"File cleanup sweep failed: {exc}")
            continue
        for limiter in app.state.rate_limiters.values():
            if isinstance(limiter, InMemoryRateLimiter):
                limiter.cleanup()
        if removed:
            logger.info(f"File cleanup sweep removed {removed} file(s)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage = app.state.settings.storage
    task = None
    if storage.cleanup_interval_seconds > 0:
        task = asyncio.create_task(_cleanup_loop(app, storage.cleanup_interval_seconds, storage.cleanup_max_age_seconds))
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.job_manager.shutdown()


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(EasyPDFError)
    async def handle_app_error(request: Request, exc: EasyPDFError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{exc.error_type} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {field}: {first.get('msg')}" if field else "Invalid request"
        return JSONResponse(status_code=400, content={"detail": message, "errors": jsonable_encoder(errors)})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(
    settings: Optional[DictConfig] = None,
    ocr_engine: Optional[OCREngine] = None,
    entitlements: Optional[EntitlementService] = None,
    rate_limiter_factory: RateLimiterFactory = in_memory_factory,
    s3_client: Any = None,
) -> FastAPI:
    """
    Build the API with every component constructed and attached to ``app.state``.

    Args:
        settings: Runtime settings (default: ``load_settings()``)
        ocr_engine: OCR implementation (default: Tesseract)
        entitlements: Premium entitlement source (default: subscriptions table)
        rate_limiter_factory: Builds one limiter per configured route group
        s3_client: Pre-built boto3 S3 client for cloud export
    """
    settings = settings if settings is not None else load_settings()
    logging.basicConfig(level=str(settings.app.log_level).upper())

    db_path = Path(settings.database.path)
    db = Database(db_path)
    file_store = FileStore(
        Path(settings.storage.root),
        settings.storage.upload_dir,
        settings.storage.output_dir,
        cipher=FileCipher(settings.security.encryption_key),
        encrypt_uploads=bool(settings.storage.encrypt_uploads),
    )
    adapter = PDFOperationAdapter(file_store, ocr_engine or TesseractOCREngine(settings.ocr.tesseract_cmd))
    entitlements = entitlements or SubscriptionEntitlements(db)

    app = FastAPI(title=settings.app.title, version=settings.app.version, lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.key_manager = KeyManager(str(db_path))
    app.state.file_store = file_store
    app.state.entitlements = entitlements
    app.state.job_manager = JobManager(
        db,
        adapter,
        entitlements,
        max_workers=settings.jobs.max_workers,
        operation_timeout=settings.jobs.operation_timeout_seconds,
        file_store=file_store,
        option_defaults={OperationKind.OCR: {"language": settings.ocr.language, "dpi": settings.ocr.dpi}},
    )
    app.state.token_signer = DownloadTokenSigner(
        settings.security.encryption_key,
        ttl_seconds=settings.security.download_token_ttl_seconds,
    )
    app.state.s3_exporter = S3Exporter(
        settings.cloud.s3_bucket,
        expiration=settings.cloud.presign_expiration_seconds,
        client=s3_client,
    )
    app.state.rate_limiters = {
        route: rate_limiter_factory(route, int(block.limit), float(block.window_seconds))
        for route, block in settings.rate_limits.items()
    }

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(OmegaConf.to_container(settings.app.cors_origins)),  # type: ignore[arg-type]
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_exception_handlers(app)
    app.include_router(router)
    logger.info(f"{settings.app.title} ready (storage root: {file_store.root})")
    return app
