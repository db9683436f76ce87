"""
Job orchestration and lifecycle management for PDF processing.

This module owns the lifecycle of every ProcessingJob:
- Validating the request and the caller's premium entitlement
- Creating the job row (``processing``, progress 0)
- Resolving file ids to stored PDFs
- Running the PDF Operation Adapter on a worker pool with a timeout
- Recording the terminal state and the ProcessingHistory rows

Jobs run to completion within the request that created them; the worker
pool exists only so a stuck library call can be abandoned after
``operation_timeout`` instead of holding the job in ``processing`` forever.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Union

from .database import Database
from .entitlements import EntitlementService
from .errors import InvalidRequest, NotFound, PDFFileNotFound, PermissionDenied, StorageFailure
from .file_store import FileStore
from .models import (
    ALLOWED_TRANSITIONS,
    BATCH_OPERATIONS,
    BATCH_PREFIX,
    PREMIUM_OPERATIONS,
    JobStatus,
    JobView,
    OperationKind,
    OperationOptions,
    parse_operation,
    parse_options,
)
from .pdf_operations import OperationResult, PDFOperationAdapter
from .utils import utcnow

logger = logging.getLogger(__name__)

PREMIUM_MESSAGES = {
    OperationKind.OCR: "OCR is a premium feature. Please upgrade your plan.",
    OperationKind.ESIGN: "E-signature is a premium feature. Please upgrade your plan.",
}
BATCH_PREMIUM_MESSAGE = "Batch processing is a premium feature. Please upgrade your plan."

# Progress recorded once every input file is resolved
RESOLVED_PROGRESS = 25


def _discard_late_outputs(future: Future) -> None:
    """Delete files produced by an adapter call whose job already failed on timeout."""
    if future.cancelled() or future.exception() is not None:
        return
    result = future.result()
    if not result.success:
        return
    paths = {Path(p) for p in result.output_paths}
    if result.output_path:
        paths.add(Path(result.output_path))
    for path in paths:
        try:
            path.unlink(missing_ok=True)
            logger.info(f"Removed output of timed-out operation: {path}")
        except OSError as exc:
            logger.error(f"Could not remove {path}: {exc}")


@dataclass
class RequestContext:
    """Who asked for the work; copied onto every history row."""

    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class JobOutcome:
    job_id: str
    status: JobStatus
    result: OperationResult

    @property
    def error(self) -> Optional[str]:
        return self.result.error


@dataclass
class BatchItemOutcome:
    file_id: str
    success: bool
    result: Optional[OperationResult] = None
    error: Optional[str] = None


@dataclass
class BatchOutcome:
    job_id: str
    status: JobStatus
    items: List[BatchItemOutcome] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.items)

    @property
    def successful_files(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failed_files(self) -> int:
        return self.total_files - self.successful_files

    @property
    def success_rate(self) -> float:
        if not self.items:
            return 0.0
        return self.successful_files / self.total_files * 100

    @property
    def success_rate_label(self) -> str:
        return f"{self.success_rate:.2f}%"

    def summary(self) -> Dict[str, Any]:
        return {
            "totalFiles": self.total_files,
            "successfulFiles": self.successful_files,
            "failedFiles": self.failed_files,
            "successRate": self.success_rate,
        }


class JobManager:
    """
    Central coordinator for job lifecycle management.

    Thread Safety:
        Status and progress writes go through ``_transition`` and
        ``_advance_progress``, which read-check-write under a lock so that
        status never moves backwards and progress never decreases within
        this process.

    Attributes:
        db: Persistence layer holding jobs, files and history
        adapter: PDF Operation Adapter that performs the actual work
        entitlements: Premium entitlement source
        operation_timeout: Seconds to wait for a single adapter call
        file_store: When set, encrypted inputs are decrypted to scratch copies for the adapter
        option_defaults: Per-operation option values applied under caller-supplied ones
    """

    def __init__(
        self,
        db: Database,
        adapter: PDFOperationAdapter,
        entitlements: EntitlementService,
        max_workers: int = 4,
        operation_timeout: float = 120.0,
        file_store: Optional[FileStore] = None,
        option_defaults: Optional[Dict[OperationKind, Dict[str, Any]]] = None,
    ) -> None:
        self.db = db
        self.adapter = adapter
        self.entitlements = entitlements
        self.operation_timeout = operation_timeout
        self.file_store = file_store
        self.option_defaults = option_defaults or {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pdf-operation")

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    # --- entry points -------------------------------------------------------------

    def run_job(
        self,
        file_ids: Sequence[str],
        operation: Union[str, OperationKind],
        options: Union[OperationOptions, Dict[str, Any], None],
        context: RequestContext,
    ) -> JobOutcome:
        """
        Run a single-file or merge operation to a terminal state.

        Args:
            file_ids: PDFFile ids; exactly one, or two or more for merge
            operation: Operation identifier (``batch_*`` is rejected; use run_batch)
            options: Raw options mapping or an already-validated option record
            context: Caller identity and request metadata

        Returns:
            JobOutcome with the adapter result. Adapter failures are returned,
            not raised: the job is ``failed`` and the error is recorded verbatim.

        Raises:
            InvalidRequest: Bad operation, file count or options (no job created)
            PermissionDenied: Premium operation without entitlement (no job created)
            PDFFileNotFound: A file id is unknown; the job exists and is ``failed``
        """
        kind = self._single_operation(operation)
        file_ids = list(file_ids)
        self._check_file_count(kind, file_ids)
        parsed = self._parse(kind, options)
        self._require_premium(kind, is_batch=False, user_id=context.user_id)

        parameters = parsed.model_dump(by_alias=True)
        job = self.db.create_job(file_ids, kind.value, JobStatus.PROCESSING.value, parameters, context.user_id)
        job_id = job["id"]
        logger.info(f"Job {job_id} started: {kind.value} on {len(file_ids)} file(s)")

        records = self.db.get_pdf_files(file_ids)
        missing = [file_id for file_id in file_ids if file_id not in records]
        if missing:
            error = PDFFileNotFound.for_ids(missing)
            self._transition(job_id, JobStatus.FAILED, error=error.message)
            logger.warning(f"Job {job_id} failed before processing: {error.message}")
            error.extra = {"jobId": job_id}
            raise error

        self._advance_progress(job_id, RESOLVED_PROGRESS)
        input_paths = [records[file_id]["file_path"] for file_id in file_ids]
        result = self._run_adapter(kind, input_paths, parsed)

        history_file_id = file_ids[0] if len(file_ids) == 1 else None
        if result.success:
            payload = result.payload()
            history = self._history(kind.value, JobStatus.COMPLETED, parameters, context, history_file_id, result=payload)
            self._transition(job_id, JobStatus.COMPLETED, history=history, result=payload)
            logger.info(f"Job {job_id} completed: {result.output_path}")
            return JobOutcome(job_id=job_id, status=JobStatus.COMPLETED, result=result)

        history = self._history(kind.value, JobStatus.FAILED, parameters, context, history_file_id, error=result.error)
        self._transition(job_id, JobStatus.FAILED, history=history, error=result.error)
        logger.error(f"Job {job_id} failed: {result.error}")
        return JobOutcome(job_id=job_id, status=JobStatus.FAILED, result=result)

    def run_batch(
        self,
        file_ids: Sequence[str],
        operation: Optional[str],
        options: Optional[Dict[str, Any]],
        context: RequestContext,
    ) -> BatchOutcome:
        """
        Apply one operation to each file independently.

        A failure on one file (including an unknown id) is recorded against
        that file and the batch moves on. The job ends ``completed`` when every
        file succeeded, otherwise ``partial``; one history row is written per
        file either way.
        """
        file_ids = list(file_ids)
        if not file_ids:
            raise InvalidRequest("File IDs are required")
        if not operation:
            raise InvalidRequest("Operation is required")
        self._require_premium(None, is_batch=True, user_id=context.user_id)

        name = operation.removeprefix(BATCH_PREFIX)
        kind = next((op for op in BATCH_OPERATIONS if op.value == name), None)
        if kind is None:
            valid = ", ".join(op.value for op in BATCH_OPERATIONS)
            raise InvalidRequest(f"Invalid operation. Valid operations: {valid}")
        parsed = self._parse(kind, options)

        job_operation = f"{BATCH_PREFIX}{kind.value}"
        parameters = parsed.model_dump(by_alias=True)
        job = self.db.create_job(file_ids, job_operation, JobStatus.PROCESSING.value, parameters, context.user_id)
        job_id = job["id"]
        total = len(file_ids)
        logger.info(f"Batch job {job_id} started: {kind.value} on {total} file(s)")

        records = self.db.get_pdf_files(file_ids)
        outcome = BatchOutcome(job_id=job_id, status=JobStatus.PROCESSING)

        for index, file_id in enumerate(file_ids):
            record = records.get(file_id)
            if record is None:
                item = BatchItemOutcome(file_id=file_id, success=False, error=f"File not found: {file_id}")
            else:
                result = self._run_adapter(kind, [record["file_path"]], parsed)
                item = BatchItemOutcome(file_id=file_id, success=result.success, result=result, error=result.error)
            outcome.items.append(item)

            if item.success:
                payload = {**item.result.payload(), "batchIndex": index, "totalFiles": total}  # type: ignore[union-attr]
                history = self._history(job_operation, JobStatus.COMPLETED, parameters, context, file_id, result=payload)
            else:
                logger.warning(f"Batch job {job_id}: {file_id} failed: {item.error}")
                history = self._history(job_operation, JobStatus.FAILED, parameters, context, file_id, error=item.error)
            self.db.add_history(job_id=job_id, **history)

            self._advance_progress(job_id, (index + 1) * 100 // total)

        outcome.status = JobStatus.COMPLETED if outcome.failed_files == 0 else JobStatus.PARTIAL
        error = f"{outcome.failed_files} files failed" if outcome.failed_files else None
        self._transition(job_id, outcome.status, error=error, result=outcome.summary())
        logger.info(
            f"Batch job {job_id} {outcome.status.value}: "
            f"{outcome.successful_files}/{total} succeeded ({outcome.success_rate_label})"
        )
        return outcome

    # --- progress reporting ---------------------------------------------------------

    def get_status(self, job_id: str) -> JobView:
        """
        Read-only projection of a job.

        A completed job without an inline result falls back to the newest
        completed history row; an unparseable stored result is reported as
        absent rather than as an error.
        """
        job = self.db.get_job(job_id)
        if job is None:
            raise NotFound("Job not found")

        result = job["result"]
        if job["status"] == JobStatus.COMPLETED.value and result is None:
            history = self.db.latest_history(job_id, status=JobStatus.COMPLETED.value)
            if history and history["result"]:
                try:
                    result = json.loads(history["result"])
                except (TypeError, ValueError):
                    logger.debug(f"Ignoring unparseable history result for job {job_id}")
                    result = None
        return self._to_view(job, result)

    def list_jobs(self, user_id: str, limit: int = 50) -> List[JobView]:
        return [self._to_view(job, job["result"]) for job in self.db.list_jobs(user_id, limit)]

    # --- internals ------------------------------------------------------------------

    @staticmethod
    def _single_operation(operation: Union[str, OperationKind]) -> OperationKind:
        if isinstance(operation, OperationKind):
            return operation
        kind, is_batch = parse_operation(operation)
        if is_batch:
            raise InvalidRequest("Batch operations must be submitted as a batch")
        return kind

    @staticmethod
    def _check_file_count(kind: OperationKind, file_ids: List[str]) -> None:
        if not file_ids:
            raise InvalidRequest("File IDs are required")
        if kind is OperationKind.MERGE:
            if len(file_ids) < 2:
                raise InvalidRequest("At least 2 files are required for merging")
        elif len(file_ids) != 1:
            raise InvalidRequest(f"{kind.value} operates on exactly one file")

    def _parse(self, kind: OperationKind, options: Union[OperationOptions, Dict[str, Any], None]) -> OperationOptions:
        if isinstance(options, OperationOptions):
            return options
        defaults = self.option_defaults.get(kind)
        if defaults:
            options = {**defaults, **(options or {})}
        return parse_options(kind, options)

    def _require_premium(self, kind: Optional[OperationKind], is_batch: bool, user_id: Optional[str]) -> None:
        if is_batch:
            message = BATCH_PREMIUM_MESSAGE
        elif kind in PREMIUM_OPERATIONS:
            message = PREMIUM_MESSAGES[kind]
        else:
            return
        if not self.entitlements.is_premium(user_id):
            raise PermissionDenied(message)

    def _run_adapter(self, kind: OperationKind, input_paths: List[Path], options: OperationOptions) -> OperationResult:
        readable = self.file_store.plaintext_paths(input_paths) if self.file_store else nullcontext(input_paths)
        try:
            with readable as paths:
                return self._invoke(kind, list(paths), options)
        except StorageFailure as exc:
            logger.error(f"{kind.value}: cannot read inputs: {exc.message}")
            return OperationResult(success=False, error=exc.message)

    def _invoke(self, kind: OperationKind, input_paths: List[Path], options: OperationOptions) -> OperationResult:
        future = self._executor.submit(self.adapter.apply, kind, input_paths, options)
        try:
            return future.result(timeout=self.operation_timeout)
        except FutureTimeout:
            if not future.cancel():
                future.add_done_callback(_discard_late_outputs)
            message = f"Operation timed out after {self.operation_timeout:g} seconds"
            logger.error(f"{kind.value} on {[str(p) for p in input_paths]}: {message}")
            return OperationResult(success=False, error=message)
        except InvalidRequest:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error during {kind.value}")
            return OperationResult(success=False, error=str(exc) or exc.__class__.__name__)

    def _transition(
        self, job_id: str, status: JobStatus, history: Optional[Dict[str, Any]] = None, **fields: Any
    ) -> None:
        """Move a job to ``status``; a ``history`` row, when given, is written in the same transaction."""
        with self._lock:
            job = self.db.get_job(job_id)
            if job is None:
                raise NotFound("Job not found")
            current = JobStatus(job["status"])
            if status not in ALLOWED_TRANSITIONS[current]:
                raise RuntimeError(f"Illegal job transition {current.value} -> {status.value}")
            if status.is_terminal:
                fields["progress"] = 100
                fields["completed_at"] = utcnow()
            self.db.update_job(job_id, history=history, status=status.value, **fields)

    def _advance_progress(self, job_id: str, progress: int) -> None:
        """Raise progress, capped below 100 until the terminal transition."""
        with self._lock:
            job = self.db.get_job(job_id)
            if job is None or JobStatus(job["status"]).is_terminal:
                return
            progress = min(progress, 99)
            if progress > job["progress"]:
                self.db.update_job(job_id, progress=progress)

    @staticmethod
    def _history(
        operation: str,
        status: JobStatus,
        parameters: Dict[str, Any],
        context: RequestContext,
        file_id: Optional[str],
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Keyword arguments for one ProcessingHistory row."""
        return dict(
            operation=operation,
            status=status.value,
            parameters=parameters,
            result=result,
            error=error,
            user_id=context.user_id,
            file_id=file_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

    @staticmethod
    def _to_view(job: Dict[str, Any], result: Any) -> JobView:
        return JobView(
            id=job["id"],
            operation=job["operation"],
            status=JobStatus(job["status"]),
            progress=job["progress"],
            error=job["error"],
            file_ids=job["file_ids"],
            created_at=job["created_at"],
            started_at=job["started_at"],
            completed_at=job["completed_at"],
            result=result,
        )
