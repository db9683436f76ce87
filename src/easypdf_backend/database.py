"""
SQLite persistence layer for users, uploaded files, processing jobs and history.

Record kinds:
- users / subscriptions: identity and premium entitlement source
- pdf_files: one row per uploaded artifact, never mutated after creation
- processing_jobs: unit of work with status/progress, updated in place
- processing_history: append-only audit entries, one per processed file

Every ``sqlite3.Error`` is re-raised as ``StorageFailure`` so route handlers
only ever see the application's own exception hierarchy.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from .errors import StorageFailure
from .utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data/easypdf.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT,
    email TEXT UNIQUE,
    image TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    status TEXT NOT NULL,
    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
    current_period_end TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pdf_files (
    id TEXT PRIMARY KEY,
    original_name TEXT NOT NULL,
    stored_file_name TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    mime_type TEXT NOT NULL,
    status TEXT NOT NULL,
    user_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processing_jobs (
    id TEXT PRIMARY KEY,
    file_ids TEXT NOT NULL,
    operation TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    parameters TEXT,
    result TEXT,
    user_id TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processing_history (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    job_id TEXT NOT NULL,
    file_id TEXT,
    operation TEXT NOT NULL,
    status TEXT NOT NULL,
    parameters TEXT,
    result TEXT,
    error TEXT,
    ip_address TEXT,
    user_agent TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_user ON processing_jobs(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_history_user ON processing_history(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_history_job ON processing_history(job_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id);
"""

JOB_COLUMNS = {"status", "progress", "error", "result", "started_at", "completed_at"}


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.fromisoformat(s)


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


class Database:
    """
    SQLite database for the persistence layer.

    One connection per unit of work; WAL mode lets request threads read
    while another writes. Single-row updates are the only atomicity the
    application relies on.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Could not open database: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error(f"Database operation failed: {exc}")
            raise StorageFailure(f"Database operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)

    # --- users ---------------------------------------------------------------

    def create_user(self, email: Optional[str], name: Optional[str] = None, image: Optional[str] = None) -> Dict[str, Any]:
        user = {
            "id": uuid4().hex,
            "name": name,
            "email": email,
            "image": image,
            "created_at": utcnow(),
        }
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO users (id, name, email, image, created_at) VALUES (?, ?, ?, ?, ?)",
                (user["id"], name, email, image, _serialize_datetime(user["created_at"])),
            )
        return user

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._user_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return self._user_row(row) if row else None

    def update_user(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None) -> Optional[Dict[str, Any]]:
        updates, values = [], []
        if name:
            updates.append("name = ?")
            values.append(name)
        if email:
            updates.append("email = ?")
            values.append(email)
        if updates:
            with self._get_connection() as conn:
                conn.execute(f"UPDATE users SET {', '.join(updates)} WHERE id = ?", [*values, user_id])
        return self.get_user(user_id)

    @staticmethod
    def _user_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "name": row["name"],
            "email": row["email"],
            "image": row["image"],
            "created_at": _deserialize_datetime(row["created_at"]),
        }

    # --- subscriptions ----------------------------------------------------------

    def create_subscription(
        self,
        user_id: str,
        status: str = "active",
        current_period_end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        subscription_id = uuid4().hex
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO subscriptions (id, user_id, status, cancel_at_period_end, current_period_end, created_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (subscription_id, user_id, status, _serialize_datetime(current_period_end), _serialize_datetime(utcnow())),
            )
        return self.get_subscription(subscription_id)  # type: ignore[return-value]

    def get_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
        return self._subscription_row(row) if row else None

    def get_active_subscription(self, user_id: str, include_cancelling: bool = True) -> Optional[Dict[str, Any]]:
        """Most recent ``active`` subscription; optionally skip ones already set to cancel."""
        query = "SELECT * FROM subscriptions WHERE user_id = ? AND status = 'active'"
        if not include_cancelling:
            query += " AND cancel_at_period_end = 0"
        query += " ORDER BY created_at DESC LIMIT 1"
        with self._get_connection() as conn:
            row = conn.execute(query, (user_id,)).fetchone()
        return self._subscription_row(row) if row else None

    def cancel_subscription_at_period_end(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            conn.execute("UPDATE subscriptions SET cancel_at_period_end = 1 WHERE id = ?", (subscription_id,))
        return self.get_subscription(subscription_id)

    @staticmethod
    def _subscription_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "status": row["status"],
            "cancel_at_period_end": bool(row["cancel_at_period_end"]),
            "current_period_end": _deserialize_datetime(row["current_period_end"]),
        }

    # --- pdf files ----------------------------------------------------------------

    def create_pdf_file(
        self,
        original_name: str,
        stored_file_name: str,
        file_path: Path,
        file_size: int,
        mime_type: str,
        user_id: Optional[str] = None,
        status: str = "uploaded",
    ) -> Dict[str, Any]:
        record = {
            "id": uuid4().hex,
            "original_name": original_name,
            "stored_file_name": stored_file_name,
            "file_path": Path(file_path),
            "file_size": file_size,
            "mime_type": mime_type,
            "status": status,
            "user_id": user_id,
            "created_at": utcnow(),
        }
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO pdf_files (
                    id, original_name, stored_file_name, file_path, file_size,
                    mime_type, status, user_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"], original_name, stored_file_name, str(file_path), file_size,
                    mime_type, status, user_id, _serialize_datetime(record["created_at"]),
                ),
            )
        return record

    def get_pdf_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM pdf_files WHERE id = ?", (file_id,)).fetchone()
        return self._pdf_file_row(row) if row else None

    def get_pdf_files(self, file_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Look up several files at once, keyed by id (missing ids are absent)."""
        ids = list(dict.fromkeys(file_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._get_connection() as conn:
            rows = conn.execute(f"SELECT * FROM pdf_files WHERE id IN ({placeholders})", ids).fetchall()
        return {row["id"]: self._pdf_file_row(row) for row in rows}

    def count_pdf_files(self, user_id: str) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM pdf_files WHERE user_id = ?", (user_id,)).fetchone()[0]

    @staticmethod
    def _pdf_file_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "original_name": row["original_name"],
            "stored_file_name": row["stored_file_name"],
            "file_path": Path(row["file_path"]),
            "file_size": row["file_size"],
            "mime_type": row["mime_type"],
            "status": row["status"],
            "user_id": row["user_id"],
            "created_at": _deserialize_datetime(row["created_at"]),
        }

    # --- processing jobs ----------------------------------------------------------

    def create_job(
        self,
        file_ids: List[str],
        operation: str,
        status: str,
        parameters: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = utcnow()
        job_id = uuid4().hex
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO processing_jobs (
                    id, file_ids, operation, status, progress, parameters,
                    user_id, created_at, started_at, updated_at
                ) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                """,
                (
                    job_id, json.dumps(file_ids), operation, status, json.dumps(parameters or {}),
                    user_id, _serialize_datetime(now), _serialize_datetime(now), _serialize_datetime(now),
                ),
            )
        return self.get_job(job_id)  # type: ignore[return-value]

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM processing_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._job_row(row) if row else None

    def list_jobs(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM processing_jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._job_row(row) for row in rows]

    def update_job(self, job_id: str, history: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
        """
        Update job columns in a single statement.

        Accepted fields: status, progress, error, result, started_at, completed_at.
        When ``history`` (``add_history`` keyword arguments) is given, that row
        is appended in the same transaction: both writes land or neither does.
        """
        unknown = set(fields) - JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        updates = ["updated_at = ?"]
        values: List[Any] = [_serialize_datetime(utcnow())]
        for key, value in fields.items():
            if key == "result":
                value = _dumps(value)
            elif key in ("started_at", "completed_at"):
                value = _serialize_datetime(value)
            elif key == "status":
                value = getattr(value, "value", value)
            updates.append(f"{key} = ?")
            values.append(value)
        values.append(job_id)

        with self._get_connection() as conn:
            if history is not None:
                self._insert_history(conn, job_id=job_id, **history)
            conn.execute(f"UPDATE processing_jobs SET {', '.join(updates)} WHERE id = ?", values)

    @staticmethod
    def _job_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "file_ids": json.loads(row["file_ids"] or "[]"),
            "operation": row["operation"],
            "status": row["status"],
            "progress": row["progress"],
            "error": row["error"],
            "parameters": json.loads(row["parameters"] or "{}"),
            "result": json.loads(row["result"]) if row["result"] else None,
            "user_id": row["user_id"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "started_at": _deserialize_datetime(row["started_at"]),
            "completed_at": _deserialize_datetime(row["completed_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
        }

    # --- processing history (append-only) -------------------------------------------

    def add_history(
        self,
        job_id: str,
        operation: str,
        status: str,
        parameters: Optional[Dict[str, Any]] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        user_id: Optional[str] = None,
        file_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        with self._get_connection() as conn:
            return self._insert_history(
                conn,
                job_id=job_id,
                operation=operation,
                status=status,
                parameters=parameters,
                result=result,
                error=error,
                user_id=user_id,
                file_id=file_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )

    @staticmethod
    def _insert_history(
        conn: sqlite3.Connection,
        job_id: str,
        operation: str,
        status: str,
        parameters: Optional[Dict[str, Any]] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        user_id: Optional[str] = None,
        file_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        history_id = uuid4().hex
        conn.execute(
            """
            INSERT INTO processing_history (
                id, user_id, job_id, file_id, operation, status, parameters,
                result, error, ip_address, user_agent, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                history_id, user_id, job_id, file_id, operation, status,
                json.dumps(parameters or {}), _dumps(result), error,
                ip_address, user_agent, _serialize_datetime(utcnow()),
            ),
        )
        return history_id

    def latest_history(self, job_id: str, status: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = "SELECT * FROM processing_history WHERE job_id = ?"
        params: List[Any] = [job_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        with self._get_connection() as conn:
            row = conn.execute(query, params).fetchone()
        return self._history_row(row) if row else None

    def list_history_for_job(self, job_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM processing_history WHERE job_id = ? ORDER BY created_at, rowid", (job_id,)
            ).fetchall()
        return [self._history_row(row) for row in rows]

    def list_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM processing_history WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._history_row(row) for row in rows]

    def count_history(self, user_id: str, since: Optional[datetime] = None) -> int:
        query = "SELECT COUNT(*) FROM processing_history WHERE user_id = ?"
        params: List[Any] = [user_id]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(_serialize_datetime(since))
        with self._get_connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    @staticmethod
    def _history_row(row: sqlite3.Row) -> Dict[str, Any]:
        # The raw serialized result is kept; readers decide how to parse it.
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "job_id": row["job_id"],
            "file_id": row["file_id"],
            "operation": row["operation"],
            "status": row["status"],
            "parameters": row["parameters"],
            "result": row["result"],
            "error": row["error"],
            "ip_address": row["ip_address"],
            "user_agent": row["user_agent"],
            "created_at": _deserialize_datetime(row["created_at"]),
        }
