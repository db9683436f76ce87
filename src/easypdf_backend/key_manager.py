
import hashlib
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from .errors import StorageFailure
from .utils import utcnow


@dataclass
class APIKeyRecord:
    id: str
    user_id: str
    prefix: str
    is_active: bool
    created_at: datetime


class KeyManager:
    """
    Issues and validates per-user API keys, stored as SHA-256 hashes in SQLite.

    Sessions are owned by the external identity provider; this table only
    maps the opaque key a client presents in ``X-API-Key`` to a user id.
    """

    def __init__(self, db_path: str = "data/easypdf.db"):
        self.db_path = Path(db_path)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Could not open key store: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def _hash_key(self, key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()

    def create_key(self, user_id: str) -> Tuple[str, APIKeyRecord]:
        """
        Generate a new API key for a user.

        Returns:
            Tuple of (raw_api_key, record). The raw key is only available here.
        """
        raw_key = f"epdf_{secrets.token_urlsafe(32)}"
        record = APIKeyRecord(
            id=str(uuid4()),
            user_id=user_id,
            prefix=raw_key[:9],
            is_active=True,
            created_at=utcnow(),
        )

        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO api_keys (id, key_hash, prefix, user_id, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (record.id, self._hash_key(raw_key), record.prefix, user_id, record.created_at.isoformat()))
            conn.commit()

        return raw_key, record

    def validate_key(self, key: Optional[str]) -> Optional[APIKeyRecord]:
        """Validate an API key and return its record if it is active."""
        if not key:
            return None

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (self._hash_key(key),)
            ).fetchone()

        return self._row_to_record(row) if row else None

    def list_keys(self) -> list[APIKeyRecord]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM api_keys ORDER BY created_at DESC").fetchall()
        return [self._row_to_record(row) for row in rows]

    def revoke_key(self, key_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
            conn.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> APIKeyRecord:
        return APIKeyRecord(
            id=row["id"],
            user_id=row["user_id"],
            prefix=row["prefix"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def to_view(record: APIKeyRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "prefix": record.prefix,
            "user_id": record.user_id,
            "is_active": record.is_active,
            "created_at": record.created_at,
        }
