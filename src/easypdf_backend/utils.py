"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided file names for safe filesystem usage
- Ensuring directory creation
- Generating unique stored and output file names
- Timezone-aware timestamps shared by the persistence layer
"""

from __future__ import annotations

import re
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

# Pattern to match characters that are not safe for filesystem paths
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9]+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_stem(name: str, fallback: str = "document") -> str:
    """
    Generate a filesystem-safe, lowercase stem from a user-provided file name.

    Example:
        >>> sanitize_stem("My Report (final).pdf")
        "my_report_final"
        >>> sanitize_stem("@#$.pdf")
        "document"
    """
    stem = Path(name).stem
    cleaned = SANITIZE_PATTERN.sub("_", stem).strip("_").lower()
    return cleaned or fallback


def secure_filename(original_name: str) -> str:
    """
    Build a collision-resistant stored file name: ``{timestamp}_{random}_{stem}{ext}``.

    Only the final path component of ``original_name`` is used, so client
    supplied directories never leak into the upload root.
    """
    base = Path(original_name.replace("\\", "/")).name
    extension = Path(base).suffix.lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,8}", extension):
        extension = ""
    return f"{int(time.time() * 1000)}_{secrets.token_hex(8)}_{sanitize_stem(base)}{extension}"


def output_filename(operation: str, extension: str) -> str:
    """Output naming used for every generated file: ``{operation}_{uniqueId}.{ext}``."""
    return f"{operation}_{uuid4().hex}.{extension.lstrip('.')}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path
