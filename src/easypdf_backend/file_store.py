"""
File Store: the two filesystem roots holding uploads and generated outputs.

Besides reading and writing, the store owns the one access-control boundary
for file serving: ``resolve_allowed`` maps a caller-supplied path to an
absolute path and refuses anything that does not resolve inside a root.
Uploads can be kept encrypted at rest; ``plaintext_paths`` hands readers
short-lived decrypted copies.
"""

from __future__ import annotations

import logging
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence
from urllib.parse import unquote

from .errors import Forbidden, InvalidRequest, StorageFailure
from .security import ENCRYPTED_MAGIC, FileCipher
from .utils import ensure_directory, output_filename, secure_filename

logger = logging.getLogger(__name__)

# Guards against pathological inputs like %25252525...
MAX_DECODE_ROUNDS = 5


@dataclass
class StoredFile:
    stored_file_name: str
    path: Path
    size: int


class FileStore:
    """
    Uploads and outputs live under ``root`` (``uploads/`` and ``outputs/`` by default).

    Attributes:
        root: Base directory that relative download paths are interpreted against
        upload_root: Resolved directory for uploaded source files
        output_root: Resolved directory for generated files
        cipher: Decrypts uploads stored encrypted; also encrypts new ones when ``encrypt_uploads`` is set
    """

    def __init__(
        self,
        root: Path,
        upload_dir: Path | str = "uploads",
        output_dir: Path | str = "outputs",
        cipher: Optional[FileCipher] = None,
        encrypt_uploads: bool = False,
    ) -> None:
        self.cipher = cipher
        self.encrypt_uploads = encrypt_uploads
        self.root = ensure_directory(Path(root)).resolve()
        self.upload_root = ensure_directory(self._under_root(upload_dir)).resolve()
        self.output_root = ensure_directory(self._under_root(output_dir)).resolve()

    def _under_root(self, directory: Path | str) -> Path:
        directory = Path(directory)
        return directory if directory.is_absolute() else self.root / directory

    @property
    def allowed_roots(self) -> tuple[Path, Path]:
        return (self.output_root, self.upload_root)

    def store_upload(self, original_name: str, data: bytes) -> StoredFile:
        """Write an upload; encrypted at rest when ``encrypt_uploads`` is on. ``size`` is the plaintext size."""
        stored_file_name = secure_filename(original_name)
        destination = ensure_directory(self.upload_root) / stored_file_name
        payload = self.cipher.encrypt(data) if self.encrypt_uploads and self.cipher else data
        destination.write_bytes(payload)
        logger.info(f"Stored upload {original_name!r} as {destination}")
        return StoredFile(stored_file_name=stored_file_name, path=destination, size=len(data))

    @staticmethod
    def is_encrypted_file(path: Path) -> bool:
        try:
            with open(path, "rb") as handle:
                return FileCipher.is_encrypted(handle.read(len(ENCRYPTED_MAGIC)))
        except OSError:
            return False

    def read_plain(self, path: Path) -> bytes:
        """File contents, decrypted when the file was stored encrypted."""
        blob = Path(path).read_bytes()
        if not FileCipher.is_encrypted(blob):
            return blob
        if self.cipher is None:
            raise StorageFailure(f"Cannot read encrypted file {Path(path).name}: no encryption key configured")
        try:
            return self.cipher.decrypt(blob)
        except ValueError as exc:
            raise StorageFailure(f"Cannot decrypt {Path(path).name}: {exc}") from exc

    @contextmanager
    def plaintext_paths(self, paths: Sequence[Path]) -> Iterator[List[Path]]:
        """
        Yield readable paths for ``paths``.

        Encrypted files are decrypted into a scratch directory under ``root``
        (outside both allowed roots) that is removed on exit; plaintext files
        are passed through unchanged.
        """
        paths = [Path(path) for path in paths]
        if not any(self.is_encrypted_file(path) for path in paths):
            yield paths
            return

        with tempfile.TemporaryDirectory(prefix=".decrypted-", dir=self.root) as scratch:
            readable = []
            for index, path in enumerate(paths):
                if self.is_encrypted_file(path):
                    target = Path(scratch) / f"{index}_{path.name}"
                    target.write_bytes(self.read_plain(path))
                    readable.append(target)
                else:
                    readable.append(path)
            yield readable

    def output_path(self, operation: str, extension: str = "pdf") -> Path:
        return ensure_directory(self.output_root) / output_filename(operation, extension)

    def is_allowed(self, path: Path) -> bool:
        resolved = Path(path).resolve()
        return any(resolved.is_relative_to(root) for root in self.allowed_roots)

    def resolve_allowed(self, requested: Optional[str]) -> Path:
        """
        Resolve a requested path and require it to sit inside an allowed root.

        Percent-encoding is peeled until the value is stable, so encoded
        traversal sequences are resolved like their plain form. Absolute paths
        already inside a root are taken as-is; anything else is interpreted
        relative to ``root`` (so ``/outputs/x.pdf`` means ``<root>/outputs/x.pdf``).
        Containment is checked on resolved absolute paths, component-wise.

        Raises:
            InvalidRequest: empty path or embedded NUL byte
            Forbidden: the resolved path escapes every allowed root
        """
        if not requested:
            raise InvalidRequest("File path is required")

        decoded = requested
        for _ in range(MAX_DECODE_ROUNDS):
            candidate = unquote(decoded)
            if candidate == decoded:
                break
            decoded = candidate

        if "\x00" in decoded:
            raise InvalidRequest("Invalid file path")

        decoded = decoded.replace("\\", "/")
        as_given = Path(decoded)
        if as_given.is_absolute():
            resolved = as_given.resolve()
            if self._inside_roots(resolved):
                return resolved
        resolved = (self.root / decoded.lstrip("/")).resolve()
        if self._inside_roots(resolved):
            return resolved

        logger.warning(f"Rejected path outside allowed roots: {requested!r}")
        raise Forbidden("Access denied")

    def _inside_roots(self, resolved: Path) -> bool:
        return any(resolved != root and resolved.is_relative_to(root) for root in self.allowed_roots)

    def cleanup_old_files(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        """
        Delete files older than ``max_age_seconds`` (by mtime) from both roots.

        Returns:
            Number of files removed
        """
        now = time.time() if now is None else now
        removed = 0
        for directory in self._existing_roots():
            for path in directory.iterdir():
                if not path.is_file():
                    continue
                try:
                    if now - path.stat().st_mtime > max_age_seconds:
                        path.unlink()
                        removed += 1
                        logger.info(f"Cleaned up old file: {path}")
                except OSError as exc:
                    logger.error(f"Error cleaning up {path}: {exc}")
        return removed

    def _existing_roots(self) -> Iterable[Path]:
        return [root for root in self.allowed_roots if root.exists()]
