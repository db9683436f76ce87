"""
Signed download tokens, response content types and at-rest file encryption.

A token is ``base64url(payload) + "." + base64url(hmac_sha256(payload))``.
The payload carries the resolved file path, the optional user it was issued
to, and the absolute expiry (unix seconds), so validation compares against
the expiry fixed at issue time.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".txt": "text/plain",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(path: Path) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def derive_key(secret: str, salt: bytes = b"easypdf-download-tokens") -> bytes:
    """Stretch the configured encryption key into 32 bytes of key material; ``salt`` separates uses."""
    return hashlib.scrypt(secret.encode(), salt=salt, n=2**14, r=8, p=1, dklen=32)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class DownloadTokenSigner:
    def __init__(self, secret: str, ttl_seconds: int = 3600) -> None:
        self._key = derive_key(secret)
        self.ttl_seconds = ttl_seconds

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._key, payload, hashlib.sha256).digest()

    def generate(self, file_path: Path, user_id: Optional[str] = None, now: Optional[float] = None) -> str:
        issued = time.time() if now is None else now
        payload = json.dumps(
            {
                "path": str(Path(file_path)),
                "uid": user_id,
                "exp": int(issued + self.ttl_seconds),
                "nonce": secrets.token_hex(8),
            },
            separators=(",", ":"),
            sort_keys=True,
        ).encode()
        return f"{_b64encode(payload)}.{_b64encode(self._sign(payload))}"

    def validate(
        self,
        token: str,
        file_path: Path,
        user_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> bool:
        """
        Check signature, path binding, user binding and expiry.

        A token issued to a user only validates for that user; a token issued
        anonymously validates for anyone holding it.
        """
        try:
            encoded_payload, encoded_signature = token.split(".", 1)
            payload = _b64decode(encoded_payload)
            signature = _b64decode(encoded_signature)
        except (ValueError, binascii.Error):
            return False

        if not hmac.compare_digest(signature, self._sign(payload)):
            return False

        try:
            claims = json.loads(payload)
            expires = int(claims["exp"])
            token_path = claims["path"]
        except (ValueError, KeyError, TypeError):
            return False

        if token_path != str(Path(file_path)):
            return False
        if claims.get("uid") is not None and claims["uid"] != user_id:
            return False

        current = time.time() if now is None else now
        return current <= expires


ENCRYPTED_MAGIC = b"EPDFENC1"
NONCE_BYTES = 12


class FileCipher:
    """
    AES-256-GCM for files at rest.

    Layout on disk is ``magic || nonce || ciphertext+tag``; the magic marker
    is also bound as associated data, so files written before encryption was
    enabled are recognised as plaintext and read unchanged.
    """

    def __init__(self, secret: str) -> None:
        self._aead = AESGCM(derive_key(secret, salt=b"easypdf-upload-encryption"))

    @staticmethod
    def is_encrypted(blob: bytes) -> bool:
        return blob.startswith(ENCRYPTED_MAGIC)

    def encrypt(self, data: bytes) -> bytes:
        nonce = secrets.token_bytes(NONCE_BYTES)
        return ENCRYPTED_MAGIC + nonce + self._aead.encrypt(nonce, data, ENCRYPTED_MAGIC)

    def decrypt(self, blob: bytes) -> bytes:
        if not self.is_encrypted(blob):
            raise ValueError("Data is not an encrypted file")
        start = len(ENCRYPTED_MAGIC)
        nonce = blob[start:start + NONCE_BYTES]
        try:
            return self._aead.decrypt(nonce, blob[start + NONCE_BYTES:], ENCRYPTED_MAGIC)
        except InvalidTag as exc:
            raise ValueError("Encrypted file failed authentication") from exc
