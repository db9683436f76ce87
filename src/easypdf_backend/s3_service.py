"""
S3 export of processed files.

``S3Exporter`` uploads a file that already passed the download gateway's
path check to ``exports/{user_id}/{file_name}`` and hands back a presigned
URL for time-limited retrieval. The bucket comes from configuration
(``cloud.s3_bucket`` / ``S3_BUCKET_NAME``); when it is empty the exporter
reports itself as not configured and the route answers 503.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ServiceUnavailable, StorageFailure

logger = logging.getLogger(__name__)


@dataclass
class ExportedObject:
    key: str
    url: str
    expires_in: int


class S3Exporter:
    """
    Attributes:
        bucket: Target bucket name; empty disables the exporter
        expiration: Lifetime of generated presigned URLs, in seconds
    """

    def __init__(self, bucket: str, expiration: int = 3600, client: Any = None) -> None:
        self.bucket = bucket or ""
        self.expiration = expiration
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.bucket)

    def _get_client(self):
        """
        Get or create the S3 client.

        Credentials are not probed here; errors surface on the first upload.
        """
        if self._client is None:
            try:
                self._client = boto3.client("s3")
            except (BotoCoreError, ValueError) as exc:
                logger.warning(f"Failed to create S3 client: {exc}")
                raise ServiceUnavailable("Cloud storage is not available") from exc
        return self._client

    @staticmethod
    def object_key(file_path: Path, user_id: Optional[str], name: Optional[str] = None) -> str:
        return f"exports/{user_id or 'anonymous'}/{name or Path(file_path).name}"

    def export(self, file_path: Path, user_id: Optional[str] = None, name: Optional[str] = None) -> ExportedObject:
        """
        Upload ``file_path`` and return its key with a presigned download URL.

        ``name`` overrides the object name, for uploads of a decrypted scratch copy.

        Raises:
            ServiceUnavailable: No bucket configured or client unavailable
            StorageFailure: The upload or URL generation was rejected by S3
        """
        if not self.configured:
            raise ServiceUnavailable("Cloud export is not configured")

        client = self._get_client()
        key = self.object_key(file_path, user_id, name)
        try:
            logger.info(f"Uploading {file_path} to s3://{self.bucket}/{key}")
            client.upload_file(str(file_path), self.bucket, key)
            url = client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.expiration,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 export failed: {exc}")
            raise StorageFailure(f"Cloud export failed: {exc}") from exc

        logger.info(f"Generated presigned URL for {key} (expires in {self.expiration}s)")
        return ExportedObject(key=key, url=url, expires_in=self.expiration)
