"""Storage service for statement uploads and error report artifacts."""

from __future__ import annotations

import gzip
import threading
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ledger_ingest.config import settings
from ledger_ingest.exceptions import StorageError
from ledger_ingest.logger import get_logger
from ledger_ingest.services.hashing import decompress_if_needed

logger = get_logger(__name__)

COMPRESSED_SUFFIX = ".gz"
_MISSING_CODES = ("404", "NoSuchKey", "NotFound", "NoSuchBucket")


class Storage(Protocol):
    """Blob storage collaborator used by the import engine."""

    def store(self, content: bytes, key: str, *, content_type: str | None = None) -> str: ...

    def read(self, path: str) -> bytes: ...

    def delete(self, path: str) -> None: ...

    def exists(self, path: str) -> bool: ...


def is_compressed_path(path: str) -> bool:
    return path.endswith(COMPRESSED_SUFFIX)


def encode_for_path(content: bytes, path: str) -> bytes:
    """Gzip content when the target path indicates compression."""
    if is_compressed_path(path):
        return gzip.compress(content)
    return content


def decode_for_path(content: bytes, path: str) -> bytes:
    """Reverse encode_for_path; tolerant of objects stored uncompressed under a .gz key."""
    if is_compressed_path(path):
        return decompress_if_needed(content)
    return content


class StorageService:
    """Simple S3/MinIO storage wrapper with transparent gzip."""

    _checked_buckets: set[str] = set()
    _bucket_lock = threading.Lock()

    def __init__(self, bucket: str | None = None) -> None:
        self.bucket = bucket or settings.s3_bucket
        self.client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def _ensure_bucket(self) -> None:
        with self._bucket_lock:
            if self.bucket in self._checked_buckets:
                return
            try:
                self.client.head_bucket(Bucket=self.bucket)
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code")
                if code in ("404", "NoSuchBucket", "NotFound"):
                    try:
                        if settings.s3_region and settings.s3_region != "us-east-1":
                            self.client.create_bucket(
                                Bucket=self.bucket,
                                CreateBucketConfiguration={
                                    "LocationConstraint": settings.s3_region
                                },
                            )
                        else:
                            self.client.create_bucket(Bucket=self.bucket)
                    except (BotoCoreError, ClientError) as create_exc:
                        raise StorageError(f"Failed to create bucket {self.bucket}") from create_exc
                else:
                    raise StorageError(f"Failed to access bucket {self.bucket}") from exc
            except BotoCoreError as exc:
                raise StorageError(f"Failed to access bucket {self.bucket}") from exc
            self._checked_buckets.add(self.bucket)

    def store(self, content: bytes, key: str, *, content_type: str | None = None) -> str:
        """Upload bytes, gzip-compressing when the key ends with .gz. Returns the key."""
        extra_args: dict[str, Any] = {}
        if content_type:
            extra_args["ContentType"] = content_type
        if is_compressed_path(key):
            extra_args["ContentEncoding"] = "gzip"
        body = encode_for_path(content, key)
        self._ensure_bucket()
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                **extra_args,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to upload to S3", bucket=self.bucket, key=key, error=str(exc))
            raise StorageError(f"Failed to upload {key} to {self.bucket}") from exc
        return key

    def read(self, path: str) -> bytes:
        """Download an object, transparently decompressing .gz keys."""
        self._ensure_bucket()
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=path)
            body = response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to read from S3", bucket=self.bucket, key=path, error=str(exc))
            raise StorageError(f"Failed to read {path} from {self.bucket}") from exc
        try:
            return decode_for_path(body, path)
        except (OSError, EOFError) as exc:
            raise StorageError(f"Corrupt compressed object {path}") from exc

    def delete(self, path: str) -> None:
        """Delete an object from storage."""
        self._ensure_bucket()
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to delete from S3", bucket=self.bucket, key=path, error=str(exc))
            raise StorageError(f"Failed to delete {path} from {self.bucket}") from exc

    def exists(self, path: str) -> bool:
        self._ensure_bucket()
        try:
            self.client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in _MISSING_CODES:
                return False
            raise StorageError(f"Failed to check {path} in {self.bucket}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to check {path} in {self.bucket}") from exc
        return True
