"""Private storage for bank batch files (local disk or S3-compatible)."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol

from billing_engine.config import settings

logger = logging.getLogger(__name__)


class ObjectStorageError(Exception):
    """Generic object storage failure."""


class ObjectNotFoundError(ObjectStorageError):
    """Raised when object is missing."""


class StorageService(Protocol):
    """Storage provider interface."""

    def upload(self, key: str, data: bytes, content_type: str | None) -> None: ...
    def download(self, key: str) -> bytes: ...
    def exists(self, key: str) -> bool: ...


class LocalStorageService:
    """Filesystem-backed provider for single-host deployments and tests."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ObjectStorageError(f"Invalid storage key: {key}")
        return path

    def upload(self, key: str, data: bytes, content_type: str | None) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise ObjectStorageError("Failed to upload object") from exc

    def download(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise ObjectNotFoundError(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ObjectStorageError("Failed to download object") from exc

    def exists(self, key: str) -> bool:
        return self._path(key).exists()


class S3StorageService:
    """S3/MinIO/R2-backed storage provider."""

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: str,
        access_key: str | None,
        secret_key: str | None,
        region: str,
        client: Any | None = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        if client is not None:
            self.client = client
            return
        import boto3

        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            err = response.get("Error", {})
            if isinstance(err, dict):
                return str(err.get("Code", ""))
        return ""

    def upload(self, key: str, data: bytes, content_type: str | None) -> None:
        kwargs: dict = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": data,
        }
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except Exception as exc:
            raise ObjectStorageError("Failed to upload object") from exc

    def download(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            code = self._error_code(exc)
            if code in {"404", "NoSuchKey"}:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError("Failed to download object") from exc
        return obj["Body"].read()

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except Exception as exc:
            code = self._error_code(exc)
            if code in {"404", "NoSuchKey"}:
                return False
            raise ObjectStorageError("Failed to check object") from exc


@lru_cache(maxsize=1)
def get_storage() -> StorageService:
    if settings.storage_backend == "s3":
        settings.validate_s3_config()
        return S3StorageService(
            bucket_name=settings.s3_bucket_name,
            endpoint_url=settings.s3_endpoint_url,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
        )
    logger.info("Using local batch file storage at %s", settings.storage_dir)
    return LocalStorageService(settings.storage_dir)
