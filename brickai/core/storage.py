"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for asset storage with LocalStorage (development
and tests) and S3Storage (production). Keys are chosen by the caller via
``make_asset_key`` so both backends lay assets out identically, and
``public_url`` is a pure function of the key.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3

from brickai.core.config import Settings
from brickai.core.exceptions import ConfigurationError

ORIGINALS_FOLDER = "images"
PROCESSED_FOLDER = "processed"

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}


def extension_for_content_type(content_type: Optional[str]) -> str:
    """Map an image MIME type to a file extension, defaulting to jpg."""
    if not content_type:
        return "jpg"
    mime = content_type.split(";")[0].strip().lower()
    if mime in _EXTENSIONS:
        return _EXTENSIONS[mime]
    subtype = mime.split("/")[1] if "/" in mime else ""
    return subtype.split("+")[0] if subtype else "jpg"


def make_asset_key(subject: str, content_type: Optional[str], folder: str = ORIGINALS_FOLDER) -> str:
    """Fresh unique key scoped by subject, e.g. ``images/<subject>/<uuid>.png``."""
    return f"{folder}/{subject}/{uuid.uuid4()}.{extension_for_content_type(content_type)}"


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def put(self, data: bytes, key: str, content_type: str) -> str:
        """
        Store bytes under ``key`` and return the key.

        Args:
            data: Raw bytes of the asset
            key: Object key from make_asset_key()
            content_type: MIME type of the asset
        """

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Fully-qualified URL the asset can be fetched from after put()."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if an asset exists in storage."""

    def ensure_configured(self):
        """Raise ConfigurationError if the backend cannot be used."""


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage", base_url: str = "http://localhost:8000"):
        self.base_path = Path(base_path)
        self.base_url = base_url.rstrip("/")

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        file_path = self.base_path / key
        file_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(file_path.write_bytes, data)
        return key

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/static/storage/{key}"

    async def exists(self, key: str) -> bool:
        return (self.base_path / key).exists()


class S3Storage(IStorage):
    """Amazon S3 implementation for production.

    boto3 is synchronous, so calls run in a worker thread.
    """

    def __init__(
        self,
        bucket: Optional[str],
        region: Optional[str],
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None
    ):
        self.bucket = bucket
        self.region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._client = None

    def ensure_configured(self):
        if not self.bucket:
            raise ConfigurationError(
                "Internal configuration error: missing required setting AWS_S3_BUCKET_NAME",
                setting="AWS_S3_BUCKET_NAME"
            )
        if not self.region:
            raise ConfigurationError(
                "Internal configuration error: missing required setting AWS_REGION",
                setting="AWS_REGION"
            )

    def _get_client(self):
        if self._client is None:
            self.ensure_configured()
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=self._access_key_id,
                aws_secret_access_key=self._secret_access_key
            )
        return self._client

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        client = self._get_client()
        await asyncio.to_thread(
            client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type
        )
        return key

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def exists(self, key: str) -> bool:
        client = self._get_client()
        try:
            await asyncio.to_thread(client.head_object, Bucket=self.bucket, Key=key)
            return True
        except client.exceptions.ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise


class StorageFactory:
    """Factory for creating the storage backend selected by STORAGE_BACKEND."""

    @staticmethod
    def create(settings: Settings) -> IStorage:
        backend = settings.STORAGE_BACKEND.lower()
        if backend == "s3":
            return S3Storage(
                bucket=settings.AWS_S3_BUCKET_NAME,
                region=settings.AWS_REGION,
                access_key_id=settings.AWS_ACCESS_KEY_ID,
                secret_access_key=settings.AWS_SECRET_ACCESS_KEY
            )
        if backend == "local":
            return LocalStorage(
                base_path=settings.LOCAL_STORAGE_PATH,
                base_url=settings.PUBLIC_BASE_URL
            )
        raise ConfigurationError(
            f"Internal configuration error: unknown STORAGE_BACKEND {settings.STORAGE_BACKEND!r}",
            setting="STORAGE_BACKEND"
        )
