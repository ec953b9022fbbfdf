"""Blob storage abstraction.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **filesystem** (default): Stores blobs under ``settings.STORAGE_DIRECTORY`` on disk.
2. **minio**: Uses the MinIO S3-compatible object storage.

Blobs are addressed by an opaque, URL-safe name chosen by the ingestion
pipeline.  The store knows nothing about invoices.  Writes never
overwrite: writing an existing name raises ``BlobCollisionError``.
Deleting a missing name raises ``BlobNotFoundError`` so callers can
tell "already gone" apart from a real failure.

Backend calls are blocking, so the async methods run them in a worker
thread to keep the event loop free while a batch is being ingested.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from io import BytesIO
from pathlib import Path

from minio import Minio
from minio.error import S3Error

from invoicebox.core.config import Settings
from invoicebox.core.errors import BlobCollisionError, BlobNotFoundError, StorageError

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


def check_blob_name(name: str) -> str:
    """Return ``name`` if it is a single safe path segment, else raise ``StorageError``."""
    if not name or not _SAFE_NAME.match(name) or ".." in name:
        raise StorageError(name or "<empty>", "invalid blob name")
    return name


class BlobStore(ABC):
    """Durable storage for attachment bytes."""

    backend: str = "abstract"

    async def write(self, name: str, data: bytes) -> None:
        check_blob_name(name)
        await asyncio.to_thread(self._write, name, data)

    async def read(self, name: str) -> bytes:
        check_blob_name(name)
        return await asyncio.to_thread(self._read, name)

    async def delete(self, name: str) -> None:
        check_blob_name(name)
        await asyncio.to_thread(self._delete, name)

    async def exists(self, name: str) -> bool:
        check_blob_name(name)
        return await asyncio.to_thread(self._exists, name)

    @abstractmethod
    def _write(self, name: str, data: bytes) -> None: ...

    @abstractmethod
    def _read(self, name: str) -> bytes: ...

    @abstractmethod
    def _delete(self, name: str) -> None: ...

    @abstractmethod
    def _exists(self, name: str) -> bool: ...


class FilesystemBlobStore(BlobStore):
    """Blob store rooted at a local directory."""

    backend = "filesystem"

    def __init__(self, base_dir: str | Path) -> None:
        base_path = Path(base_dir)
        if not base_path.is_absolute():
            base_path = base_path.resolve()
        self.base_dir = base_path
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info("[storage] Filesystem base_dir: %s", self.base_dir)

    def get_full_path(self, name: str) -> Path:
        """Resolve a stored blob's full path."""
        return self.base_dir / check_blob_name(name)

    def _write(self, name: str, data: bytes) -> None:
        path = self.get_full_path(name)
        try:
            # "x" mode fails instead of truncating an existing file
            with open(path, "xb") as fh:
                fh.write(data)
        except FileExistsError as e:
            raise BlobCollisionError(name) from e
        except OSError as e:
            # Do not leave a truncated blob behind
            path.unlink(missing_ok=True)
            raise StorageError(name, str(e)) from e
        logger.info("[storage] FS saved: %s bytes=%d", path, len(data))

    def _read(self, name: str) -> bytes:
        path = self.get_full_path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise BlobNotFoundError(name) from e
        except OSError as e:
            raise StorageError(name, str(e)) from e

    def _delete(self, name: str) -> None:
        path = self.get_full_path(name)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise BlobNotFoundError(name) from e
        except OSError as e:
            raise StorageError(name, str(e)) from e
        logger.info("[storage] FS deleted: %s", path)

    def _exists(self, name: str) -> bool:
        return self.get_full_path(name).is_file()


class MinioBlobStore(BlobStore):
    """Blob store backed by a MinIO / S3 bucket."""

    backend = "minio"

    def __init__(self, client: Minio, bucket: str) -> None:
        self._client = client
        self.bucket = bucket
        # Ensure bucket exists (idempotent)
        try:
            if not self._client.bucket_exists(self.bucket):
                self._client.make_bucket(self.bucket)
        except S3Error as e:  # pragma: no cover - startup path
            raise StorageError(self.bucket, f"bucket ensure failed: {e}") from e

    @classmethod
    def from_settings(cls, config: Settings) -> "MinioBlobStore":
        client = Minio(
            config.MINIO_ENDPOINT,
            access_key=config.MINIO_ACCESS_KEY,
            secret_key=config.MINIO_SECRET_KEY,
            secure=bool(config.MINIO_USE_SSL),
        )
        return cls(client, config.MINIO_BUCKET_NAME)

    def _write(self, name: str, data: bytes) -> None:
        # stat + put is not atomic; uniqueness comes from the naming scheme
        if self._exists(name):
            raise BlobCollisionError(name)
        try:
            self._client.put_object(self.bucket, name, BytesIO(data), len(data))
        except S3Error as e:
            raise StorageError(name, f"MinIO upload failed: {e}") from e
        logger.info("[storage] MinIO object put: %s size=%d", name, len(data))

    def _read(self, name: str) -> bytes:
        try:
            resp = self._client.get_object(self.bucket, name)
        except S3Error as e:
            if e.code == "NoSuchKey":
                raise BlobNotFoundError(name) from e
            raise StorageError(name, f"MinIO download failed: {e}") from e
        try:
            return resp.read()
        finally:
            resp.close()
            resp.release_conn()

    def _delete(self, name: str) -> None:
        # remove_object succeeds on missing keys, so check first
        if not self._exists(name):
            raise BlobNotFoundError(name)
        try:
            self._client.remove_object(self.bucket, name)
        except S3Error as e:
            raise StorageError(name, f"MinIO delete failed: {e}") from e
        logger.info("[storage] MinIO object removed: %s", name)

    def _exists(self, name: str) -> bool:
        try:
            self._client.stat_object(self.bucket, name)
            return True
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                return False
            raise StorageError(name, f"MinIO stat failed: {e}") from e


def create_blob_store(config: Settings) -> BlobStore:
    """Build the blob store selected by ``config.STORAGE_BACKEND``."""
    backend = (config.STORAGE_BACKEND or "filesystem").lower()
    if backend == "minio":
        return MinioBlobStore.from_settings(config)
    if backend != "filesystem":
        raise ValueError(f"Unknown STORAGE_BACKEND: {config.STORAGE_BACKEND}")
    return FilesystemBlobStore(config.STORAGE_DIRECTORY)
