"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for object storage with a deterministic key
scheme. LocalStorage backs development and tests; production deployments
plug an S3-compatible bucket behind the same interface.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

from pixelqueue.core.exceptions import InvalidStorageKeyError, StorageError


CONTENT_TYPES = {
    "webp": "image/webp",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
}


def build_object_key(
    namespace: str,
    account_id: str,
    job_id: str,
    pipeline_version: int,
    variant: str,
    ext: str
) -> str:
    """
    Deterministic storage key for a pipeline output.

    Format: {namespace}/{account_id}/{job_id}/v{pipeline_version}/{variant}.{ext}

    A retried attempt writes to the same keys, so re-uploads overwrite
    instead of leaving orphans behind.
    """
    return f"{namespace}/{account_id}/{job_id}/v{pipeline_version}/{variant}.{ext}"


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        """
        Store bytes under an exact key, overwriting any previous object.

        Returns:
            The key that was written
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read an object. Raises FileNotFoundError when missing."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a file exists in storage."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise InvalidStorageKeyError(f"Key escapes storage root: {key}", details={"key": key})
        return path

    def _write(self, path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".part")
        with open(tmp_path, "wb") as f:
            f.write(data)
        tmp_path.replace(path)

    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}", details={"key": key})
        return key

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {key}")
        return await asyncio.to_thread(path.read_bytes)

    async def exists(self, key: str) -> bool:
        return self._path(key).exists()
