"""
Storage Abstraction Layer - The Bridge Pattern

The pipeline only talks to IStorage: read the original upload, write each
generated version. LocalStorage is the filesystem implementation.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from imagepipe.core.exceptions import StorageError, StorageObjectNotFoundError
from imagepipe.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoredObject:
    """Result of a storage write."""
    path: str
    url: str


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def read(self, path: str) -> bytes:
        """
        Read an object.

        Raises:
            StorageObjectNotFoundError: the object does not exist
            StorageError: any other I/O failure (recoverable)
        """
        pass

    @abstractmethod
    async def write(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream"
    ) -> StoredObject:
        """Write an object at `path`, replacing any previous content."""
        pass

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete an object. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    def get_url(self, path: str) -> str:
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation."""

    def __init__(self, base_path: str = "./data/storage", public_base_url: str = "/static/storage"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        """Map a storage key to a file under base_path, rejecting traversal."""
        file_path = (self.base_path / path).resolve()
        if file_path != self.base_path and self.base_path not in file_path.parents:
            raise StorageError(
                f"Storage path escapes base directory: {path}",
                recoverable=False,
                details={"path": path}
            )
        return file_path

    async def read(self, path: str) -> bytes:
        file_path = self._resolve(path)
        try:
            return await asyncio.to_thread(file_path.read_bytes)
        except FileNotFoundError:
            raise StorageObjectNotFoundError(
                f"Object not found: {path}",
                details={"path": path}
            )
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}", details={"path": path}) from e

    async def write(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream"
    ) -> StoredObject:
        file_path = self._resolve(path)

        def _write():
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}", details={"path": path}) from e

        logger.debug("storage_write", path=path, size=len(data), content_type=content_type)
        return StoredObject(path=path, url=self.get_url(path))

    async def delete(self, path: str) -> bool:
        file_path = self._resolve(path)
        try:
            await asyncio.to_thread(file_path.unlink)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}", details={"path": path}) from e

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).exists)

    def get_url(self, path: str) -> str:
        """For local storage, return a path served by the static mount."""
        return f"{self.public_base_url}/{path}"
