"""
Blob persistence substrate.

Stores named blobs as files under a root directory. Writes go to a
temporary file in the same directory, are fsynced, and then atomically
renamed over the target, so a crash leaves either the old or the new blob.
"""

import asyncio
import os
import tempfile
from pathlib import Path

import structlog

from memory_engine.core.errors import PersistenceError

logger = structlog.get_logger(__name__)


class BlobStore:
    """Atomic read/write/replace of named blobs on the local filesystem."""

    def __init__(self, root: str | Path) -> None:
        """
        Initialize the blob store.

        Args:
            root: Directory holding the blobs (created on first write)
        """
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise PersistenceError(f"invalid blob name: {name!r}")
        return self.root / name

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def read(self, name: str) -> bytes | None:
        """
        Read a blob.

        Returns:
            Blob content, or None if the blob does not exist

        Raises:
            PersistenceError: If the file exists but cannot be read
        """
        path = self._path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("blob_read_failed", blob=name, error=str(e))
            raise PersistenceError(f"failed to read {name}: {e}") from e

    def write(self, name: str, data: bytes) -> None:
        """
        Atomically replace a blob.

        Raises:
            PersistenceError: If the write or rename fails
        """
        path = self._path(name)
        tmp_name: str | None = None
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=self.root)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            logger.error("blob_write_failed", blob=name, error=str(e))
            raise PersistenceError(f"failed to write {name}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning("blob_temp_cleanup_failed", path=tmp_name)

    def delete(self, name: str) -> None:
        """Remove a blob if present."""
        try:
            self._path(name).unlink(missing_ok=True)
        except OSError as e:
            logger.error("blob_delete_failed", blob=name, error=str(e))
            raise PersistenceError(f"failed to delete {name}: {e}") from e

    async def read_async(self, name: str) -> bytes | None:
        return await asyncio.to_thread(self.read, name)

    async def write_async(self, name: str, data: bytes) -> None:
        await asyncio.to_thread(self.write, name, data)

    async def delete_async(self, name: str) -> None:
        await asyncio.to_thread(self.delete, name)
