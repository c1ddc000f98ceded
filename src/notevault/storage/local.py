"""Local filesystem storage engine."""

import asyncio
import hashlib
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

from notevault.exceptions import StorageObjectNotFoundError
from notevault.ingest.conduit import ByteConduit
from notevault.storage.base import (
    DownloadedObject,
    ObjectMetadata,
    StorageEngine,
    StoredObject,
    UploadSession,
)

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536  # 64KB chunks


class LocalStorageEngine(StorageEngine):
    """Local filesystem storage engine for development."""

    def __init__(self, base_path: str | Path = "data/objects"):
        self.base_path = Path(base_path)

    def get_backend_name(self) -> str:
        return "local"

    def _object_path(self, key: str) -> Path:
        return self.base_path / self._sanitize_key(key)

    async def upload_stream(self, key: str, content_type: Optional[str] = None) -> UploadSession:
        """Write the object to the filesystem as the writer is fed."""
        writer = ByteConduit()
        result = asyncio.create_task(self._write_object(key, writer))
        return UploadSession(writer=writer, result=result)

    async def _write_object(self, key: str, source: ByteConduit) -> StoredObject:
        target_path = self._object_path(key)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        partial_path = target_path.with_name(target_path.name + ".partial")

        digest = hashlib.sha1()
        size = 0
        try:
            with open(partial_path, "wb") as f:
                async for chunk in source:
                    f.write(chunk)
                    digest.update(chunk)
                    size += len(chunk)
            partial_path.replace(target_path)
        except (Exception, asyncio.CancelledError) as e:
            partial_path.unlink(missing_ok=True)
            source.destroy(e)
            raise

        return StoredObject(
            key=key,
            size=size,
            hash=digest.hexdigest(),
            upload_timestamp=int(time.time() * 1000),
            file_id=key,
            url=target_path.resolve().as_uri(),
        )

    async def download_stream(self, key: str) -> DownloadedObject:
        path = self._object_path(key)
        if not path.is_file():
            raise StorageObjectNotFoundError(f"File not found: {key}")

        digest = hashlib.sha1()
        with open(path, "rb") as f:
            while chunk := f.read(READ_CHUNK_SIZE):
                digest.update(chunk)

        stat = path.stat()
        metadata = ObjectMetadata(
            size=stat.st_size,
            hash=digest.hexdigest(),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )
        return DownloadedObject(stream=self._read_chunks(path), metadata=metadata)

    @staticmethod
    async def _read_chunks(path: Path) -> AsyncIterator[bytes]:
        with open(path, "rb") as f:
            while chunk := f.read(READ_CHUNK_SIZE):
                yield chunk

    async def delete(self, key: str) -> None:
        path = self._object_path(key)
        if not path.is_file():
            raise StorageObjectNotFoundError(f"File not found: {key}")
        path.unlink()
        logger.info("Deleted stored object", extra={"storage_key": key})

    async def exists(self, key: str) -> bool:
        return self._object_path(key).is_file()

    @staticmethod
    def _sanitize_key(key: str) -> str:
        """Remove path traversal and dangerous characters."""
        safe = key.replace("../", "").replace("..\\", "")
        safe = safe.replace("/", "_").replace("\\", "_")
        safe = re.sub(r"[^a-zA-Z0-9._-]", "_", safe)
        return safe[:255]
