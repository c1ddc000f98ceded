"""Abstract storage engine interface."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional

from notevault.ingest.conduit import ByteConduit


@dataclass(frozen=True)
class StoredObject:
    """Durable result of a completed upload."""

    key: str
    size: int
    hash: str
    upload_timestamp: int  # milliseconds since epoch
    file_id: str
    url: str


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata read back with a download, before the body is consumed."""

    size: int
    hash: str
    last_modified: datetime
    content_type: Optional[str] = None


@dataclass
class DownloadedObject:
    """Live byte stream of a stored object plus its metadata."""

    stream: AsyncIterator[bytes]
    metadata: ObjectMetadata


@dataclass
class UploadSession:
    """Writable end of an upload and the task that completes it.

    The producer writes into ``writer`` and ends it; ``result`` resolves
    with the StoredObject once the backend has the whole object.
    """

    writer: ByteConduit
    result: "asyncio.Task[StoredObject]"


class StorageEngine(ABC):
    """Abstract base class for storage engines."""

    @abstractmethod
    async def upload_stream(self, key: str, content_type: Optional[str] = None) -> UploadSession:
        """Open an upload for a new object.

        Args:
            key: Unique storage key for the object
            content_type: MIME type to record with the object

        Returns:
            UploadSession whose writer accepts the object's bytes
        """
        pass

    @abstractmethod
    async def download_stream(self, key: str) -> DownloadedObject:
        """Open a stored object for reading.

        Raises:
            StorageObjectNotFoundError: If no object has this key
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a stored object.

        Raises:
            StorageObjectNotFoundError: If no object has this key
        """
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if an object with this key is stored."""
        pass

    @abstractmethod
    def get_backend_name(self) -> str:
        """Return backend identifier."""
        pass
