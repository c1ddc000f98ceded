"""File storage service: storage engine plus metadata records."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterable, AsyncIterator, Callable, Optional
from uuid import uuid4

from notevault.exceptions import (
    FileRecordNotFoundError,
    NoteVaultError,
    StorageError,
    StorageObjectNotFoundError,
)
from notevault.ingest.conduit import ByteConduit, close_source, pipe, settle
from notevault.storage.base import StorageEngine
from notevault.storage.factory import get_storage_engine
from notevault.storage.file_store import FileRecord, FileRepository, file_repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredFile:
    """Public view of a stored file."""

    id: str
    key: str
    mimetype: str
    size: int
    hash: str
    user_id: str

    @classmethod
    def from_record(cls, record: FileRecord) -> "StoredFile":
        return cls(
            id=record.id,
            key=record.key,
            mimetype=record.mimetype,
            size=record.size,
            hash=record.hash,
            user_id=record.user_id,
        )


@dataclass(frozen=True)
class FileMetadata:
    hash: str
    last_modified: datetime
    size: int
    mimetype: str
    user_id: str


@dataclass
class DownloadedFile:
    stream: AsyncIterator[bytes]
    metadata: FileMetadata


def generate_storage_key() -> str:
    """Unique storage key: a UUID plus the current time in milliseconds."""
    return f"{uuid4()}-{int(time.time() * 1000)}"


class FileStorageService:
    """Upload, download, delete and existence checks for stored files.

    Callers address files by the generated record id; the storage key stays
    internal to this service.
    """

    def __init__(
        self,
        storage_engine: StorageEngine,
        repository: FileRepository,
        key_generator: Callable[[], str] = generate_storage_key,
    ):
        self._storage_engine = storage_engine
        self._repository = repository
        self._key_generator = key_generator

    async def upload(
        self, stream: AsyncIterable[bytes], *, mimetype: str, user_id: str
    ) -> StoredFile:
        """Store a byte stream and record its metadata.

        Args:
            stream: Content to store, already validated
            mimetype: Detected MIME type of the content
            user_id: Owner of the file

        Returns:
            StoredFile describing the new record

        Raises:
            StorageError: If the content could not be stored; no record is created
        """
        key = self._key_generator()
        session = None
        try:
            session = await self._storage_engine.upload_stream(key, content_type=mimetype)
            await pipe(stream, session.writer)
            stored = await session.result
        except Exception as e:
            error = e if isinstance(e, NoteVaultError) else StorageError(f"Upload file process failed: {e}")
            if session is not None:
                session.writer.destroy(error)
                await settle(session.result)
            if isinstance(stream, ByteConduit):
                stream.destroy(error)
            else:
                await close_source(stream)
            logger.error(
                "Upload failed",
                extra={"storage_key": key, "user_id": user_id, "error": str(e)},
            )
            if error is e:
                raise
            raise error from e

        try:
            record = self._repository.create_file(
                key=stored.key,
                mimetype=mimetype,
                size=stored.size,
                hash=stored.hash,
                user_id=user_id,
            )
        except Exception as e:
            logger.error(
                "Failed to record uploaded file, removing stored object",
                extra={"storage_key": key, "error": str(e)},
            )
            await self._delete_object_quietly(key)
            raise StorageError(f"Upload file process failed: {e}") from e

        logger.info(
            "Upload completed",
            extra={
                "file_id": record.id,
                "storage_key": key,
                "user_id": user_id,
                "mimetype": mimetype,
                "size_bytes": record.size,
            },
        )
        return StoredFile.from_record(record)

    async def download(self, file_id: str) -> DownloadedFile:
        """Open a stored file for streaming.

        Raises:
            FileRecordNotFoundError: If no record has this id
            StorageError: If the object cannot be read
        """
        record = self._repository.find_by_id(file_id)
        if record is None:
            raise FileRecordNotFoundError(f"File {file_id} not found")

        try:
            downloaded = await self._storage_engine.download_stream(record.key)
        except NoteVaultError:
            raise
        except Exception as e:
            raise StorageError(f"Download file failed: {e}") from e

        return DownloadedFile(
            stream=downloaded.stream,
            metadata=FileMetadata(
                hash=record.hash,
                last_modified=record.created_at,
                size=record.size,
                mimetype=record.mimetype,
                user_id=record.user_id,
            ),
        )

    async def delete(self, file_id: str, user_id: str, silent: bool = True) -> Optional[StoredFile]:
        """Delete a file owned by ``user_id``: object first, then record.

        In silent mode a missing file or a failed delete returns None
        instead of raising.

        Raises:
            FileRecordNotFoundError: If not silent and the user has no such file
            StorageError: If not silent and the object could not be deleted
        """
        record = self._repository.find_by_id(file_id)
        if record is None or record.user_id != user_id:
            if silent:
                return None
            raise FileRecordNotFoundError(f"File {file_id} not found")

        try:
            await self._storage_engine.delete(record.key)
        except StorageObjectNotFoundError:
            logger.warning(
                "Stored object already missing, removing record",
                extra={"file_id": file_id, "storage_key": record.key},
            )
        except Exception as e:
            logger.error(
                "Delete file failed",
                extra={"file_id": file_id, "storage_key": record.key, "error": str(e)},
            )
            if silent:
                return None
            if isinstance(e, NoteVaultError):
                raise
            raise StorageError(f"Delete file failed: {e}") from e

        self._repository.delete_by_id_and_owner(file_id, user_id)
        logger.info("File deleted", extra={"file_id": file_id, "user_id": user_id})
        return StoredFile.from_record(record)

    async def exists(self, file_id: str) -> bool:
        """Return True if the file has a record and its object is stored."""
        record = self._repository.find_by_id(file_id)
        if record is None:
            return False

        try:
            return await self._storage_engine.exists(record.key)
        except Exception as e:
            raise StorageError(f"Checking file existence failed: {e}") from e

    async def _delete_object_quietly(self, key: str) -> None:
        try:
            await self._storage_engine.delete(key)
        except Exception as e:
            logger.error(
                "Failed to remove orphaned object",
                extra={"storage_key": key, "error": str(e)},
                exc_info=True,
            )


def get_file_storage_service() -> FileStorageService:
    """FastAPI dependency returning the file storage service."""
    return FileStorageService(get_storage_engine(), file_repository)
