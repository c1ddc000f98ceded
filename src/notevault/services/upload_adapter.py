"""Bridge between multi-file upload requests and the file storage service."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import PurePath
from typing import AsyncIterable, AsyncIterator, Iterable, List, Optional

from notevault.core.config import settings
from notevault.exceptions import FileTooLargeError
from notevault.ingest.conduit import ByteConduit, close_source, settle
from notevault.ingest.detection import DetectedType, detect_file_type
from notevault.ingest.relay import DEFAULT_MAX_BUFFER_SIZE, Detector, ValidationRelay
from notevault.services.file_storage import FileStorageService, StoredFile, get_file_storage_service

logger = logging.getLogger(__name__)


@dataclass
class IncomingFile:
    """One file part of a multipart request."""

    field_name: str
    filename: str
    stream: AsyncIterable[bytes]
    declared_content_type: Optional[str] = None


@dataclass(frozen=True)
class UploadedFile:
    """A file that was validated and stored."""

    field_name: str
    original_name: str
    name: str
    file_id: str
    key: str
    mimetype: str
    extension: str
    size: int
    user_id: str


class StorageServiceAdapter:
    """Pipes request file streams through type validation into storage."""

    def __init__(
        self,
        storage_service: FileStorageService,
        allowed_mime_types: Optional[Iterable[str]] = None,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        max_file_size: Optional[int] = None,
        detector: Detector = detect_file_type,
    ):
        """
        Args:
            storage_service: Service that stores bytes and records metadata
            allowed_mime_types: Allowed detected MIME types; None allows all
            max_buffer_size: Bytes buffered for type detection
            max_file_size: Per-file size limit in bytes; None disables it
            detector: Signature detector handed to each validation relay
        """
        self._storage_service = storage_service
        self._allowed_mime_types = list(allowed_mime_types) if allowed_mime_types is not None else None
        self._max_buffer_size = max_buffer_size
        self._max_file_size = max_file_size
        self._detector = detector

    async def handle_file(self, incoming: IncomingFile, user_id: str) -> UploadedFile:
        """Validate and store one file.

        Raises:
            FileValidationError: If the content type is disallowed or undetectable
            FileTooLargeError: If the file exceeds the size limit
            StorageError: If storing the file failed
        """
        relay = ValidationRelay(self._allowed_mime_types, self._max_buffer_size, self._detector)
        conduit = ByteConduit()
        storage_task: Optional[asyncio.Task] = None
        detected: Optional[DetectedType] = None

        def start_storage(file_type: DetectedType) -> None:
            nonlocal storage_task, detected
            detected = file_type
            storage_task = asyncio.create_task(
                self._storage_service.upload(conduit, mimetype=file_type.mime, user_id=user_id)
            )

        relay.on_validated(start_storage)

        try:
            async with contextlib.aclosing(relay.pipe(self._limit_size(incoming.stream))) as chunks:
                async for chunk in chunks:
                    await conduit.write(chunk)
            conduit.end()
            stored: StoredFile = await storage_task
        except Exception as e:
            conduit.destroy(e)
            await close_source(incoming.stream)
            await settle(storage_task)
            logger.warning(
                "File upload rejected",
                extra={
                    "upload_filename": incoming.filename,
                    "user_id": user_id,
                    "error": str(e),
                },
            )
            raise

        original = PurePath(incoming.filename or "unnamed")
        return UploadedFile(
            field_name=incoming.field_name,
            original_name=original.name,
            name=original.stem,
            file_id=stored.id,
            key=stored.key,
            mimetype=detected.mime,
            extension=detected.extension,
            size=stored.size,
            user_id=user_id,
        )

    async def remove_file(self, uploaded: UploadedFile, user_id: str) -> None:
        """Best-effort removal of a stored file; never raises."""
        try:
            await self._storage_service.delete(uploaded.file_id, user_id, silent=True)
        except Exception as e:
            logger.error(
                "Failed to remove uploaded file",
                extra={"file_id": uploaded.file_id, "user_id": user_id, "error": str(e)},
                exc_info=True,
            )

    async def handle_files(self, files: Iterable[IncomingFile], user_id: str) -> List[UploadedFile]:
        """Store every file or none of them.

        Files are processed in request order. If one fails, all files
        stored so far are removed and the error is raised.
        """
        uploaded: List[UploadedFile] = []
        for incoming in files:
            try:
                uploaded.append(await self.handle_file(incoming, user_id))
            except Exception:
                for done in uploaded:
                    await self.remove_file(done, user_id)
                raise
        return uploaded

    async def _limit_size(self, stream: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        total = 0
        async for chunk in stream:
            total += len(chunk)
            if self._max_file_size is not None and total > self._max_file_size:
                raise FileTooLargeError(
                    f"File exceeds maximum allowed size of {self._max_file_size} bytes"
                )
            yield chunk


def get_upload_adapter() -> StorageServiceAdapter:
    """FastAPI dependency returning an adapter configured from settings."""
    return StorageServiceAdapter(
        get_file_storage_service(),
        allowed_mime_types=settings.allowed_mime_types,
        max_buffer_size=settings.UPLOAD_SNIFF_BUFFER_BYTES,
        max_file_size=settings.max_upload_bytes,
    )
