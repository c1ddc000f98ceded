"""Backblaze B2 storage engine with chunked large-file uploads."""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from notevault.core.logging import storage_key_context
from notevault.exceptions import (
    LargeFileProtocolError,
    NoteVaultError,
    StorageAuthorizationError,
    StorageBackendError,
    StorageObjectNotFoundError,
    UploadCancelledError,
    UploadPartError,
)
from notevault.ingest.conduit import ByteConduit
from notevault.storage.b2_client import AUTO_CONTENT_TYPE, B2AuthError, B2Client, B2NotFoundError
from notevault.storage.base import (
    DownloadedObject,
    ObjectMetadata,
    StorageEngine,
    StoredObject,
    UploadSession,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 10 * 1024 * 1024  # 10 MiB per part
MIN_LARGE_FILE_PARTS = 2
MAX_PART_ATTEMPTS = 3

B2_HEADERS = {
    "CONTENT_LENGTH": "content-length",
    "CONTENT_TYPE": "content-type",
    "CONTENT_SHA1": "x-bz-content-sha1",
    "UPLOAD_TIMESTAMP": "x-bz-upload-timestamp",
    "FILE_ID": "x-bz-file-id",
}

T = TypeVar("T")


@dataclass
class UploadContext:
    """Mutable state of one in-flight upload. Never shared between uploads."""

    session_id: str
    regular_upload_auth: Dict[str, Any]
    source: ByteConduit
    content_type: str
    buffer: bytearray = field(default_factory=bytearray)
    part_number: int = 1
    part_sha1s: List[str] = field(default_factory=list)
    bytes_received: int = 0
    is_large_file: bool = False
    cancelled: bool = False
    is_uploading: bool = False
    stream_paused: bool = False
    session_closed: bool = False

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled or self.source.destroyed


def compute_combined_sha1(part_sha1s: List[str]) -> str:
    """Hash of a multi-part object: SHA-1 over the concatenated part digests."""
    return hashlib.sha1(bytes.fromhex("".join(part_sha1s))).hexdigest()


class B2StorageEngine(StorageEngine):
    """Storage engine backed by a B2 bucket.

    Uploads provision a large-file session and a regular upload URL up
    front, then commit to the multi-part path as soon as one full chunk has
    arrived. Smaller payloads go out in a single request and the unused
    session is cancelled.
    """

    def __init__(
        self,
        client: B2Client,
        bucket_id: str,
        bucket_name: str,
        bucket_region: str,
        chunk_size: int = CHUNK_SIZE,
        retry_backoff: float = 1.0,
    ):
        """
        Args:
            client: B2 API client
            bucket_id: Target bucket id
            bucket_name: Target bucket name (downloads and URLs)
            bucket_region: Bucket region used in public URLs
            chunk_size: Bytes per part on the large-file path
            retry_backoff: Multiplier for exponential backoff between part attempts
        """
        if chunk_size < 2:
            raise ValueError("chunk_size must be at least 2 bytes")
        self._client = client
        self._bucket_id = bucket_id
        self._bucket_name = bucket_name
        self._bucket_region = bucket_region
        self._chunk_size = chunk_size
        self._retry_backoff = retry_backoff
        self._authorized = False
        self._auth_lock = asyncio.Lock()

    def get_backend_name(self) -> str:
        return "b2"

    # ── Authorization ────────────────────────────────────────────────────

    async def _authorize(self) -> None:
        if self._authorized:
            return
        async with self._auth_lock:
            # Concurrent callers wait here and reuse the winner's token
            if self._authorized:
                return
            try:
                await self._client.authorize()
            except Exception as e:
                raise StorageAuthorizationError(f"Failed to authorize: {e}") from e
            self._authorized = True

    async def _call(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run an account-token call, re-authorizing once if the token was rejected."""
        await self._authorize()
        try:
            return await operation(*args, **kwargs)
        except B2AuthError as e:
            logger.warning(
                "B2 rejected account token, re-authorizing",
                extra={"operation": getattr(operation, "__name__", str(operation)), "error": str(e)},
            )
            self._authorized = False
            await self._authorize()
            return await operation(*args, **kwargs)

    # ── Upload ───────────────────────────────────────────────────────────

    async def upload_stream(self, key: str, content_type: Optional[str] = None) -> UploadSession:
        """Provision both upload paths and start consuming the writer.

        Raises:
            StorageAuthorizationError: If the engine cannot authorize
            StorageBackendError: If either upload path cannot be provisioned
        """
        storage_key_context.set(key)
        content_type = content_type or AUTO_CONTENT_TYPE
        await self._authorize()

        session, regular_auth = await asyncio.gather(
            self._call(self._client.start_large_file, self._bucket_id, key, content_type),
            self._call(self._client.get_upload_url, self._bucket_id),
            return_exceptions=True,
        )
        if isinstance(session, BaseException) or isinstance(regular_auth, BaseException):
            if not isinstance(session, BaseException):
                await self._cancel_session_id(session["fileId"])
            error = session if isinstance(session, BaseException) else regular_auth
            logger.error(
                "Failed to provision upload",
                extra={"storage_key": key, "error": str(error)},
            )
            if isinstance(error, NoteVaultError):
                raise error
            raise StorageBackendError(f"Failed to provision upload: {error}") from error

        context = UploadContext(
            session_id=session["fileId"],
            regular_upload_auth=regular_auth,
            source=ByteConduit(),
            content_type=content_type,
        )
        result = asyncio.create_task(self._run_upload(context, key))
        return UploadSession(writer=context.source, result=result)

    async def _run_upload(self, context: UploadContext, key: str) -> StoredObject:
        storage_key_context.set(key)
        try:
            async for chunk in context.source:
                if context.is_cancelled:
                    break
                context.buffer.extend(chunk)
                context.bytes_received += len(chunk)

                if not context.is_large_file and len(context.buffer) >= self._chunk_size:
                    context.is_large_file = True
                    logger.info(
                        "Switching to large file upload",
                        extra={"storage_key": key, "session_id": context.session_id},
                    )

                if context.is_large_file:
                    await self._emit_full_chunks(context)

            return await self._finalize_upload(context, key)
        except (Exception, asyncio.CancelledError) as e:
            context.cancelled = True
            await self._cancel_large_file(context)
            context.source.destroy(e)
            logger.error(
                "Upload failed",
                extra={
                    "storage_key": key,
                    "parts_uploaded": len(context.part_sha1s),
                    "bytes_received": context.bytes_received,
                    "error": str(e),
                },
            )
            raise

    async def _emit_full_chunks(self, context: UploadContext) -> None:
        """Upload buffered chunks while more than one chunk is held.

        One chunk-aligned tail always stays behind, so the final part
        uploaded at finalize time is never empty.
        """
        while len(context.buffer) > self._chunk_size and not context.is_cancelled:
            if context.is_uploading:
                return

            context.is_uploading = True
            self._pause_stream(context)
            try:
                chunk = bytes(context.buffer[: self._chunk_size])
                del context.buffer[: self._chunk_size]
                await self._upload_chunk(context, chunk)
            finally:
                context.is_uploading = False
                if not context.is_cancelled:
                    self._resume_stream(context)

    def _pause_stream(self, context: UploadContext) -> None:
        if not context.stream_paused:
            context.source.pause()
            context.stream_paused = True

    def _resume_stream(self, context: UploadContext) -> None:
        if context.stream_paused:
            context.stream_paused = False
            context.source.resume()

    async def _upload_chunk(self, context: UploadContext, chunk: bytes) -> None:
        """Upload one part, fetching a fresh part URL for every attempt."""
        if context.is_cancelled:
            raise UploadCancelledError("Upload was cancelled")

        response: Dict[str, Any] = {}
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(MAX_PART_ATTEMPTS),
                wait=wait_exponential(multiplier=self._retry_backoff, max=10),
                retry=retry_if_not_exception_type(UploadCancelledError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    if context.is_cancelled:
                        raise UploadCancelledError("Upload was cancelled")
                    part_auth = await self._call(self._client.get_upload_part_url, context.session_id)
                    response = await self._client.upload_part(
                        part_auth["uploadUrl"],
                        part_auth["authorizationToken"],
                        context.part_number,
                        chunk,
                    )
        except UploadCancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Part upload failed after {MAX_PART_ATTEMPTS} attempts, cancelling upload",
                extra={
                    "session_id": context.session_id,
                    "part_number": context.part_number,
                    "error": str(e),
                },
            )
            context.cancelled = True
            await self._cancel_large_file(context)
            error = UploadPartError(f"Part upload failed after {MAX_PART_ATTEMPTS} attempts: {e}")
            context.source.destroy(error)
            raise error from e

        if context.is_cancelled:
            raise UploadCancelledError("Upload was cancelled")

        context.part_sha1s.append(response["contentSha1"])
        logger.debug(
            "Uploaded part",
            extra={
                "session_id": context.session_id,
                "part_number": context.part_number,
                "part_size": len(chunk),
            },
        )
        context.part_number += 1

    async def _finalize_upload(self, context: UploadContext, key: str) -> StoredObject:
        if context.is_cancelled:
            raise UploadCancelledError("Upload was cancelled")

        if context.is_large_file:
            return await self._finalize_large_file(context, key)
        return await self._finalize_regular_upload(context, key)

    async def _finalize_large_file(self, context: UploadContext, key: str) -> StoredObject:
        remaining = bytes(context.buffer)
        context.buffer.clear()

        if remaining:
            if not context.part_sha1s:
                # Exactly one chunk arrived; split it so the file has two parts
                half = len(remaining) // 2
                final_parts = [remaining[:half], remaining[half:]]
            else:
                final_parts = [remaining]
            for part in final_parts:
                await self._upload_chunk(context, part)

        if len(context.part_sha1s) < MIN_LARGE_FILE_PARTS:
            await self._cancel_large_file(context)
            raise LargeFileProtocolError(
                f"Large files require at least {MIN_LARGE_FILE_PARTS} parts"
            )

        response = await self._call(
            self._client.finish_large_file, context.session_id, context.part_sha1s
        )
        context.session_closed = True

        logger.info(
            "Large file upload completed",
            extra={
                "storage_key": key,
                "parts": len(context.part_sha1s),
                "size_bytes": context.bytes_received,
            },
        )
        return self._create_stored_object(
            key,
            size=response.get("contentLength") or context.bytes_received,
            content_hash=compute_combined_sha1(context.part_sha1s),
            upload_timestamp=response["uploadTimestamp"],
            file_id=response["fileId"],
        )

    async def _finalize_regular_upload(self, context: UploadContext, key: str) -> StoredObject:
        await self._cancel_large_file(context)

        data = bytes(context.buffer)
        context.buffer.clear()
        upload_auth = context.regular_upload_auth
        try:
            response = await self._client.upload_file(
                upload_auth["uploadUrl"],
                upload_auth["authorizationToken"],
                key,
                data,
                context.content_type,
            )
        except B2AuthError:
            logger.warning("Upload URL token rejected, requesting a new one", extra={"storage_key": key})
            upload_auth = await self._call(self._client.get_upload_url, self._bucket_id)
            response = await self._client.upload_file(
                upload_auth["uploadUrl"],
                upload_auth["authorizationToken"],
                key,
                data,
                context.content_type,
            )

        logger.info(
            "Regular file upload completed",
            extra={"storage_key": key, "size_bytes": len(data)},
        )
        return self._create_stored_object(
            key,
            size=response.get("contentLength", len(data)),
            content_hash=response["contentSha1"],
            upload_timestamp=response["uploadTimestamp"],
            file_id=response["fileId"],
        )

    async def _cancel_large_file(self, context: UploadContext) -> None:
        """Cancel the context's large-file session at most once, never raising."""
        if context.session_closed:
            return
        context.session_closed = True
        await self._cancel_session_id(context.session_id)

    async def _cancel_session_id(self, session_id: str) -> None:
        try:
            await self._call(self._client.cancel_large_file, session_id)
        except Exception as e:
            logger.error(
                "Failed to cancel large file",
                extra={"session_id": session_id, "error": str(e)},
                exc_info=True,
            )

    def _create_stored_object(
        self, key: str, size: int, content_hash: str, upload_timestamp: int, file_id: str
    ) -> StoredObject:
        return StoredObject(
            key=key,
            size=int(size),
            hash=content_hash,
            upload_timestamp=int(upload_timestamp),
            file_id=file_id,
            url=f"https://{self._bucket_name}.{self._bucket_region}.backblazeb2.com/{key}",
        )

    # ── Download / delete / exists ───────────────────────────────────────

    async def download_stream(self, key: str) -> DownloadedObject:
        try:
            download = await self._call(self._client.download_file_by_name, self._bucket_name, key)
        except B2NotFoundError as e:
            raise StorageObjectNotFoundError(f"File not found: {key}") from e
        except NoteVaultError:
            raise
        except Exception as e:
            raise StorageBackendError(f"Download failed: {e}") from e

        headers = download.headers
        timestamp = headers.get(B2_HEADERS["UPLOAD_TIMESTAMP"])
        metadata = ObjectMetadata(
            size=int(headers.get(B2_HEADERS["CONTENT_LENGTH"], 0)),
            hash=headers.get(B2_HEADERS["CONTENT_SHA1"], ""),
            last_modified=(
                datetime.fromtimestamp(int(timestamp) / 1000, tz=timezone.utc)
                if timestamp
                else datetime.now(timezone.utc)
            ),
            content_type=headers.get(B2_HEADERS["CONTENT_TYPE"]),
        )
        return DownloadedObject(stream=download.stream, metadata=metadata)

    async def _find_file(self, key: str) -> Optional[Dict[str, Any]]:
        """Resolve a key to its file version via an exact-name prefix listing."""
        listing = await self._call(
            self._client.list_file_names,
            self._bucket_id,
            prefix=key,
            start_file_name=key,
            max_file_count=1,
        )
        files = listing.get("files", [])
        if files and files[0].get("fileName") == key:
            return files[0]
        return None

    async def delete(self, key: str) -> None:
        try:
            file_info = await self._find_file(key)
            if file_info is None:
                raise StorageObjectNotFoundError(f"File not found: {key}")
            await self._call(self._client.delete_file_version, file_info["fileId"], key)
        except NoteVaultError:
            raise
        except Exception as e:
            raise StorageBackendError(f"Delete failed: {e}") from e

        logger.info("Deleted stored object", extra={"storage_key": key})

    async def exists(self, key: str) -> bool:
        try:
            return await self._find_file(key) is not None
        except NoteVaultError:
            raise
        except Exception as e:
            raise StorageBackendError(f"Existence check failed: {e}") from e
