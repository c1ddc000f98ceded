"""Type-sniffing validation relay for upload streams."""

import logging
from typing import AsyncIterable, AsyncIterator, Callable, Iterable, List, Optional

from notevault.exceptions import FileValidationError
from notevault.ingest.detection import (
    FALLBACK_MIME_TYPES,
    DetectedType,
    detect_file_type,
    validate_mime_types,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_SIZE = 4096

Detector = Callable[[bytes], Optional[DetectedType]]
ValidationListener = Callable[[DetectedType], None]


class ValidationRelay:
    """Gate an upload stream on the content type found in its first bytes.

    Chunks are held back until the buffered prefix is recognised. Once it
    is, listeners registered with ``on_validated`` are told the detected
    type, the held chunks are released in order, and everything after that
    is forwarded as it arrives.
    """

    def __init__(
        self,
        allowed_mime_types: Optional[Iterable[str]] = None,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        detector: Detector = detect_file_type,
    ):
        """
        Args:
            allowed_mime_types: MIME types to accept; None accepts any detected type
            max_buffer_size: Bytes to buffer before giving up on detection
            detector: Signature detector, defaults to libmagic

        Raises:
            ValueError: If the allow-list holds an unknown MIME type
        """
        self._allowed_mime_types = (
            validate_mime_types(allowed_mime_types) if allowed_mime_types is not None else None
        )
        self._max_buffer_size = max_buffer_size
        self._detector = detector
        self._buffer: Optional[List[bytes]] = []
        self._bytes_buffered = 0
        self._listeners: List[ValidationListener] = []
        self.detected: Optional[DetectedType] = None

    @property
    def validated(self) -> bool:
        return self.detected is not None

    def on_validated(self, listener: ValidationListener) -> None:
        """Register a callback fired once with the detected type."""
        self._listeners.append(listener)

    async def pipe(self, source: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        """Validate ``source`` and yield its bytes unchanged.

        A fallback verdict such as ``text/plain`` is held as a candidate
        until the buffer is full or the stream ends, so the answer does not
        depend on how the bytes are chunked.

        Raises:
            FileValidationError: If the type is disallowed or cannot be detected
        """
        candidate: Optional[DetectedType] = None
        async for chunk in source:
            if self.detected is not None:
                yield chunk
                continue

            self._buffer.append(chunk)
            self._bytes_buffered += len(chunk)

            detected = self._detector(b"".join(self._buffer))
            buffer_full = self._bytes_buffered >= self._max_buffer_size
            if detected is not None and detected.mime in FALLBACK_MIME_TYPES and not buffer_full:
                candidate = detected
                continue

            candidate = None
            if detected is not None:
                self._check_allowed(detected)
                for buffered in self._validate(detected):
                    yield buffered
            elif buffer_full:
                self._buffer = None
                raise FileValidationError("Could not detect file type")

        if self.detected is None:
            if candidate is None:
                raise FileValidationError("File type not detected")
            self._check_allowed(candidate)
            for buffered in self._validate(candidate):
                yield buffered

    def _check_allowed(self, detected: DetectedType) -> None:
        if self._allowed_mime_types is None or detected.mime in self._allowed_mime_types:
            return
        logger.warning(
            "Rejected upload with disallowed file type",
            extra={"detected_mime": detected.mime, "bytes_buffered": self._bytes_buffered},
        )
        self._buffer = None
        raise FileValidationError(f"Invalid file type: {detected.mime}")

    def _validate(self, detected: DetectedType) -> List[bytes]:
        self.detected = detected
        logger.debug(
            "Upload file type detected",
            extra={"detected_mime": detected.mime, "bytes_buffered": self._bytes_buffered},
        )
        for listener in self._listeners:
            listener(detected)

        buffered, self._buffer = self._buffer, None
        return buffered
