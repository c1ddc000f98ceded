"""Bounded async pass-through for upload bytes."""

import asyncio
import contextlib
from collections import deque
from typing import AsyncIterable, Deque, Optional

from notevault.exceptions import ConduitClosedError

DEFAULT_HIGH_WATER_MARK = 1024 * 1024  # bytes queued before write() blocks


class ByteConduit:
    """Single-producer, single-consumer byte pipe with explicit flow control.

    The producer awaits ``write()``, which blocks while the conduit is paused
    or holds ``high_water_mark`` unread bytes. The consumer iterates with
    ``async for``. Either side may ``destroy()`` the conduit; the error is
    then raised on both ends.
    """

    def __init__(self, high_water_mark: int = DEFAULT_HIGH_WATER_MARK):
        if high_water_mark < 1:
            raise ValueError("high_water_mark must be at least 1")
        self._high_water_mark = high_water_mark
        self._chunks: Deque[bytes] = deque()
        self._queued_bytes = 0
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self._ended = False
        self._error: Optional[BaseException] = None
        self.paused = False
        self.bytes_written = 0

    @property
    def destroyed(self) -> bool:
        return self._error is not None

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def _update_writable(self) -> None:
        if self._error is not None or (
            not self.paused and self._queued_bytes < self._high_water_mark
        ):
            self._writable.set()
        else:
            self._writable.clear()

    async def write(self, chunk: bytes) -> None:
        """Queue a chunk, waiting while the conduit is paused or full."""
        while True:
            if self._error is not None:
                raise self._error
            if self._ended:
                raise ConduitClosedError("write after end")
            if not self.paused and self._queued_bytes < self._high_water_mark:
                break
            self._writable.clear()
            await self._writable.wait()

        if chunk:
            self._chunks.append(bytes(chunk))
            self._queued_bytes += len(chunk)
            self.bytes_written += len(chunk)
            self._readable.set()
        self._update_writable()

    def end(self) -> None:
        """Signal that no more chunks will be written."""
        if self._ended or self._error is not None:
            return
        self._ended = True
        self._readable.set()

    def destroy(self, error: Optional[BaseException] = None) -> None:
        """Tear the conduit down and wake both ends.

        Only the first error is kept; later calls are no-ops.
        """
        if self._error is not None:
            return
        self._error = error or ConduitClosedError("conduit destroyed")
        self._chunks.clear()
        self._queued_bytes = 0
        self._readable.set()
        self._writable.set()

    def pause(self) -> None:
        """Stop accepting writes until ``resume()``."""
        self.paused = True
        self._update_writable()

    def resume(self) -> None:
        self.paused = False
        self._update_writable()

    def __aiter__(self) -> "ByteConduit":
        return self

    async def __anext__(self) -> bytes:
        while True:
            if self._error is not None:
                raise self._error
            if self._chunks:
                chunk = self._chunks.popleft()
                self._queued_bytes -= len(chunk)
                self._update_writable()
                return chunk
            if self._ended:
                raise StopAsyncIteration
            self._readable.clear()
            await self._readable.wait()


async def pipe(source: AsyncIterable[bytes], conduit: ByteConduit) -> int:
    """Copy every chunk of ``source`` into ``conduit`` and end it.

    Returns:
        Number of bytes copied
    """
    copied = 0
    async for chunk in source:
        await conduit.write(chunk)
        copied += len(chunk)
    conduit.end()
    return copied


async def close_source(source: object) -> None:
    """Release an upstream byte source after a failure."""
    if isinstance(source, ByteConduit):
        source.destroy()
        return
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        with contextlib.suppress(Exception):
            await aclose()


async def settle(task: Optional[asyncio.Task]) -> Optional[BaseException]:
    """Wait for a background task and hand back its error instead of raising it."""
    if task is None:
        return None
    try:
        await task
    except asyncio.CancelledError as exc:
        if task.cancelled():
            return exc
        raise
    except Exception as exc:
        return exc
    return None
