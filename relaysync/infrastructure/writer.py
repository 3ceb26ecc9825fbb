"""
Backpressure-aware sequential file writer.

Every chunk passed to SequentialWriter.write is handed to the file handle before
the call returns, so an OS rejection fails the very write that caused it. Once
the bytes accepted since the last flush reach the high-water mark, the write
that crossed the mark also waits for the handle to flush them (the drain), so a
producer streaming an unbounded record set never runs more than roughly one
high-water mark ahead of the disk.

Blocking OS calls run in a worker thread via asyncio.to_thread, so several
writers can make progress on one event loop.

Usage:
    writer = await SequentialWriter.open(path)
    async with writer:
        for line in lines:
            await writer.write(line)
"""

from __future__ import annotations

import asyncio
import enum
from pathlib import Path
from types import TracebackType
from typing import Any, BinaryIO, Callable, Optional, Type, Union

from relaysync.errors import WriteError
from relaysync.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_HIGH_WATER_MARK = 16_384


class WriterState(str, enum.Enum):
    OPEN = "open"
    DRAINING = "draining"
    FAILED = "failed"
    CLOSED = "closed"


class SequentialWriter:
    """
    Ordered, drain-aware writer over a binary file handle.

    Parameters
    ----------
    handle : BinaryIO
        Open binary handle. The writer owns it and closes it in end()/abort().
    path : Path | str | None
        Target path, used for error messages and logging.
    high_water_mark : int
        Unflushed byte count at which a write blocks until the handle flushes.
    encoding : str
        Encoding applied to str chunks.
    """

    def __init__(
        self,
        handle: BinaryIO,
        path: Optional[Union[Path, str]] = None,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        encoding: str = "utf-8",
    ) -> None:
        if high_water_mark <= 0:
            raise ValueError("high_water_mark must be positive")
        self._handle = handle
        self.path = Path(path) if path is not None else None
        self.high_water_mark = high_water_mark
        self.encoding = encoding
        self.state = WriterState.OPEN
        self.bytes_written = 0
        self.drains = 0
        self._unflushed = 0
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future[Any]] = None

    @classmethod
    async def open(
        cls,
        path: Union[Path, str],
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        encoding: str = "utf-8",
    ) -> "SequentialWriter":
        """Create or truncate `path` and return a writer over it."""
        target = Path(path)
        try:
            handle = await asyncio.to_thread(target.open, "wb")
        except OSError as exc:
            raise WriteError(f"Cannot open {target}: {exc}", path=target) from exc
        return cls(handle, path=target, high_water_mark=high_water_mark, encoding=encoding)

    @property
    def buffered(self) -> int:
        """Bytes accepted by the handle but not flushed yet."""
        return self._unflushed

    @property
    def _label(self) -> str:
        return str(self.path) if self.path is not None else repr(self._handle)

    async def write(self, chunk: Union[str, bytes]) -> None:
        """
        Hand `chunk` to the handle; also waits for a flush once the
        unflushed bytes reach the high-water mark.

        Raises
        ------
        WriteError
            If the writer is closed/failed or the OS rejects the data.
        """
        data = chunk.encode(self.encoding) if isinstance(chunk, str) else bytes(chunk)
        async with self._lock:
            if self.state in (WriterState.CLOSED, WriterState.FAILED):
                raise WriteError(f"Writer for {self._label} is {self.state.value}", path=self.path)
            await self._run(self._write_through, data)
            self.bytes_written += len(data)
            self._unflushed += len(data)
            if self._unflushed >= self.high_water_mark:
                self.state = WriterState.DRAINING
                await self._drain()
                self.state = WriterState.OPEN

    async def end(self) -> None:
        """Flush everything written and close the handle. Idempotent."""
        async with self._lock:
            if self.state is WriterState.CLOSED:
                return
            try:
                if self.state is not WriterState.FAILED:
                    await self._run(self._flush_through)
            finally:
                await self._close()

    async def abort(self) -> None:
        """Close the handle without waiting for a final flush. Idempotent."""
        async with self._lock:
            if self.state is WriterState.CLOSED:
                return
            await self._close()

    async def __aenter__(self) -> "SequentialWriter":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> bool:
        if exc_type is None:
            await self.end()
            return False
        try:
            if issubclass(exc_type, asyncio.CancelledError):
                # A cancelled producer keeps what it already wrote.
                await self.end()
            else:
                await self.abort()
        except WriteError:
            log.exception(
                f"Failed to close {self._label} while unwinding",
                extra={"path": self._label},
            )
        return False

    async def _run(self, func: Callable[..., Any], *args: Any) -> None:
        await self._settle()
        self._inflight = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            # Shielded so a cancelled caller never leaves the thread racing close().
            await asyncio.shield(self._inflight)
        except OSError as exc:
            self._inflight = None
            self.state = WriterState.FAILED
            raise WriteError(f"Write to {self._label} failed: {exc}", path=self.path) from exc
        self._inflight = None

    async def _drain(self) -> None:
        await self._run(self._flush_through)
        self._unflushed = 0
        self.drains += 1

    async def _settle(self) -> None:
        """Wait for an OS call abandoned by a cancelled caller."""
        inflight, self._inflight = self._inflight, None
        if inflight is None:
            return
        await asyncio.wait({inflight})
        if not inflight.cancelled() and inflight.exception() is not None:
            self.state = WriterState.FAILED
            err = inflight.exception()
            raise WriteError(f"Write to {self._label} failed: {err}", path=self.path) from err

    async def _close(self) -> None:
        inflight, self._inflight = self._inflight, None
        try:
            if inflight is not None:
                await asyncio.wait({inflight})
            await asyncio.to_thread(self._handle.close)
        except OSError as exc:
            raise WriteError(f"Closing {self._label} failed: {exc}", path=self.path) from exc
        finally:
            self.state = WriterState.CLOSED

    def _write_through(self, data: bytes) -> None:
        self._handle.write(data)

    def _flush_through(self) -> None:
        self._handle.flush()


__all__ = ["DEFAULT_HIGH_WATER_MARK", "SequentialWriter", "WriterState"]
