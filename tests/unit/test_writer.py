from __future__ import annotations

import asyncio
import errno
import threading
from pathlib import Path

import pytest

from relaysync.errors import WriteError
from relaysync.infrastructure.writer import SequentialWriter, WriterState

HIGH_WATER_MARK = 8


class _RecordingHandle:
    """Binary handle double; `gate` blocks flushes until set, like a full pipe."""

    def __init__(self, gate: threading.Event | None = None, error: OSError | None = None) -> None:
        self.gate = gate
        self.error = error
        self.chunks: list[bytes] = []
        self.events: list[str] = []
        self.closed = False

    def write(self, data: bytes) -> int:
        if self.error is not None:
            raise self.error
        self.chunks.append(bytes(data))
        self.events.append("write")
        return len(data)

    def flush(self) -> None:
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self.events.append("flush")

    def close(self) -> None:
        self.closed = True
        self.events.append("close")


@pytest.mark.asyncio
async def test_small_writes_reach_handle_before_returning() -> None:
    handle = _RecordingHandle()
    writer = SequentialWriter(handle, high_water_mark=1024)

    await writer.write("alpha\n")
    await writer.write(b"beta\n")

    assert handle.chunks == [b"alpha\n", b"beta\n"]
    assert handle.events == ["write", "write"]
    assert writer.buffered == len("alpha\nbeta\n")

    await writer.end()

    assert handle.events == ["write", "write", "flush", "close"]
    assert handle.closed is True
    assert writer.state is WriterState.CLOSED
    assert writer.bytes_written == len("alpha\nbeta\n")


@pytest.mark.asyncio
async def test_rejected_small_write_fails_that_call() -> None:
    handle = _RecordingHandle(error=OSError(errno.ENOSPC, "No space left on device"))
    writer = SequentialWriter(handle, path="/tmp/virtual", high_water_mark=16_384)

    with pytest.raises(WriteError, match="No space left"):
        await writer.write("a@x   b@y\n")

    assert writer.state is WriterState.FAILED
    assert writer.bytes_written == 0
    await writer.end()
    assert handle.events == ["close"]


@pytest.mark.asyncio
async def test_saturating_write_waits_for_drain() -> None:
    gate = threading.Event()
    handle = _RecordingHandle(gate=gate)
    writer = SequentialWriter(handle, high_water_mark=HIGH_WATER_MARK)
    payload = b"x" * (HIGH_WATER_MARK * 4)

    task = asyncio.create_task(writer.write(payload))
    try:
        await asyncio.sleep(0.05)
        assert not task.done()
        assert writer.state is WriterState.DRAINING

        gate.set()
        await asyncio.wait_for(task, timeout=2)
    finally:
        gate.set()

    assert handle.chunks == [payload]
    assert writer.drains == 1
    assert writer.state is WriterState.OPEN
    await writer.end()
    assert handle.closed is True


@pytest.mark.asyncio
async def test_concurrent_writes_keep_submission_order() -> None:
    handle = _RecordingHandle()
    writer = SequentialWriter(handle, high_water_mark=HIGH_WATER_MARK)

    await asyncio.gather(*(writer.write(f"line-{i:03d}\n") for i in range(50)))
    await writer.end()

    assert b"".join(handle.chunks) == b"".join(f"line-{i:03d}\n".encode() for i in range(50))


@pytest.mark.asyncio
async def test_end_returns_after_close_and_is_idempotent() -> None:
    handle = _RecordingHandle()
    writer = SequentialWriter(handle)

    await writer.write("tail")
    await writer.end()
    await writer.end()

    assert handle.events == ["write", "flush", "close"]


@pytest.mark.asyncio
async def test_write_after_end_raises() -> None:
    writer = SequentialWriter(_RecordingHandle())
    await writer.end()

    with pytest.raises(WriteError):
        await writer.write("late")


@pytest.mark.asyncio
async def test_os_error_fails_that_write_and_the_writer() -> None:
    handle = _RecordingHandle(error=OSError(errno.ENOSPC, "No space left on device"))
    writer = SequentialWriter(handle, path="/tmp/full.cf", high_water_mark=HIGH_WATER_MARK)

    with pytest.raises(WriteError) as excinfo:
        await writer.write(b"y" * HIGH_WATER_MARK)

    assert excinfo.value.path == Path("/tmp/full.cf")
    assert writer.state is WriterState.FAILED
    with pytest.raises(WriteError):
        await writer.write("more")

    await writer.end()
    assert handle.closed is True


@pytest.mark.asyncio
async def test_context_manager_aborts_on_error_without_flushing() -> None:
    handle = _RecordingHandle()
    writer = SequentialWriter(handle, high_water_mark=1024)

    with pytest.raises(RuntimeError, match="boom"):
        async with writer:
            await writer.write("partial")
            raise RuntimeError("boom")

    assert handle.events == ["write", "close"]
    assert handle.closed is True


@pytest.mark.asyncio
async def test_context_manager_ends_on_cancellation() -> None:
    handle = _RecordingHandle()
    writer = SequentialWriter(handle, high_water_mark=1024)
    written = asyncio.Event()

    async def _produce() -> None:
        async with writer:
            await writer.write("first\n")
            written.set()
            await asyncio.Event().wait()

    task = asyncio.create_task(_produce())
    await asyncio.wait_for(written.wait(), timeout=2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert handle.chunks == [b"first\n"]
    assert handle.events == ["write", "flush", "close"]
    assert writer.state is WriterState.CLOSED


@pytest.mark.asyncio
async def test_abort_waits_for_drain_abandoned_by_cancelled_write() -> None:
    gate = threading.Event()
    handle = _RecordingHandle(gate=gate)
    writer = SequentialWriter(handle, high_water_mark=HIGH_WATER_MARK)

    task = asyncio.create_task(writer.write(b"z" * HIGH_WATER_MARK))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    asyncio.get_running_loop().call_later(0.05, gate.set)
    try:
        await asyncio.wait_for(writer.abort(), timeout=2)
    finally:
        gate.set()

    assert handle.events == ["write", "flush", "close"]
    assert writer.state is WriterState.CLOSED


@pytest.mark.asyncio
async def test_open_truncates_existing_file(tmp_path: Path) -> None:
    target = tmp_path / "main.cf"
    target.write_text("stale content that is longer than the new one\n")

    writer = await SequentialWriter.open(target)
    async with writer:
        await writer.write("fresh\n")

    assert target.read_text() == "fresh\n"


@pytest.mark.asyncio
async def test_open_in_missing_directory_raises_write_error(tmp_path: Path) -> None:
    with pytest.raises(WriteError):
        await SequentialWriter.open(tmp_path / "missing" / "main.cf")


def test_high_water_mark_must_be_positive() -> None:
    with pytest.raises(ValueError):
        SequentialWriter(_RecordingHandle(), high_water_mark=0)
