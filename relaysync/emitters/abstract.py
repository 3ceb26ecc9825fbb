"""
Emitter interfaces and result contracts for relaysync.

Concrete emitters (main.cf, domain map, alias map) implement ConfigEmitter by
producing their lines; AbstractConfigEmitter supplies the shared emit() that
streams those lines to disk through a SequentialWriter and returns an
EmitterResult for the Synchronizer to aggregate.
"""

from __future__ import annotations

import abc
import time
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional, Protocol, TypedDict, runtime_checkable

from relaysync.infrastructure.writer import DEFAULT_HIGH_WATER_MARK, SequentialWriter
from relaysync.utils.logging import get_logger

log = get_logger(__name__)


class EmitterResult(TypedDict, total=False):
    """
    Outcome of one emitter within a sync run.

    Failed emitters carry `error`; the other counters then describe how far the
    emitter got before failing.
    """

    emitter: str
    path: str
    lines: int
    bytes: int
    duration_seconds: float
    error: Optional[str]


@runtime_checkable
class ConfigEmitter(Protocol):
    """
    Common interface all emitters implement.

    Attributes
    ----------
    name : str
        A short machine-friendly identifier.
    description : str
        A human-friendly summary of the produced file.
    path : Path
        The file this emitter truncates and rewrites.
    """

    name: str
    description: str
    path: Path

    async def emit(self) -> EmitterResult:
        """Write the whole file and return what was written."""
        ...


class AbstractConfigEmitter(abc.ABC):
    """
    Base class for file emitters.

    Subclasses set `name` and `description` and implement `lines()`.
    """

    name: str
    description: str

    def __init__(self, path: Path, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        self.path = Path(path)
        self.high_water_mark = high_water_mark

    @abc.abstractmethod
    def lines(self) -> AsyncIterator[str]:  # pragma: no cover - interface only
        """Yield the file content line by line, without trailing newlines."""
        raise NotImplementedError

    async def emit(self) -> EmitterResult:
        start = time.perf_counter()
        count = 0
        log.info(f"[EMIT START] {self.name}", extra={"emitter": self.name, "path": str(self.path)})
        writer = await SequentialWriter.open(self.path, high_water_mark=self.high_water_mark)
        async with writer:
            async for line in self.lines():
                await writer.write(line + "\n")
                count += 1
        duration = time.perf_counter() - start
        log.info(
            f"[EMIT DONE] {self.name}",
            extra={"emitter": self.name, "path": str(self.path), "lines": count},
        )
        return EmitterResult(
            emitter=self.name,
            path=str(self.path),
            lines=count,
            bytes=writer.bytes_written,
            duration_seconds=duration,
        )


async def iterate(lines: Iterable[str]) -> AsyncIterator[str]:
    """Adapt a precomputed line list to the async lines() contract."""
    for line in lines:
        yield line


__all__ = [
    "EmitterResult",
    "ConfigEmitter",
    "AbstractConfigEmitter",
    "iterate",
]
