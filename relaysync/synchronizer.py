"""
Synchronizer: runs the config emitters for one snapshot and aggregates outcomes.

Usage (example from CLI):
    from relaysync.synchronizer import synchronize

    report = asyncio.run(synchronize(get_settings()))
    print(report.state, report.results)

The three emitters run concurrently as asyncio tasks. A failing emitter does
not stop its siblings; the run is FAILED and carries the first failure, and the
files written by the other emitters stay on disk as they are.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from relaysync.config import Settings
from relaysync.domain.models import SyncSnapshot
from relaysync.emitters.abstract import ConfigEmitter, EmitterResult
from relaysync.emitters.lookup_maps import (
    AliasMapEmitter,
    DomainMapEmitter,
    PrerenderedAliasMapEmitter,
)
from relaysync.emitters.main_cf import MainConfigEmitter
from relaysync.errors import WriteError
from relaysync.infrastructure.cursor import DEFAULT_PAGE_SIZE
from relaysync.infrastructure.repository import PostgresRepository, RelayRepository
from relaysync.infrastructure.writer import DEFAULT_HIGH_WATER_MARK
from relaysync.utils.logging import get_logger
from relaysync.utils.profiler import ProfileStats, profile_block

log = get_logger(__name__)


class SyncState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncReport:
    """Aggregated outcome of one synchronization run."""

    state: SyncState
    started_at: str
    results: List[EmitterResult] = field(default_factory=list)
    error: Optional[BaseException] = None
    profile: Optional[ProfileStats] = None

    @property
    def ok(self) -> bool:
        return self.state is SyncState.COMPLETED

    @property
    def duration_seconds(self) -> float:
        return self.profile.duration_seconds if self.profile else 0.0

    def as_dict(self) -> dict:
        payload = {
            "state": self.state.value,
            "started_at": self.started_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": [dict(r) for r in self.results],
            "error": str(self.error) if self.error else None,
        }
        if self.profile is not None:
            payload["peak_rss_bytes"] = self.profile.peak_rss_bytes
            payload["cpu_percent"] = self.profile.cpu_percent
        return payload


class Synchronizer:
    """
    Regenerates the Postfix configuration files from the relay store.

    Parameters
    ----------
    snapshot : SyncSnapshot
        Frozen configuration for the run(s).
    repository : RelayRepository
        Store the pre-rendered alias map pages through.
    page_size : int
        Relays per page for the pre-rendered alias map.
    high_water_mark : int
        Writer buffer size in bytes before a write waits for a drain.
    emitters : sequence of ConfigEmitter, optional
        Overrides the default emitter set.
    """

    def __init__(
        self,
        snapshot: SyncSnapshot,
        repository: RelayRepository,
        page_size: int = DEFAULT_PAGE_SIZE,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        emitters: Optional[Sequence[ConfigEmitter]] = None,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.snapshot = snapshot
        self.repository = repository
        self.page_size = page_size
        self.high_water_mark = high_water_mark
        self._emitters = list(emitters) if emitters is not None else None
        self.state = SyncState.IDLE

    def emitters(self) -> List[ConfigEmitter]:
        """Fresh emitters for one run; writers are never reused across runs."""
        if self._emitters is not None:
            return list(self._emitters)
        hwm = self.high_water_mark
        if self.snapshot.prerender_aliases:
            alias_emitter: ConfigEmitter = PrerenderedAliasMapEmitter(
                self.snapshot, self.repository, page_size=self.page_size, high_water_mark=hwm
            )
        else:
            alias_emitter = AliasMapEmitter(self.snapshot, high_water_mark=hwm)
        return [
            MainConfigEmitter(self.snapshot, high_water_mark=hwm),
            DomainMapEmitter(self.snapshot, high_water_mark=hwm),
            alias_emitter,
        ]

    async def _prepare_output_dir(self) -> None:
        # The alias map may live outside output_dir when virtual_path is set.
        directories = dict.fromkeys(
            [Path(self.snapshot.output_dir), self.snapshot.alias_map_path.parent]
        )
        for directory in directories:
            try:
                await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
            except OSError as exc:
                raise WriteError(f"Cannot create {directory}: {exc}", path=directory) from exc

    async def run(self) -> SyncReport:
        """
        Run every emitter concurrently and wait for all of them.

        Returns
        -------
        SyncReport
            COMPLETED if every emitter succeeded, otherwise FAILED with the
            first failure (in completion order) as `error`.

        Raises
        ------
        RuntimeError
            If a run is already in progress on this instance.
        asyncio.CancelledError
            If the run is cancelled; every emitter is cancelled and its writer
            closed before this propagates.
        """
        if self.state is SyncState.RUNNING:
            raise RuntimeError("A synchronization run is already in progress")
        self.state = SyncState.RUNNING
        report = SyncReport(state=SyncState.RUNNING, started_at=datetime.now(timezone.utc).isoformat())
        failures: List[BaseException] = []

        async def _guarded(emitter: ConfigEmitter) -> EmitterResult:
            try:
                return await emitter.emit()
            except Exception as exc:
                failures.append(exc)
                log.exception(
                    f"[EMIT FAILED] {emitter.name}",
                    extra={"emitter": emitter.name, "path": str(emitter.path)},
                )
                raise

        log.info("[SYNC START]", extra={"output_dir": str(self.snapshot.output_dir)})
        with profile_block("sync") as stats:
            try:
                await self._prepare_output_dir()
            except WriteError as exc:
                log.exception("[SYNC FAILED] output directory unavailable")
                self.state = SyncState.FAILED
                report.state, report.error, report.profile = SyncState.FAILED, exc, stats
                return report
            except BaseException:
                self.state = SyncState.FAILED
                raise

            try:
                emitters = self.emitters()
                tasks = [asyncio.create_task(_guarded(e), name=f"emit-{e.name}") for e in emitters]
            except Exception:
                self.state = SyncState.FAILED
                log.exception("[SYNC FAILED] emitters could not be started")
                raise
            try:
                outcomes = await asyncio.gather(*tasks, return_exceptions=True)
            except asyncio.CancelledError:
                for task in tasks:
                    if not task.done() and not task.cancelling():
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                self.state = SyncState.FAILED
                log.warning("[SYNC CANCELLED] all writers closed")
                raise

        for emitter, outcome in zip(emitters, outcomes):
            if isinstance(outcome, BaseException):
                report.results.append(
                    EmitterResult(emitter=emitter.name, path=str(emitter.path), error=str(outcome))
                )
            else:
                report.results.append(outcome)

        report.profile = stats
        if failures:
            report.state = SyncState.FAILED
            report.error = failures[0]
        else:
            report.state = SyncState.COMPLETED
        self.state = report.state
        log.info(
            f"[SYNC {report.state.value.upper()}]",
            extra={
                "files": len(report.results),
                "failures": len(failures),
                "duration": round(stats.duration_seconds, 3),
            },
        )
        return report


async def synchronize(
    settings: Settings,
    prerender: Optional[bool] = None,
    include_disabled: Optional[bool] = None,
) -> SyncReport:
    """
    Build a snapshot from `settings`, connect to the store and run one sync.

    Raises
    ------
    ConfigurationError
        If the store URI is missing or invalid.
    StoreError
        If the store cannot be reached.
    """
    snapshot = settings.snapshot(prerender=prerender, include_disabled=include_disabled)
    repository = await PostgresRepository.connect(
        snapshot.connection,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        timeout=settings.db_connect_timeout,
    )
    async with repository:
        synchronizer = Synchronizer(
            snapshot,
            repository,
            page_size=settings.page_size,
            high_water_mark=settings.write_high_water_mark,
        )
        return await synchronizer.run()


__all__ = [
    "SyncReport",
    "SyncState",
    "Synchronizer",
    "synchronize",
]
