from __future__ import annotations

import asyncio
import errno
from pathlib import Path
from typing import AsyncIterator, List

import pytest

from relaysync.domain.models import SyncSnapshot
from relaysync.emitters import DomainMapEmitter, MainConfigEmitter, render_main_cf
from relaysync.emitters.abstract import AbstractConfigEmitter
from relaysync.errors import WriteError
from relaysync.infrastructure.writer import SequentialWriter, WriterState
from relaysync.synchronizer import SyncState, Synchronizer
from tests.fakes import InMemoryRelayStore, make_store


class _StallingEmitter(AbstractConfigEmitter):
    name = "stalling"
    description = "writes one line then waits forever"

    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.started = asyncio.Event()

    async def lines(self) -> AsyncIterator[str]:
        yield "first"
        self.started.set()
        await asyncio.Event().wait()


def _read_all(output_dir: Path) -> dict[str, bytes]:
    return {p.name: p.read_bytes() for p in sorted(output_dir.iterdir())}


@pytest.mark.asyncio
async def test_run_writes_three_files_and_completes(snapshot: SyncSnapshot, output_dir: Path) -> None:
    synchronizer = Synchronizer(snapshot, InMemoryRelayStore())
    assert synchronizer.state is SyncState.IDLE

    report = await synchronizer.run()

    assert report.state is SyncState.COMPLETED
    assert report.ok
    assert report.error is None
    assert synchronizer.state is SyncState.COMPLETED
    assert sorted(_read_all(output_dir)) == [
        "main.cf",
        "mysql_virtual_alias_maps.cf",
        "mysql_virtual_domains.cf",
    ]
    assert [r["emitter"] for r in report.results] == ["main_cf", "domains_map", "alias_map"]
    assert not any(r.get("error") for r in report.results)
    assert report.profile is not None


@pytest.mark.asyncio
async def test_prerendered_run_streams_relays_from_store(
    prerender_snapshot: SyncSnapshot, output_dir: Path
) -> None:
    store = make_store(40, disabled_every=4)
    synchronizer = Synchronizer(prerender_snapshot, store, page_size=7)

    report = await synchronizer.run()

    assert report.ok
    lines = (output_dir / "virtual").read_text().splitlines()
    assert len(lines) == 30
    assert "alias4@relay.example.org   user4@example.net" not in lines


@pytest.mark.asyncio
async def test_rerun_produces_identical_files(prerender_snapshot: SyncSnapshot, output_dir: Path) -> None:
    synchronizer = Synchronizer(prerender_snapshot, make_store(250), page_size=16, high_water_mark=64)

    await synchronizer.run()
    first = _read_all(output_dir)
    report = await synchronizer.run()
    second = _read_all(output_dir)

    assert report.ok
    assert first == second


@pytest.mark.asyncio
async def test_rerun_replaces_stale_content(snapshot: SyncSnapshot, output_dir: Path) -> None:
    output_dir.mkdir()
    (output_dir / "main.cf").write_text("# hand edited\n" * 500)

    await Synchronizer(snapshot, InMemoryRelayStore()).run()

    assert (output_dir / "main.cf").read_text() == "\n".join(render_main_cf(snapshot)) + "\n"


@pytest.mark.asyncio
async def test_write_error_fails_run_and_keeps_sibling_files(
    prerender_snapshot: SyncSnapshot, output_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    original = SequentialWriter._write_through

    def _disk_full_for_alias_map(self: SequentialWriter, data: bytes) -> None:
        if self.path is not None and self.path.name == "virtual" and self.drains >= 2:
            raise OSError(errno.ENOSPC, "No space left on device")
        original(self, data)

    monkeypatch.setattr(SequentialWriter, "_write_through", _disk_full_for_alias_map)
    synchronizer = Synchronizer(prerender_snapshot, make_store(500), page_size=50, high_water_mark=256)

    report = await synchronizer.run()

    assert report.state is SyncState.FAILED
    assert synchronizer.state is SyncState.FAILED
    assert isinstance(report.error, WriteError)
    assert report.error.path == output_dir / "virtual"
    results = {r["emitter"]: r for r in report.results}
    assert "No space left" in results["alias_map"]["error"]
    assert results["main_cf"].get("error") is None
    assert (output_dir / "main.cf").read_text() == "\n".join(render_main_cf(prerender_snapshot)) + "\n"
    assert (output_dir / "mysql_virtual_domains.cf").exists()
    partial = (output_dir / "virtual").read_bytes()
    assert 0 < len(partial) < 500 * len("aliasNNN@relay.example.org   userNNN@example.net\n")


@pytest.mark.asyncio
async def test_first_failure_is_reported(snapshot: SyncSnapshot, output_dir: Path) -> None:
    class _Broken(AbstractConfigEmitter):
        name = "broken"
        description = "fails after a delay"

        def __init__(self, path: Path, delay: float, message: str) -> None:
            super().__init__(path)
            self.delay = delay
            self.message = message

        async def lines(self) -> AsyncIterator[str]:
            yield "x"
            await asyncio.sleep(self.delay)
            raise RuntimeError(self.message)

    emitters = [
        _Broken(output_dir / "slow", 0.2, "slow failure"),
        _Broken(output_dir / "fast", 0.01, "fast failure"),
        MainConfigEmitter(snapshot),
    ]
    report = await Synchronizer(snapshot, InMemoryRelayStore(), emitters=emitters).run()

    assert report.state is SyncState.FAILED
    assert str(report.error) == "fast failure"
    assert (output_dir / "main.cf").exists()


@pytest.mark.asyncio
async def test_cancelled_run_closes_every_writer(
    snapshot: SyncSnapshot, output_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    opened: List[SequentialWriter] = []
    original_open = SequentialWriter.open

    async def _recording_open(path, **kwargs) -> SequentialWriter:
        writer = await original_open(path, **kwargs)
        opened.append(writer)
        return writer

    monkeypatch.setattr(SequentialWriter, "open", _recording_open)
    stalling = _StallingEmitter(output_dir / "stalling.cf")
    synchronizer = Synchronizer(
        snapshot,
        InMemoryRelayStore(),
        emitters=[MainConfigEmitter(snapshot), DomainMapEmitter(snapshot), stalling],
    )

    task = asyncio.create_task(synchronizer.run())
    await asyncio.wait_for(stalling.started.wait(), timeout=2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(opened) == 3
    assert all(w.state is WriterState.CLOSED for w in opened)
    assert synchronizer.state is SyncState.FAILED
    assert (output_dir / "stalling.cf").read_bytes() == b"first\n"


@pytest.mark.asyncio
async def test_concurrent_run_on_same_instance_is_rejected(snapshot: SyncSnapshot, output_dir: Path) -> None:
    stalling = _StallingEmitter(output_dir / "stalling.cf")
    synchronizer = Synchronizer(snapshot, InMemoryRelayStore(), emitters=[stalling])

    task = asyncio.create_task(synchronizer.run())
    await asyncio.wait_for(stalling.started.wait(), timeout=2)
    try:
        with pytest.raises(RuntimeError, match="already in progress"):
            await synchronizer.run()
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


@pytest.mark.asyncio
async def test_unwritable_output_dir_fails_run(snapshot: SyncSnapshot, tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    snapshot = snapshot.model_copy(update={"output_dir": blocker / "postfix"})

    report = await Synchronizer(snapshot, InMemoryRelayStore()).run()

    assert report.state is SyncState.FAILED
    assert isinstance(report.error, WriteError)
    assert report.results == []


def test_page_size_must_be_positive(snapshot: SyncSnapshot) -> None:
    with pytest.raises(ValueError):
        Synchronizer(snapshot, InMemoryRelayStore(), page_size=0)


@pytest.mark.asyncio
async def test_failed_emitter_setup_leaves_instance_rerunnable(
    snapshot: SyncSnapshot, output_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    synchronizer = Synchronizer(snapshot, InMemoryRelayStore())

    def _broken_emitters() -> list:
        raise RuntimeError("bad emitter configuration")

    monkeypatch.setattr(synchronizer, "emitters", _broken_emitters)
    with pytest.raises(RuntimeError, match="bad emitter configuration"):
        await synchronizer.run()
    assert synchronizer.state is SyncState.FAILED

    monkeypatch.undo()
    report = await synchronizer.run()

    assert report.state is SyncState.COMPLETED
    assert (output_dir / "main.cf").exists()


@pytest.mark.asyncio
async def test_prerendered_alias_map_honours_virtual_path(
    prerender_snapshot: SyncSnapshot, output_dir: Path, tmp_path: Path
) -> None:
    virtual = tmp_path / "maps" / "virtual"
    snapshot = prerender_snapshot.model_copy(update={"virtual_path": virtual})

    report = await Synchronizer(snapshot, make_store(3)).run()

    assert report.ok
    assert virtual.read_text().splitlines()[0] == "alias1@relay.example.org   user1@example.net"
    assert not (output_dir / "virtual").exists()
    assert f"virtual_alias_maps = hash:{virtual}" in (output_dir / "main.cf").read_text()
