from __future__ import annotations

import json
import time
import tracemalloc
from collections.abc import Iterator
from pathlib import Path

import pytest

from profwrap import runtime
from profwrap.artifacts import MANIFEST_NAME, README_NAME, validate_manifest
from profwrap.model import KINDS, CollectionPlan
from profwrap.session import CollectionSession, CollectorSet, rate_for


@pytest.fixture(autouse=True)
def _restore_process_state() -> Iterator[None]:
    was_tracing = tracemalloc.is_tracing()
    yield
    if not was_tracing and tracemalloc.is_tracing():
        tracemalloc.stop()
    runtime.block_profile.set_rate(0)
    runtime.block_profile.clear()
    runtime.mutex_profile.set_rate(0)
    runtime.mutex_profile.clear()


def _plan(out: Path, *kinds: str, **kwargs: object) -> CollectionPlan:
    return CollectionPlan(output_dir=out, enabled=kinds, cpu_interval=0.005, **kwargs)  # type: ignore[arg-type]


def test_failed_heap_snapshot_does_not_block_other_snapshots(tmp_path: Path) -> None:
    (tmp_path / "heap.tracemalloc").mkdir()
    cs = CollectorSet(_plan(tmp_path, "heap", "block"))
    cs.arm()
    cs.drain()

    snaps = [r for r in cs.results if r.operation == "snapshot"]
    assert [(r.kind, r.ok) for r in snaps] == [("heap", False), ("block", True)]
    assert snaps[0].error
    assert (tmp_path / "block.prof").is_file()


def test_drain_stops_before_snapshots_in_canonical_order(tmp_path: Path) -> None:
    cs = CollectorSet(_plan(tmp_path, *KINDS))
    cs.arm()
    cs.start_continuous()
    time.sleep(0.05)
    cs.drain()

    ops = [(r.kind, r.operation) for r in cs.results if r.operation in ("start", "stop", "snapshot")]
    assert ops == [
        ("cpu", "start"),
        ("cpu", "stop"),
        ("heap", "snapshot"),
        ("goroutine", "snapshot"),
        ("block", "snapshot"),
        ("mutex", "snapshot"),
        ("allocs", "snapshot"),
    ]
    assert all(r.ok for r in cs.results)

    cpu_closed = (tmp_path / "cpu.prof").stat().st_mtime_ns
    for name in ("heap.tracemalloc", "live-stacks.txt", "block.prof", "mutex.prof", "allocs.tracemalloc"):
        assert (tmp_path / name).stat().st_mtime_ns >= cpu_closed


def test_stop_takes_effect_once(tmp_path: Path) -> None:
    cs = CollectorSet(_plan(tmp_path, "cpu"))
    cs.arm()
    cs.start_continuous()
    cs.stop_continuous()
    cs.stop_continuous()
    cs.drain()
    assert [r.operation for r in cs.results] == ["start", "stop"]


def test_arm_applies_rates_before_workload(tmp_path: Path) -> None:
    plan = CollectionPlan(output_dir=tmp_path, enabled={"block", "mutex"}, rates={"block": 500, "mutex": 4})
    CollectorSet(plan).arm()
    assert runtime.block_profile.rate == 500
    assert runtime.mutex_profile.rate == 4


def test_allocs_share_heap_rate(tmp_path: Path) -> None:
    plan = CollectionPlan(output_dir=tmp_path, enabled={"allocs"}, rates={"heap": 3})
    assert rate_for(plan, "allocs") == 3
    assert rate_for(plan, "block") is None


def test_arm_removes_only_stale_owned_files(tmp_path: Path) -> None:
    (tmp_path / "cpu.prof").write_bytes(b"old")
    (tmp_path / MANIFEST_NAME).write_text("{}")
    (tmp_path / "notes.txt").write_text("keep me")
    CollectorSet(_plan(tmp_path, "heap")).arm()
    assert not (tmp_path / "cpu.prof").exists()
    assert not (tmp_path / MANIFEST_NAME).exists()
    assert (tmp_path / "notes.txt").read_text() == "keep me"


def test_disabled_plan_touches_nothing(tmp_path: Path) -> None:
    with CollectionSession(CollectionPlan.disabled()) as session:
        pass
    assert session.outcome is not None
    assert session.outcome.results == []
    assert list(tmp_path.iterdir()) == []


def test_session_writes_artifacts_and_report(tmp_path: Path) -> None:
    with CollectionSession(_plan(tmp_path, "cpu", "heap", "mutex")) as session:
        lock = runtime.ProfiledLock()
        with lock:
            data = [str(i) * 10 for i in range(1000)]
    del data

    assert session.outcome is not None
    assert session.outcome.exit_code == 0
    assert not session.outcome.failures
    for name in ("cpu.prof", "heap.tracemalloc", "mutex.prof", README_NAME):
        assert (tmp_path / name).is_file()
    manifest = json.loads((tmp_path / MANIFEST_NAME).read_text())
    validate_manifest(manifest)
    assert [a["kind"] for a in manifest["artifacts"]] == ["cpu", "heap", "mutex"]
    assert manifest["run"]["command"] == ["<in-process>"]


def test_session_reports_failure_of_body_and_still_drains(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        with CollectionSession(_plan(tmp_path, "goroutine")) as session:
            raise RuntimeError("boom")
    assert session.outcome is not None
    assert session.outcome.exit_code == 1
    assert (tmp_path / "live-stacks.txt").is_file()
