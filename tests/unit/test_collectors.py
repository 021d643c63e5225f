from __future__ import annotations

import marshal
import pstats
import time
import tracemalloc
from collections.abc import Iterator
from pathlib import Path

import pytest

from profwrap import collectors, runtime
from profwrap.collectors import (
    AllocsCollector,
    ArtifactSink,
    BlockCollector,
    ContinuousCollector,
    CpuCollector,
    HeapCollector,
    LiveStacksCollector,
    MutexCollector,
    SnapshotCollector,
    new_collector,
)
from profwrap.errors import AlreadyRunning, SinkUnavailable


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


def _burn(seconds: float) -> int:
    end = time.perf_counter() + seconds
    n = 0
    while time.perf_counter() < end:
        n += 1
    return n


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_sink_open_reports_unavailable(tmp_path: Path) -> None:
    with pytest.raises(SinkUnavailable):
        ArtifactSink(tmp_path / "missing" / "cpu.prof").open()


def test_cpu_collector_writes_pstats(tmp_path: Path) -> None:
    path = tmp_path / "cpu.prof"
    c = CpuCollector(interval=0.005)
    c.start(ArtifactSink(path))
    _burn(0.2)
    c.stop()

    assert c.sample_count > 0
    st = pstats.Stats(str(path))
    assert any(func[2] == "_burn" for func in st.stats)


def test_cpu_collector_stop_is_idempotent(tmp_path: Path) -> None:
    path = tmp_path / "cpu.prof"
    c = CpuCollector(interval=0.005)
    c.stop()
    assert not path.exists()

    c.start(ArtifactSink(path))
    _burn(0.05)
    c.stop()
    first = path.read_bytes()
    mtime = path.stat().st_mtime_ns
    _burn(0.05)
    c.stop()
    c.stop()
    assert path.read_bytes() == first
    assert path.stat().st_mtime_ns == mtime
    assert not c.running


def test_cpu_collector_rejects_second_start(tmp_path: Path) -> None:
    c = CpuCollector(interval=0.005)
    c.start(ArtifactSink(tmp_path / "cpu.prof"))
    try:
        with pytest.raises(AlreadyRunning):
            c.start(ArtifactSink(tmp_path / "cpu2.prof"))
    finally:
        c.stop()
    assert not (tmp_path / "cpu2.prof").exists()


def test_cpu_collector_unopenable_sink_leaves_it_stopped(tmp_path: Path) -> None:
    c = CpuCollector()
    with pytest.raises(SinkUnavailable):
        c.start(ArtifactSink(tmp_path / "nope" / "cpu.prof"))
    assert not c.running
    c.stop()


def test_cpu_collector_self_stops_after_duration(tmp_path: Path) -> None:
    path = tmp_path / "cpu.prof"
    c = CpuCollector(interval=0.005, duration=0.05)
    c.start(ArtifactSink(path))
    assert _wait_until(lambda: not c.running)
    assert c.self_stopped
    assert path.stat().st_size > 0
    c.stop()
    assert c.self_stopped


def test_cpu_collector_rejects_bad_interval() -> None:
    with pytest.raises(ValueError):
        CpuCollector(interval=0)


@pytest.mark.parametrize("duration", [float("nan"), float("inf"), 0.0, -1.0])
def test_cpu_collector_rejects_unusable_duration(duration: float) -> None:
    with pytest.raises(ValueError):
        CpuCollector(duration=duration)


def test_heap_snapshot_is_loadable(tmp_path: Path) -> None:
    c = HeapCollector(depth=4)
    c.apply_rate()
    keep = [bytearray(1024) for _ in range(100)]
    path = tmp_path / "heap.tracemalloc"
    c.snapshot(ArtifactSink(path))
    snap = tracemalloc.Snapshot.load(str(path))
    assert snap.traceback_limit >= 1
    assert len(snap.traces) > 0
    del keep


def test_allocs_snapshot_without_rate_still_writes(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    if tracemalloc.is_tracing():
        pytest.skip("tracemalloc already active in this interpreter")
    path = tmp_path / "allocs.tracemalloc"
    AllocsCollector().snapshot(ArtifactSink(path))
    assert isinstance(tracemalloc.Snapshot.load(str(path)), tracemalloc.Snapshot)
    assert any("not tracing" in r.getMessage() for r in caplog.records)


def test_live_stacks_lists_current_thread(tmp_path: Path) -> None:
    path = tmp_path / "live-stacks.txt"
    LiveStacksCollector().snapshot(ArtifactSink(path))
    text = path.read_text()
    assert "test_live_stacks_lists_current_thread" in text


def test_block_snapshot_contains_recorded_waits(tmp_path: Path) -> None:
    c = BlockCollector()
    c.apply_rate()
    with runtime.blocking("sleep"):
        time.sleep(0.01)
    path = tmp_path / "block.prof"
    c.snapshot(ArtifactSink(path))
    st = pstats.Stats(str(path))
    assert ("~", 0, "<sleep>") in st.stats


def test_mutex_snapshot_without_events_is_empty_profile(tmp_path: Path) -> None:
    c = MutexCollector(rate=3)
    c.apply_rate()
    assert runtime.mutex_profile.rate == 3
    path = tmp_path / "mutex.prof"
    c.snapshot(ArtifactSink(path))
    with path.open("rb") as f:
        assert marshal.load(f) == {}


def test_snapshot_into_directory_fails_cleanly(tmp_path: Path) -> None:
    target = tmp_path / "heap.tracemalloc"
    target.mkdir()
    with pytest.raises(SinkUnavailable):
        HeapCollector().snapshot(ArtifactSink(target))


def test_new_collector_dispatches_on_kind() -> None:
    cpu = new_collector("cpu", duration=1.5, interval=0.02)
    assert isinstance(cpu, CpuCollector)
    assert cpu.duration == 1.5
    assert isinstance(cpu, ContinuousCollector)
    assert not isinstance(cpu, SnapshotCollector)

    for kind, cls in [
        ("heap", HeapCollector),
        ("goroutine", LiveStacksCollector),
        ("block", BlockCollector),
        ("mutex", MutexCollector),
        ("allocs", AllocsCollector),
    ]:
        c = new_collector(kind)  # type: ignore[arg-type]
        assert isinstance(c, cls)
        assert c.kind == kind
        assert isinstance(c, SnapshotCollector)
        assert not isinstance(c, ContinuousCollector)

    assert new_collector("block", 250).rate == 250  # type: ignore[union-attr]
    assert new_collector("heap", 7).depth == 7  # type: ignore[union-attr]

    with pytest.raises(ValueError):
        new_collector("trace")  # type: ignore[arg-type]


def test_default_rates() -> None:
    assert BlockCollector().rate == runtime.DEFAULT_BLOCK_RATE_NS
    assert MutexCollector().rate == runtime.DEFAULT_MUTEX_FRACTION
    assert HeapCollector().depth == runtime.DEFAULT_HEAP_TRACE_DEPTH
    assert collectors.DEFAULT_CPU_INTERVAL_S > 0


def test_snapshot_collectors_must_implement_their_hooks() -> None:
    class NoWriter(collectors._SnapshotBase):
        kind = "heap"

    class NoRate(collectors._EventSnapshot):
        kind = "block"
        registry = runtime.block_profile
        default_rate = 1

    with pytest.raises(TypeError):
        NoWriter()
    with pytest.raises(TypeError):
        NoRate()
