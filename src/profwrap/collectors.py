"""
The collector catalog.

Every collector has one of two shapes:

- continuous (`cpu`): `start(sink)` begins sampling, `stop()` finalizes the
  artifact. `stop()` is idempotent and tolerates a self-expired duration.
- point-in-time (everything else): `snapshot(sink)` captures current state.

`new_collector()` is the only constructor the supervisor uses. Collectors
raise `CollectorError` subclasses and never touch another kind's state.
"""

from __future__ import annotations

import faulthandler
import gc
import logging
import math
import pickle
import sys
import threading
import time
import tracemalloc
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Protocol, runtime_checkable

import attrs

from . import runtime
from .errors import AlreadyRunning, CollectorError, SinkUnavailable, SnapshotFailed
from .model import CollectorKind
from .stackprof import StackProfile, frame_stack

logger = logging.getLogger(__name__)

DEFAULT_CPU_INTERVAL_S = 0.01

# Frames that only describe tracemalloc's own bookkeeping or import machinery.
_HEAP_FILTERS = (
    tracemalloc.Filter(False, "<frozen importlib._bootstrap>"),
    tracemalloc.Filter(False, "<frozen importlib._bootstrap_external>"),
    tracemalloc.Filter(False, "<unknown>"),
    tracemalloc.Filter(False, tracemalloc.__file__),
)


@attrs.define(frozen=True, slots=True)
class ArtifactSink:
    """Destination for exactly one collector's artifact."""

    path: Path

    def open(self) -> IO[bytes]:
        try:
            return self.path.open("wb")
        except OSError as e:
            raise SinkUnavailable(self.path, e.strerror or str(e)) from e


@runtime_checkable
class ContinuousCollector(Protocol):
    kind: CollectorKind

    def start(self, sink: ArtifactSink) -> None: ...

    def stop(self) -> None: ...


@runtime_checkable
class SnapshotCollector(Protocol):
    kind: CollectorKind

    def snapshot(self, sink: ArtifactSink) -> None: ...


class CpuCollector:
    """Samples the stacks of all interpreter threads on a background thread.

    Each sample is charged `interval` seconds of time. With `duration` set the
    sampler stops on its own after that long and writes the artifact itself.
    """

    kind: CollectorKind = "cpu"

    def __init__(self, *, interval: float = DEFAULT_CPU_INTERVAL_S, duration: float | None = None) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if duration is not None and not (math.isfinite(duration) and duration > 0):
            raise ValueError("duration must be a positive number of seconds")
        self.interval = interval
        self.duration = duration
        self.self_stopped = False
        self._profile = StackProfile()
        self._state_lock = runtime.ProfiledLock()
        self._halt = threading.Event()
        self._thread: threading.Thread | None = None
        self._fp: IO[bytes] | None = None
        self._started = False
        self._finished = False
        self._error: BaseException | None = None

    @property
    def running(self) -> bool:
        return self._started and not self._finished

    @property
    def sample_count(self) -> int:
        return self._profile.sample_count

    def start(self, sink: ArtifactSink) -> None:
        with self._state_lock:
            if self._started:
                raise AlreadyRunning("CPU collector already started")
            self._fp = sink.open()
            self._started = True
        self._thread = threading.Thread(target=self._run, name="profwrap-cpu-sampler", daemon=True)
        self._thread.start()
        logger.info("CPU sampling started (interval %.1f ms)", self.interval * 1000)

    def _run(self) -> None:
        deadline = None if self.duration is None else time.monotonic() + self.duration
        own_ident = threading.get_ident()
        while True:
            wait = self.interval
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - time.monotonic()))
            if self._halt.wait(wait):
                return
            frames = sys._current_frames()
            for ident, frame in frames.items():
                if ident != own_ident:
                    self._profile.add(frame_stack(frame), seconds=self.interval)
            del frames
            if deadline is not None and time.monotonic() >= deadline:
                self.self_stopped = True
                self._finish()
                logger.info("CPU sampling reached its %.3f s duration", self.duration)
                return

    def _finish(self) -> None:
        """Write and close the artifact once; later calls do nothing."""
        with self._state_lock:
            if self._finished or self._fp is None:
                return
            fp, self._fp = self._fp, None
            try:
                self._profile.dump(fp)
                fp.flush()
            except (OSError, ValueError) as e:
                self._error = e
            finally:
                fp.close()
                self._finished = True

    def stop(self) -> None:
        if not self._started:
            return
        self._halt.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            with runtime.blocking("cpu sampler join"):
                thread.join()
        already = self._finished
        self._finish()
        if self._error is not None:
            err, self._error = self._error, None
            raise CollectorError(f"Failed to write CPU profile: {err}") from err
        if not already:
            logger.info("CPU profiling finished (%d samples)", self.sample_count)


class _SnapshotBase(ABC):
    kind: CollectorKind

    def snapshot(self, sink: ArtifactSink) -> None:
        fp = sink.open()
        try:
            self._write(fp)
            fp.flush()
        except CollectorError:
            raise
        except Exception as e:
            raise SnapshotFailed(f"{self.kind} snapshot failed: {e}") from e
        finally:
            fp.close()
        logger.info("%s snapshot written: %s", self.kind, sink.path)

    @abstractmethod
    def _write(self, fp: IO[bytes]) -> None: ...


class _TracemallocSnapshot(_SnapshotBase):
    filters: tuple[tracemalloc.Filter, ...] = ()

    def __init__(self, *, depth: int | None = None) -> None:
        self.depth = depth or runtime.DEFAULT_HEAP_TRACE_DEPTH

    def apply_rate(self) -> None:
        runtime.set_heap_trace_depth(self.depth)

    def _write(self, fp: IO[bytes]) -> None:
        if not tracemalloc.is_tracing():
            logger.warning("tracemalloc was not tracing; %s snapshot only covers allocations from now on", self.kind)
            runtime.set_heap_trace_depth(self.depth)
        gc.collect()
        snap = tracemalloc.take_snapshot()
        if self.filters:
            snap = snap.filter_traces(self.filters)
        # Same layout as tracemalloc.Snapshot.dump(), so Snapshot.load() reads it.
        pickle.dump(snap, fp, pickle.HIGHEST_PROTOCOL)


class HeapCollector(_TracemallocSnapshot):
    kind: CollectorKind = "heap"
    filters = _HEAP_FILTERS


class AllocsCollector(_TracemallocSnapshot):
    kind: CollectorKind = "allocs"


class LiveStacksCollector(_SnapshotBase):
    kind: CollectorKind = "goroutine"

    def _write(self, fp: IO[bytes]) -> None:
        # faulthandler writes straight to the file descriptor.
        fp.flush()
        faulthandler.dump_traceback(file=fp, all_threads=True)


class _EventSnapshot(_SnapshotBase):
    registry: runtime.EventProfile
    default_rate: int

    def __init__(self, *, rate: int | None = None) -> None:
        self.rate = rate or self.default_rate

    @abstractmethod
    def apply_rate(self) -> None: ...

    def _write(self, fp: IO[bytes]) -> None:
        self.registry.snapshot().dump(fp)


class BlockCollector(_EventSnapshot):
    kind: CollectorKind = "block"
    registry = runtime.block_profile
    default_rate = runtime.DEFAULT_BLOCK_RATE_NS

    def apply_rate(self) -> None:
        runtime.set_block_profile_rate(self.rate)


class MutexCollector(_EventSnapshot):
    kind: CollectorKind = "mutex"
    registry = runtime.mutex_profile
    default_rate = runtime.DEFAULT_MUTEX_FRACTION

    def apply_rate(self) -> None:
        runtime.set_mutex_profile_fraction(self.rate)


Collector = CpuCollector | HeapCollector | AllocsCollector | LiveStacksCollector | BlockCollector | MutexCollector


def new_collector(
    kind: CollectorKind,
    rate: int | None = None,
    *,
    duration: float | None = None,
    interval: float = DEFAULT_CPU_INTERVAL_S,
) -> Collector:
    """Build a fresh collector; instances are never reused across runs."""
    if kind == "cpu":
        return CpuCollector(interval=interval, duration=duration)
    if kind == "heap":
        return HeapCollector(depth=rate)
    if kind == "allocs":
        return AllocsCollector(depth=rate)
    if kind == "goroutine":
        return LiveStacksCollector()
    if kind == "block":
        return BlockCollector(rate=rate)
    if kind == "mutex":
        return MutexCollector(rate=rate)
    raise ValueError(f"Unknown collector kind: {kind!r}")
