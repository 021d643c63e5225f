"""
Process-wide profiling knobs and instrumentation points.

The interpreter has no built-in blocking or lock-contention sampler, so this
module keeps one registry per concern for the whole process:

- `blocking()` wraps a wait (child process, thread join, ...) and records it in
  the blocking profile.
- `ProfiledLock` is a drop-in `threading.Lock` that records contended acquires
  in the lock-contention profile.
- the heap knob is the traceback depth given to `tracemalloc.start()`.

Rates are applied once, before the measured workload starts. A workload that
ran before a rate was applied is under-sampled; nothing corrects for that.
"""

from __future__ import annotations

import contextlib
import logging
import random
import sys
import threading
import time
import tracemalloc
from abc import ABC, abstractmethod
from collections.abc import Iterator
from types import FrameType

from .stackprof import Stack, StackProfile, frame_stack, pseudo_func

logger = logging.getLogger(__name__)

DEFAULT_HEAP_TRACE_DEPTH = 16
DEFAULT_BLOCK_RATE_NS = 1
DEFAULT_MUTEX_FRACTION = 1

_SKIP_FILES = {__file__, contextlib.__file__}


def _caller_stack(frame: FrameType | None) -> Stack:
    while frame is not None and frame.f_code.co_filename in _SKIP_FILES:
        frame = frame.f_back
    return frame_stack(frame)


class EventProfile(ABC):
    """Sampled wait events keyed by the waiting stack."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._profile = StackProfile()
        self._rate = 0
        self._rng = random.Random()

    @property
    def rate(self) -> int:
        return self._rate

    @property
    def enabled(self) -> bool:
        return self._rate > 0

    def set_rate(self, rate: int) -> None:
        self._rate = max(0, int(rate))

    @abstractmethod
    def weigh(self, delay_ns: int) -> tuple[int, float] | None:
        """Return (count, seconds) to record for one event, or None to drop it."""

    def record(self, stack: Stack, delay_ns: int, *, label: str) -> bool:
        weight = self.weigh(delay_ns)
        if weight is None:
            return False
        count, seconds = weight
        with self._lock:
            self._profile.add((*stack, pseudo_func(label)), count=count, seconds=seconds)
        return True

    def snapshot(self) -> StackProfile:
        with self._lock:
            return self._profile.copy()

    def clear(self) -> None:
        with self._lock:
            self._profile = StackProfile()


class BlockProfile(EventProfile):
    """Rate is in nanoseconds: waits at least that long are always kept,
    shorter ones with probability delay/rate and scaled up to the rate."""

    def weigh(self, delay_ns: int) -> tuple[int, float] | None:
        rate = self._rate
        if rate <= 0:
            return None
        if delay_ns >= rate:
            return 1, delay_ns / 1e9
        if self._rng.random() * rate >= delay_ns:
            return None
        return 1, rate / 1e9


class MutexProfile(EventProfile):
    """On average one in `rate` contention events is kept, scaled by `rate`."""

    def weigh(self, delay_ns: int) -> tuple[int, float] | None:
        rate = self._rate
        if rate <= 0:
            return None
        if rate > 1 and self._rng.randrange(rate) != 0:
            return None
        return rate, rate * delay_ns / 1e9


block_profile = BlockProfile("block")
mutex_profile = MutexProfile("mutex")


def set_block_profile_rate(rate: int) -> None:
    block_profile.set_rate(rate)
    logger.info("Blocking sampling rate: %d ns", block_profile.rate)


def set_mutex_profile_fraction(fraction: int) -> None:
    mutex_profile.set_rate(fraction)
    logger.info("Lock-contention sampling fraction: 1/%d", mutex_profile.rate)


def set_heap_trace_depth(depth: int) -> None:
    """Start tracemalloc with `depth` frames per allocation.

    If tracing is already active its depth cannot change; the existing depth
    is kept.
    """
    if tracemalloc.is_tracing():
        current = tracemalloc.get_traceback_limit()
        if current != depth:
            logger.warning("tracemalloc already tracing with depth %d; requested %d ignored", current, depth)
        return
    tracemalloc.start(depth)
    logger.info("Heap trace depth: %d frames", depth)


@contextlib.contextmanager
def blocking(label: str = "wait") -> Iterator[None]:
    """Record the time spent inside the block as a blocking event."""
    if not block_profile.enabled:
        yield
        return
    stack = _caller_stack(sys._getframe(1))
    start = time.perf_counter_ns()
    try:
        yield
    finally:
        block_profile.record(stack, time.perf_counter_ns() - start, label=label)


class ProfiledLock:
    """`threading.Lock` that reports contended acquires to the mutex profile."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        if self._lock.acquire(False):
            return True
        if not blocking:
            return False
        start = time.perf_counter_ns()
        acquired = self._lock.acquire(True, timeout)
        if mutex_profile.enabled:
            mutex_profile.record(_caller_stack(sys._getframe(1)), time.perf_counter_ns() - start, label="lock wait")
        return acquired

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, *exc: object) -> None:
        self.release()
