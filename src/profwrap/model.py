from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

import attrs

CollectorKind = Literal["cpu", "heap", "goroutine", "block", "mutex", "allocs"]
CollectorShape = Literal["continuous", "snapshot"]
Operation = Literal["arm", "start", "stop", "snapshot"]

KINDS: tuple[CollectorKind, ...] = ("cpu", "heap", "goroutine", "block", "mutex", "allocs")
CONTINUOUS_KINDS: tuple[CollectorKind, ...] = ("cpu",)

# Point-in-time collectors always run in this order so artifacts are comparable across runs.
SNAPSHOT_ORDER: tuple[CollectorKind, ...] = ("heap", "goroutine", "block", "mutex", "allocs")

# Kinds whose sampling knob is a process-wide runtime setting.
RATED_KINDS: tuple[CollectorKind, ...] = ("heap", "block", "mutex")

ARTIFACT_NAMES: dict[CollectorKind, str] = {
    "cpu": "cpu.prof",
    "heap": "heap.tracemalloc",
    "goroutine": "live-stacks.txt",
    "block": "block.prof",
    "mutex": "mutex.prof",
    "allocs": "allocs.tracemalloc",
}

DESCRIPTIONS: dict[CollectorKind, str] = {
    "cpu": "wall-clock stack samples of every interpreter thread (pstats format)",
    "heap": "live traced memory after a full GC (tracemalloc snapshot)",
    "goroutine": "stack of every live thread (faulthandler dump)",
    "block": "time spent in instrumented blocking waits (pstats format)",
    "mutex": "wait time on contended ProfiledLock instances (pstats format)",
    "allocs": "all traced allocations after a full GC (tracemalloc snapshot)",
}


def shape_of(kind: CollectorKind) -> CollectorShape:
    return "continuous" if kind in CONTINUOUS_KINDS else "snapshot"


def _frozen_kinds(kinds: Iterable[CollectorKind]) -> frozenset[CollectorKind]:
    return frozenset(kinds)


def _readonly_rates(rates: Mapping[CollectorKind, int]) -> Mapping[CollectorKind, int]:
    return MappingProxyType(dict(rates))


@attrs.define(frozen=True, slots=True)
class CollectionPlan:
    """What to collect for one supervised run.

    A plan without an output directory never enables any collector.
    """

    output_dir: Path | None
    enabled: frozenset[CollectorKind] = attrs.field(factory=frozenset, converter=_frozen_kinds)
    rates: Mapping[CollectorKind, int] = attrs.field(factory=dict, converter=_readonly_rates)
    cpu_duration: float | None = None
    cpu_interval: float = 0.01

    @classmethod
    def disabled(cls) -> "CollectionPlan":
        return cls(output_dir=None)

    @property
    def is_enabled(self) -> bool:
        return self.output_dir is not None and bool(self.enabled)

    def enabled_in_order(self, order: Iterable[CollectorKind]) -> Iterator[CollectorKind]:
        for kind in order:
            if kind in self.enabled:
                yield kind

    def artifact_path(self, kind: CollectorKind) -> Path:
        if self.output_dir is None:
            raise ValueError("Plan has no output directory")
        return self.output_dir / ARTIFACT_NAMES[kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "output_dir": str(self.output_dir) if self.output_dir is not None else None,
            "enabled": [k for k in KINDS if k in self.enabled],
            "rates": {k: v for k, v in sorted(self.rates.items())},
            "cpu_duration_s": self.cpu_duration,
            "cpu_interval_s": self.cpu_interval,
        }


@attrs.define(frozen=True, slots=True)
class CollectorResult:
    kind: CollectorKind
    operation: Operation
    ok: bool
    artifact: Path | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "operation": self.operation,
            "ok": self.ok,
            "artifact": str(self.artifact) if self.artifact is not None else None,
            "error": self.error,
        }


@attrs.define(frozen=True, slots=True)
class RunOutcome:
    command: list[str]
    started_at: str
    finished_at: str
    exit_code: int
    returncode: int | None = None
    signal: int | None = None
    spawn_error: str | None = None
    results: list[CollectorResult] = attrs.field(factory=list)

    @property
    def spawned(self) -> bool:
        return self.spawn_error is None

    @property
    def failures(self) -> list[CollectorResult]:
        return [r for r in self.results if not r.ok]

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": list(self.command),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "exit_code": self.exit_code,
            "returncode": self.returncode,
            "signal": self.signal,
            "spawn_error": self.spawn_error,
            "results": [r.to_dict() for r in self.results],
        }
