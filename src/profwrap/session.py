from __future__ import annotations

import logging
from collections.abc import Callable
from types import TracebackType

from . import artifacts
from .collectors import ArtifactSink, Collector, CpuCollector, new_collector
from .model import CONTINUOUS_KINDS, KINDS, SNAPSHOT_ORDER, CollectionPlan, CollectorKind, CollectorResult, Operation, RunOutcome

logger = logging.getLogger(__name__)


def rate_for(plan: CollectionPlan, kind: CollectorKind) -> int | None:
    # Allocation snapshots share the heap's traceback depth.
    if kind == "allocs":
        return plan.rates.get("heap")
    return plan.rates.get(kind)


class CollectorSet:
    """The collectors of one run and the record of every call made on them.

    Any exception raised by a collector is caught here and becomes a failed
    `CollectorResult`; it never reaches the caller.
    """

    def __init__(self, plan: CollectionPlan) -> None:
        self.plan = plan
        self.results: list[CollectorResult] = []
        self.collectors: dict[CollectorKind, Collector] = {}
        self._running: list[CpuCollector] = []
        self._armed = False

    def _call(self, kind: CollectorKind, operation: Operation, fn: Callable[[], None], *, artifact: bool = False) -> bool:
        path = self.plan.artifact_path(kind) if artifact else None
        try:
            fn()
        except Exception as e:
            logger.warning("%s collector failed to %s: %s", kind, operation, e)
            self.results.append(CollectorResult(kind=kind, operation=operation, ok=False, artifact=path, error=str(e)))
            return False
        self.results.append(CollectorResult(kind=kind, operation=operation, ok=True, artifact=path))
        return True

    def arm(self) -> None:
        """Construct collectors and apply process-wide rates (before any workload)."""
        if self._armed:
            return
        self._armed = True
        if not self.plan.is_enabled:
            return
        artifacts.clean_stale_artifacts(self.plan.output_dir)  # type: ignore[arg-type]
        for kind in self.plan.enabled_in_order(KINDS):
            try:
                collector = new_collector(
                    kind,
                    rate_for(self.plan, kind),
                    duration=self.plan.cpu_duration,
                    interval=self.plan.cpu_interval,
                )
            except Exception as e:
                logger.warning("Cannot create %s collector: %s", kind, e)
                self.results.append(CollectorResult(kind=kind, operation="arm", ok=False, error=str(e)))
                continue
            self.collectors[kind] = collector
            apply_rate = getattr(collector, "apply_rate", None)
            if apply_rate is not None:
                self._call(kind, "arm", apply_rate)

    def start_continuous(self) -> None:
        for kind in self.plan.enabled_in_order(CONTINUOUS_KINDS):
            collector = self.collectors.get(kind)
            if not isinstance(collector, CpuCollector):
                continue
            sink = ArtifactSink(self.plan.artifact_path(kind))
            if self._call(kind, "start", lambda: collector.start(sink)):
                self._running.append(collector)

    def stop_continuous(self) -> None:
        """Stop running collectors, most recently started first."""
        while self._running:
            collector = self._running.pop()
            self._call(collector.kind, "stop", collector.stop, artifact=True)

    def take_snapshots(self) -> None:
        for kind in self.plan.enabled_in_order(SNAPSHOT_ORDER):
            collector = self.collectors.get(kind)
            snapshot = getattr(collector, "snapshot", None)
            if snapshot is None:
                continue
            sink = ArtifactSink(self.plan.artifact_path(kind))
            self._call(kind, "snapshot", lambda: snapshot(sink), artifact=True)

    def drain(self) -> None:
        self.stop_continuous()
        self.take_snapshots()


class CollectionSession:
    """Collect profiles around an in-process block of code.

    Runs the same arm/start/drain sequence as `supervise()`, with the `with`
    body standing in for the child process::

        plan = settings.resolve(os.environ)
        with CollectionSession(plan) as session:
            workload()
        print(session.outcome.failures)
    """

    def __init__(self, plan: CollectionPlan, *, label: str = "<in-process>") -> None:
        self.plan = plan
        self.label = label
        self.collectors = CollectorSet(plan)
        self.outcome: RunOutcome | None = None
        self._started_at = ""

    def __enter__(self) -> "CollectionSession":
        self._started_at = artifacts.utc_now_iso()
        self.collectors.arm()
        self.collectors.start_continuous()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.collectors.drain()
        self.outcome = RunOutcome(
            command=[self.label],
            started_at=self._started_at,
            finished_at=artifacts.utc_now_iso(),
            exit_code=0 if exc_type is None else 1,
            results=list(self.collectors.results),
        )
        artifacts.write_run_report(self.plan, self.outcome)
