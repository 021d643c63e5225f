"""
Resolve key/value settings into a `CollectionPlan`.

Settings arrive as an environment-style mapping (normally `os.environ`, as set
by the IDE run configuration). Unknown keys are ignored so older wrappers keep
working with newer tooling.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from pathlib import Path

from .errors import ConfigError, UnwritableOutputDir
from .model import KINDS, CollectionPlan, CollectorKind

logger = logging.getLogger(__name__)

OUTPUT_DIR_KEY = "PPROF_OUTPUT_DIR"
CPU_DURATION_KEY = "PPROF_CPU_DURATION"
CPU_INTERVAL_KEY = "PPROF_CPU_INTERVAL_MS"

ENABLE_KEYS: dict[CollectorKind, str] = {
    "cpu": "PPROF_ENABLE_CPU",
    "heap": "PPROF_ENABLE_HEAP",
    "goroutine": "PPROF_ENABLE_GOROUTINE",
    "block": "PPROF_ENABLE_BLOCK",
    "mutex": "PPROF_ENABLE_MUTEX",
    "allocs": "PPROF_ENABLE_ALLOCS",
}

RATE_KEYS: dict[CollectorKind, str] = {
    "heap": "PPROF_MEM_RATE",
    "block": "PPROF_BLOCK_RATE",
    "mutex": "PPROF_MUTEX_FRACTION",
}

DEFAULT_CPU_INTERVAL_MS = 10

_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in _TRUE_VALUES


def _parse_positive_int(key: str, value: str | None) -> int | None:
    """Return a positive int, or None (with a warning) when the value is unusable."""
    if value is None or not value.strip():
        return None
    try:
        n = int(value.strip())
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer; using the collector default", key, value)
        return None
    if n <= 0:
        logger.warning("Ignoring %s=%r: must be positive; using the collector default", key, value)
        return None
    return n


def _parse_duration(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number of seconds", CPU_DURATION_KEY, value)
        return None
    if not math.isfinite(seconds):
        logger.warning("Ignoring %s=%r: not a finite number of seconds", CPU_DURATION_KEY, value)
        return None
    if seconds <= 0:
        # The run configuration sends 0 when no cut-off is wanted.
        return None
    return seconds


def ensure_writable_dir(path: Path) -> None:
    """Create `path` if needed and prove it accepts new files."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        probe = path / f".profwrap_write_test_{os.getpid()}"
        probe.write_text("ok")
        probe.unlink()
    except OSError as e:
        raise UnwritableOutputDir(path, e.strerror or str(e)) from e


def resolve(settings: Mapping[str, str]) -> CollectionPlan:
    """Build the plan for one run.

    An absent or empty output directory yields a disabled plan (pass-through
    mode). Raises `UnwritableOutputDir` if the directory cannot be created or
    written.
    """
    raw_dir = (settings.get(OUTPUT_DIR_KEY) or "").strip()
    if not raw_dir:
        logger.debug("%s not set; profiling disabled", OUTPUT_DIR_KEY)
        return CollectionPlan.disabled()

    output_dir = Path(raw_dir).expanduser().resolve()
    ensure_writable_dir(output_dir)

    enabled = [k for k in KINDS if parse_bool(settings.get(ENABLE_KEYS[k]))]

    rates: dict[CollectorKind, int] = {}
    for kind, key in RATE_KEYS.items():
        rate = _parse_positive_int(key, settings.get(key))
        if rate is not None:
            rates[kind] = rate

    interval_ms = _parse_positive_int(CPU_INTERVAL_KEY, settings.get(CPU_INTERVAL_KEY)) or DEFAULT_CPU_INTERVAL_MS

    plan = CollectionPlan(
        output_dir=output_dir,
        enabled=enabled,
        rates=rates,
        cpu_duration=_parse_duration(settings.get(CPU_DURATION_KEY)),
        cpu_interval=interval_ms / 1000.0,
    )
    logger.info("Output directory: %s", output_dir)
    if plan.enabled:
        logger.info("Enabled collectors: %s", ", ".join(k for k in KINDS if k in plan.enabled))
    for kind, rate in sorted(plan.rates.items()):
        logger.info("Sampling rate for %s: %d", kind, rate)
    return plan


def resolve_or_disable(settings: Mapping[str, str]) -> CollectionPlan:
    """Like `resolve`, but a configuration problem only disables profiling."""
    try:
        return resolve(settings)
    except ConfigError as e:
        logger.warning("Profiling disabled: %s", e)
        return CollectionPlan.disabled()
