from __future__ import annotations


class ProfwrapError(Exception):
    """Base class for all profwrap errors."""


class ConfigError(ProfwrapError):
    """Settings could not be turned into a usable collection plan."""


class UnwritableOutputDir(ConfigError):
    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"Output directory is not writable: {path} ({reason})")
        self.path = path
        self.reason = reason


class CollectorError(ProfwrapError):
    """A single collector failed; never fatal to the supervised run."""


class AlreadyRunning(CollectorError):
    pass


class SinkUnavailable(CollectorError):
    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"Cannot open artifact sink {path}: {reason}")
        self.path = path
        self.reason = reason


class SnapshotFailed(CollectorError):
    pass


class SpawnError(ProfwrapError):
    """The wrapped program could not be started at all."""
