from __future__ import annotations

import logging

LOG_FORMAT = "[profwrap] %(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(log_level: str = "INFO") -> None:
    """Configure root logging for the command-line entry point.

    Library code only creates module loggers; configuring handlers is left to
    whoever owns the process.
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")
    logging.basicConfig(level=level, format=LOG_FORMAT)
