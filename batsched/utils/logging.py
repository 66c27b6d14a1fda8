"""Logging sinks for a scheduling run."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List

from loguru import logger

from batsched.config.settings import LoggingSettings

__all__ = ["STDERR_FORMAT", "FILE_FORMAT", "configure_logging", "reset_logging"]

STDERR_FORMAT = "{level} | <level>{message}</level> "
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {module}:{line} - {message}"
)


def configure_logging(log_dir: Path, settings: LoggingSettings | None = None) -> List[int]:
    """
    Replace the default sinks with the run's stderr and file sinks.

    ``<log_dir>/<main_log>`` receives DEBUG and above, ``<log_dir>/<error_log>``
    ERROR and above. The stderr sink is DEBUG when ``settings.verbose``,
    INFO otherwise.

    Returns
    -------
    list of int
        loguru sink ids, usable with :func:`reset_logging`.
    """
    settings = settings or LoggingSettings()
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()
    ids = [
        logger.add(
            sys.stderr,
            format=STDERR_FORMAT,
            level="DEBUG" if settings.verbose else "INFO",
        ),
        logger.add(log_dir / settings.main_log, format=FILE_FORMAT, level="DEBUG"),
        logger.add(log_dir / settings.error_log, format=FILE_FORMAT, level="ERROR"),
    ]
    logger.debug(f"Logging to {log_dir / settings.main_log}")
    return ids


def reset_logging() -> None:
    """Back to the package default: a single INFO stderr sink."""
    logger.remove()
    logger.add(sys.stderr, format=STDERR_FORMAT, level="INFO")
