"""
Logging setup for the ibosh command line.
Diagnostics are written to stderr; stdout carries command output only,
since ``ibosh print-env`` is meant to be run through ``eval``.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%H:%M:%S"

# Chatty transport libraries stay at WARNING unless debugging
LIBRARY_LOGGERS = ("urllib3", "docker", "oras")


def setup_logging(level: str = "WARNING", stream=None) -> logging.Logger:
    """
    Configure the root logger for a CLI run.

    Args:
        level: Level name, case-insensitive; unknown names fall back to WARNING
        stream: Output stream, stderr by default

    Returns:
        The ``ibosh`` package logger
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.WARNING

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    logging.basicConfig(level=log_level, handlers=[handler], force=True)

    library_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    return logging.getLogger("ibosh")
