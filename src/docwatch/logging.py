"""Logging for docwatch.

Everything logs under the ``docwatch`` logger tree (``docwatch.poller``,
``docwatch.rules.queue`` ...). ``setup_logging`` attaches handlers once:
a file handler when ``logging.file`` or ``DOCWATCH_LOG`` names a path,
otherwise a stderr handler, but only when stderr is a terminal. A poller
running under a supervisor with no log file stays quiet.

Two extra levels sit around the standard ones: ``VERBOSE`` (15) for
per-document poll detail and ``TRACE`` (5) for per-rule evaluation detail.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from docwatch.config.schema import LoggingConfig

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

LOG_ENV = "DOCWATCH_LOG"
LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"

logger = logging.getLogger("docwatch")

_configured = False

LEVEL_NAMES = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Index is the -v count; anything past the end means TRACE
VERBOSITY_LEVELS = (logging.ERROR, logging.WARNING, logging.INFO, VERBOSE, TRACE)


class _LowercaseLevelFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


def resolve_level(config: LoggingConfig | None) -> int:
    """Effective level for ``config``: ``verbose`` wins over ``level``; INFO by default."""
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        return VERBOSITY_LEVELS[min(max(config.verbose, 0), len(VERBOSITY_LEVELS) - 1)]
    if config.level:
        return LEVEL_NAMES.get(config.level.upper(), logging.INFO)
    return logging.INFO


def _build_handler(config: LoggingConfig | None) -> logging.Handler | None:
    log_path = (config.file if config is not None else None) or os.environ.get(LOG_ENV)
    if log_path:
        try:
            return logging.FileHandler(os.path.expanduser(log_path), encoding="utf-8")
        except OSError as e:
            if sys.stderr.isatty():
                print(f"docwatch: cannot open log file {log_path}: {e}", file=sys.stderr)
    if sys.stderr.isatty():
        return logging.StreamHandler(sys.stderr)
    return None


def setup_logging(config: LoggingConfig | None = None, force: bool = False) -> None:
    """Attach docwatch's handler and level.

    Runs once per process; ``force`` replaces whatever an earlier call set up.
    """
    global _configured
    if _configured and not force:
        return
    _configured = True

    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    level = resolve_level(config)
    logger.setLevel(level)

    handler = _build_handler(config)
    if handler is None:
        return
    handler.setLevel(level)
    handler.setFormatter(_LowercaseLevelFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)


def get_logger(name: str | None = None) -> logging.Logger:
    """``docwatch`` logger, or its ``name`` child (e.g. ``get_logger("poller")``)."""
    return logger.getChild(name) if name else logger
