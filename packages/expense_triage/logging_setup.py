"""Logging for the ``expense_triage`` package.

- :func:`configure_logging` is called once by entrypoints (the CLI). It puts a
  single stderr handler on the ``"expense_triage"`` logger and turns down the
  HTTP and SQL loggers that would otherwise drown out workflow events.
- :func:`get_logger` is what library modules use. Until an entrypoint
  configures logging, records go to a ``NullHandler``.

Workflow modules log ``event key=value ...`` lines, e.g.
``categorize:done batch_id=... transaction_id=... kind=queued``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "expense_triage"
_LEVEL_ENV = "EXPENSE_TRIAGE_LOG_LEVEL"
# The substrate may run handlers on worker threads.
_DEFAULT_FORMAT = "%(asctime)s %(threadName)s %(name)s %(levelname)s %(message)s"
_NOISY_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai", "sqlalchemy.engine")

_configured = False


def resolve_level(level: int | str | None = None) -> int:
    """Turn ``level`` (or ``EXPENSE_TRIAGE_LOG_LEVEL``) into a numeric level.

    Unknown names fall back to ``INFO``.
    """

    if level is None:
        level = os.getenv(_LEVEL_ENV) or logging.INFO
    if isinstance(level, int):
        return level
    text = level.strip().upper()
    if text.isdigit():
        return int(text)
    return logging.getLevelNamesMapping().get(text, logging.INFO)


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str = _DEFAULT_FORMAT,
    stream: IO[str] | None = None,
    quiet_libraries: bool = True,
) -> logging.Logger:
    """Attach the package handler once and return the package logger.

    Parameters
    ----------
    level:
        Level for the package logger; see :func:`resolve_level`.
    fmt:
        Record format for the stderr handler.
    stream:
        Output stream; defaults to ``sys.stderr`` at call time.
    quiet_libraries:
        Raise ``httpx``/``openai``/``sqlalchemy.engine`` loggers to ``WARNING``
        unless the package itself logs at ``DEBUG``.
    """

    global _configured
    logger = logging.getLogger(_PKG_LOGGER_NAME)
    if _configured:
        return logger

    resolved = resolve_level(level)
    for h in [h for h in logger.handlers if isinstance(h, logging.NullHandler)]:
        logger.removeHandler(h)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False

    if quiet_libraries and resolved > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    return logger


def get_logger(name: str) -> logging.Logger:
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _configured and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
