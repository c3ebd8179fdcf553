from __future__ import annotations

import io
import logging

import pytest

from expense_triage import logging_setup


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("debug", logging.DEBUG), (" WARNING ", logging.WARNING), ("15", 15), ("nope", logging.INFO)],
)
def test_resolve_level(raw: str, expected: int) -> None:
    assert logging_setup.resolve_level(raw) == expected


def test_resolve_level_reads_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXPENSE_TRIAGE_LOG_LEVEL", "error")
    assert logging_setup.resolve_level() == logging.ERROR


def test_configure_once_and_quiet_http_loggers(monkeypatch: pytest.MonkeyPatch) -> None:
    pkg = logging.getLogger("expense_triage")
    monkeypatch.setattr(logging_setup, "_configured", False)
    monkeypatch.setattr(pkg, "handlers", [])
    monkeypatch.setattr(pkg, "propagate", True)
    monkeypatch.setattr(pkg, "level", pkg.level)
    monkeypatch.setattr(logging.getLogger("httpx"), "level", logging.NOTSET)
    stream = io.StringIO()

    logger = logging_setup.configure_logging("INFO", stream=stream)
    logging_setup.configure_logging("DEBUG", stream=io.StringIO())
    logging_setup.get_logger("expense_triage.workflows.test").info("categorize:done kind=queued")

    assert logger is pkg
    assert len(pkg.handlers) == 1
    assert "categorize:done kind=queued" in stream.getvalue()
    assert logging.getLogger("httpx").level == logging.WARNING
