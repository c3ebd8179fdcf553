# ruff: noqa: E402, I001
"""Pytest configuration for test isolation.

Every test that needs storage gets its own file-backed SQLite database under
``tmp_path`` (schema created from the ORM metadata and seeded with the default
taxonomy). Engines are cached per URL by ``db.client``, so they are disposed
after each test to release file handles.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Make the workspace packages importable without an editable install.
_ROOT = Path(__file__).resolve().parents[1]
_PATHS = [_ROOT / "packages", _ROOT / "libs" / "db" / "src", _ROOT]
sys.path[:0] = [str(p) for p in _PATHS if str(p) not in sys.path]

from db.client import dispose_engines

from tests.helpers.db import bootstrap_sqlite_db


@pytest.fixture
def db_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    url = bootstrap_sqlite_db(tmp_path / "triage.db")
    monkeypatch.setenv("DATABASE_URL", url)
    yield url
    dispose_engines()
