# ruff: noqa: I001
"""Alembic environment for the expense-triage tables.

The URL comes from ``DATABASE_URL`` (a workspace ``.env`` is honored) and
falls back to ``sqlalchemy.url`` in ``alembic.ini``. Only ``et_*`` tables are
compared during autogenerate, and the revision table is ``et_alembic_version``
so the schema can live next to other applications in one database.
"""

from __future__ import annotations

import os
from logging.config import fileConfig
from typing import Any

from alembic import context
from dotenv import find_dotenv, load_dotenv
from sqlalchemy import engine_from_config, pool

import db as _db_pkg

_TABLE_PREFIX = "et_"
_VERSION_TABLE = "et_alembic_version"

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = _db_pkg.metadata


def _resolve_url() -> str:
    env_file = find_dotenv(usecwd=True)
    if env_file:
        load_dotenv(env_file, override=False)
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set; export it or set sqlalchemy.url in alembic.ini"
        )
    return url


def _include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any):
    if type_ == "table":
        return bool(name) and name.startswith(_TABLE_PREFIX)
    return True


def _configure_kwargs(url: str) -> dict[str, Any]:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "include_object": _include_object,
        "version_table": _VERSION_TABLE,
        # SQLite cannot ALTER constraints in place.
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline(url: str) -> None:
    context.configure(url=url, literal_binds=True, **_configure_kwargs(url))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online(url: str) -> None:
    section = dict(config.get_section(config.config_ini_section) or {})
    section["sqlalchemy.url"] = url
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(url))
        with context.begin_transaction():
            context.run_migrations()


_url = _resolve_url()
if context.is_offline_mode():
    run_migrations_offline(_url)
else:
    run_migrations_online(_url)
