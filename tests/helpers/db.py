"""DB helpers for tests: bootstrap a temporary SQLite DB and seed rows."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from db import Base
from db.client import get_engine, session_scope
from db.models.triage import EtOutcomeLog
from sqlalchemy import select

from expense_triage.persistence import (
    create_batch_run,
    save_resolution,
    transaction_from_record,
    upsert_transactions,
)
from expense_triage.taxonomy import ensure_node, seed_default_taxonomy


def bootstrap_sqlite_db(db_file: Path) -> str:
    """Create a SQLite database file, initialize schema and the default taxonomy.

    Using a file-backed SQLite DB ensures multiple SQLAlchemy connections share
    the same state (in-memory DBs are per-connection by default).
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=get_engine(database_url=url))
    with session_scope(database_url=url) as session:
        seed_default_taxonomy(session)
    return url


def record(
    description: str,
    amount: str,
    *,
    label: str = "Blue Bottle",
    date: str = "2025-03-01",
    **extra: Any,
) -> dict[str, Any]:
    """Build one raw ingestion record."""

    return {
        "date": date,
        "amount": amount,
        "description": description,
        "counterpartyLabel": label,
        **extra,
    }


def add_node(database_url: str, name: str, *, parent_id: str | None = None) -> str:
    with session_scope(database_url=database_url) as session:
        node, _created = ensure_node(session, name=name, parent_id=parent_id)
    return node.id


def add_resolved_transaction(
    database_url: str,
    *,
    label: str,
    description: str,
    node_id: str,
    amount: str = "10.00",
    date: str = "2025-01-15",
    batch_id: str = "history",
) -> str:
    """Persist a transaction that already carries an ``auto`` Resolution."""

    tx = transaction_from_record(
        record(description, amount, label=label, date=date), batch_id=batch_id
    )
    with session_scope(database_url=database_url) as session:
        upsert_transactions(session, [tx])
        save_resolution(
            session,
            transaction_id=tx.id,
            node_id=node_id,
            confidence=0.95,
            reasoning="seeded",
            source="auto",
        )
    return tx.id


def add_batch(database_url: str, batch_id: str, records: list[dict[str, Any]]) -> list[str]:
    """Persist a batch run and its transactions without dispatching any work."""

    txs = [transaction_from_record(r, batch_id=batch_id) for r in records]
    with session_scope(database_url=database_url) as session:
        create_batch_run(session, batch_id=batch_id, total_items=len(txs))
        upsert_transactions(session, txs)
    return [tx.id for tx in txs]


def outcome_kinds(database_url: str, batch_id: str) -> dict[str, str]:
    """Return ``{transaction_id: kind}`` from the durable outcome log."""

    with session_scope(database_url=database_url) as session:
        rows = session.execute(
            select(EtOutcomeLog.transaction_id, EtOutcomeLog.kind).where(
                EtOutcomeLog.batch_id == batch_id
            )
        ).all()
    return {tx_id: kind for tx_id, kind in rows}
