# ruff: noqa: I001
"""CLI for the ``expense_triage`` package.

This module exposes callable command handlers (``cmd_*``) and a Typer-based
console interface. Environment variables (``DATABASE_URL``,
``OPENAI_API_KEY`` and the ``EXPENSE_TRIAGE_*`` tunables) are loaded from a
local ``.env`` using ``python-dotenv`` before delegating to command logic.
Business logic lives in ``expense_triage.api`` and ``expense_triage.workflows``.

Handlers print JSON documents to stdout and concise ``Error: ...`` lines to
stderr, returning a process exit code. Handlers that dispatch work wait for it
to settle before printing, whatever ``EXPENSE_TRIAGE_WORKERS`` is set to.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .logging_setup import configure_logging

# Seconds ``process`` waits for a batch to reach categorizationDone.
_DEFAULT_WAIT_SEC = 600.0


# ---- Small module-level helpers used by CLI commands -------------------------


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _load_json_file(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _service(database_url: str | None, *, needs_classifier: bool = False):
    """Build a registered service, failing early when credentials are missing."""

    import os

    from .api import build_service

    if needs_classifier and not os.getenv("OPENAI_API_KEY"):
        raise RuntimeError("OPENAI_API_KEY is not set in the environment.")
    return build_service(database_url=database_url)


# ---- Command handlers ---------------------------------------------------------


def cmd_init_db(*, database_url: str | None) -> int:
    """Create the ``et_*`` tables (when missing) and seed the default taxonomy.

    Production databases are migrated with Alembic (``libs/db/alembic.ini``);
    this command is a convenience for local SQLite files.
    """

    from db import Base
    from db.client import get_engine, session_scope

    from .taxonomy import seed_default_taxonomy

    try:
        Base.metadata.create_all(bind=get_engine(database_url=database_url))
        with session_scope(database_url=database_url) as session:
            inserted = seed_default_taxonomy(session)
    except Exception as e:
        print(f"Error: database initialization failed: {e}", file=sys.stderr)
        return 1
    _print_json({"seededNodes": inserted})
    return 0


def cmd_process(
    input_path: Path,
    *,
    database_url: str | None,
    batch_id: str | None,
    wait_sec: float,
) -> int:
    """Ingest a JSON array of transaction records and categorize them as one batch."""

    try:
        records = _load_json_file(input_path)
    except FileNotFoundError:
        print(f"Error: File not found: {input_path}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as e:
        print(f"Error: Failed to parse JSON: {e}", file=sys.stderr)
        return 1
    if not isinstance(records, list):
        print("Error: input must be a JSON array of transaction records", file=sys.stderr)
        return 1

    try:
        service = _service(database_url, needs_classifier=True)
        started = service.start_batch(records, batch_id=batch_id)
        done = service.await_batch_categorization(started.batch_id, timeout=wait_sec)
        readout = service.batch_status(started.batch_id)
    except Exception as e:
        print(f"Error: processing failed: {e}", file=sys.stderr)
        return 1

    _print_json({"batchId": started.batch_id, **readout.to_wire()})
    if done is None:
        print(
            f"Error: batch {started.batch_id} did not finish categorization within {wait_sec}s",
            file=sys.stderr,
        )
        return 2
    return 0


def cmd_batch_status(batch_id: str, *, database_url: str | None) -> int:
    try:
        readout = _service(database_url).batch_status(batch_id)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json({"batchId": batch_id, **readout.to_wire()})
    return 0


def cmd_list_batches(*, database_url: str | None, status: str | None) -> int:
    try:
        summaries = _service(database_url).list_batches(status=status)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json([s.to_wire() for s in summaries])
    return 0


def cmd_batch_stats(batch_id: str, *, database_url: str | None) -> int:
    try:
        stats = _service(database_url).batch_stats(batch_id)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json(stats.to_wire())
    return 0


def cmd_uncategorized(batch_id: str, *, database_url: str | None) -> int:
    try:
        rows = _service(database_url).uncategorized_transactions(batch_id)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json([r.to_wire() for r in rows])
    return 0


def cmd_compare_batches(first_id: str, second_id: str, *, database_url: str | None) -> int:
    """Print ``second - first`` counters and per-category changes."""

    try:
        comparison = _service(database_url).compare_batches(first_id, second_id)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json(comparison.to_wire())
    return 0


def cmd_review_list(
    *, database_url: str | None, batch_id: str | None, reasons: list[str] | None
) -> int:
    try:
        entries = _service(database_url).list_review_queue(batch_id=batch_id, reasons=reasons)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    rows: list[dict[str, Any]] = []
    for entry in entries:
        tx = entry.transaction
        rows.append(
            {
                "reviewItemId": entry.item.id,
                "transactionId": entry.item.transaction_id,
                "batchId": entry.item.batch_id,
                "reason": entry.item.reason,
                "retryCount": entry.item.retry_count,
                "suggestion": entry.item.suggestion.to_wire() if entry.item.suggestion else None,
                "transaction": (
                    {
                        "date": tx.date.isoformat(),
                        "amount": f"{tx.amount:.2f}",
                        "counterpartyLabel": tx.merchant,
                        "description": tx.description,
                    }
                    if tx is not None
                    else None
                ),
            }
        )
    _print_json(rows)
    return 0


def cmd_review_resolve(payload: dict[str, Any], *, database_url: str | None) -> int:
    """Apply one reviewer decision given as a ``ReviewResolutionRequest`` payload."""

    from pydantic import ValidationError as PydanticValidationError

    from .models import ReviewResolutionRequest

    try:
        request = ReviewResolutionRequest.model_validate(payload)
    except PydanticValidationError as e:
        print(f"Error: invalid resolution request: {e}", file=sys.stderr)
        return 1
    try:
        service = _service(database_url, needs_classifier=True)
        result = service.resolve_review(request)
        service.drain()
    except Exception as e:
        print(f"Error: review resolution failed: {e}", file=sys.stderr)
        return 1
    _print_json(
        {
            "reviewItemId": result.review_item_id,
            "transactionId": result.transaction_id,
            "resolvedAs": result.resolved_as,
            "nodeId": result.node_id,
            "createdNodeId": result.created_node_id,
            "childIds": list(result.child_ids),
        }
    )
    return 0


def cmd_split(payload: dict[str, Any], *, database_url: str | None) -> int:
    from pydantic import ValidationError as PydanticValidationError

    from .models import SplitRequest

    try:
        request = SplitRequest.model_validate(payload)
    except PydanticValidationError as e:
        print(f"Error: invalid split request: {e}", file=sys.stderr)
        return 1
    try:
        service = _service(database_url, needs_classifier=True)
        result = service.split_transaction(request)
        service.drain()
    except Exception as e:
        print(f"Error: split failed: {e}", file=sys.stderr)
        return 1
    _print_json(
        {
            "parentId": result.parent_id,
            "childIds": list(result.child_ids),
            "replayed": result.replayed,
        }
    )
    return 0


def cmd_create_node(
    name: str,
    *,
    database_url: str | None,
    description: str | None,
    parent_id: str | None,
) -> int:
    try:
        service = _service(database_url, needs_classifier=True)
        node, created = service.create_taxonomy_node(
            name=name, description=description, parent_id=parent_id
        )
        service.drain()
    except Exception as e:
        print(f"Error: node creation failed: {e}", file=sys.stderr)
        return 1
    _print_json(
        {"nodeId": node.id, "name": node.name, "parentId": node.parent_id, "created": created}
    )
    return 0


def cmd_abandon_batch(batch_id: str, *, database_url: str | None) -> int:
    try:
        changed = _service(database_url).abandon_batch(batch_id)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json({"batchId": batch_id, "abandoned": changed})
    return 0


def cmd_annotate(transaction_id: str, annotation: str | None, *, database_url: str | None) -> int:
    try:
        _service(database_url).annotate(transaction_id, annotation)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json({"transactionId": transaction_id, "annotation": annotation})
    return 0


def cmd_retry_review(review_item_id: str, *, database_url: str | None) -> int:
    try:
        service = _service(database_url, needs_classifier=True)
        service.request_retry(review_item_id)
        service.drain()
    except Exception as e:
        print(f"Error: retry failed: {e}", file=sys.stderr)
        return 1
    _print_json({"reviewItemId": review_item_id, "requested": True})
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Triage expense transactions with an LLM classifier and a human review queue. "
        "Loads DATABASE_URL and OPENAI_API_KEY from a local .env before running."
    ),
)

# Module-level option object to satisfy ruff B008 (no calls in parameter
# defaults). Typer inspects this when used as a default value below.
INPUT_PATH_OPTION: OptionInfo = typer.Option(
    ...,
    "--input",
    help="Path to a JSON array of records (date, amount, description, counterpartyLabel).",
    dir_okay=False,
    file_okay=True,
    exists=False,  # the handler reports missing files
)


@app.command("init-db")
def init_db_cmd(
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> int:
    """Create tables and seed the default taxonomy."""

    code = cmd_init_db(database_url=database_url)
    raise typer.Exit(code)


@app.command("process")
def process_cmd(
    input_path: Annotated[Path, INPUT_PATH_OPTION],
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    *,
    batch_id: str | None = typer.Option(None, help="Explicit batch id (generated if omitted)."),
    wait_sec: float = typer.Option(
        _DEFAULT_WAIT_SEC, help="Seconds to wait for categorization to finish."
    ),
) -> int:
    """Ingest and categorize a batch of transactions."""

    code = cmd_process(input_path, database_url=database_url, batch_id=batch_id, wait_sec=wait_sec)
    raise typer.Exit(code)


@app.command("batch-status")
def batch_status_cmd(
    batch_id: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> int:
    """Print the counters and status of a batch."""

    raise typer.Exit(cmd_batch_status(batch_id, database_url=database_url))


@app.command("batches")
def batches_cmd(
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    *,
    status: str | None = typer.Option(None, help="Only batches in this status."),
) -> int:
    """List batch runs, newest first."""

    raise typer.Exit(cmd_list_batches(database_url=database_url, status=status))


@app.command("batch-stats")
def batch_stats_cmd(
    batch_id: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> int:
    """Print the category distribution and confidence profile of a batch."""

    raise typer.Exit(cmd_batch_stats(batch_id, database_url=database_url))


@app.command("uncategorized")
def uncategorized_cmd(
    batch_id: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> int:
    """List the transactions of a batch that have no category yet."""

    raise typer.Exit(cmd_uncategorized(batch_id, database_url=database_url))


@app.command("compare-batches")
def compare_batches_cmd(
    first_batch_id: str,
    second_batch_id: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> int:
    """Compare two batches (second minus first)."""

    raise typer.Exit(
        cmd_compare_batches(first_batch_id, second_batch_id, database_url=database_url)
    )


@app.command("review-list")
def review_list_cmd(
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    *,
    batch_id: str | None = typer.Option(None, help="Only items of this batch."),
    reason: list[str] | None = typer.Option(None, help="Only items with this reason (repeatable)."),
) -> int:
    """List pending review items with their transactions."""

    raise typer.Exit(cmd_review_list(database_url=database_url, batch_id=batch_id, reasons=reason))


@app.command("review-resolve")
def review_resolve_cmd(
    review_item_id: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    *,
    node_id: str | None = typer.Option(None, help="Categorize under this existing node."),
    new_node_name: str | None = typer.Option(None, help="Create (or reuse) a node by name."),
    new_node_parent: str | None = typer.Option(None, help="Parent id for --new-node-name."),
    new_node_description: str | None = typer.Option(None, help="Description for a new node."),
    split_file: Path | None = typer.Option(
        None, help="JSON array of children ({description, amount, counterpartyLabel?})."
    ),
    itemized_receipt: bool = typer.Option(
        False, help="Allocate any receipt residual to the most expensive child."
    ),
    reasoning: str | None = typer.Option(None, help="Reviewer note stored on the resolution."),
) -> int:
    """Resolve one review item by node, new node or split."""

    payload: dict[str, Any] = {
        "reviewItemId": review_item_id,
        "itemizedReceipt": itemized_receipt,
        "reasoning": reasoning,
    }
    if node_id:
        payload["nodeId"] = node_id
    if new_node_name:
        payload["newNode"] = {
            "name": new_node_name,
            "description": new_node_description or "",
            "parentId": new_node_parent,
        }
    if split_file is not None:
        try:
            payload["splitChildren"] = _load_json_file(split_file)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error: failed to read split children: {e}", file=sys.stderr)
            raise typer.Exit(1) from e
    raise typer.Exit(cmd_review_resolve(payload, database_url=database_url))


@app.command("split")
def split_cmd(
    parent_id: str,
    children_file: Path,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    *,
    itemized_receipt: bool = typer.Option(
        False, help="Allocate any receipt residual to the most expensive child."
    ),
) -> int:
    """Split a transaction into children listed in a JSON file."""

    try:
        children = _load_json_file(children_file)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: failed to read children: {e}", file=sys.stderr)
        raise typer.Exit(1) from e
    payload = {"parentId": parent_id, "children": children, "itemizedReceipt": itemized_receipt}
    raise typer.Exit(cmd_split(payload, database_url=database_url))


@app.command("create-node")
def create_node_cmd(
    name: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    *,
    parent_id: str | None = typer.Option(None, help="Parent node id (defaults to the root)."),
    description: str | None = typer.Option(None, help="Node description."),
) -> int:
    """Create a taxonomy node and re-run classification of related review items."""

    raise typer.Exit(
        cmd_create_node(
            name, database_url=database_url, description=description, parent_id=parent_id
        )
    )


@app.command("abandon-batch")
def abandon_batch_cmd(
    batch_id: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> int:
    """Mark a batch failed; queued categorization work for it is skipped."""

    raise typer.Exit(cmd_abandon_batch(batch_id, database_url=database_url))


@app.command("annotate")
def annotate_cmd(
    transaction_id: str,
    annotation: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> int:
    """Attach a note to a categorized transaction (an empty note clears it)."""

    raise typer.Exit(cmd_annotate(transaction_id, annotation or None, database_url=database_url))


@app.command("retry-review")
def retry_review_cmd(
    review_item_id: str,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> int:
    """Re-run classification for one pending review item."""

    raise typer.Exit(cmd_retry_review(review_item_id, database_url=database_url))


@app.callback()
def _root() -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
