from __future__ import annotations

from datetime import date
from pathlib import Path

import anyio
from mcp.server.fastmcp import FastMCP

from obligation_tracker.core.models import Obligation
from obligation_tracker.database import SQLiteBackend
from obligation_tracker.scheduler import ObligationScheduler

server = FastMCP(
    name="Obligations",
    instructions="Inspect, forecast and materialize recurring obligations",
)


def _parse_date(value: str | None, field_name: str) -> date | None:
    try:
        return date.fromisoformat(value) if value else None
    except ValueError as exc:
        raise ValueError(f"Invalid {field_name}: {value}") from exc


def _open(db_path: str) -> ObligationScheduler:
    if not Path(db_path).exists():
        raise FileNotFoundError(f"Database not found: {db_path}")
    return ObligationScheduler(SQLiteBackend(db_path))


def _obligation_to_dict(o: Obligation) -> dict:
    return {
        "id": o.id,
        "name": o.name,
        "amount": str(o.amount),
        "classification": o.classification.value,
        "frequency": o.rule.frequency.value,
        "anchor": o.anchor.isoformat() if o.anchor else None,
        "confirmation_mode": o.confirmation_mode.value,
        "target_resource_ref": o.target_resource_ref,
        "version": o.version,
        "last_failure": o.last_failure,
    }


@server.tool(
    name="list_due_obligations",
    description="List active obligations whose next occurrence is on or before today",
)
async def list_due_obligations(db_path: str, today: str | None = None) -> list[dict]:
    """Return due obligations from ``db_path`` as of ``today`` (ISO date)."""

    now = _parse_date(today, "today") or date.today()

    def _run() -> list[dict]:
        return [_obligation_to_dict(o) for o in _open(db_path).list_due(now)]

    return await anyio.to_thread.run_sync(_run)


@server.tool(
    name="forecast_period",
    description="Project past and pending obligation totals over a date range",
)
async def forecast_period(
    db_path: str,
    start_date: str,
    end_date: str,
    today: str | None = None,
) -> dict:
    """Return the forecast for ``[start_date, end_date]``.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.
    start_date, end_date:
        ISO formatted dates bounding the period (inclusive).
    today:
        Optional ISO date splitting past from pending; defaults to today.
    """

    start = _parse_date(start_date, "start_date")
    end = _parse_date(end_date, "end_date")
    if start is None or end is None:
        raise ValueError("start_date and end_date are required")
    if start > end:
        raise ValueError("start_date must be on or before end_date")
    now = _parse_date(today, "today") or date.today()

    def _run() -> dict:
        return _open(db_path).forecast(start, end, now).as_dict()

    return await anyio.to_thread.run_sync(_run)


@server.tool(
    name="run_due_sweep",
    description="Materialize every due automatic obligation and report the outcome",
)
async def run_due_sweep(db_path: str, today: str | None = None) -> dict:
    now = _parse_date(today, "today") or date.today()

    def _run() -> dict:
        return _open(db_path).run_due(now).as_dict()

    return await anyio.to_thread.run_sync(_run)


def main() -> None:
    server.run()


if __name__ == "__main__":
    main()
