import dataclasses
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Dict, List

from obligation_tracker.core.errors import (
    ConcurrentModificationError,
    ObligationNotFoundError,
    ResourceUnavailableError,
    RuleIntegrityError,
    StoreUnavailableError,
)
from obligation_tracker.core.models import LedgerEntry, Obligation, RecurrenceRule
from obligation_tracker.store.base import LedgerSink, Listing, ObligationStore

logger = logging.getLogger(__name__)

_OBLIGATION_COLUMNS = (
    "id, name, amount, classification, frequency, anchor, start_date, end_date, "
    "repeat_count, remaining_repeats, confirmation_mode, is_active, "
    "target_resource_ref, version, last_failure, last_failure_on"
)


def _init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS obligations (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            amount TEXT NOT NULL,
            classification TEXT NOT NULL,
            frequency TEXT NOT NULL,
            anchor TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT,
            repeat_count INTEGER,
            remaining_repeats INTEGER,
            confirmation_mode TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            target_resource_ref TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            last_failure TEXT,
            last_failure_on TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ledger_entries (
            id INTEGER PRIMARY KEY,
            obligation_id INTEGER NOT NULL,
            occurrence_date TEXT NOT NULL,
            amount TEXT NOT NULL,
            classification TEXT NOT NULL,
            account_id TEXT,
            description TEXT NOT NULL,
            UNIQUE(obligation_id, occurrence_date)
        )
        """
    )


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _row_to_obligation(row: sqlite3.Row) -> Obligation:
    try:
        rule = RecurrenceRule(
            frequency=row["frequency"],
            anchor=row["anchor"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            repeat_count=row["repeat_count"],
            remaining_repeats=row["remaining_repeats"],
        )
        return Obligation(
            id=row["id"],
            name=row["name"],
            amount=row["amount"],
            classification=row["classification"],
            rule=rule,
            confirmation_mode=row["confirmation_mode"],
            is_active=bool(row["is_active"]),
            target_resource_ref=row["target_resource_ref"],
            version=row["version"],
            last_failure=row["last_failure"],
            last_failure_on=(
                date.fromisoformat(row["last_failure_on"])
                if row["last_failure_on"] else None
            ),
        )
    except (RuleIntegrityError, ValueError) as exc:
        raise RuleIntegrityError(
            f"Obligation {row['id']}: {exc}", obligation_id=row["id"]
        ) from exc


class SQLiteBackend(ObligationStore, LedgerSink):
    """Obligation store and ledger sink sharing one SQLite file.

    Each call opens its own connection, except inside :meth:`atomic`, where
    every call made by the same thread shares one ``BEGIN IMMEDIATE``
    transaction. That is what lets a ledger append and the anchor
    compare-and-swap commit or roll back together.
    """

    def __init__(self, db_path: str, timeout: float = 5.0) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self.timeout = timeout
        self._local = threading.local()
        with self._connection() as conn:
            _init_db(conn)

    @classmethod
    def from_config(cls, config) -> "SQLiteBackend":
        return cls(config["db_path"], timeout=float(config.get("resource_timeout", 5.0)))

    # ------------------------------------------------------------------
    # connections
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path, timeout=self.timeout, isolation_level=None
            )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        shared = getattr(self._local, "conn", None)
        if shared is not None:
            try:
                yield shared
            except sqlite3.OperationalError as exc:
                raise StoreUnavailableError(f"{self.db_path}: {exc}") from exc
            return
        conn = self._connect()
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"{self.db_path}: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def atomic(self):
        if getattr(self._local, "conn", None) is not None:
            yield self
            return
        conn = self._connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise StoreUnavailableError(f"{self.db_path}: {exc}") from exc
            self._local.conn = conn
            try:
                yield self
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            self._local.conn = None
            conn.close()

    # ------------------------------------------------------------------
    # ObligationStore
    # ------------------------------------------------------------------

    def add(self, obligation: Obligation) -> Obligation:
        rule = obligation.rule
        with self._connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO obligations
                (name, amount, classification, frequency, anchor, start_date,
                 end_date, repeat_count, remaining_repeats, confirmation_mode,
                 is_active, target_resource_ref, version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    obligation.name.strip(),
                    str(obligation.amount),
                    obligation.classification.value,
                    rule.frequency.value,
                    _iso(rule.anchor),
                    rule.start_date.isoformat(),
                    _iso(rule.end_date),
                    rule.repeat_count,
                    rule.remaining_repeats,
                    obligation.confirmation_mode.value,
                    int(obligation.is_active),
                    obligation.target_resource_ref,
                ),
            )
            new_id = cur.lastrowid
        return dataclasses.replace(obligation, id=new_id, version=0)

    def get(self, obligation_id: int) -> Obligation:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_OBLIGATION_COLUMNS} FROM obligations WHERE id = ?",
                (obligation_id,),
            ).fetchone()
        if row is None:
            raise ObligationNotFoundError(f"Obligation {obligation_id} not found")
        return _row_to_obligation(row)

    def _load(self, where: str = "", params=()) -> Listing:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_OBLIGATION_COLUMNS} FROM obligations {where} ORDER BY id",
                params,
            ).fetchall()
        obligations: List[Obligation] = []
        rejected = []
        for row in rows:
            try:
                obligations.append(_row_to_obligation(row))
            except RuleIntegrityError as exc:
                logger.error("Skipping obligation %s: %s", row["id"], exc)
                rejected.append((row["id"], exc))
        return Listing(obligations, rejected)

    def list_all(self) -> Listing:
        return self._load()

    def list_active(self) -> Listing:
        return self._load("WHERE is_active = 1")

    def list_due(self, now: date) -> Listing:
        listing = self.list_active()
        due = [
            o for o in listing.obligations
            if not o.rule.exhausted and o.anchor <= now
        ]
        due.sort(key=lambda o: (o.anchor, o.id))
        return Listing(due, listing.rejected)

    def set_active(self, obligation_id: int, is_active: bool) -> Obligation:
        # Reactivation lifts a failure suspension.
        clear = ", last_failure = NULL, last_failure_on = NULL" if is_active else ""
        with self._connection() as conn:
            cur = conn.execute(
                f"UPDATE obligations SET is_active = ?, version = version + 1{clear} "
                "WHERE id = ?",
                (int(is_active), obligation_id),
            )
            if cur.rowcount == 0:
                raise ObligationNotFoundError(f"Obligation {obligation_id} not found")
        return self.get(obligation_id)

    def compare_and_swap(self, obligation: Obligation, expected_version: int) -> Obligation:
        rule = obligation.rule
        with self._connection() as conn:
            cur = conn.execute(
                """
                UPDATE obligations
                SET name = ?, amount = ?, classification = ?, frequency = ?,
                    anchor = ?, start_date = ?, end_date = ?, repeat_count = ?,
                    remaining_repeats = ?, confirmation_mode = ?,
                    target_resource_ref = ?, last_failure = ?,
                    last_failure_on = ?, version = version + 1
                WHERE id = ? AND version = ?
                """,
                (
                    obligation.name.strip(),
                    str(obligation.amount),
                    obligation.classification.value,
                    rule.frequency.value,
                    _iso(rule.anchor),
                    rule.start_date.isoformat(),
                    _iso(rule.end_date),
                    rule.repeat_count,
                    rule.remaining_repeats,
                    obligation.confirmation_mode.value,
                    obligation.target_resource_ref,
                    obligation.last_failure,
                    _iso(obligation.last_failure_on),
                    obligation.id,
                    expected_version,
                ),
            )
            if cur.rowcount == 0:
                raise ConcurrentModificationError(obligation.id, expected_version)
        return dataclasses.replace(obligation, version=expected_version + 1)

    def delete(self, obligation_id: int) -> None:
        """Remove the obligation. Ledger entries it already produced are kept."""
        with self._connection() as conn:
            cur = conn.execute("DELETE FROM obligations WHERE id = ?", (obligation_id,))
            if cur.rowcount == 0:
                raise ObligationNotFoundError(f"Obligation {obligation_id} not found")

    # ------------------------------------------------------------------
    # LedgerSink
    # ------------------------------------------------------------------

    def resolve_resource(self, ref: str | None) -> bool:
        if ref is None:
            return True
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT is_active FROM accounts WHERE id = ?", (ref,)
                ).fetchone()
        except StoreUnavailableError as exc:
            raise ResourceUnavailableError(ref, f"lookup failed: {exc}") from exc
        return bool(row and row["is_active"])

    def append(self, entry: LedgerEntry) -> int:
        with self._connection() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO ledger_entries
                (obligation_id, occurrence_date, amount, classification,
                 account_id, description)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.obligation_id,
                    entry.occurrence_date.isoformat(),
                    str(entry.amount),
                    entry.classification.value,
                    entry.target_resource_ref,
                    entry.description.strip(),
                ),
            )
            if cur.rowcount:
                return cur.lastrowid
            row = conn.execute(
                "SELECT id FROM ledger_entries "
                "WHERE obligation_id = ? AND occurrence_date = ?",
                (entry.obligation_id, entry.occurrence_date.isoformat()),
            ).fetchone()
        return row["id"]

    # ------------------------------------------------------------------
    # accounts and ledger queries
    # ------------------------------------------------------------------

    def add_account(self, account_id: str, name: str, is_active: bool = True) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO accounts (id, name, is_active) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name,
                                              is_active = excluded.is_active
                """,
                (account_id, name, int(is_active)),
            )

    def set_account_active(self, account_id: str, is_active: bool) -> None:
        with self._connection() as conn:
            cur = conn.execute(
                "UPDATE accounts SET is_active = ? WHERE id = ?",
                (int(is_active), account_id),
            )
            if cur.rowcount == 0:
                raise LookupError(f"Account {account_id} not found")

    def fetch_ledger_entries(
        self,
        obligation_id: int | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> List[Dict[str, object]]:
        """Return ledger entries ordered by date, optionally filtered."""
        conditions: list[str] = []
        params: list[object] = []
        if obligation_id is not None:
            conditions.append("obligation_id = ?")
            params.append(obligation_id)
        if start_date:
            conditions.append("occurrence_date >= ?")
            params.append(start_date.isoformat())
        if end_date:
            conditions.append("occurrence_date <= ?")
            params.append(end_date.isoformat())
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT id, obligation_id, occurrence_date, amount, classification,
                       account_id, description
                FROM ledger_entries
                {where}
                ORDER BY occurrence_date, id
                """,
                params,
            ).fetchall()
        return [
            {
                "id": r["id"],
                "obligation_id": r["obligation_id"],
                "date": date.fromisoformat(r["occurrence_date"]),
                "amount": Decimal(r["amount"]),
                "classification": r["classification"],
                "account_id": r["account_id"],
                "description": r["description"],
            }
            for r in rows
        ]
