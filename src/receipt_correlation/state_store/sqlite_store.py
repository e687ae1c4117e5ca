"""
SQLite-based record store implementation.

Tables:
- transactions: Correlatable transaction records
- correlation_ledger: Append-only audit trail of merges (migration 001)

No multi-statement transactional guarantee is relied upon by callers; the
only atomic primitive offered is the single conditional `update`.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..schemas import (
    Classification,
    LedgerAction,
    LedgerEntry,
    LineItem,
    SourceEntry,
    Transaction,
    TransactionStatus,
    parse_amount,
    parse_timestamp,
    utc_now,
)
from .errors import (
    ConcurrentModificationError,
    RecordNotFound,
    StoreUnavailable,
    StoreWriteError,
)

logger = logging.getLogger(__name__)

# Fields that may be changed through update()
UPDATABLE_FIELDS = frozenset(
    {
        "merchant",
        "amount",
        "currency",
        "occurred_at",
        "items",
        "sources",
        "category",
        "correlation_id",
        "status",
    }
)


def _utc_key(value: datetime | None) -> str | None:
    """Fixed-width UTC string so range filters can compare lexically."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        owner=row["owner"],
        merchant=row["merchant"],
        amount=parse_amount(row["amount"]),
        currency=row["currency"],
        occurred_at=parse_timestamp(row["occurred_at"]),
        items=[LineItem.from_dict(item) for item in json.loads(row["items"] or "[]")],
        sources=[SourceEntry.from_dict(src) for src in json.loads(row["sources"] or "[]")],
        category=row["category"],
        correlation_id=row["correlation_id"],
        status=TransactionStatus(row["status"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        version=row["version"],
    )


def _row_to_ledger_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        correlation_id=row["correlation_id"],
        owner=row["owner"],
        merged_into=row["merged_into"],
        absorbed=row["absorbed"],
        confidence=row["confidence"],
        classification=Classification(row["classification"]),
        action=LedgerAction(row["action"]),
        reason=row["reason"] or "",
        timestamp=parse_timestamp(row["created_at"]) or utc_now(),
    )


def _serialize_field(name: str, value: Any) -> tuple[list[str], list[Any]]:
    """Map a Transaction attribute onto its column(s) and SQL values."""
    if name == "amount":
        return ["amount"], [None if value is None else str(value)]
    if name == "occurred_at":
        return ["occurred_at", "occurred_at_utc"], [
            None if value is None else value.isoformat(),
            _utc_key(value),
        ]
    if name == "items":
        return ["items"], [json.dumps([item.to_dict() for item in value])]
    if name == "sources":
        return ["sources"], [json.dumps([src.to_dict() for src in value])]
    if name == "status":
        return ["status"], [TransactionStatus(value).value]
    return [name], [value]


class TransactionStore:
    """
    SQLite-backed record store for transactions and the correlation ledger.

    Each call opens its own connection, so one store instance can be shared
    across threads. Writers contend on SQLite's database lock; the busy
    timeout bounds how long they wait.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path | str,
        run_migrations: bool = True,
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize the record store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            timeout_seconds: Busy timeout for locked databases
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout_seconds = timeout_seconds
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout_seconds)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        """Read access; any SQLite failure surfaces as StoreUnavailable."""
        try:
            with self._transaction() as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error("Record store read failed: %s", e)
            raise StoreUnavailable(f"Record store read failed: {e}") from e

    @contextmanager
    def _writing(self) -> Iterator[sqlite3.Connection]:
        """Write access; any SQLite failure surfaces as StoreWriteError."""
        try:
            with self._transaction() as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error("Record store write failed: %s", e)
            raise StoreWriteError(f"Record store write failed: {e}") from e

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    merchant TEXT,
                    amount TEXT,  -- Decimal as string
                    currency TEXT,
                    occurred_at TEXT,  -- ISO timestamp as supplied
                    occurred_at_utc TEXT,  -- Normalized for range queries
                    items TEXT NOT NULL DEFAULT '[]',  -- JSON array
                    sources TEXT NOT NULL DEFAULT '[]',  -- JSON array
                    category TEXT,
                    correlation_id TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1
                )
            """
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Transaction methods

    def get(self, transaction_id: str) -> Transaction | None:
        """Fetch a transaction by id (any status)."""
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return _row_to_transaction(row) if row else None

    def query(
        self,
        owner: str,
        start: datetime | None = None,
        end: datetime | None = None,
        status: TransactionStatus | None = TransactionStatus.ACTIVE,
        limit: int | None = None,
    ) -> list[Transaction]:
        """
        Query an owner's transactions, most recent first.

        Args:
            owner: Owner (user) id
            start: Inclusive lower bound on occurred_at
            end: Inclusive upper bound on occurred_at
            status: Status filter (None for all statuses)
            limit: Maximum number of rows

        Returns:
            Matching transactions ordered by occurred_at descending
        """
        clauses = ["owner = ?"]
        params: list[Any] = [owner]

        if status is not None:
            clauses.append("status = ?")
            params.append(TransactionStatus(status).value)
        if start is not None:
            clauses.append("occurred_at_utc >= ?")
            params.append(_utc_key(start))
        if end is not None:
            clauses.append("occurred_at_utc <= ?")
            params.append(_utc_key(end))

        sql = (
            f"SELECT * FROM transactions WHERE {' AND '.join(clauses)} "
            "ORDER BY occurred_at_utc DESC, updated_at DESC"
        )
        if limit:
            sql += " LIMIT ?"
            params.append(limit)

        with self._reading() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [_row_to_transaction(row) for row in rows]

    def put(self, transaction: Transaction) -> str:
        """
        Persist a new transaction.

        Assigns an opaque id when the record has none.

        Returns:
            The stored transaction id
        """
        transaction_id = transaction.id or uuid.uuid4().hex
        now = utc_now().isoformat()

        with self._writing() as conn:
            conn.execute(
                """
                INSERT INTO transactions
                (id, owner, merchant, amount, currency, occurred_at, occurred_at_utc,
                 items, sources, category, correlation_id, status, created_at, updated_at,
                 version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
                (
                    transaction_id,
                    transaction.owner,
                    transaction.merchant,
                    None if transaction.amount is None else str(transaction.amount),
                    transaction.currency,
                    None if transaction.occurred_at is None else transaction.occurred_at.isoformat(),
                    _utc_key(transaction.occurred_at),
                    json.dumps([item.to_dict() for item in transaction.items]),
                    json.dumps([src.to_dict() for src in transaction.sources]),
                    transaction.category,
                    transaction.correlation_id,
                    transaction.status.value,
                    now,
                    now,
                ),
            )

        logger.debug("Stored transaction %s for owner %s", transaction_id, transaction.owner)
        return transaction_id

    def update(
        self,
        transaction_id: str,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> Transaction:
        """
        Apply a partial update as a single conditional write.

        Args:
            transaction_id: Record to update
            fields: Transaction attribute names mapped to new values
            expected_version: If given, the write only succeeds when the stored
                version still equals it

        Returns:
            The updated transaction

        Raises:
            RecordNotFound: The record does not exist
            ConcurrentModificationError: The version moved on
            StoreWriteError: The write itself failed
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        assignments: list[str] = []
        params: list[Any] = []
        for name, value in fields.items():
            columns, values = _serialize_field(name, value)
            assignments.extend(f"{column} = ?" for column in columns)
            params.extend(values)
        assignments.extend(["version = version + 1", "updated_at = ?"])
        params.append(utc_now().isoformat())

        sql = f"UPDATE transactions SET {', '.join(assignments)} WHERE id = ?"
        params.append(transaction_id)
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(expected_version)

        with self._writing() as conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM transactions WHERE id = ?", (transaction_id,)
                ).fetchone()
                if exists is None:
                    raise RecordNotFound(transaction_id)
                raise ConcurrentModificationError(transaction_id, expected_version or 0)
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()

        return _row_to_transaction(row)

    def delete(self, transaction_id: str) -> bool:
        """
        Hard-delete a transaction.

        Returns:
            True if a row was removed, False if it was already gone
        """
        with self._writing() as conn:
            cursor = conn.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))
            return cursor.rowcount > 0

    # Ledger methods

    def append_ledger_entry(self, entry: LedgerEntry) -> bool:
        """
        Append a ledger entry.

        Returns:
            True if inserted, False if an entry with this correlation id exists
        """
        with self._writing() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO correlation_ledger
                (correlation_id, owner, merged_into, absorbed, confidence,
                 classification, action, reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    entry.correlation_id,
                    entry.owner,
                    entry.merged_into,
                    entry.absorbed,
                    entry.confidence,
                    entry.classification.value,
                    entry.action.value,
                    entry.reason,
                    entry.timestamp.isoformat(),
                ),
            )
            return cursor.rowcount > 0

    def get_ledger_entries(
        self,
        owner: str,
        action: LedgerAction | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        """Get an owner's ledger entries, newest first."""
        sql = "SELECT * FROM correlation_ledger WHERE owner = ?"
        params: list[Any] = [owner]
        if action is not None:
            sql += " AND action = ?"
            params.append(LedgerAction(action).value)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)

        with self._reading() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [_row_to_ledger_entry(row) for row in rows]

    def find_ledger_entry_for_absorbed(self, absorbed_id: str) -> LedgerEntry | None:
        """Find the merge that absorbed a given record, if recorded."""
        with self._reading() as conn:
            row = conn.execute(
                """
                SELECT * FROM correlation_ledger
                WHERE absorbed = ? AND action = ?
                ORDER BY created_at DESC LIMIT 1
            """,
                (absorbed_id, LedgerAction.MERGED.value),
            ).fetchone()
            return _row_to_ledger_entry(row) if row else None

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Get record store statistics."""
        with self._reading() as conn:
            stats: dict[str, Any] = {}

            rows = conn.execute(
                "SELECT status, COUNT(*) as count FROM transactions GROUP BY status"
            ).fetchall()
            stats["transactions_by_status"] = {row["status"]: row["count"] for row in rows}
            stats["transactions_total"] = sum(stats["transactions_by_status"].values())

            rows = conn.execute(
                "SELECT action, COUNT(*) as count FROM correlation_ledger GROUP BY action"
            ).fetchall()
            stats["ledger_by_action"] = {row["action"]: row["count"] for row in rows}

            return stats
