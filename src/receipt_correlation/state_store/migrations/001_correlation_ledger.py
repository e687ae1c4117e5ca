"""
Migration 001: Add correlation_ledger table.

Append-only audit trail of merges and review flags. The correlation_id is
unique so a retried merge cannot record itself twice.
"""

import sqlite3

VERSION = 1
NAME = "correlation_ledger"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create correlation_ledger table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS correlation_ledger (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            correlation_id TEXT NOT NULL UNIQUE,
            owner TEXT NOT NULL,
            merged_into TEXT NOT NULL,
            absorbed TEXT NOT NULL,
            confidence INTEGER NOT NULL,
            classification TEXT NOT NULL,
            action TEXT NOT NULL,  -- merged, flagged_for_review
            reason TEXT,
            created_at TEXT NOT NULL
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_correlation_ledger_owner ON correlation_ledger(owner)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_correlation_ledger_absorbed "
        "ON correlation_ledger(absorbed)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove correlation_ledger table."""
    conn.execute("DROP TABLE IF EXISTS correlation_ledger")
