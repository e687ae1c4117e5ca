"""
Migration 002: Index transactions for candidate search.

Candidate search filters on owner + status and a time range, newest first.
"""

import sqlite3

VERSION = 2
NAME = "transaction_indexes"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create candidate search indexes."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_transactions_owner_status_time "
        "ON transactions(owner, status, occurred_at_utc)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_transactions_correlation "
        "ON transactions(correlation_id)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop candidate search indexes."""
    conn.execute("DROP INDEX IF EXISTS idx_transactions_owner_status_time")
    conn.execute("DROP INDEX IF EXISTS idx_transactions_correlation")
