"""
Migration runner for versioned record store schema changes.

Migrations are named with format: {version}_{name}.py
E.g., 001_correlation_ledger.py, 002_transaction_indexes.py

Each migration must define:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None
- downgrade(conn: Connection) -> None  # optional
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """Represents a database migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """
    Load all migrations from the migrations directory.

    Returns migrations sorted by version.
    """
    migrations = []
    migrations_dir = Path(__file__).parent

    for py_file in sorted(migrations_dir.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )

    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Runs database migrations in order.

    Tracks applied migrations in a `migrations` table.
    """

    def __init__(self, conn: sqlite3.Connection):
        """Initialize with a database connection."""
        self.conn = conn
        self._ensure_migrations_table()

    def _ensure_migrations_table(self) -> None:
        """Create migrations tracking table if it doesn't exist."""
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        """Get set of applied migration versions."""
        cursor = self.conn.execute("SELECT version FROM migrations ORDER BY version")
        return {row[0] for row in cursor.fetchall()}

    def get_current_version(self) -> int:
        """Get the highest applied migration version."""
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result if result is not None else 0

    def apply_migration(self, migration: Migration) -> None:
        """Apply a single migration."""
        logger.info("Applying migration %d: %s", migration.version, migration.name)

        try:
            migration.upgrade(self.conn)
            now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self.conn.execute(
                "INSERT OR IGNORE INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, now),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error("Migration %d failed: %s", migration.version, e)
            raise

    def run_pending(self) -> list[int]:
        """
        Run all pending migrations.

        Returns list of applied migration versions.
        """
        applied = self.get_applied_versions()
        pending = [m for m in get_all_migrations() if m.version not in applied]

        for migration in pending:
            self.apply_migration(migration)

        if pending:
            logger.info("Applied %d migrations: %s", len(pending), [m.version for m in pending])
        else:
            logger.debug("No pending migrations")

        return [m.version for m in pending]
