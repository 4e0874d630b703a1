"""
Migration runner for versioned schema changes of the matching database.

Migration modules live next to this file and are named ``NNN_name.py``
(001_learning_tables.py, 002_matching_runs.py, ...). Each defines:
- VERSION: int
- NAME: str
- upgrade(conn) -> None
- downgrade(conn) -> None  (optional)

The base tables (transactions, receipts, matches) are created by the
database service itself; migrations only add to them.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

_PACKAGE = __name__.rsplit(".", 1)[0]


@dataclass
class Migration:
    """One versioned schema change."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """Import every migration module, sorted by version.

    Raises:
        ImportError / AttributeError: A migration module is broken. Skipping
            it would leave the schema silently behind.
    """
    migrations = []
    for py_file in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{_PACKAGE}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )

    versions = [m.version for m in migrations]
    if len(versions) != len(set(versions)):
        raise ValueError(f"Duplicate migration versions: {versions}")
    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Applies and rolls back migrations on one connection.

    Applied versions are recorded in the ``migrations`` table; each migration
    commits together with its record or not at all.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
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

    def applied_versions(self) -> set[int]:
        rows = self.conn.execute("SELECT version FROM migrations").fetchall()
        return {row[0] for row in rows}

    def current_version(self) -> int:
        return max(self.applied_versions(), default=0)

    def pending_migrations(self) -> list[Migration]:
        applied = self.applied_versions()
        return [m for m in get_all_migrations() if m.version not in applied]

    def apply(self, migration: Migration) -> None:
        """Apply one migration and record it."""
        logger.info("Applying migration %03d_%s", migration.version, migration.name)
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            logger.error("Migration %03d_%s failed", migration.version, migration.name)
            raise

    def revert(self, migration: Migration) -> None:
        """Roll back one migration and remove its record."""
        if migration.downgrade is None:
            raise NotImplementedError(
                f"Migration {migration.version:03d}_{migration.name} cannot be rolled back"
            )
        logger.info("Reverting migration %03d_%s", migration.version, migration.name)
        try:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            logger.error("Reverting migration %03d_%s failed", migration.version, migration.name)
            raise

    def run_pending(self) -> list[int]:
        """Apply all pending migrations in order.

        Returns:
            Versions applied by this call.
        """
        applied = []
        for migration in self.pending_migrations():
            self.apply(migration)
            applied.append(migration.version)

        if applied:
            logger.info("Applied %d migrations: %s", len(applied), applied)
        else:
            logger.debug("Database schema is up to date")
        return applied

    def migrate_to(self, target_version: int) -> None:
        """Upgrade or roll back until ``target_version`` is the newest applied."""
        migrations = get_all_migrations()
        applied = self.applied_versions()

        for migration in migrations:
            if migration.version <= target_version and migration.version not in applied:
                self.apply(migration)

        for migration in reversed(migrations):
            if migration.version > target_version and migration.version in applied:
                self.revert(migration)
