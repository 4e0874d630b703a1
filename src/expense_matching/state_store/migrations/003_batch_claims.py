"""
Migration 003: Add batch claim columns.

Bulk matching claims the transactions and receipts of a batch before scoring
so that concurrent runs for the same organization never work on the same
rows. A claim is the worker token plus the time it was taken.
"""

import sqlite3

VERSION = 3
NAME = "batch_claims"


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def upgrade(conn: sqlite3.Connection) -> None:
    """Add claimed_by / claimed_at to transactions and receipts."""
    for table in ("transactions", "receipts"):
        existing = _columns(conn, table)
        if "claimed_by" not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN claimed_by TEXT")
        if "claimed_at" not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN claimed_at TEXT")
        conn.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_claimed_by ON {table}(claimed_by)"
        )


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop claim columns (SQLite >= 3.35)."""
    for table in ("transactions", "receipts"):
        conn.execute(f"DROP INDEX IF EXISTS idx_{table}_claimed_by")
        existing = _columns(conn, table)
        for column in ("claimed_by", "claimed_at"):
            if column in existing:
                conn.execute(f"ALTER TABLE {table} DROP COLUMN {column}")
