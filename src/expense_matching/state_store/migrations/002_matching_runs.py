"""
Migration 002: Add matching_runs table.

One row per auto-matching run with counts and wall-clock time, used for the
processing-time metric.
"""

import sqlite3

VERSION = 2
NAME = "matching_runs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create matching_runs table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS matching_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organization_id TEXT NOT NULL,
            run_type TEXT NOT NULL,  -- auto, bulk, reprocess
            transactions_processed INTEGER NOT NULL DEFAULT 0,
            receipts_processed INTEGER NOT NULL DEFAULT 0,
            matches_found INTEGER NOT NULL DEFAULT 0,
            auto_matches INTEGER NOT NULL DEFAULT 0,
            suggestions INTEGER NOT NULL DEFAULT 0,
            processing_time_ms REAL NOT NULL DEFAULT 0,
            errors INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_matching_runs_org_created "
        "ON matching_runs(organization_id, created_at)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove matching_runs table."""
    conn.execute("DROP TABLE IF EXISTS matching_runs")
