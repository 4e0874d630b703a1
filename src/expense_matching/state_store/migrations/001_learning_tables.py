"""
Migration 001: Add learning tables.

- learning_feedback: append-only reviewer verdicts with the evidence of the
  judged pair and, for corrections, of the correct pair
- merchant_mappings: canonical merchant names per organization
- matching_configs: per-organization MatchingConfig overrides
"""

import sqlite3

VERSION = 1
NAME = "learning_tables"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create learning_feedback, merchant_mappings and matching_configs."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS learning_feedback (
            id TEXT PRIMARY KEY,
            organization_id TEXT NOT NULL,
            match_id TEXT,
            was_correct INTEGER NOT NULL,
            correct_transaction_id TEXT,
            correct_receipt_id TEXT,
            user_id TEXT,
            feedback_date TEXT NOT NULL,
            notes TEXT,
            original_confidence REAL,
            criteria TEXT,  -- JSON MatchCriteria of the judged pair
            correction_criteria TEXT  -- JSON MatchCriteria of the correct pair
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_learning_feedback_org_date "
        "ON learning_feedback(organization_id, feedback_date)"
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS merchant_mappings (
            id TEXT PRIMARY KEY,
            organization_id TEXT NOT NULL,
            canonical_name TEXT NOT NULL,
            raw_names TEXT NOT NULL,  -- JSON array
            category TEXT,
            confidence REAL NOT NULL DEFAULT 0,
            created_from TEXT NOT NULL,  -- transaction, receipt, manual, learning
            verified INTEGER NOT NULL DEFAULT 0,
            usage_count INTEGER NOT NULL DEFAULT 0,
            last_used TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (organization_id, canonical_name)
        )
    """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS matching_configs (
            organization_id TEXT PRIMARY KEY,
            config_json TEXT NOT NULL,
            updated_by TEXT,
            updated_at TEXT NOT NULL
        )
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove learning tables."""
    conn.execute("DROP TABLE IF EXISTS matching_configs")
    conn.execute("DROP TABLE IF EXISTS merchant_mappings")
    conn.execute("DROP TABLE IF EXISTS learning_feedback")
