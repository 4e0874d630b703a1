"""
State Store (SQLite-based).

Persistent store for:
- Transactions and receipts to be matched
- Matches with full history (suggested, active, superseded, rejected)
- Learning feedback and merchant mappings
- Per-organization matching configuration

Enforces at most one active match per transaction and per receipt.
"""

from .sqlite_store import MatchingDatabaseService

__all__ = [
    "MatchingDatabaseService",
]
