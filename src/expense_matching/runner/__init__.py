"""
CLI runner module.

Provides commands:
- init: Create config and database
- import: Load transactions and receipts from JSON
- auto-match / bulk-match: Run matching for an organization
- suggest: Rank candidates for one item
- confirm / reject: Record reviewer decisions
- metrics / update-config / status: Inspect and tune matching
- worker: Run the background job processor
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
