"""
SQLite-based persistence for the matching system.

Tables:
- transactions / receipts / extracted_fields: records from upstream sources
- matches: every suggested, confirmed, superseded and rejected pairing
- learning_feedback: append-only reviewer verdicts (migration 001)
- merchant_mappings: canonical merchant names per organization (migration 001)
- matching_configs: per-organization MatchingConfig overrides (migration 001)
- matching_runs: timing and counts of matching runs (migration 002)

Every query is scoped by organization_id. At most one ACTIVE match exists per
transaction and per receipt; confirmation enforces it inside one
``BEGIN IMMEDIATE`` transaction and partial unique indexes back it up.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..errors import AlreadyMatchedError, NotFoundError, PersistenceConflictError
from ..schemas.matching import (
    LearningFeedback,
    MappingSource,
    MatchRecord,
    MatchStatus,
    MatchType,
    MerchantMapping,
)
from ..schemas.records import (
    MATCHABLE_RECEIPT_STATUSES,
    ExtractedField,
    Location,
    Receipt,
    ReceiptStatus,
    Transaction,
    TransactionStatus,
    parse_amount,
    parse_date,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _placeholders(values: list | tuple | set) -> str:
    return ", ".join("?" for _ in values)


def _location_json(location: Location | None) -> str | None:
    return json.dumps(location.to_dict()) if location else None


def _transaction_from_row(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        organization_id=row["organization_id"],
        amount=parse_amount(row["amount"]),
        transaction_date=parse_date(row["transaction_date"]),
        description=row["description"] or "",
        currency=row["currency"] or "USD",
        posted_date=parse_date(row["posted_date"]),
        merchant_name=row["merchant_name"],
        merchant_category=row["merchant_category"],
        location=Location.from_dict(json.loads(row["location"])) if row["location"] else None,
        user_id=row["user_id"],
        account_id=row["account_id"],
        status=row["status"],
    )


def _receipt_from_row(row: sqlite3.Row, fields: list[ExtractedField]) -> Receipt:
    return Receipt(
        id=row["id"],
        organization_id=row["organization_id"],
        total_amount=parse_amount(row["total_amount"]),
        receipt_date=parse_date(row["receipt_date"]),
        currency=row["currency"] or "USD",
        merchant_name=row["merchant_name"],
        merchant_id=row["merchant_id"],
        location=Location.from_dict(json.loads(row["location"])) if row["location"] else None,
        uploaded_by=row["uploaded_by"],
        status=row["status"],
        extracted_fields=fields,
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
    )


def _match_from_row(row: sqlite3.Row) -> MatchRecord:
    return MatchRecord(
        id=row["id"],
        organization_id=row["organization_id"],
        transaction_id=row["transaction_id"],
        receipt_id=row["receipt_id"],
        match_type=MatchType(row["match_type"]),
        status=MatchStatus(row["status"]),
        active=bool(row["active"]),
        confidence_score=row["confidence_score"],
        match_criteria=json.loads(row["match_criteria"]) if row["match_criteria"] else None,
        reasoning=json.loads(row["reasoning"]) if row["reasoning"] else [],
        matched_by=row["matched_by"],
        matched_at=row["matched_at"],
        notes=row["notes"],
        deactivated_at=row["deactivated_at"],
    )


def _feedback_from_row(row: sqlite3.Row) -> LearningFeedback:
    return LearningFeedback(
        id=row["id"],
        organization_id=row["organization_id"],
        match_id=row["match_id"],
        was_correct=bool(row["was_correct"]),
        user_id=row["user_id"],
        feedback_date=row["feedback_date"],
        correct_transaction_id=row["correct_transaction_id"],
        correct_receipt_id=row["correct_receipt_id"],
        notes=row["notes"],
        original_confidence=row["original_confidence"],
        criteria=json.loads(row["criteria"]) if row["criteria"] else None,
        correction_criteria=(
            json.loads(row["correction_criteria"]) if row["correction_criteria"] else None
        ),
    )


def _mapping_from_row(row: sqlite3.Row) -> MerchantMapping:
    return MerchantMapping(
        id=row["id"],
        organization_id=row["organization_id"],
        canonical_name=row["canonical_name"],
        raw_names=json.loads(row["raw_names"]) if row["raw_names"] else [],
        category=row["category"],
        confidence=row["confidence"],
        created_from=MappingSource(row["created_from"]),
        verified=bool(row["verified"]),
        usage_count=row["usage_count"],
        last_used=row["last_used"],
    )


class MatchingDatabaseService:
    """
    SQLite-based store for the matching system.

    Provides persistent tracking of:
    - Transactions and receipts (with OCR fields)
    - Matches and their full history
    - Learning feedback and merchant mappings
    - Per-organization matching configuration
    - Matching run statistics

    One connection per operation; safe to share across threads.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path | str,
        run_migrations: bool = True,
        busy_timeout: float = 5.0,
        claim_ttl_seconds: int = 900,
    ):
        """
        Initialize the database service.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            busy_timeout: Seconds to wait for a write lock before conflicting
            claim_ttl_seconds: Age after which batch claims are ignored
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self.claim_ttl_seconds = claim_ttl_seconds
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
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
    def _write_lock(self) -> Iterator[sqlite3.Connection]:
        """Transaction holding the database write lock from its first statement.

        Lock timeouts and constraint violations surface as
        PersistenceConflictError so the caller can retry.
        """
        conn = self._get_connection()
        conn.isolation_level = None
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise PersistenceConflictError(f"Could not acquire write lock: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise PersistenceConflictError(f"Constraint violated: {e}") from e
            except sqlite3.OperationalError as e:
                conn.execute("ROLLBACK")
                if "locked" in str(e) or "busy" in str(e):
                    raise PersistenceConflictError(str(e)) from e
                raise
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

            # Schema version tracking
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
                    organization_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    amount TEXT NOT NULL,  -- Decimal as string, signed
                    currency TEXT NOT NULL DEFAULT 'USD',
                    transaction_date TEXT NOT NULL,
                    posted_date TEXT,
                    description TEXT,
                    merchant_name TEXT,
                    merchant_category TEXT,
                    location TEXT,  -- JSON
                    user_id TEXT,
                    account_id TEXT,
                    status TEXT NOT NULL,
                    ingested_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (organization_id, id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS receipts (
                    organization_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    total_amount TEXT,  -- Decimal as string
                    currency TEXT NOT NULL DEFAULT 'USD',
                    receipt_date TEXT,
                    merchant_name TEXT,
                    merchant_id TEXT,
                    location TEXT,  -- JSON
                    uploaded_by TEXT,
                    status TEXT NOT NULL,
                    metadata TEXT,  -- JSON
                    ingested_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (organization_id, id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS extracted_fields (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    organization_id TEXT NOT NULL,
                    receipt_id TEXT NOT NULL,
                    field_name TEXT NOT NULL,
                    field_value TEXT,  -- JSON
                    field_type TEXT NOT NULL,
                    confidence_score REAL NOT NULL DEFAULT 0,
                    verified INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (organization_id, receipt_id)
                        REFERENCES receipts(organization_id, id) ON DELETE CASCADE
                )
            """
            )

            # Matches: status SUGGESTED, ACTIVE, SUPERSEDED, REJECTED
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS matches (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    transaction_id TEXT NOT NULL,
                    receipt_id TEXT NOT NULL,
                    match_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 0,
                    confidence_score REAL NOT NULL DEFAULT 0,
                    match_criteria TEXT,  -- JSON
                    reasoning TEXT,  -- JSON array
                    matched_by TEXT,
                    matched_at TEXT NOT NULL,
                    notes TEXT,
                    rejected_by TEXT,
                    rejection_reason TEXT,
                    deactivated_at TEXT
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_extracted_fields_receipt "
                "ON extracted_fields(organization_id, receipt_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_matches_pair "
                "ON matches(organization_id, transaction_id, receipt_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_matches_status ON matches(organization_id, status)"
            )
            # One active match per transaction and per receipt
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_matches_active_transaction "
                "ON matches(organization_id, transaction_id) WHERE active = 1"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_matches_active_receipt "
                "ON matches(organization_id, receipt_id) WHERE active = 1"
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

    # Record source methods

    def upsert_transaction(self, transaction: Transaction) -> None:
        """Insert or update a transaction. Match status is preserved."""
        transaction.validate()
        now = _now()
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT status FROM transactions WHERE organization_id = ? AND id = ?",
                (transaction.organization_id, transaction.id),
            ).fetchone()

            values = (
                str(transaction.amount),
                transaction.currency,
                transaction.transaction_date.isoformat(),  # type: ignore[union-attr]
                transaction.posted_date.isoformat() if transaction.posted_date else None,
                transaction.description,
                transaction.merchant_name,
                transaction.merchant_category,
                _location_json(transaction.location),
                transaction.user_id,
                transaction.account_id,
            )
            if existing:
                status = existing["status"]
                if status != TransactionStatus.MATCHED.value:
                    status = transaction.status
                conn.execute(
                    """
                    UPDATE transactions
                    SET amount = ?, currency = ?, transaction_date = ?, posted_date = ?,
                        description = ?, merchant_name = ?, merchant_category = ?,
                        location = ?, user_id = ?, account_id = ?, status = ?, updated_at = ?
                    WHERE organization_id = ? AND id = ?
                """,
                    (*values, status, now, transaction.organization_id, transaction.id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO transactions
                    (amount, currency, transaction_date, posted_date, description, merchant_name,
                     merchant_category, location, user_id, account_id, status,
                     ingested_at, updated_at, organization_id, id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (*values, transaction.status, now, now, transaction.organization_id, transaction.id),
                )

    def upsert_receipt(self, receipt: Receipt) -> None:
        """Insert or update a receipt and replace its extracted fields."""
        receipt.validate()
        now = _now()
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT status FROM receipts WHERE organization_id = ? AND id = ?",
                (receipt.organization_id, receipt.id),
            ).fetchone()

            values = (
                str(receipt.total_amount),
                receipt.currency,
                receipt.receipt_date.isoformat(),  # type: ignore[union-attr]
                receipt.merchant_name,
                receipt.merchant_id,
                _location_json(receipt.location),
                receipt.uploaded_by,
                json.dumps(receipt.metadata or {}),
            )
            if existing:
                status = existing["status"]
                if status != ReceiptStatus.MATCHED.value:
                    status = receipt.status
                conn.execute(
                    """
                    UPDATE receipts
                    SET total_amount = ?, currency = ?, receipt_date = ?, merchant_name = ?,
                        merchant_id = ?, location = ?, uploaded_by = ?, metadata = ?,
                        status = ?, updated_at = ?
                    WHERE organization_id = ? AND id = ?
                """,
                    (*values, status, now, receipt.organization_id, receipt.id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO receipts
                    (total_amount, currency, receipt_date, merchant_name, merchant_id, location,
                     uploaded_by, metadata, status, ingested_at, updated_at, organization_id, id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (*values, receipt.status, now, now, receipt.organization_id, receipt.id),
                )

            conn.execute(
                "DELETE FROM extracted_fields WHERE organization_id = ? AND receipt_id = ?",
                (receipt.organization_id, receipt.id),
            )
            for f in receipt.extracted_fields:
                conn.execute(
                    """
                    INSERT INTO extracted_fields
                    (organization_id, receipt_id, field_name, field_value, field_type,
                     confidence_score, verified)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        receipt.organization_id,
                        receipt.id,
                        f.field_name,
                        json.dumps(f.field_value),
                        f.field_type,
                        f.confidence_score,
                        int(f.verified),
                    ),
                )

    def _load_receipts(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Receipt]:
        """Attach extracted fields to receipt rows (one query per call)."""
        if not rows:
            return []
        organization_id = rows[0]["organization_id"]
        ids = [row["id"] for row in rows]
        field_rows = conn.execute(
            f"""
            SELECT * FROM extracted_fields
            WHERE organization_id = ? AND receipt_id IN ({_placeholders(ids)})
            ORDER BY id
        """,
            (organization_id, *ids),
        ).fetchall()

        fields: dict[str, list[ExtractedField]] = {}
        for f in field_rows:
            fields.setdefault(f["receipt_id"], []).append(
                ExtractedField(
                    field_name=f["field_name"],
                    field_value=json.loads(f["field_value"]) if f["field_value"] else None,
                    field_type=f["field_type"],
                    confidence_score=f["confidence_score"],
                    verified=bool(f["verified"]),
                )
            )
        return [_receipt_from_row(row, fields.get(row["id"], [])) for row in rows]

    def get_transaction(self, organization_id: str, transaction_id: str) -> Transaction | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE organization_id = ? AND id = ?",
                (organization_id, transaction_id),
            ).fetchone()
            return _transaction_from_row(row) if row else None

    def get_receipt(self, organization_id: str, receipt_id: str) -> Receipt | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM receipts WHERE organization_id = ? AND id = ?",
                (organization_id, receipt_id),
            ).fetchone()
            receipts = self._load_receipts(conn, [row] if row else [])
            return receipts[0] if receipts else None

    def get_transactions(self, organization_id: str, ids: list[str]) -> list[Transaction]:
        """Transactions by id, in the order given; unknown ids are omitted."""
        if not ids:
            return []
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions WHERE organization_id = ? AND id IN ({_placeholders(ids)})",
                (organization_id, *ids),
            ).fetchall()
        by_id = {row["id"]: _transaction_from_row(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def get_receipts(self, organization_id: str, ids: list[str]) -> list[Receipt]:
        """Receipts by id, in the order given; unknown ids are omitted."""
        if not ids:
            return []
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM receipts WHERE organization_id = ? AND id IN ({_placeholders(ids)})",
                (organization_id, *ids),
            ).fetchall()
            receipts = self._load_receipts(conn, rows)
        by_id = {r.id: r for r in receipts}
        return [by_id[i] for i in ids if i in by_id]

    # Unmatched pools

    def _claim_filter(self, alias: str, claim_token: str | None) -> tuple[str, tuple]:
        if claim_token is None:
            return "", ()
        stale = (
            datetime.now(timezone.utc) - timedelta(seconds=self.claim_ttl_seconds)
        ).isoformat().replace("+00:00", "Z")
        return (
            f" AND ({alias}.claimed_by IS NULL OR {alias}.claimed_by = ? OR {alias}.claimed_at < ?)",
            (claim_token, stale),
        )

    def get_unmatched_transactions(
        self,
        organization_id: str,
        limit: int = 100,
        after_id: str | None = None,
        claim_token: str | None = None,
    ) -> list[Transaction]:
        """Transactions without an active match, not cancelled, ordered by id.

        Args:
            organization_id: Organization scope
            limit: Page size
            after_id: Keyset cursor (exclusive)
            claim_token: When given, skip rows claimed by other workers
        """
        claim_sql, claim_args = self._claim_filter("t", claim_token)
        cursor_sql = " AND t.id > ?" if after_id is not None else ""
        cursor_args = (after_id,) if after_id is not None else ()
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT t.* FROM transactions t
                WHERE t.organization_id = ?
                  AND t.status != ?
                  AND NOT EXISTS (
                      SELECT 1 FROM matches m
                      WHERE m.organization_id = t.organization_id
                        AND m.transaction_id = t.id AND m.active = 1
                  ){cursor_sql}{claim_sql}
                ORDER BY t.id
                LIMIT ?
            """,
                (organization_id, TransactionStatus.CANCELLED.value, *cursor_args, *claim_args, limit),
            ).fetchall()
            return [_transaction_from_row(row) for row in rows]

    def get_unmatched_receipts(
        self,
        organization_id: str,
        limit: int = 100,
        claim_token: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[Receipt]:
        """Matchable receipts (uploaded/processed) without an active match, newest first.

        date_from / date_to bound receipt_date inclusively when given.
        """
        claim_sql, claim_args = self._claim_filter("r", claim_token)
        if date_from is not None:
            claim_sql += " AND r.receipt_date >= ?"
            claim_args += (date_from.isoformat(),)
        if date_to is not None:
            claim_sql += " AND r.receipt_date <= ?"
            claim_args += (date_to.isoformat(),)
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT r.* FROM receipts r
                WHERE r.organization_id = ?
                  AND r.status IN ({_placeholders(MATCHABLE_RECEIPT_STATUSES)})
                  AND NOT EXISTS (
                      SELECT 1 FROM matches m
                      WHERE m.organization_id = r.organization_id
                        AND m.receipt_id = r.id AND m.active = 1
                  ){claim_sql}
                ORDER BY r.receipt_date DESC, r.id
                LIMIT ?
            """,
                (organization_id, *MATCHABLE_RECEIPT_STATUSES, *claim_args, limit),
            ).fetchall()
            return self._load_receipts(conn, rows)

    # Batch claims

    def _claim(self, table: str, organization_id: str, ids: list[str], token: str) -> list[str]:
        if not ids:
            return []
        now = _now()
        stale = (
            datetime.now(timezone.utc) - timedelta(seconds=self.claim_ttl_seconds)
        ).isoformat().replace("+00:00", "Z")
        with self._write_lock() as conn:
            conn.execute(
                f"""
                UPDATE {table} SET claimed_by = ?, claimed_at = ?
                WHERE organization_id = ? AND id IN ({_placeholders(ids)})
                  AND (claimed_by IS NULL OR claimed_by = ? OR claimed_at < ?)
            """,
                (token, now, organization_id, *ids, token, stale),
            )
            rows = conn.execute(
                f"""
                SELECT id FROM {table}
                WHERE organization_id = ? AND claimed_by = ? AND id IN ({_placeholders(ids)})
            """,
                (organization_id, token, *ids),
            ).fetchall()
        claimed = {row["id"] for row in rows}
        return [i for i in ids if i in claimed]

    def claim_transactions(self, organization_id: str, ids: list[str], token: str) -> list[str]:
        """Claim transactions for a batch; returns the ids actually claimed."""
        return self._claim("transactions", organization_id, ids, token)

    def claim_receipts(self, organization_id: str, ids: list[str], token: str) -> list[str]:
        """Claim receipts for a batch; returns the ids actually claimed."""
        return self._claim("receipts", organization_id, ids, token)

    def release_claims(self, token: str) -> None:
        with self._transaction() as conn:
            for table in ("transactions", "receipts"):
                conn.execute(
                    f"UPDATE {table} SET claimed_by = NULL, claimed_at = NULL WHERE claimed_by = ?",
                    (token,),
                )

    # Match methods

    def _require_records(
        self, conn: sqlite3.Connection, organization_id: str, transaction_id: str, receipt_id: str
    ) -> None:
        if not conn.execute(
            "SELECT 1 FROM transactions WHERE organization_id = ? AND id = ?",
            (organization_id, transaction_id),
        ).fetchone():
            raise NotFoundError("transaction", transaction_id)
        if not conn.execute(
            "SELECT 1 FROM receipts WHERE organization_id = ? AND id = ?",
            (organization_id, receipt_id),
        ).fetchone():
            raise NotFoundError("receipt", receipt_id)

    def save_match(
        self,
        organization_id: str,
        transaction_id: str,
        receipt_id: str,
        match_type: MatchType,
        confidence_score: float,
        match_criteria: dict | None = None,
        reasoning: list[str] | None = None,
        matched_by: str | None = None,
        notes: str | None = None,
        supersede: bool = True,
    ) -> tuple[MatchRecord, list[str]]:
        """Confirm a match atomically.

        Within one write-locked transaction: verify both records, deactivate
        any active match on either side (SUPERSEDED), promote a pending
        suggestion for the pair or insert a new row, and mark both records
        matched. Items left without a match by a supersession revert to
        ``processed``.

        Args:
            supersede: If False, an existing active match on either side
                raises AlreadyMatchedError instead of being replaced.

        Returns:
            (the active MatchRecord, ids of superseded matches)

        Raises:
            NotFoundError: Transaction or receipt unknown in this organization.
            AlreadyMatchedError: supersede=False and either side is taken.
            PersistenceConflictError: Lock contention or constraint race.
        """
        now = _now()
        criteria_json = json.dumps(match_criteria) if match_criteria is not None else None
        reasoning_json = json.dumps(reasoning or [])

        with self._write_lock() as conn:
            self._require_records(conn, organization_id, transaction_id, receipt_id)

            active_rows = conn.execute(
                """
                SELECT * FROM matches
                WHERE organization_id = ? AND active = 1
                  AND (transaction_id = ? OR receipt_id = ?)
            """,
                (organization_id, transaction_id, receipt_id),
            ).fetchall()

            same_pair = [
                r for r in active_rows
                if r["transaction_id"] == transaction_id and r["receipt_id"] == receipt_id
            ]
            if same_pair:
                # Re-confirmation of the current match: record who and how
                match_id = same_pair[0]["id"]
                conn.execute(
                    """
                    UPDATE matches
                    SET match_type = ?, matched_by = COALESCE(?, matched_by),
                        notes = COALESCE(?, notes)
                    WHERE id = ?
                """,
                    (match_type.value, matched_by, notes, match_id),
                )
                row = conn.execute("SELECT * FROM matches WHERE id = ?", (match_id,)).fetchone()
                return _match_from_row(row), []

            if active_rows and not supersede:
                raise AlreadyMatchedError(transaction_id, receipt_id, active_rows[0]["id"])

            superseded_ids = [r["id"] for r in active_rows]
            if superseded_ids:
                conn.execute(
                    f"""
                    UPDATE matches SET active = 0, status = ?, deactivated_at = ?
                    WHERE id IN ({_placeholders(superseded_ids)})
                """,
                    (MatchStatus.SUPERSEDED.value, now, *superseded_ids),
                )
                for r in active_rows:
                    if r["transaction_id"] != transaction_id:
                        conn.execute(
                            "UPDATE transactions SET status = ?, updated_at = ? "
                            "WHERE organization_id = ? AND id = ?",
                            (TransactionStatus.PROCESSED.value, now, organization_id, r["transaction_id"]),
                        )
                    if r["receipt_id"] != receipt_id:
                        conn.execute(
                            "UPDATE receipts SET status = ?, updated_at = ? "
                            "WHERE organization_id = ? AND id = ?",
                            (ReceiptStatus.PROCESSED.value, now, organization_id, r["receipt_id"]),
                        )

            suggestion = conn.execute(
                """
                SELECT id FROM matches
                WHERE organization_id = ? AND transaction_id = ? AND receipt_id = ? AND status = ?
            """,
                (organization_id, transaction_id, receipt_id, MatchStatus.SUGGESTED.value),
            ).fetchone()

            if suggestion:
                match_id = suggestion["id"]
                conn.execute(
                    """
                    UPDATE matches
                    SET match_type = ?, status = ?, active = 1, confidence_score = ?,
                        match_criteria = COALESCE(?, match_criteria), reasoning = ?,
                        matched_by = ?, matched_at = ?, notes = ?
                    WHERE id = ?
                """,
                    (
                        match_type.value,
                        MatchStatus.ACTIVE.value,
                        confidence_score,
                        criteria_json,
                        reasoning_json,
                        matched_by,
                        now,
                        notes,
                        match_id,
                    ),
                )
            else:
                match_id = str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO matches
                    (id, organization_id, transaction_id, receipt_id, match_type, status, active,
                     confidence_score, match_criteria, reasoning, matched_by, matched_at, notes)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        match_id,
                        organization_id,
                        transaction_id,
                        receipt_id,
                        match_type.value,
                        MatchStatus.ACTIVE.value,
                        confidence_score,
                        criteria_json,
                        reasoning_json,
                        matched_by,
                        now,
                        notes,
                    ),
                )

            # Pending suggestions touching either side are obsolete now
            conn.execute(
                """
                UPDATE matches SET status = ?, deactivated_at = ?
                WHERE organization_id = ? AND status = ? AND id != ?
                  AND (transaction_id = ? OR receipt_id = ?)
            """,
                (
                    MatchStatus.SUPERSEDED.value,
                    now,
                    organization_id,
                    MatchStatus.SUGGESTED.value,
                    match_id,
                    transaction_id,
                    receipt_id,
                ),
            )

            conn.execute(
                "UPDATE transactions SET status = ?, updated_at = ? WHERE organization_id = ? AND id = ?",
                (TransactionStatus.MATCHED.value, now, organization_id, transaction_id),
            )
            conn.execute(
                "UPDATE receipts SET status = ?, updated_at = ? WHERE organization_id = ? AND id = ?",
                (ReceiptStatus.MATCHED.value, now, organization_id, receipt_id),
            )

            row = conn.execute("SELECT * FROM matches WHERE id = ?", (match_id,)).fetchone()

        if superseded_ids:
            logger.info(
                "Match %s superseded %s (organization %s)", match_id, superseded_ids, organization_id
            )
        return _match_from_row(row), superseded_ids

    def save_suggestion(
        self,
        organization_id: str,
        transaction_id: str,
        receipt_id: str,
        confidence_score: float,
        match_criteria: dict | None = None,
        reasoning: list[str] | None = None,
    ) -> str | None:
        """Record a pending suggestion for review.

        Idempotent: returns the existing suggestion id if one is pending, and
        None if the pair was already confirmed or rejected.
        """
        with self._write_lock() as conn:
            existing = conn.execute(
                """
                SELECT id, status FROM matches
                WHERE organization_id = ? AND transaction_id = ? AND receipt_id = ?
                  AND status IN (?, ?, ?)
            """,
                (
                    organization_id,
                    transaction_id,
                    receipt_id,
                    MatchStatus.SUGGESTED.value,
                    MatchStatus.ACTIVE.value,
                    MatchStatus.REJECTED.value,
                ),
            ).fetchone()
            if existing:
                return existing["id"] if existing["status"] == MatchStatus.SUGGESTED.value else None

            suggestion_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO matches
                (id, organization_id, transaction_id, receipt_id, match_type, status, active,
                 confidence_score, match_criteria, reasoning, matched_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            """,
                (
                    suggestion_id,
                    organization_id,
                    transaction_id,
                    receipt_id,
                    MatchType.SUGGESTED.value,
                    MatchStatus.SUGGESTED.value,
                    confidence_score,
                    json.dumps(match_criteria) if match_criteria is not None else None,
                    json.dumps(reasoning or []),
                    _now(),
                ),
            )
            return suggestion_id

    def reject_match(
        self,
        organization_id: str,
        transaction_id: str,
        receipt_id: str,
        rejected_by: str | None,
        reason: str | None = None,
        confidence_score: float = 0.0,
        match_criteria: dict | None = None,
    ) -> MatchRecord:
        """Reject a pair, keeping the record.

        The active or pending row for the pair becomes REJECTED; without one a
        REJECTED row is inserted so the verdict is still on record. Rejecting
        an active match returns both records to ``processed``.

        Raises:
            NotFoundError: Transaction or receipt unknown in this organization.
        """
        now = _now()
        with self._write_lock() as conn:
            self._require_records(conn, organization_id, transaction_id, receipt_id)

            row = conn.execute(
                """
                SELECT * FROM matches
                WHERE organization_id = ? AND transaction_id = ? AND receipt_id = ?
                  AND status IN (?, ?)
                ORDER BY active DESC
                LIMIT 1
            """,
                (
                    organization_id,
                    transaction_id,
                    receipt_id,
                    MatchStatus.ACTIVE.value,
                    MatchStatus.SUGGESTED.value,
                ),
            ).fetchone()

            if row:
                match_id = row["id"]
                conn.execute(
                    """
                    UPDATE matches
                    SET active = 0, status = ?, match_type = ?, rejected_by = ?,
                        rejection_reason = ?, deactivated_at = ?
                    WHERE id = ?
                """,
                    (
                        MatchStatus.REJECTED.value,
                        MatchType.REJECTED.value,
                        rejected_by,
                        reason,
                        now,
                        match_id,
                    ),
                )
                if row["active"]:
                    conn.execute(
                        "UPDATE transactions SET status = ?, updated_at = ? "
                        "WHERE organization_id = ? AND id = ?",
                        (TransactionStatus.PROCESSED.value, now, organization_id, transaction_id),
                    )
                    conn.execute(
                        "UPDATE receipts SET status = ?, updated_at = ? "
                        "WHERE organization_id = ? AND id = ?",
                        (ReceiptStatus.PROCESSED.value, now, organization_id, receipt_id),
                    )
            else:
                match_id = str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO matches
                    (id, organization_id, transaction_id, receipt_id, match_type, status, active,
                     confidence_score, match_criteria, reasoning, matched_at, rejected_by,
                     rejection_reason, deactivated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, '[]', ?, ?, ?, ?)
                """,
                    (
                        match_id,
                        organization_id,
                        transaction_id,
                        receipt_id,
                        MatchType.REJECTED.value,
                        MatchStatus.REJECTED.value,
                        confidence_score,
                        json.dumps(match_criteria) if match_criteria is not None else None,
                        now,
                        rejected_by,
                        reason,
                        now,
                    ),
                )

            result = conn.execute("SELECT * FROM matches WHERE id = ?", (match_id,)).fetchone()

        return _match_from_row(result)

    def get_match(self, match_id: str) -> MatchRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM matches WHERE id = ?", (match_id,)).fetchone()
            return _match_from_row(row) if row else None

    def get_active_match_for_transaction(
        self, organization_id: str, transaction_id: str
    ) -> MatchRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM matches WHERE organization_id = ? AND transaction_id = ? AND active = 1",
                (organization_id, transaction_id),
            ).fetchone()
            return _match_from_row(row) if row else None

    def get_active_match_for_receipt(
        self, organization_id: str, receipt_id: str
    ) -> MatchRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM matches WHERE organization_id = ? AND receipt_id = ? AND active = 1",
                (organization_id, receipt_id),
            ).fetchone()
            return _match_from_row(row) if row else None

    def get_match_history(
        self,
        organization_id: str,
        transaction_id: str | None = None,
        receipt_id: str | None = None,
    ) -> list[MatchRecord]:
        """All match rows (any status) for a transaction and/or receipt, oldest first."""
        clauses = ["organization_id = ?"]
        params: list[Any] = [organization_id]
        if transaction_id is not None:
            clauses.append("transaction_id = ?")
            params.append(transaction_id)
        if receipt_id is not None:
            clauses.append("receipt_id = ?")
            params.append(receipt_id)
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM matches WHERE {' AND '.join(clauses)} ORDER BY matched_at, rowid",
                params,
            ).fetchall()
            return [_match_from_row(row) for row in rows]

    def get_suggestions(self, organization_id: str, limit: int = 100) -> list[MatchRecord]:
        """Pending suggestions, highest confidence first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM matches WHERE organization_id = ? AND status = ?
                ORDER BY confidence_score DESC, matched_at
                LIMIT ?
            """,
                (organization_id, MatchStatus.SUGGESTED.value, limit),
            ).fetchall()
            return [_match_from_row(row) for row in rows]

    def get_rejected_pairs(self, organization_id: str) -> set[tuple[str, str]]:
        """(transaction_id, receipt_id) pairs a reviewer rejected."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT transaction_id, receipt_id FROM matches WHERE organization_id = ? AND status = ?",
                (organization_id, MatchStatus.REJECTED.value),
            ).fetchall()
            return {(row["transaction_id"], row["receipt_id"]) for row in rows}

    def get_transactions_with_rejections(
        self, organization_id: str, limit: int = 100
    ) -> list[Transaction]:
        """Unmatched transactions that have at least one rejected match."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT t.* FROM transactions t
                WHERE t.organization_id = ?
                  AND t.status != ?
                  AND EXISTS (
                      SELECT 1 FROM matches m
                      WHERE m.organization_id = t.organization_id
                        AND m.transaction_id = t.id AND m.status = ?
                  )
                  AND NOT EXISTS (
                      SELECT 1 FROM matches m
                      WHERE m.organization_id = t.organization_id
                        AND m.transaction_id = t.id AND m.active = 1
                  )
                ORDER BY t.id
                LIMIT ?
            """,
                (organization_id, TransactionStatus.CANCELLED.value, MatchStatus.REJECTED.value, limit),
            ).fetchall()
            return [_transaction_from_row(row) for row in rows]

    # Learning feedback

    def save_learning_feedback(self, feedback: LearningFeedback) -> None:
        """Append a feedback entry (never updated or deleted)."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO learning_feedback
                (id, organization_id, match_id, was_correct, correct_transaction_id,
                 correct_receipt_id, user_id, feedback_date, notes, original_confidence,
                 criteria, correction_criteria)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    feedback.id,
                    feedback.organization_id,
                    feedback.match_id,
                    int(feedback.was_correct),
                    feedback.correct_transaction_id,
                    feedback.correct_receipt_id,
                    feedback.user_id,
                    feedback.feedback_date,
                    feedback.notes,
                    feedback.original_confidence,
                    json.dumps(feedback.criteria) if feedback.criteria else None,
                    json.dumps(feedback.correction_criteria) if feedback.correction_criteria else None,
                ),
            )

    def get_learning_feedback(
        self, organization_id: str, since: str | None = None
    ) -> list[LearningFeedback]:
        """Feedback of an organization, oldest first, optionally since an ISO timestamp."""
        with self._transaction() as conn:
            if since:
                rows = conn.execute(
                    """
                    SELECT * FROM learning_feedback
                    WHERE organization_id = ? AND feedback_date >= ?
                    ORDER BY feedback_date, rowid
                """,
                    (organization_id, since),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM learning_feedback WHERE organization_id = ? ORDER BY feedback_date, rowid",
                    (organization_id,),
                ).fetchall()
            return [_feedback_from_row(row) for row in rows]

    # Merchant mappings

    def get_merchant_mappings(self, organization_id: str) -> list[MerchantMapping]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM merchant_mappings WHERE organization_id = ? ORDER BY canonical_name",
                (organization_id,),
            ).fetchall()
            return [_mapping_from_row(row) for row in rows]

    def save_merchant_mapping(self, mapping: MerchantMapping) -> None:
        """Insert or update a merchant mapping by id."""
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO merchant_mappings
                (id, organization_id, canonical_name, raw_names, category, confidence,
                 created_from, verified, usage_count, last_used, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    raw_names = excluded.raw_names,
                    category = excluded.category,
                    confidence = excluded.confidence,
                    verified = MAX(verified, excluded.verified),
                    usage_count = MAX(usage_count, excluded.usage_count),
                    last_used = excluded.last_used,
                    updated_at = excluded.updated_at
            """,
                (
                    mapping.id,
                    mapping.organization_id,
                    mapping.canonical_name,
                    json.dumps(mapping.raw_names),
                    mapping.category,
                    mapping.confidence,
                    mapping.created_from.value,
                    int(mapping.verified),
                    mapping.usage_count,
                    mapping.last_used,
                    now,
                    now,
                ),
            )

    def record_merchant_usage(self, mapping_id: str, count: int, last_used: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE merchant_mappings
                SET usage_count = usage_count + ?, last_used = ?, updated_at = ?
                WHERE id = ?
            """,
                (count, last_used, _now(), mapping_id),
            )

    # Matching configuration

    def get_matching_config(self, organization_id: str) -> dict[str, Any] | None:
        """Stored per-organization overrides, or None."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT config_json FROM matching_configs WHERE organization_id = ?",
                (organization_id,),
            ).fetchone()
            return json.loads(row["config_json"]) if row else None

    def save_matching_config(
        self, organization_id: str, config: dict[str, Any], updated_by: str | None = None
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO matching_configs (organization_id, config_json, updated_by, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(organization_id) DO UPDATE SET
                    config_json = excluded.config_json,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
            """,
                (organization_id, json.dumps(config), updated_by, _now()),
            )

    # Runs and statistics

    def record_matching_run(
        self,
        organization_id: str,
        run_type: str,
        transactions_processed: int,
        receipts_processed: int,
        matches_found: int,
        auto_matches: int,
        suggestions: int,
        processing_time_ms: float,
        errors: int = 0,
    ) -> int:
        """Record timing and counts of a matching run."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO matching_runs
                (organization_id, run_type, transactions_processed, receipts_processed,
                 matches_found, auto_matches, suggestions, processing_time_ms, errors, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    organization_id,
                    run_type,
                    transactions_processed,
                    receipts_processed,
                    matches_found,
                    auto_matches,
                    suggestions,
                    processing_time_ms,
                    errors,
                    _now(),
                ),
            )
            return cursor.lastrowid or 0

    def get_matching_stats(self, organization_id: str, since: str) -> dict[str, Any]:
        """Raw counts for metrics since an ISO timestamp."""
        org = organization_id
        with self._transaction() as conn:

            def scalar(sql: str, *params: Any) -> Any:
                return conn.execute(sql, params).fetchone()[0]

            unmatched_tx_sql = """
                SELECT COUNT(*) FROM transactions t
                WHERE t.organization_id = ? AND t.ingested_at >= ? AND t.status != ?
                  AND NOT EXISTS (
                      SELECT 1 FROM matches m WHERE m.organization_id = t.organization_id
                        AND m.transaction_id = t.id AND m.active = 1
                  )
            """
            unmatched_receipt_sql = f"""
                SELECT COUNT(*) FROM receipts r
                WHERE r.organization_id = ? AND r.ingested_at >= ?
                  AND r.status IN ({_placeholders(MATCHABLE_RECEIPT_STATUSES)})
                  AND NOT EXISTS (
                      SELECT 1 FROM matches m WHERE m.organization_id = r.organization_id
                        AND m.receipt_id = r.id AND m.active = 1
                  )
            """

            return {
                "total_transactions": scalar(
                    "SELECT COUNT(*) FROM transactions WHERE organization_id = ? AND ingested_at >= ?",
                    org,
                    since,
                ),
                "total_receipts": scalar(
                    "SELECT COUNT(*) FROM receipts WHERE organization_id = ? AND ingested_at >= ?",
                    org,
                    since,
                ),
                "auto_matched": scalar(
                    "SELECT COUNT(*) FROM matches WHERE organization_id = ? AND active = 1 "
                    "AND match_type = ? AND matched_at >= ?",
                    org,
                    MatchType.AUTO.value,
                    since,
                ),
                "manual_matched": scalar(
                    "SELECT COUNT(*) FROM matches WHERE organization_id = ? AND active = 1 "
                    "AND match_type IN (?, ?) AND matched_at >= ?",
                    org,
                    MatchType.MANUAL.value,
                    MatchType.REVIEWED.value,
                    since,
                ),
                "unmatched_transactions": scalar(
                    unmatched_tx_sql, org, since, TransactionStatus.CANCELLED.value
                ),
                "unmatched_receipts": scalar(
                    unmatched_receipt_sql, org, since, *MATCHABLE_RECEIPT_STATUSES
                ),
                "average_confidence": scalar(
                    "SELECT AVG(confidence_score) FROM matches WHERE organization_id = ? "
                    "AND active = 1 AND matched_at >= ?",
                    org,
                    since,
                ),
                "feedback_total": scalar(
                    "SELECT COUNT(*) FROM learning_feedback WHERE organization_id = ? "
                    "AND feedback_date >= ?",
                    org,
                    since,
                ),
                "feedback_correct": scalar(
                    "SELECT COUNT(*) FROM learning_feedback WHERE organization_id = ? "
                    "AND feedback_date >= ? AND was_correct = 1",
                    org,
                    since,
                ),
                "user_corrections": scalar(
                    "SELECT COUNT(*) FROM learning_feedback WHERE organization_id = ? "
                    "AND feedback_date >= ? AND was_correct = 0",
                    org,
                    since,
                ),
                "processing_time_avg_ms": scalar(
                    "SELECT AVG(processing_time_ms) FROM matching_runs WHERE organization_id = ? "
                    "AND created_at >= ?",
                    org,
                    since,
                ),
            }

    def get_stats(self) -> dict[str, Any]:
        """Get database-wide statistics."""
        with self._transaction() as conn:

            def count(sql: str, *params: Any) -> int:
                row = conn.execute(sql, params).fetchone()
                return row[0] if row else 0

            return {
                "organizations": count(
                    "SELECT COUNT(DISTINCT organization_id) FROM transactions"
                ),
                "transactions_total": count("SELECT COUNT(*) FROM transactions"),
                "receipts_total": count("SELECT COUNT(*) FROM receipts"),
                "matches_active": count("SELECT COUNT(*) FROM matches WHERE active = 1"),
                "suggestions_pending": count(
                    "SELECT COUNT(*) FROM matches WHERE status = ?", MatchStatus.SUGGESTED.value
                ),
                "matches_rejected": count(
                    "SELECT COUNT(*) FROM matches WHERE status = ?", MatchStatus.REJECTED.value
                ),
                "feedback_total": count("SELECT COUNT(*) FROM learning_feedback"),
                "merchant_mappings": count("SELECT COUNT(*) FROM merchant_mappings"),
            }
