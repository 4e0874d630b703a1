"""Matching orchestration service.

Entry point for every matching operation. Per organization it:
- Holds the MatchingConfig snapshot (explicit keyed registry, no singleton)
- Runs greedy auto-matching over a transaction batch and a receipt pool
- Persists auto matches immediately and queues suggestions for review
- Confirms and rejects matches atomically, retrying persistence conflicts
- Feeds reviewer verdicts to the learning engine and merchant mappings
- Pages through the backlog in claimed batches (bulk matching)

Match lifecycle:
    unmatched -> suggested -> confirmed (auto | manual | reviewed) | rejected
A confirmed match may be superseded atomically by a later confirmation.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, TypeVar

from expense_matching.config import Config, ConfigValidationError, MatchingConfig
from expense_matching.errors import (
    AlreadyMatchedError,
    MatchingError,
    NotFoundError,
    PersistenceConflictError,
    RecordValidationError,
)
from expense_matching.matching.engine import MatchingEngine
from expense_matching.matching.learning import LearningEngine
from expense_matching.matching.merchant import MerchantMatcher, normalize_merchant_name
from expense_matching.schemas.matching import (
    CONFIRMED_MATCH_TYPES,
    BulkMatchResult,
    LearningFeedback,
    MappingSource,
    MatchCandidate,
    MatchingMetrics,
    MatchRecord,
    MatchResult,
    MatchStatus,
    MatchSuggestion,
    MatchType,
)
from expense_matching.schemas.records import Receipt, ReceiptStatus, Transaction, TransactionStatus

if TYPE_CHECKING:
    from expense_matching.state_store import MatchingDatabaseService

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Backoff between conflict retries (seconds, multiplied by attempt)
RETRY_BACKOFF_SECONDS = 0.05


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MatchingService:
    """Orchestrates matching, confirmation, rejection and learning."""

    def __init__(
        self,
        store: MatchingDatabaseService,
        config: Config | None = None,
        merchant_matcher: MerchantMatcher | None = None,
        learning_engine: LearningEngine | None = None,
    ) -> None:
        """
        Initialize the matching service.

        Args:
            store: Database service for records, matches and feedback
            config: Application configuration (defaults if omitted)
            merchant_matcher: Shared merchant matcher (created if omitted)
            learning_engine: Learning engine (created if omitted)
        """
        self.store = store
        self.config = config or Config()
        self.merchant_matcher = merchant_matcher or MerchantMatcher(
            store, similarity_threshold=self.config.matching.merchant_similarity_threshold
        )
        self.learning = learning_engine or LearningEngine(store, self.config.learning)

        # organization_id -> MatchingConfig snapshot
        self._configs: dict[str, MatchingConfig] = {}
        self._org_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # Configuration registry

    def _org_lock(self, organization_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._org_locks.get(organization_id)
            if lock is None:
                lock = self._org_locks[organization_id] = threading.Lock()
            return lock

    def get_config(self, organization_id: str) -> MatchingConfig:
        """Current MatchingConfig of an organization (stored overrides on defaults)."""
        with self._org_lock(organization_id):
            config = self._configs.get(organization_id)
            if config is None:
                stored = self.store.get_matching_config(organization_id)
                config = self.config.matching.merged(stored)
                self._configs[organization_id] = config
            return config

    def set_matching_config(
        self,
        organization_id: str,
        overrides: dict[str, Any],
        updated_by: str | None = None,
    ) -> MatchingConfig:
        """Apply and persist partial overrides for an organization.

        Raises:
            ConfigValidationError: If the resulting configuration is invalid.
        """
        with self._org_lock(organization_id):
            current = self._configs.get(organization_id)
            if current is None:
                current = self.config.matching.merged(
                    self.store.get_matching_config(organization_id)
                )
            updated = current.merged(overrides)
            errors = updated.validate()
            if errors:
                raise ConfigValidationError(errors)

            self.store.save_matching_config(organization_id, updated.to_dict(), updated_by)
            self._configs[organization_id] = updated

        logger.info(
            "Updated matching config for organization %s by %s: %s",
            organization_id,
            updated_by or "system",
            overrides,
        )
        return updated

    def reset_organization(self, organization_id: str) -> None:
        """Drop cached config and merchant mappings; next use reloads from the store."""
        with self._org_lock(organization_id):
            self._configs.pop(organization_id, None)
        self.merchant_matcher.invalidate(organization_id)

    def _engine(
        self,
        organization_id: str,
        config: MatchingConfig | dict | None = None,
        record_usage: bool = True,
    ) -> MatchingEngine:
        if isinstance(config, MatchingConfig):
            snapshot = config
        else:
            snapshot = self.get_config(organization_id).merged(config)
        return MatchingEngine(
            snapshot, merchant_matcher=self.merchant_matcher, record_usage=record_usage
        )

    # Helpers

    def _with_retry(self, operation: Callable[[], T], description: str) -> T:
        """Run a persistence operation, retrying on conflicts."""
        retries = self.config.conflict_retries
        for attempt in range(retries + 1):
            try:
                return operation()
            except PersistenceConflictError as e:
                if attempt >= retries:
                    logger.error("%s failed after %d attempts: %s", description, attempt + 1, e)
                    raise
                logger.warning(
                    "%s conflicted (attempt %d/%d): %s", description, attempt + 1, retries + 1, e
                )
                time.sleep(RETRY_BACKOFF_SECONDS * (attempt + 1))
        raise AssertionError("unreachable")

    def _usable(
        self,
        organization_id: str,
        records: Iterable[Transaction] | Iterable[Receipt],
        kind: str,
        errors: list[str],
        unmatched: list[str],
    ) -> list:
        """Drop foreign-organization and malformed records, reporting each."""
        usable = []
        for record in records:
            if record.organization_id != organization_id:
                message = f"{kind} {record.id}: belongs to organization {record.organization_id}"
                logger.warning("Skipping %s", message)
                errors.append(message)
                continue
            try:
                record.validate()
            except RecordValidationError as e:
                logger.warning("Skipping invalid record: %s", e)
                errors.append(str(e))
                unmatched.append(record.id)
                continue
            usable.append(record)
        return usable

    def _load_pair(
        self, organization_id: str, transaction_id: str, receipt_id: str
    ) -> tuple[Transaction, Receipt]:
        transaction = self.store.get_transaction(organization_id, transaction_id)
        if transaction is None:
            raise NotFoundError("transaction", transaction_id)
        receipt = self.store.get_receipt(organization_id, receipt_id)
        if receipt is None:
            raise NotFoundError("receipt", receipt_id)
        return transaction, receipt

    def _evidence(
        self, organization_id: str, transaction: Transaction, receipt: Receipt
    ) -> MatchCandidate | None:
        """Score a pair for the record; scoring problems never block a reviewer."""
        try:
            return self._engine(organization_id).evaluate(transaction, receipt)
        except MatchingError as e:
            logger.warning(
                "Could not score %s/%s for evidence: %s", transaction.id, receipt.id, e
            )
            return None

    # Auto-matching

    def perform_auto_matching(
        self,
        organization_id: str,
        transactions: Iterable[Transaction],
        receipts: Iterable[Receipt],
        config: MatchingConfig | dict | None = None,
        persist: bool = True,
        run_type: str = "auto",
    ) -> MatchSuggestion:
        """Greedy one-to-one matching of a transaction batch against a receipt pool.

        Transactions are processed in the given order; each takes its best
        candidate. An auto-confidence candidate is persisted at once and its
        receipt leaves the pool, so the outcome depends on input order. A
        lower best candidate becomes a suggestion and its receipt stays
        available. Suggested transactions and receipts stay unmatched and are
        reported in the unmatched ids. Pairs a reviewer rejected before are
        never proposed.

        Args:
            organization_id: Organization scope; foreign records are skipped
            transactions: Batch to match
            receipts: Candidate pool
            config: Per-call config (full snapshot or partial overrides)
            persist: Write matches, suggestions and run stats (False = preview)
            run_type: Label for the recorded run

        Returns:
            MatchSuggestion with one candidate per matched transaction.
        """
        started = time.perf_counter()
        engine = self._engine(organization_id, config, record_usage=persist)
        result = MatchSuggestion()

        batch = self._usable(
            organization_id, transactions, "transaction", result.errors, result.unmatched_transactions
        )
        invalid_receipts: list[str] = []
        pool = {
            r.id: r
            for r in self._usable(organization_id, receipts, "receipt", result.errors, invalid_receipts)
        }
        result.stats.transactions_processed = len(batch)
        result.stats.receipts_processed = len(pool)
        rejected = self.store.get_rejected_pairs(organization_id)

        for transaction in batch:
            try:
                candidates = [
                    c
                    for c in engine.find_candidates(transaction, pool.values())
                    if (transaction.id, c.receipt_id) not in rejected
                ]
            except MatchingError as e:
                logger.warning("Skipping transaction %s: %s", transaction.id, e)
                result.errors.append(f"transaction {transaction.id}: {e}")
                result.unmatched_transactions.append(transaction.id)
                continue

            if not candidates:
                result.unmatched_transactions.append(transaction.id)
                continue

            best = candidates[0]
            if best.match_type == MatchType.AUTO:
                if persist and not self._persist_auto(organization_id, transaction, pool, best, result):
                    result.unmatched_transactions.append(transaction.id)
                    continue
                pool.pop(best.receipt_id, None)
                result.candidates.append(best)
                result.stats.auto_matches += 1
            else:
                if persist:
                    self.store.save_suggestion(
                        organization_id,
                        best.transaction_id,
                        best.receipt_id,
                        best.confidence_score,
                        best.match_criteria.to_dict(),
                        best.reasoning,
                    )
                result.candidates.append(best)
                result.stats.suggestions += 1
                result.unmatched_transactions.append(transaction.id)

        result.stats.matches_found = len(result.candidates)
        result.unmatched_receipts = list(pool) + invalid_receipts
        result.stats.processing_time_ms = (time.perf_counter() - started) * 1000

        if persist:
            self.merchant_matcher.flush_usage(organization_id)
            self.store.record_matching_run(
                organization_id,
                run_type,
                transactions_processed=result.stats.transactions_processed,
                receipts_processed=result.stats.receipts_processed,
                matches_found=result.stats.matches_found,
                auto_matches=result.stats.auto_matches,
                suggestions=result.stats.suggestions,
                processing_time_ms=result.stats.processing_time_ms,
                errors=len(result.errors),
            )

        logger.info(
            "Auto-matching for organization %s: %d transactions, %d receipts, "
            "%d auto, %d suggested, %d errors (%.0f ms)",
            organization_id,
            result.stats.transactions_processed,
            result.stats.receipts_processed,
            result.stats.auto_matches,
            result.stats.suggestions,
            len(result.errors),
            result.stats.processing_time_ms,
        )
        return result

    def _persist_auto(
        self,
        organization_id: str,
        transaction: Transaction,
        pool: dict[str, Receipt],
        candidate: MatchCandidate,
        result: MatchSuggestion,
    ) -> bool:
        """Persist one auto match without superseding. False if it could not be saved."""
        try:
            record, _ = self._with_retry(
                lambda: self.store.save_match(
                    organization_id,
                    candidate.transaction_id,
                    candidate.receipt_id,
                    MatchType.AUTO,
                    candidate.confidence_score,
                    match_criteria=candidate.match_criteria.to_dict(),
                    reasoning=candidate.reasoning,
                    supersede=False,
                ),
                f"Auto match {candidate.transaction_id}/{candidate.receipt_id}",
            )
        except AlreadyMatchedError as e:
            # Matched concurrently by someone else; the receipt is gone either way
            logger.info("Skipping auto match: %s", e)
            pool.pop(candidate.receipt_id, None)
            return False
        except (NotFoundError, PersistenceConflictError) as e:
            result.errors.append(f"transaction {candidate.transaction_id}: {e}")
            pool.pop(candidate.receipt_id, None)
            return False

        logger.info(
            "Auto-matched transaction %s to receipt %s (match %s, confidence %.2f)",
            candidate.transaction_id,
            candidate.receipt_id,
            record.id,
            candidate.confidence_score,
        )

        merchant = candidate.match_criteria.merchant
        if merchant.matched and normalize_merchant_name(
            merchant.transaction_merchant
        ) != normalize_merchant_name(merchant.receipt_merchant):
            self.merchant_matcher.learn(
                organization_id,
                merchant.transaction_merchant,
                merchant.receipt_merchant,
                verified=False,
                created_from=MappingSource.TRANSACTION,
                category=transaction.merchant_category,
            )
        return True

    def get_match_suggestions(
        self,
        organization_id: str,
        item_id: str,
        item_type: str,
        candidate_pool: Iterable[Transaction | Receipt],
        config: MatchingConfig | dict | None = None,
    ) -> list[MatchCandidate]:
        """Ranked candidates for one transaction or receipt.

        The item is looked up in the pool first, then in the store.

        Args:
            item_type: "transaction" or "receipt"
            candidate_pool: Records of the opposite type (the item may be included)

        Raises:
            NotFoundError: The item is neither in the pool nor stored.
            ValueError: Unknown item_type.
        """
        if item_type not in ("transaction", "receipt"):
            raise ValueError(f"item_type must be 'transaction' or 'receipt', got {item_type!r}")

        pool = list(candidate_pool)
        engine = self._engine(organization_id, config)
        rejected = self.store.get_rejected_pairs(organization_id)

        if item_type == "transaction":
            transaction = next(
                (c for c in pool if isinstance(c, Transaction) and c.id == item_id), None
            ) or self.store.get_transaction(organization_id, item_id)
            if transaction is None or transaction.organization_id != organization_id:
                raise NotFoundError("transaction", item_id)
            receipts = [c for c in pool if isinstance(c, Receipt)]
            candidates = engine.find_candidates(transaction, receipts)
        else:
            receipt = next(
                (c for c in pool if isinstance(c, Receipt) and c.id == item_id), None
            ) or self.store.get_receipt(organization_id, item_id)
            if receipt is None or receipt.organization_id != organization_id:
                raise NotFoundError("receipt", item_id)
            transactions = [c for c in pool if isinstance(c, Transaction)]
            candidates = engine.find_transaction_candidates(receipt, transactions)

        self.merchant_matcher.flush_usage(organization_id)
        return [c for c in candidates if (c.transaction_id, c.receipt_id) not in rejected]

    # Human decisions

    def confirm_match(
        self,
        organization_id: str,
        transaction_id: str,
        receipt_id: str,
        match_type: MatchType | str = MatchType.MANUAL,
        user_id: str | None = None,
        confidence: float | None = None,
        notes: str | None = None,
    ) -> MatchResult:
        """Confirm a pair, superseding any active match on either side.

        A confirmation by a user is recorded as positive feedback and teaches
        the merchant mappings (verified).

        Raises:
            NotFoundError: Transaction or receipt unknown.
            PersistenceConflictError: Still conflicting after retries.
            ValueError: match_type is not a confirmation type.
        """
        match_type = MatchType(match_type)
        if match_type not in CONFIRMED_MATCH_TYPES:
            raise ValueError(f"Cannot confirm with match type {match_type.value}")

        transaction, receipt = self._load_pair(organization_id, transaction_id, receipt_id)
        evidence = self._evidence(organization_id, transaction, receipt)
        criteria = evidence.match_criteria if evidence else None
        score = confidence if confidence is not None else (evidence.confidence_score if evidence else 0.0)

        record, superseded = self._with_retry(
            lambda: self.store.save_match(
                organization_id,
                transaction_id,
                receipt_id,
                match_type,
                score,
                match_criteria=criteria.to_dict() if criteria else None,
                reasoning=evidence.reasoning if evidence else [],
                matched_by=user_id,
                notes=notes,
                supersede=True,
            ),
            f"Confirm {transaction_id}/{receipt_id}",
        )

        logger.info(
            "Confirmed %s match %s: transaction %s <-> receipt %s by %s",
            match_type.value,
            record.id,
            transaction_id,
            receipt_id,
            user_id or "system",
        )

        if user_id and self.get_config(organization_id).enable_learning:
            self.learning.record_feedback(
                LearningFeedback(
                    id=str(uuid.uuid4()),
                    organization_id=organization_id,
                    match_id=record.id,
                    was_correct=True,
                    user_id=user_id,
                    feedback_date=_now(),
                    notes=notes,
                    original_confidence=evidence.confidence_score if evidence else None,
                    criteria=criteria.to_dict() if criteria else None,
                )
            )
            if normalize_merchant_name(transaction.merchant_text) != normalize_merchant_name(
                receipt.merchant_name
            ):
                self.merchant_matcher.learn(
                    organization_id,
                    transaction.merchant_text,
                    receipt.merchant_name,
                    verified=True,
                    created_from=MappingSource.MANUAL,
                    category=transaction.merchant_category,
                )

        return MatchResult(
            match_id=record.id,
            transaction_id=transaction_id,
            receipt_id=receipt_id,
            match_type=record.match_type,
            confidence_score=record.confidence_score,
            match_criteria=criteria,
            created_at=record.matched_at,
            matched_by=record.matched_by,
            notes=record.notes,
            superseded_match_ids=superseded,
        )

    def reject_match(
        self,
        organization_id: str,
        transaction_id: str,
        receipt_id: str,
        user_id: str | None,
        reason: str | None = None,
        correct_transaction_id: str | None = None,
        correct_receipt_id: str | None = None,
    ) -> MatchRecord:
        """Reject a pair and record negative feedback.

        The rejected match stays on record with status REJECTED. A correction
        may point at the pair that is actually right; it is recorded as
        evidence for learning, not confirmed.

        Raises:
            NotFoundError: Transaction, receipt or correction target unknown.
        """
        transaction, receipt = self._load_pair(organization_id, transaction_id, receipt_id)

        correction_criteria = None
        if correct_transaction_id or correct_receipt_id:
            correct_tx, correct_receipt = self._load_pair(
                organization_id,
                correct_transaction_id or transaction_id,
                correct_receipt_id or receipt_id,
            )
            corrected = self._evidence(organization_id, correct_tx, correct_receipt)
            correction_criteria = corrected.match_criteria.to_dict() if corrected else None

        prior = [
            m
            for m in self.store.get_match_history(organization_id, transaction_id, receipt_id)
            if m.status in (MatchStatus.ACTIVE, MatchStatus.SUGGESTED)
        ]
        evidence = self._evidence(organization_id, transaction, receipt)
        if prior:
            original_confidence = prior[-1].confidence_score
            criteria = prior[-1].match_criteria
        else:
            original_confidence = evidence.confidence_score if evidence else None
            criteria = evidence.match_criteria.to_dict() if evidence else None

        record = self._with_retry(
            lambda: self.store.reject_match(
                organization_id,
                transaction_id,
                receipt_id,
                rejected_by=user_id,
                reason=reason,
                confidence_score=original_confidence or 0.0,
                match_criteria=criteria,
            ),
            f"Reject {transaction_id}/{receipt_id}",
        )
        logger.info(
            "Rejected match %s: transaction %s <-> receipt %s by %s",
            record.id,
            transaction_id,
            receipt_id,
            user_id or "system",
        )

        if self.get_config(organization_id).enable_learning:
            self.learning.record_feedback(
                LearningFeedback(
                    id=str(uuid.uuid4()),
                    organization_id=organization_id,
                    match_id=record.id,
                    was_correct=False,
                    user_id=user_id,
                    feedback_date=_now(),
                    correct_transaction_id=correct_transaction_id,
                    correct_receipt_id=correct_receipt_id,
                    notes=reason,
                    original_confidence=original_confidence,
                    criteria=criteria,
                    correction_criteria=correction_criteria,
                )
            )
        return record

    def get_unmatched_items(
        self, organization_id: str, limit: int = 100
    ) -> dict[str, list[Transaction] | list[Receipt]]:
        """Unmatched transactions and receipts of an organization."""
        return {
            "transactions": self.store.get_unmatched_transactions(organization_id, limit=limit),
            "receipts": self.store.get_unmatched_receipts(organization_id, limit=limit),
        }

    # Batch operations

    def perform_bulk_matching(
        self,
        organization_id: str,
        batch_size: int | None = None,
        config: MatchingConfig | dict | None = None,
        progress: Callable[[int, int], None] | None = None,
    ) -> BulkMatchResult:
        """Auto-match the whole backlog of an organization in claimed batches.

        Transactions are paged by id. Each batch and its receipt pool
        (twice the batch size) are claimed before scoring and released
        afterwards. A failing batch is recorded and the run continues.
        The pool of a batch holds the newest unmatched receipts dated within
        ``date_window_days`` of the batch's transaction dates.

        Args:
            batch_size: Transactions per batch (Config.bulk_batch_size by default)
            progress: Called with (transactions processed, batch number)

        Returns:
            BulkMatchResult with totals and per-batch error strings.
        """
        started = time.perf_counter()
        size = batch_size or self.config.bulk_batch_size
        window = timedelta(days=self._engine(organization_id, config).config.date_window_days)
        token = f"bulk-{uuid.uuid4()}"
        result = BulkMatchResult()
        after_id: str | None = None
        batch_number = 0
        paged = 0

        logger.info("Bulk matching for organization %s (batch size %d)", organization_id, size)

        while True:
            page = self.store.get_unmatched_transactions(
                organization_id, limit=size, after_id=after_id, claim_token=token
            )
            if not page:
                break
            after_id = page[-1].id
            batch_number += 1
            label = f"Batch {paged + 1}-{paged + len(page)}"
            paged += len(page)

            try:
                claimed = set(
                    self.store.claim_transactions(organization_id, [t.id for t in page], token)
                )
                batch = [t for t in page if t.id in claimed]

                dates = [t.transaction_date for t in batch if t.transaction_date is not None]
                receipts = self.store.get_unmatched_receipts(
                    organization_id,
                    limit=size * 2,
                    claim_token=token,
                    date_from=min(dates) - window if dates else None,
                    date_to=max(dates) + window if dates else None,
                )
                claimed_receipts = set(
                    self.store.claim_receipts(organization_id, [r.id for r in receipts], token)
                )
                receipts = [r for r in receipts if r.id in claimed_receipts]

                outcome = self.perform_auto_matching(
                    organization_id, batch, receipts, config=config, run_type="bulk"
                )
                result.total_processed += len(batch)
                result.matches_created += outcome.stats.auto_matches
                result.errors.extend(f"{label}: {error}" for error in outcome.errors)
            except Exception as e:
                logger.exception("%s failed for organization %s", label, organization_id)
                result.errors.append(f"{label}: {e}")
            finally:
                self.store.release_claims(token)

            if progress is not None:
                progress(result.total_processed, batch_number)

        result.processing_time_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Bulk matching for organization %s done: %d processed, %d matched, %d errors",
            organization_id,
            result.total_processed,
            result.matches_created,
            len(result.errors),
        )
        return result

    def auto_match_new(
        self,
        organization_id: str,
        transaction_ids: list[str] | None = None,
        receipt_ids: list[str] | None = None,
        config: MatchingConfig | dict | None = None,
    ) -> MatchSuggestion:
        """Match newly arrived items against the unmatched pool of the other side."""
        limit = self.config.bulk_batch_size
        if transaction_ids:
            transactions = [
                t
                for t in self.store.get_transactions(organization_id, transaction_ids)
                if t.status != TransactionStatus.MATCHED.value
            ]
        else:
            transactions = self.store.get_unmatched_transactions(organization_id, limit=limit)

        if receipt_ids:
            receipts = [
                r
                for r in self.store.get_receipts(organization_id, receipt_ids)
                if r.status != ReceiptStatus.MATCHED.value
            ]
        else:
            receipts = self.store.get_unmatched_receipts(organization_id, limit=limit * 2)

        return self.perform_auto_matching(
            organization_id, transactions, receipts, config=config, run_type="new_items"
        )

    def reprocess_rejected(
        self, organization_id: str, config: MatchingConfig | dict | None = None
    ) -> MatchSuggestion:
        """Re-run matching for unmatched transactions whose earlier matches were rejected."""
        limit = self.config.bulk_batch_size
        transactions = self.store.get_transactions_with_rejections(organization_id, limit=limit)
        receipts = self.store.get_unmatched_receipts(organization_id, limit=limit * 2)
        return self.perform_auto_matching(
            organization_id, transactions, receipts, config=config, run_type="reprocess"
        )

    # Metrics and learning

    def get_matching_metrics(self, organization_id: str, period_days: int = 30) -> MatchingMetrics:
        return self.learning.analyze_matching_performance(organization_id, period_days)

    def get_suggested_config(self, organization_id: str) -> dict[str, Any]:
        """Preview the learned adjustments without applying them."""
        return self.learning.get_suggested_config(organization_id, self.get_config(organization_id))

    def update_config_with_learning(
        self, organization_id: str, updated_by: str = "learning"
    ) -> MatchingConfig:
        """Adopt the learned adjustments for an organization.

        Returns:
            The (possibly unchanged) MatchingConfig now in effect.
        """
        current = self.get_config(organization_id)
        if not current.enable_learning:
            logger.info("Learning disabled for organization %s", organization_id)
            return current

        suggestion = self.learning.get_suggested_config(organization_id, current)
        if not suggestion:
            logger.info("No learned adjustments for organization %s", organization_id)
            return current
        return self.set_matching_config(organization_id, suggestion, updated_by=updated_by)

    def get_learning_stats(self, organization_id: str) -> dict[str, Any]:
        return self.learning.get_learning_stats(organization_id)
