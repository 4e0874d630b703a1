"""Matching engine for pairing card transactions with expense receipts.

Each transaction/receipt pair is scored on up to six criteria (amount, date,
merchant, location, user, currency). The overall confidence is the weighted
average of the criteria actually evaluated, renormalized over their weights,
so a pair without location data is neither rewarded nor punished for it.

Scores at or above ``auto_match_threshold`` are confirmed automatically,
scores at or above ``suggest_threshold`` go to human review, everything below
is discarded.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal

from ..config import MatchingConfig
from ..errors import ScoringError
from ..schemas.matching import (
    AmountMatch,
    CurrencyMatch,
    DateMatch,
    LocationMatch,
    MatchCandidate,
    MatchCriteria,
    MatchType,
    MerchantMatch,
    UserMatch,
)
from ..schemas.records import Receipt, Transaction
from .location import LocationMatcher
from .merchant import MerchantMatcher

logger = logging.getLogger(__name__)

# Same-address evidence floors the location score regardless of distance
SAME_ADDRESS_SCORE = 0.8


class MatchingEngine:
    """Scores transaction/receipt pairs under one MatchingConfig snapshot.

    The engine holds no per-run state; the only shared collaborator is the
    MerchantMatcher, whose mapping cache is thread-safe.
    """

    def __init__(
        self,
        config: MatchingConfig | None = None,
        merchant_matcher: MerchantMatcher | None = None,
        location_matcher: LocationMatcher | None = None,
        record_usage: bool = True,
    ) -> None:
        """Initialize the matching engine.

        Args:
            config: Matching parameters (defaults if omitted).
            merchant_matcher: Merchant comparison with canonical mappings.
            location_matcher: Geographic comparison.
            record_usage: Count merchant mapping usages (off for previews).
        """
        self.config = config or MatchingConfig()
        self.merchant_matcher = merchant_matcher or MerchantMatcher(
            similarity_threshold=self.config.merchant_similarity_threshold
        )
        self.location_matcher = location_matcher or LocationMatcher()
        self.record_usage = record_usage

    def get_config(self) -> MatchingConfig:
        return self.config

    def update_config(self, overrides: dict) -> MatchingConfig:
        """Apply partial overrides and return the new configuration."""
        self.config = self.config.merged(overrides)
        return self.config

    # Candidate search

    def find_candidates(
        self, transaction: Transaction, receipts: Iterable[Receipt]
    ) -> list[MatchCandidate]:
        """Find receipts matching a transaction.

        Args:
            transaction: Validated transaction.
            receipts: Receipt pool (other organizations are skipped).

        Returns:
            Candidates at or above suggest_threshold, best first, at most
            max_candidates.
        """
        transaction.validate()
        candidates = []
        for receipt in receipts:
            if receipt.organization_id != transaction.organization_id:
                logger.warning(
                    "Skipping receipt %s: organization %s differs from transaction %s",
                    receipt.id,
                    receipt.organization_id,
                    transaction.id,
                )
                continue
            candidate = self._score_safely(transaction, receipt)
            if candidate is not None:
                candidates.append(candidate)
        return self._rank(candidates, key=lambda c: c.receipt_id)

    def find_transaction_candidates(
        self, receipt: Receipt, transactions: Iterable[Transaction]
    ) -> list[MatchCandidate]:
        """Mirror of find_candidates: transactions matching a receipt."""
        receipt.validate()
        candidates = []
        for transaction in transactions:
            if transaction.organization_id != receipt.organization_id:
                logger.warning(
                    "Skipping transaction %s: organization %s differs from receipt %s",
                    transaction.id,
                    transaction.organization_id,
                    receipt.id,
                )
                continue
            candidate = self._score_safely(transaction, receipt)
            if candidate is not None:
                candidates.append(candidate)
        return self._rank(candidates, key=lambda c: c.transaction_id)

    def _score_safely(self, transaction: Transaction, receipt: Receipt) -> MatchCandidate | None:
        try:
            candidate = self.evaluate(transaction, receipt)
        except Exception as e:
            logger.warning(
                "Failed to score transaction %s against receipt %s: %s",
                transaction.id,
                receipt.id,
                e,
            )
            return None
        if candidate.confidence_score < self.config.suggest_threshold:
            return None
        return candidate

    def _rank(self, candidates: list[MatchCandidate], key) -> list[MatchCandidate]:
        candidates.sort(key=lambda c: (-c.confidence_score, key(c)))
        return candidates[: self.config.max_candidates]

    # Pair evaluation

    def evaluate(self, transaction: Transaction, receipt: Receipt) -> MatchCandidate:
        """Score a single pair regardless of thresholds.

        Raises:
            RecordValidationError: If either record is malformed.
            ScoringError: If a criterion cannot be computed.
        """
        transaction.validate()
        receipt.validate()

        criteria = MatchCriteria(
            amount=self.score_amount(transaction, receipt),
            date=self.score_date(transaction, receipt),
            merchant=self.score_merchant(transaction, receipt),
            location=self.score_location(transaction, receipt),
            user=self.score_user(transaction, receipt),
            currency=self.score_currency(transaction, receipt),
        )
        confidence = self.calculate_confidence(criteria)
        reasoning, warnings = self._explain(criteria)

        return MatchCandidate(
            transaction_id=transaction.id,
            receipt_id=receipt.id,
            confidence_score=confidence,
            match_type=self.get_match_type(confidence),
            match_criteria=criteria,
            reasoning=reasoning,
            warnings=warnings,
        )

    def calculate_confidence(self, criteria: MatchCriteria) -> float:
        """Weighted average of available sub-scores, renormalized, capped at 1."""
        if self.config.require_amount_match and not criteria.amount.matched:
            return 0.0

        weights = self.config.confidence_weights.as_dict()
        weighted_sum = 0.0
        weight_total = 0.0
        for name, score in criteria.scores().items():
            weight = weights.get(name, 0.0)
            weighted_sum += weight * score
            weight_total += weight

        if weight_total <= 0:
            return 0.0
        return min(1.0, weighted_sum / weight_total)

    def get_match_type(self, score: float) -> MatchType:
        """Classify a confidence score.

        Scores below suggest_threshold classify as MANUAL: the pair is not
        proposed and the items are left for manual matching.
        """
        if score >= self.config.auto_match_threshold:
            return MatchType.AUTO
        if score >= self.config.suggest_threshold:
            return MatchType.SUGGESTED
        return MatchType.MANUAL

    # Criteria

    def score_amount(self, transaction: Transaction, receipt: Receipt) -> AmountMatch:
        """Amount within max(percentage of receipt total, fixed) tolerance."""
        tx_amount = abs(transaction.amount)  # type: ignore[arg-type]
        receipt_amount = abs(receipt.total_amount)  # type: ignore[arg-type]
        difference = abs(tx_amount - receipt_amount)

        tolerance = max(
            receipt_amount * Decimal(str(self.config.amount_tolerance_percentage)),
            Decimal(str(self.config.amount_tolerance_fixed)),
        )
        matched = difference <= tolerance

        if difference == 0:
            score = 1.0
        elif matched and tolerance > 0:
            score = max(0.0, 1.0 - float(difference / tolerance))
        else:
            score = 0.0

        if receipt_amount > 0:
            difference_percentage = float(difference / receipt_amount * 100)
        else:
            difference_percentage = 0.0 if difference == 0 else 100.0

        return AmountMatch(
            matched=matched,
            transaction_amount=tx_amount,
            receipt_amount=receipt_amount,
            difference=difference,
            difference_percentage=difference_percentage,
            tolerance_applied=tolerance,
            score=score,
        )

    def score_date(self, transaction: Transaction, receipt: Receipt) -> DateMatch:
        """Calendar-day distance inside date_window_days, linear decay."""
        days = abs((transaction.transaction_date - receipt.receipt_date).days)  # type: ignore[operator]
        window = self.config.date_window_days
        matched = days <= window

        if days == 0:
            score = 1.0
        elif matched and window > 0:
            score = max(0.0, 1.0 - days / window)
        else:
            score = 0.0

        return DateMatch(
            matched=matched,
            transaction_date=transaction.transaction_date,  # type: ignore[arg-type]
            receipt_date=receipt.receipt_date,  # type: ignore[arg-type]
            days_difference=days,
            score=score,
        )

    def score_merchant(self, transaction: Transaction, receipt: Receipt) -> MerchantMatch:
        """Merchant similarity; the bank description stands in for a missing name."""
        threshold = self.config.merchant_similarity_threshold
        comparison = self.merchant_matcher.compare(
            transaction.merchant_text,
            receipt.merchant_name,
            transaction.organization_id,
            threshold=threshold,
            record_usage=self.record_usage,
        )
        matched = comparison.similarity >= threshold
        return MerchantMatch(
            matched=matched,
            transaction_merchant=transaction.merchant_text,
            receipt_merchant=receipt.merchant_name or "",
            similarity_score=comparison.similarity,
            score=comparison.similarity if matched else 0.0,
            canonical_name=comparison.canonical_name,
        )

    def score_location(self, transaction: Transaction, receipt: Receipt) -> LocationMatch | None:
        """Location evidence, or None when either side has none usable."""
        if transaction.location is None or receipt.location is None:
            return None

        try:
            distance = self.location_matcher.distance_km(transaction.location, receipt.location)
        except ValueError as e:
            raise ScoringError(f"Invalid location data: {e}") from e
        same_address = self.location_matcher.same_address(transaction.location, receipt.location)

        if distance is None and not same_address:
            return None

        radius = self.config.location_radius_km
        within_radius = distance is not None and distance <= radius
        score = max(0.0, 1.0 - distance / radius) if within_radius else 0.0  # type: ignore[operator]
        if same_address:
            score = max(score, SAME_ADDRESS_SCORE)

        return LocationMatch(
            matched=within_radius or same_address,
            distance_km=distance,
            same_address=same_address,
            score=score,
        )

    def score_user(self, transaction: Transaction, receipt: Receipt) -> UserMatch:
        matched = bool(transaction.user_id) and transaction.user_id == receipt.uploaded_by
        return UserMatch(
            matched=matched,
            transaction_user=transaction.user_id,
            receipt_user=receipt.uploaded_by,
            score=1.0 if matched else 0.0,
        )

    def score_currency(self, transaction: Transaction, receipt: Receipt) -> CurrencyMatch:
        tx_currency = (transaction.currency or "USD").upper()
        receipt_currency = (receipt.currency or "USD").upper()
        matched = tx_currency == receipt_currency
        return CurrencyMatch(
            matched=matched,
            transaction_currency=tx_currency,
            receipt_currency=receipt_currency,
            score=1.0 if matched else 0.0,
        )

    # Explanations

    def _explain(self, criteria: MatchCriteria) -> tuple[list[str], list[str]]:
        """Human-readable reasoning and warnings for a pair."""
        reasoning: list[str] = []
        warnings: list[str] = []

        amount = criteria.amount
        if amount.matched:
            if amount.difference == 0:
                reasoning.append("Exact amount match")
            else:
                reasoning.append(
                    f"Amount close match ({amount.difference_percentage:.1f}% difference)"
                )
        else:
            warnings.append(
                f"Amount mismatch: {amount.transaction_amount} vs {amount.receipt_amount}"
            )

        date_match = criteria.date
        if date_match.matched:
            if date_match.days_difference == 0:
                reasoning.append("Same date")
            else:
                days = date_match.days_difference
                reasoning.append(f"{days} day{'s' if days > 1 else ''} apart")
        else:
            warnings.append(f"Date too far apart: {date_match.days_difference} days")

        merchant = criteria.merchant
        if merchant.matched:
            reasoning.append(f"Merchant match ({merchant.similarity_score * 100:.0f}% similar)")
            if merchant.canonical_name:
                reasoning.append(f"Canonical name: {merchant.canonical_name}")
        else:
            warnings.append("Merchant names don't match well")

        location = criteria.location
        if location is not None:
            if location.same_address:
                reasoning.append("Same address")
            elif location.matched:
                reasoning.append(
                    f"Within {location.distance_km:.1f}km "
                    f"({LocationMatcher.distance_category(location.distance_km)})"
                )
            elif location.distance_km is not None:
                warnings.append(f"Too far apart: {location.distance_km:.1f}km")

        if criteria.user.matched:
            reasoning.append("Same user")
        else:
            warnings.append("Different users")

        if not criteria.currency.matched:
            warnings.append(
                f"Currency mismatch: {criteria.currency.transaction_currency} "
                f"vs {criteria.currency.receipt_currency}"
            )

        return reasoning, warnings
