"""Feedback learning: turn reviewer verdicts into configuration proposals.

Feedback is append-only. Proposals are derived deterministically from the
feedback inside the learning window and are never applied by this module;
adopting them is an explicit MatchingService operation.

Terminology used below:
- false negative: a pair that belongs together but that the engine did not
  match (a correction pointing at it, or a human confirmation of a pair the
  engine scored as an amount or date mismatch)
- false positive: a pair the engine proposed that a reviewer rejected
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_CEILING, Decimal
from typing import TYPE_CHECKING, Any

from ..config import LearningConfig, MatchingConfig
from ..schemas.matching import LearningFeedback, MatchCriteria, MatchingMetrics

if TYPE_CHECKING:
    from ..state_store import MatchingDatabaseService

logger = logging.getLogger(__name__)

# Weight moved from amount to merchant when merchant caused false positives
WEIGHT_SHIFT = 0.05
THRESHOLD_STEP = 0.05


@dataclass
class FeedbackAnalysis:
    """Classified feedback inside the learning window."""

    total: int = 0
    false_negatives: list[MatchCriteria] = field(default_factory=list)
    false_positives: list[MatchCriteria] = field(default_factory=list)
    auto_judged: int = 0
    auto_false_positives: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def _criteria(data: dict | None) -> MatchCriteria | None:
    if not data:
        return None
    try:
        return MatchCriteria.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Ignoring unreadable match criteria in feedback: %s", e)
        return None


class LearningEngine:
    """Records feedback and proposes configuration changes."""

    def __init__(
        self,
        store: MatchingDatabaseService,
        config: LearningConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or LearningConfig()

    def record_feedback(self, feedback: LearningFeedback) -> None:
        """Append one feedback entry."""
        self.store.save_learning_feedback(feedback)
        logger.info(
            "Recorded %s feedback %s for match %s (organization %s)",
            "positive" if feedback.was_correct else "negative",
            feedback.id,
            feedback.match_id,
            feedback.organization_id,
        )

    def _recent_feedback(self, organization_id: str) -> list[LearningFeedback]:
        since = _utc_now() - timedelta(days=self.config.window_days)
        return self.store.get_learning_feedback(organization_id, since=_iso(since))

    def analyze_feedback(
        self, organization_id: str, current: MatchingConfig
    ) -> FeedbackAnalysis:
        """Classify the feedback of the learning window."""
        analysis = FeedbackAnalysis()
        for feedback in self._recent_feedback(organization_id):
            analysis.total += 1
            judged = _criteria(feedback.criteria)

            if feedback.original_confidence is not None and (
                feedback.original_confidence >= current.auto_match_threshold
            ):
                analysis.auto_judged += 1
                if not feedback.was_correct:
                    analysis.auto_false_positives += 1

            if feedback.was_correct:
                if judged is not None and (not judged.amount.matched or not judged.date.matched):
                    analysis.false_negatives.append(judged)
                continue

            if judged is not None:
                analysis.false_positives.append(judged)
            corrected = _criteria(feedback.correction_criteria)
            if corrected is not None:
                analysis.false_negatives.append(corrected)

        return analysis

    def get_suggested_config(
        self, organization_id: str, current: MatchingConfig
    ) -> dict[str, Any]:
        """Propose a partial configuration from feedback.

        Deterministic for a given feedback history and current config.

        Args:
            organization_id: Organization to analyze.
            current: The organization's current MatchingConfig.

        Returns:
            Partial config dict (empty when nothing is significant).
        """
        analysis = self.analyze_feedback(organization_id, current)
        suggestion: dict[str, Any] = {}
        min_samples = self.config.min_feedback_samples
        share = self.config.significance_share

        misses = analysis.false_negatives
        if len(misses) >= min_samples:
            cap = Decimal(str(self.config.max_amount_tolerance_fixed))
            amount_misses = [
                c.amount.difference
                for c in misses
                if not c.amount.matched and c.amount.difference <= cap
            ]
            if amount_misses and len(amount_misses) / len(misses) >= share:
                proposed = max(amount_misses).quantize(Decimal("0.01"), rounding=ROUND_CEILING)
                if proposed > Decimal(str(current.amount_tolerance_fixed)):
                    suggestion["amount_tolerance_fixed"] = float(proposed)

            date_misses = [
                c.date.days_difference
                for c in misses
                if not c.date.matched
                and c.date.days_difference <= self.config.max_date_window_days
            ]
            if date_misses and len(date_misses) / len(misses) >= share:
                proposed_days = max(date_misses)
                if proposed_days > current.date_window_days:
                    suggestion["date_window_days"] = proposed_days

        wrong = analysis.false_positives
        if len(wrong) >= min_samples:
            merchant_caused = [c for c in wrong if not c.merchant.matched]
            weights = current.confidence_weights
            if len(merchant_caused) / len(wrong) >= share and weights.amount >= 2 * WEIGHT_SHIFT:
                suggestion["confidence_weights"] = {
                    "amount": round(weights.amount - WEIGHT_SHIFT, 4),
                    "merchant": round(weights.merchant + WEIGHT_SHIFT, 4),
                }

        if (
            analysis.auto_false_positives >= min_samples
            and analysis.auto_false_positives / analysis.auto_judged >= share
        ):
            raised = round(
                min(
                    current.auto_match_threshold + THRESHOLD_STEP,
                    self.config.max_auto_match_threshold,
                ),
                4,
            )
            if raised > current.auto_match_threshold:
                suggestion["auto_match_threshold"] = raised

        if suggestion:
            logger.info(
                "Learning suggestion for organization %s: %s (from %d feedback entries)",
                organization_id,
                suggestion,
                analysis.total,
            )
        return suggestion

    def analyze_matching_performance(
        self, organization_id: str, window_days: int = 30
    ) -> MatchingMetrics:
        """Aggregate matching metrics for the last ``window_days`` days."""
        end = _utc_now()
        start = end - timedelta(days=window_days)
        stats = self.store.get_matching_stats(organization_id, since=_iso(start))

        feedback_total = stats["feedback_total"]
        accuracy = stats["feedback_correct"] / feedback_total if feedback_total else 0.0

        return MatchingMetrics(
            organization_id=organization_id,
            period_start=_iso(start),
            period_end=_iso(end),
            total_transactions=stats["total_transactions"],
            total_receipts=stats["total_receipts"],
            auto_matched=stats["auto_matched"],
            manual_matched=stats["manual_matched"],
            unmatched_transactions=stats["unmatched_transactions"],
            unmatched_receipts=stats["unmatched_receipts"],
            average_confidence=stats["average_confidence"] or 0.0,
            accuracy_rate=accuracy,
            processing_time_avg_ms=stats["processing_time_avg_ms"] or 0.0,
            user_corrections=stats["user_corrections"],
        )

    def get_learning_stats(self, organization_id: str) -> dict[str, Any]:
        """Summary of recorded feedback and merchant mappings."""
        feedback = self.store.get_learning_feedback(organization_id)
        correct = sum(1 for f in feedback if f.was_correct)
        mappings = self.store.get_merchant_mappings(organization_id)
        return {
            "total_feedback": len(feedback),
            "correct": correct,
            "incorrect": len(feedback) - correct,
            "accuracy_rate": correct / len(feedback) if feedback else 0.0,
            "corrections": sum(1 for f in feedback if f.has_correction),
            "last_feedback_date": max((f.feedback_date for f in feedback), default=None),
            "merchant_mappings": len(mappings),
            "verified_mappings": sum(1 for m in mappings if m.verified),
        }

    def export_learning_data(self, organization_id: str) -> dict[str, Any]:
        """All feedback and merchant mappings of an organization, JSON-ready."""
        return {
            "organization_id": organization_id,
            "exported_at": _iso(_utc_now()),
            "feedback": [f.to_dict() for f in self.store.get_learning_feedback(organization_id)],
            "merchant_mappings": [
                m.to_dict() for m in self.store.get_merchant_mappings(organization_id)
            ],
        }
