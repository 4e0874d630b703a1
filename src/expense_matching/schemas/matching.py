"""
Match, feedback and metrics records.

Criteria objects are the per-pair evidence: they are stored with every match
and every feedback entry so that later analysis (learning, audits) can see
exactly why a pair scored the way it did.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .records import parse_amount, parse_date


class MatchType(str, Enum):
    """How a match came into being."""

    AUTO = "auto"
    MANUAL = "manual"
    REVIEWED = "reviewed"
    SUGGESTED = "suggested"
    REJECTED = "rejected"


# Match types a caller may confirm with
CONFIRMED_MATCH_TYPES = (MatchType.AUTO, MatchType.MANUAL, MatchType.REVIEWED)


class MatchStatus(str, Enum):
    """State of a persisted match row."""

    SUGGESTED = "SUGGESTED"  # Awaiting human review
    ACTIVE = "ACTIVE"  # Confirmed, at most one per transaction and per receipt
    SUPERSEDED = "SUPERSEDED"  # Replaced by a later confirmation
    REJECTED = "REJECTED"  # Explicitly rejected by a reviewer


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass
class AmountMatch:
    matched: bool
    transaction_amount: Decimal
    receipt_amount: Decimal
    difference: Decimal
    difference_percentage: float
    tolerance_applied: Decimal
    score: float

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "transaction_amount": _dec(self.transaction_amount),
            "receipt_amount": _dec(self.receipt_amount),
            "difference": _dec(self.difference),
            "difference_percentage": self.difference_percentage,
            "tolerance_applied": _dec(self.tolerance_applied),
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AmountMatch":
        return cls(
            matched=bool(data["matched"]),
            transaction_amount=parse_amount(data.get("transaction_amount")) or Decimal("0"),
            receipt_amount=parse_amount(data.get("receipt_amount")) or Decimal("0"),
            difference=parse_amount(data.get("difference")) or Decimal("0"),
            difference_percentage=float(data.get("difference_percentage", 0.0)),
            tolerance_applied=parse_amount(data.get("tolerance_applied")) or Decimal("0"),
            score=float(data.get("score", 0.0)),
        )


@dataclass
class DateMatch:
    matched: bool
    transaction_date: date
    receipt_date: date
    days_difference: int
    score: float

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "transaction_date": self.transaction_date.isoformat(),
            "receipt_date": self.receipt_date.isoformat(),
            "days_difference": self.days_difference,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DateMatch":
        return cls(
            matched=bool(data["matched"]),
            transaction_date=parse_date(data.get("transaction_date")),
            receipt_date=parse_date(data.get("receipt_date")),
            days_difference=int(data.get("days_difference", 0)),
            score=float(data.get("score", 0.0)),
        )


@dataclass
class MerchantMatch:
    matched: bool
    transaction_merchant: str
    receipt_merchant: str
    similarity_score: float
    score: float
    canonical_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "transaction_merchant": self.transaction_merchant,
            "receipt_merchant": self.receipt_merchant,
            "similarity_score": self.similarity_score,
            "canonical_name": self.canonical_name,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MerchantMatch":
        return cls(
            matched=bool(data["matched"]),
            transaction_merchant=data.get("transaction_merchant") or "",
            receipt_merchant=data.get("receipt_merchant") or "",
            similarity_score=float(data.get("similarity_score", 0.0)),
            score=float(data.get("score", 0.0)),
            canonical_name=data.get("canonical_name"),
        )


@dataclass
class LocationMatch:
    matched: bool
    distance_km: Optional[float]
    same_address: bool
    score: float

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "distance_km": self.distance_km,
            "same_address": self.same_address,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LocationMatch":
        return cls(
            matched=bool(data["matched"]),
            distance_km=data.get("distance_km"),
            same_address=bool(data.get("same_address", False)),
            score=float(data.get("score", 0.0)),
        )


@dataclass
class UserMatch:
    matched: bool
    transaction_user: Optional[str]
    receipt_user: Optional[str]
    score: float

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "transaction_user": self.transaction_user,
            "receipt_user": self.receipt_user,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserMatch":
        return cls(
            matched=bool(data["matched"]),
            transaction_user=data.get("transaction_user"),
            receipt_user=data.get("receipt_user"),
            score=float(data.get("score", 0.0)),
        )


@dataclass
class CurrencyMatch:
    matched: bool
    transaction_currency: str
    receipt_currency: str
    score: float

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "transaction_currency": self.transaction_currency,
            "receipt_currency": self.receipt_currency,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CurrencyMatch":
        return cls(
            matched=bool(data["matched"]),
            transaction_currency=data.get("transaction_currency") or "",
            receipt_currency=data.get("receipt_currency") or "",
            score=float(data.get("score", 0.0)),
        )


@dataclass
class MatchCriteria:
    """Evidence for one transaction/receipt pair. Location is optional."""

    amount: AmountMatch
    date: DateMatch
    merchant: MerchantMatch
    user: UserMatch
    currency: CurrencyMatch
    location: Optional[LocationMatch] = None

    def scores(self) -> dict[str, float]:
        """Sub-scores for every criterion that was evaluated."""
        result = {
            "amount": self.amount.score,
            "date": self.date.score,
            "merchant": self.merchant.score,
            "user": self.user.score,
            "currency": self.currency.score,
        }
        if self.location is not None:
            result["location"] = self.location.score
        return result

    def to_dict(self) -> dict:
        return {
            "amount": self.amount.to_dict(),
            "date": self.date.to_dict(),
            "merchant": self.merchant.to_dict(),
            "location": self.location.to_dict() if self.location else None,
            "user": self.user.to_dict(),
            "currency": self.currency.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MatchCriteria":
        return cls(
            amount=AmountMatch.from_dict(data["amount"]),
            date=DateMatch.from_dict(data["date"]),
            merchant=MerchantMatch.from_dict(data["merchant"]),
            user=UserMatch.from_dict(data["user"]),
            currency=CurrencyMatch.from_dict(data["currency"]),
            location=LocationMatch.from_dict(data["location"]) if data.get("location") else None,
        )


@dataclass
class MatchCandidate:
    """A scored transaction/receipt pair."""

    transaction_id: str
    receipt_id: str
    confidence_score: float
    match_type: MatchType
    match_criteria: MatchCriteria
    reasoning: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "transaction_id": self.transaction_id,
            "receipt_id": self.receipt_id,
            "confidence_score": round(self.confidence_score, 4),
            "match_type": self.match_type.value,
            "match_criteria": self.match_criteria.to_dict(),
            "reasoning": self.reasoning,
            "warnings": self.warnings,
        }


@dataclass
class MatchRecord:
    """A persisted match row (any status)."""

    id: str
    organization_id: str
    transaction_id: str
    receipt_id: str
    match_type: MatchType
    status: MatchStatus
    active: bool
    confidence_score: float
    match_criteria: Optional[dict]
    reasoning: list[str]
    matched_by: Optional[str]
    matched_at: str  # ISO timestamp
    notes: Optional[str] = None
    deactivated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "transaction_id": self.transaction_id,
            "receipt_id": self.receipt_id,
            "match_type": self.match_type.value,
            "status": self.status.value,
            "active": self.active,
            "confidence_score": self.confidence_score,
            "match_criteria": self.match_criteria,
            "reasoning": self.reasoning,
            "matched_by": self.matched_by,
            "matched_at": self.matched_at,
            "notes": self.notes,
            "deactivated_at": self.deactivated_at,
        }


@dataclass
class MatchResult:
    """Outcome of a confirmation."""

    match_id: str
    transaction_id: str
    receipt_id: str
    match_type: MatchType
    confidence_score: float
    match_criteria: Optional[MatchCriteria]
    created_at: str
    matched_by: Optional[str] = None
    notes: Optional[str] = None
    superseded_match_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "match_id": self.match_id,
            "transaction_id": self.transaction_id,
            "receipt_id": self.receipt_id,
            "match_type": self.match_type.value,
            "confidence_score": round(self.confidence_score, 4),
            "match_criteria": self.match_criteria.to_dict() if self.match_criteria else None,
            "created_at": self.created_at,
            "matched_by": self.matched_by,
            "notes": self.notes,
            "superseded_match_ids": self.superseded_match_ids,
        }


@dataclass
class ProcessingStats:
    transactions_processed: int = 0
    receipts_processed: int = 0
    matches_found: int = 0
    auto_matches: int = 0
    suggestions: int = 0
    processing_time_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "transactions_processed": self.transactions_processed,
            "receipts_processed": self.receipts_processed,
            "matches_found": self.matches_found,
            "auto_matches": self.auto_matches,
            "suggestions": self.suggestions,
            "processing_time_ms": round(self.processing_time_ms, 2),
        }


@dataclass
class MatchSuggestion:
    """Result of an auto-matching run."""

    candidates: list[MatchCandidate] = field(default_factory=list)
    unmatched_transactions: list[str] = field(default_factory=list)
    unmatched_receipts: list[str] = field(default_factory=list)
    stats: ProcessingStats = field(default_factory=ProcessingStats)
    errors: list[str] = field(default_factory=list)

    @property
    def auto_matched(self) -> list[MatchCandidate]:
        return [c for c in self.candidates if c.match_type == MatchType.AUTO]

    @property
    def suggested(self) -> list[MatchCandidate]:
        return [c for c in self.candidates if c.match_type == MatchType.SUGGESTED]

    def to_dict(self) -> dict:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "unmatched_transactions": self.unmatched_transactions,
            "unmatched_receipts": self.unmatched_receipts,
            "stats": self.stats.to_dict(),
            "errors": self.errors,
        }


@dataclass
class BulkMatchResult:
    total_processed: int = 0
    matches_created: int = 0
    processing_time_ms: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "matches_created": self.matches_created,
            "processing_time_ms": round(self.processing_time_ms, 2),
            "errors": self.errors,
        }


@dataclass
class LearningFeedback:
    """One reviewer verdict. Append-only."""

    id: str
    organization_id: str
    match_id: Optional[str]
    was_correct: bool
    user_id: Optional[str]
    feedback_date: str  # ISO timestamp
    correct_transaction_id: Optional[str] = None
    correct_receipt_id: Optional[str] = None
    notes: Optional[str] = None
    # Confidence the engine gave the judged pair
    original_confidence: Optional[float] = None
    # Evidence of the judged pair and, for corrections, of the correct pair
    criteria: Optional[dict] = None
    correction_criteria: Optional[dict] = None

    @property
    def has_correction(self) -> bool:
        return bool(self.correct_transaction_id or self.correct_receipt_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "match_id": self.match_id,
            "was_correct": self.was_correct,
            "user_id": self.user_id,
            "feedback_date": self.feedback_date,
            "correct_transaction_id": self.correct_transaction_id,
            "correct_receipt_id": self.correct_receipt_id,
            "notes": self.notes,
            "original_confidence": self.original_confidence,
            "criteria": self.criteria,
            "correction_criteria": self.correction_criteria,
        }


class MappingSource(str, Enum):
    """Where a merchant mapping came from."""

    TRANSACTION = "transaction"
    RECEIPT = "receipt"
    MANUAL = "manual"
    LEARNING = "learning"


@dataclass
class MerchantMapping:
    """Raw merchant names known to refer to the same canonical merchant."""

    id: str
    organization_id: str
    canonical_name: str
    raw_names: list[str] = field(default_factory=list)
    category: Optional[str] = None
    confidence: float = 0.0
    created_from: MappingSource = MappingSource.LEARNING
    verified: bool = False  # True once a human confirmed it
    usage_count: int = 0
    last_used: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "canonical_name": self.canonical_name,
            "raw_names": self.raw_names,
            "category": self.category,
            "confidence": self.confidence,
            "created_from": self.created_from.value,
            "verified": self.verified,
            "usage_count": self.usage_count,
            "last_used": self.last_used,
        }


@dataclass
class MatchingMetrics:
    organization_id: str
    period_start: str
    period_end: str
    total_transactions: int = 0
    total_receipts: int = 0
    auto_matched: int = 0
    manual_matched: int = 0
    unmatched_transactions: int = 0
    unmatched_receipts: int = 0
    average_confidence: float = 0.0
    accuracy_rate: float = 0.0
    processing_time_avg_ms: float = 0.0
    user_corrections: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "total_transactions": self.total_transactions,
            "total_receipts": self.total_receipts,
            "auto_matched": self.auto_matched,
            "manual_matched": self.manual_matched,
            "unmatched_transactions": self.unmatched_transactions,
            "unmatched_receipts": self.unmatched_receipts,
            "average_confidence": round(self.average_confidence, 4),
            "accuracy_rate": round(self.accuracy_rate, 4),
            "processing_time_avg_ms": round(self.processing_time_avg_ms, 2),
            "user_corrections": self.user_corrections,
        }
