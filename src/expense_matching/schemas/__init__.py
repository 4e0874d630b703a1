"""
Schemas (SSOT) for records flowing through the matching system.

- records: transactions and receipts, the engine's inputs
- matching: criteria, candidates, persisted matches, feedback and metrics
"""

from .matching import (
    CONFIRMED_MATCH_TYPES,
    AmountMatch,
    BulkMatchResult,
    CurrencyMatch,
    DateMatch,
    LearningFeedback,
    LocationMatch,
    MappingSource,
    MatchCandidate,
    MatchCriteria,
    MatchingMetrics,
    MatchRecord,
    MatchResult,
    MatchStatus,
    MatchSuggestion,
    MatchType,
    MerchantMapping,
    MerchantMatch,
    ProcessingStats,
    UserMatch,
)
from .records import (
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

__all__ = [
    "CONFIRMED_MATCH_TYPES",
    "MATCHABLE_RECEIPT_STATUSES",
    "AmountMatch",
    "BulkMatchResult",
    "CurrencyMatch",
    "DateMatch",
    "ExtractedField",
    "LearningFeedback",
    "Location",
    "LocationMatch",
    "MappingSource",
    "MatchCandidate",
    "MatchCriteria",
    "MatchingMetrics",
    "MatchRecord",
    "MatchResult",
    "MatchStatus",
    "MatchSuggestion",
    "MatchType",
    "MerchantMapping",
    "MerchantMatch",
    "ProcessingStats",
    "Receipt",
    "ReceiptStatus",
    "Transaction",
    "TransactionStatus",
    "UserMatch",
    "parse_amount",
    "parse_date",
]
