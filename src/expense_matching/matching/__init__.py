"""Scoring of transaction/receipt pairs and learning from reviewer feedback."""

from expense_matching.matching.engine import MatchingEngine
from expense_matching.matching.learning import LearningEngine
from expense_matching.matching.location import LocationMatcher
from expense_matching.matching.merchant import (
    MerchantComparison,
    MerchantMatcher,
    name_similarity,
    normalize_merchant_name,
)

__all__ = [
    "LearningEngine",
    "LocationMatcher",
    "MatchingEngine",
    "MerchantComparison",
    "MerchantMatcher",
    "name_similarity",
    "normalize_merchant_name",
]
