"""Merchant name normalization, fuzzy comparison and canonical mappings.

Card feeds and receipts spell merchants differently ("SQ *BLUE BOTTLE 0042"
vs "Blue Bottle Coffee"). Names are normalized, compared with a blend of
rapidfuzz scorers, and resolved through per-organization mappings that grow
as matches are confirmed.
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from ..schemas.matching import MappingSource, MerchantMapping

if TYPE_CHECKING:
    from ..state_store import MatchingDatabaseService

logger = logging.getLogger(__name__)

# Payment processor / aggregator prefixes ("SQ *", "TST* ", "PAYPAL *")
_PROCESSOR_PREFIX_RE = re.compile(
    r"^\s*(sq|sqr|tst|ssp|paypal|pp|venmo|zettle|izettle|sumup|stripe|google|apl|apple pay)\s*\*\s*",
    re.IGNORECASE,
)
_RECURRING_RE = re.compile(r"\b(recurring|autopay|payment|pmt)\b", re.IGNORECASE)
_STORE_NUMBER_RE = re.compile(r"\b(store|shop|location|branch|no)\s*\d+\b|\b\d{3,}\b")
_LEGAL_SUFFIXES = {"inc", "llc", "ltd", "corp", "corporation", "company", "co", "gmbh", "plc"}
_STOP_WORDS = {
    "the", "and", "or", "in", "on", "at", "to", "for", "of", "with", "by",
    "store", "shop", "market", "restaurant", "cafe", "bar", "pub", "hotel", "motel",
}

# Blend of rapidfuzz scorers, weights sum to 1.0
_WEIGHT_EDIT = 0.5
_WEIGHT_TOKEN_SET = 0.3
_WEIGHT_PARTIAL = 0.2


def normalize_merchant_name(name: str | None) -> str:
    """Normalize a raw merchant string for comparison.

    Lowercases, strips processor prefixes, recurring-billing markers, store
    numbers, legal suffixes and filler words, and collapses whitespace.
    Falls back to the lowercased input when normalization removes everything.
    """
    if not name:
        return ""
    text = _PROCESSOR_PREFIX_RE.sub("", name.strip()).lower()
    text = text.replace("&", " and ")
    text = _RECURRING_RE.sub(" ", text)
    text = re.sub(r"[^\w\s]", " ", text)
    text = _STORE_NUMBER_RE.sub(" ", text)
    words = [
        w for w in text.split() if w not in _LEGAL_SUFFIXES and w not in _STOP_WORDS
    ]
    normalized = " ".join(words)
    if not normalized:
        normalized = re.sub(r"\s+", " ", name.lower()).strip()
    return normalized


def name_similarity(a: str, b: str) -> float:
    """Similarity of two already-normalized names in [0, 1]."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    score = (
        _WEIGHT_EDIT * Levenshtein.normalized_similarity(a, b)
        + _WEIGHT_TOKEN_SET * fuzz.token_set_ratio(a, b) / 100.0
        + _WEIGHT_PARTIAL * fuzz.partial_ratio(a, b) / 100.0
    )
    return max(0.0, min(1.0, score))


@dataclass
class MerchantComparison:
    """Result of comparing two merchant names."""

    similarity: float
    canonical_name: str | None = None
    mapping_id: str | None = None


class MerchantMatcher:
    """Fuzzy merchant comparison with per-organization canonical mappings.

    Mappings are cached per organization and loaded lazily from the database
    service when one is provided. Usage counts are buffered and written with
    ``flush_usage`` so that scoring many pairs does not write per comparison.
    Safe to share across worker threads.
    """

    def __init__(
        self,
        store: MatchingDatabaseService | None = None,
        similarity_threshold: float = 0.7,
    ) -> None:
        """
        Args:
            store: Optional database service backing the mappings.
            similarity_threshold: Default threshold for usage tracking.
        """
        self.store = store
        self.similarity_threshold = similarity_threshold
        self._mappings: dict[str, dict[str, MerchantMapping]] = {}
        # normalized raw name -> mapping id, per organization
        self._index: dict[str, dict[str, str]] = {}
        self._pending_usage: dict[str, dict[str, int]] = {}
        self._lock = threading.RLock()

    # Mapping cache

    def load_mappings(self, organization_id: str) -> list[MerchantMapping]:
        """Load (once) and return the mappings of an organization."""
        with self._lock:
            if organization_id not in self._mappings:
                mappings = self.store.get_merchant_mappings(organization_id) if self.store else []
                self._mappings[organization_id] = {}
                self._index[organization_id] = {}
                for mapping in mappings:
                    self._add_to_cache(mapping)
                logger.debug(
                    "Loaded %d merchant mappings for organization %s",
                    len(mappings),
                    organization_id,
                )
            return list(self._mappings[organization_id].values())

    def get_mappings(self, organization_id: str) -> list[MerchantMapping]:
        return self.load_mappings(organization_id)

    def invalidate(self, organization_id: str) -> None:
        """Drop the cached mappings of an organization (pending usage is kept)."""
        with self._lock:
            self._mappings.pop(organization_id, None)
            self._index.pop(organization_id, None)

    def _add_to_cache(self, mapping: MerchantMapping) -> None:
        org = mapping.organization_id
        self._mappings.setdefault(org, {})[mapping.id] = mapping
        index = self._index.setdefault(org, {})
        for raw in [mapping.canonical_name, *mapping.raw_names]:
            key = normalize_merchant_name(raw)
            if key:
                index.setdefault(key, mapping.id)

    def find_mapping(self, organization_id: str, name: str | None) -> MerchantMapping | None:
        """Mapping that contains ``name`` (compared after normalization)."""
        key = normalize_merchant_name(name)
        if not key:
            return None
        self.load_mappings(organization_id)
        with self._lock:
            mapping_id = self._index.get(organization_id, {}).get(key)
            if mapping_id is None:
                return None
            return self._mappings.get(organization_id, {}).get(mapping_id)

    # Comparison

    def compare(
        self,
        name_a: str | None,
        name_b: str | None,
        organization_id: str,
        threshold: float | None = None,
        record_usage: bool = True,
    ) -> MerchantComparison:
        """Compare two raw merchant names within an organization.

        Names resolving to the same canonical mapping score 1.0. Otherwise
        the best similarity between the raw and canonical forms is used.

        Args:
            name_a: Typically the transaction merchant or description.
            name_b: Typically the receipt merchant.
            organization_id: Organization whose mappings apply.
            threshold: Similarity at which a mapping usage is recorded.
            record_usage: False leaves usage counters untouched.

        Returns:
            MerchantComparison with similarity in [0, 1].
        """
        norm_a = normalize_merchant_name(name_a)
        norm_b = normalize_merchant_name(name_b)
        if not norm_a or not norm_b:
            return MerchantComparison(similarity=0.0)

        mapping_a = self.find_mapping(organization_id, name_a)
        mapping_b = self.find_mapping(organization_id, name_b)

        if mapping_a is not None and mapping_b is not None and mapping_a.id == mapping_b.id:
            similarity = 1.0
        else:
            forms_a = {norm_a}
            forms_b = {norm_b}
            if mapping_a is not None:
                forms_a.add(normalize_merchant_name(mapping_a.canonical_name))
            if mapping_b is not None:
                forms_b.add(normalize_merchant_name(mapping_b.canonical_name))
            similarity = max(name_similarity(x, y) for x in forms_a for y in forms_b)

        limit = self.similarity_threshold if threshold is None else threshold
        mapping = mapping_a or mapping_b
        if mapping is None or similarity < limit:
            return MerchantComparison(similarity=similarity)

        if record_usage:
            self._record_usage(organization_id, mapping.id)
        return MerchantComparison(
            similarity=similarity,
            canonical_name=mapping.canonical_name,
            mapping_id=mapping.id,
        )

    # Usage tracking

    def _record_usage(self, organization_id: str, mapping_id: str) -> None:
        with self._lock:
            usage = self._pending_usage.setdefault(organization_id, {})
            usage[mapping_id] = usage.get(mapping_id, 0) + 1

    def flush_usage(self, organization_id: str) -> int:
        """Write buffered usage counts for an organization.

        Returns:
            Number of mappings updated.
        """
        with self._lock:
            usage = self._pending_usage.pop(organization_id, {})
        if not usage:
            return 0

        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        with self._lock:
            cached = self._mappings.get(organization_id, {})
            for mapping_id, count in usage.items():
                if mapping_id in cached:
                    cached[mapping_id].usage_count += count
                    cached[mapping_id].last_used = now

        if self.store is not None:
            for mapping_id, count in usage.items():
                self.store.record_merchant_usage(mapping_id, count, now)

        logger.debug("Flushed usage for %d merchant mappings (%s)", len(usage), organization_id)
        return len(usage)

    # Learning

    def learn(
        self,
        organization_id: str,
        raw_a: str | None,
        raw_b: str | None,
        verified: bool = False,
        created_from: MappingSource = MappingSource.LEARNING,
        category: str | None = None,
    ) -> MerchantMapping | None:
        """Record that two raw names refer to the same merchant.

        Extends an existing mapping of either name or creates a new one.
        Mappings only grow; a human confirmation marks them verified.

        Returns:
            The updated mapping, or None if either name is empty.
        """
        norm_a = normalize_merchant_name(raw_a)
        norm_b = normalize_merchant_name(raw_b)
        if not norm_a or not norm_b:
            return None

        self.load_mappings(organization_id)
        mapping = self.find_mapping(organization_id, raw_a) or self.find_mapping(
            organization_id, raw_b
        )
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        with self._lock:
            if mapping is None:
                canonical = min((norm_a, norm_b), key=lambda n: (len(n), n)).title()
                mapping = MerchantMapping(
                    id=str(uuid.uuid4()),
                    organization_id=organization_id,
                    canonical_name=canonical,
                    raw_names=[],
                    category=category,
                    confidence=1.0 if verified else name_similarity(norm_a, norm_b),
                    created_from=created_from,
                    verified=verified,
                    usage_count=0,
                    last_used=now,
                )
                logger.info(
                    "Created merchant mapping '%s' for organization %s",
                    canonical,
                    organization_id,
                )

            known = {normalize_merchant_name(r) for r in mapping.raw_names}
            for raw in (raw_a, raw_b):
                if normalize_merchant_name(raw) not in known:
                    mapping.raw_names.append(raw.strip())  # type: ignore[union-attr]
                    known.add(normalize_merchant_name(raw))

            if verified and not mapping.verified:
                mapping.verified = True
                mapping.confidence = 1.0
            if category and not mapping.category:
                mapping.category = category
            mapping.usage_count += 1
            mapping.last_used = now
            self._add_to_cache(mapping)

        if self.store is not None:
            self.store.save_merchant_mapping(mapping)

        return mapping
