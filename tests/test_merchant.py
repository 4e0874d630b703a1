"""Tests for merchant normalization, similarity and canonical mappings."""

from unittest.mock import MagicMock

import pytest

from expense_matching.matching import MerchantMatcher, name_similarity, normalize_merchant_name
from expense_matching.schemas import MappingSource, MerchantMapping

ORG = "org-acme"


class TestNormalizeMerchantName:
    """Tests for normalize_merchant_name."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Starbucks Coffee #1234", "starbucks coffee"),
            ("SQ *BLUE BOTTLE 0042", "blue bottle"),
            ("PAYPAL *SPOTIFY", "spotify"),
            ("ACME Inc.", "acme"),
            ("Joe's Diner LLC", "joe s diner"),
            ("STARBUCKS STORE 00412", "starbucks"),
            ("Barnes & Noble", "barnes noble"),
        ],
    )
    def test_normalization(self, raw, expected):
        assert normalize_merchant_name(raw) == expected

    def test_empty(self):
        assert normalize_merchant_name(None) == ""
        assert normalize_merchant_name("") == ""

    def test_only_filler_words_falls_back(self):
        """Normalization never returns empty for a non-empty name."""
        assert normalize_merchant_name("The Store") == "the store"


class TestNameSimilarity:
    """Tests for the fuzzy similarity blend."""

    def test_identical(self):
        assert name_similarity("starbucks", "starbucks") == 1.0

    def test_empty_side(self):
        assert name_similarity("", "starbucks") == 0.0

    def test_branch_suffix_is_close(self):
        assert name_similarity("starbucks", "starbucks coffee") >= 0.7

    def test_different_merchants_are_far(self):
        assert name_similarity("starbucks", "shell") < 0.7

    def test_symmetric(self):
        a, b = "whole foods", "whole foods market"
        assert name_similarity(a, b) == pytest.approx(name_similarity(b, a))


class TestMerchantMatcher:
    """Tests for comparisons through canonical mappings."""

    @pytest.fixture
    def matcher(self):
        return MerchantMatcher()

    def test_compare_without_mappings(self, matcher):
        result = matcher.compare("Starbucks", "STARBUCKS COFFEE #1234", ORG)
        assert result.similarity >= 0.7
        assert result.canonical_name is None
        assert result.mapping_id is None

    def test_compare_missing_name(self, matcher):
        assert matcher.compare("Starbucks", None, ORG).similarity == 0.0

    def test_learned_names_resolve_to_same_merchant(self, matcher):
        mapping = matcher.learn(ORG, "AMZN Mktp US", "Amazon.com", verified=True)

        result = matcher.compare("AMZN Mktp US", "Amazon.com", ORG)

        assert result.similarity == 1.0
        assert result.canonical_name == mapping.canonical_name
        assert result.mapping_id == mapping.id

    def test_mappings_are_per_organization(self, matcher):
        matcher.learn(ORG, "AMZN Mktp US", "Amazon.com")
        other = matcher.compare("AMZN Mktp US", "Amazon.com", "org-other")
        assert other.similarity < 1.0
        assert other.canonical_name is None

    def test_learn_creates_canonical_from_shorter_name(self, matcher):
        mapping = matcher.learn(ORG, "SQ *BLUE BOTTLE 0042", "Blue Bottle Coffee")
        assert mapping.canonical_name == "Blue Bottle"
        assert mapping.raw_names == ["SQ *BLUE BOTTLE 0042", "Blue Bottle Coffee"]
        assert mapping.verified is False

    def test_learn_extends_existing_mapping(self, matcher):
        first = matcher.learn(ORG, "AMZN Mktp US", "Amazon.com")
        second = matcher.learn(ORG, "Amazon.com", "Amazon Marketplace")

        assert second.id == first.id
        assert "Amazon Marketplace" in second.raw_names
        assert len(matcher.get_mappings(ORG)) == 1

    def test_verification_upgrades_mapping(self, matcher):
        matcher.learn(ORG, "AMZN Mktp US", "Amazon.com", verified=False)
        mapping = matcher.learn(ORG, "AMZN Mktp US", "Amazon.com", verified=True)
        assert mapping.verified is True
        assert mapping.confidence == 1.0

    def test_learn_ignores_empty_names(self, matcher):
        assert matcher.learn(ORG, "", "Amazon.com") is None
        assert matcher.get_mappings(ORG) == []

    def test_usage_is_buffered_until_flush(self, matcher):
        mapping = matcher.learn(ORG, "AMZN Mktp US", "Amazon.com")
        usage_before = mapping.usage_count

        matcher.compare("AMZN Mktp US", "Amazon.com", ORG)
        matcher.compare("AMZN Mktp US", "Amazon.com", ORG)
        assert mapping.usage_count == usage_before

        assert matcher.flush_usage(ORG) == 1
        assert mapping.usage_count == usage_before + 2
        assert matcher.flush_usage(ORG) == 0

    def test_compare_without_recording_usage(self, matcher):
        mapping = matcher.learn(ORG, "AMZN Mktp US", "Amazon.com")
        usage_before = mapping.usage_count

        result = matcher.compare("AMZN Mktp US", "Amazon.com", ORG, record_usage=False)

        assert result.mapping_id == mapping.id
        assert matcher.flush_usage(ORG) == 0
        assert mapping.usage_count == usage_before


class TestMerchantMatcherWithStore:
    """Mappings are loaded from and written to the database service."""

    @pytest.fixture
    def store(self):
        store = MagicMock()
        store.get_merchant_mappings.return_value = [
            MerchantMapping(
                id="map-1",
                organization_id=ORG,
                canonical_name="Shell",
                raw_names=["SHELL OIL 57442", "Shell Service Station"],
                created_from=MappingSource.MANUAL,
                verified=True,
                usage_count=4,
            )
        ]
        return store

    def test_mappings_loaded_once(self, store):
        matcher = MerchantMatcher(store)
        matcher.compare("SHELL OIL 57442", "Shell Service Station", ORG)
        matcher.compare("SHELL OIL 57442", "Shell Service Station", ORG)
        store.get_merchant_mappings.assert_called_once_with(ORG)

    def test_stored_mapping_used(self, store):
        matcher = MerchantMatcher(store)
        result = matcher.compare("SHELL OIL 57442", "Shell Service Station", ORG)
        assert result.similarity == 1.0
        assert result.canonical_name == "Shell"

    def test_flush_writes_usage(self, store):
        matcher = MerchantMatcher(store)
        matcher.compare("SHELL OIL 57442", "Shell Service Station", ORG)
        matcher.flush_usage(ORG)

        store.record_merchant_usage.assert_called_once()
        mapping_id, count, _ = store.record_merchant_usage.call_args[0]
        assert (mapping_id, count) == ("map-1", 1)

    def test_learn_persists(self, store):
        matcher = MerchantMatcher(store)
        mapping = matcher.learn(ORG, "Blue Bottle Coffee", "SQ *BLUE BOTTLE 0042")
        store.save_merchant_mapping.assert_called_once_with(mapping)

    def test_invalidate_reloads(self, store):
        matcher = MerchantMatcher(store)
        matcher.get_mappings(ORG)
        matcher.invalidate(ORG)
        matcher.get_mappings(ORG)
        assert store.get_merchant_mappings.call_count == 2
