"""Tests for the matching engine."""

from decimal import Decimal

import pytest

from expense_matching.config import MatchingConfig
from expense_matching.errors import RecordValidationError
from expense_matching.matching import MatchingEngine
from expense_matching.schemas import Location, MatchType

ORG = "org-acme"


class TestConfidenceScoring:
    """Tests for pair evaluation and classification."""

    @pytest.fixture
    def engine(self):
        return MatchingEngine(MatchingConfig())

    def test_close_merchant_spelling_is_auto_matched(self, engine, make_transaction, make_receipt):
        """Starbucks vs 'Starbucks Coffee #1234' with exact amount and date is auto."""
        candidate = engine.evaluate(make_transaction(), make_receipt())

        assert candidate.match_criteria.merchant.matched is True
        assert candidate.match_criteria.merchant.similarity_score >= 0.7
        assert candidate.match_criteria.amount.score == 1.0
        assert candidate.match_criteria.date.score == 1.0
        assert candidate.match_criteria.user.score == 1.0
        assert candidate.match_criteria.currency.score == 1.0
        assert candidate.confidence_score >= 0.85
        assert candidate.match_type == MatchType.AUTO

    def test_amount_far_off_is_excluded(self, engine, make_transaction, make_receipt):
        """A receipt of 89.99 for a 12.50 charge never reaches the results."""
        tx = make_transaction()
        receipt = make_receipt(amount="89.99")

        candidate = engine.evaluate(tx, receipt)
        assert candidate.match_criteria.amount.score == 0.0
        assert candidate.confidence_score < engine.config.suggest_threshold

        assert engine.find_candidates(tx, [receipt]) == []

    def test_identical_pair_scores_one(self, engine, make_transaction, make_receipt):
        candidate = engine.evaluate(
            make_transaction(merchant="Blue Bottle"), make_receipt(merchant="Blue Bottle")
        )
        assert candidate.confidence_score == pytest.approx(1.0)
        assert "Exact amount match" in candidate.reasoning
        assert "Same date" in candidate.reasoning
        assert candidate.warnings == []

    def test_confidence_is_capped_and_bounded(self, engine, make_transaction, make_receipt):
        for amount in ("12.50", "12.90", "13.50", "40.00"):
            candidate = engine.evaluate(make_transaction(), make_receipt(amount=amount))
            assert 0.0 <= candidate.confidence_score <= 1.0

    def test_closer_amount_scores_higher(self, engine, make_transaction, make_receipt):
        tx = make_transaction()
        exact = engine.evaluate(tx, make_receipt(amount="12.50"))
        close = engine.evaluate(tx, make_receipt(amount="12.90"))
        assert exact.confidence_score > close.confidence_score

    def test_closer_date_scores_higher(self, engine, make_transaction, make_receipt):
        tx = make_transaction()
        one_day = engine.evaluate(tx, make_receipt(day="2024-02-02"))
        five_days = engine.evaluate(tx, make_receipt(day="2024-02-06"))
        assert one_day.confidence_score > five_days.confidence_score
        assert "1 day apart" in one_day.reasoning

    def test_weak_evidence_is_suggested(self, engine, make_transaction, make_receipt):
        """Exact amount, 3 days apart, other merchant and user: review, not auto."""
        candidate = engine.evaluate(
            make_transaction(),
            make_receipt(day="2024-02-04", merchant="Dunkin Donuts", uploaded_by="U2"),
        )
        # (0.35 + 0.20 * 4/7 + 0.05) / 0.90
        assert candidate.confidence_score == pytest.approx(0.5714, abs=1e-3)
        assert candidate.match_type == MatchType.SUGGESTED
        assert "Merchant names don't match well" in candidate.warnings
        assert "Different users" in candidate.warnings

    def test_amount_veto_can_be_disabled(self, make_transaction, make_receipt):
        engine = MatchingEngine(MatchingConfig(require_amount_match=False))
        candidate = engine.evaluate(make_transaction(), make_receipt(amount="89.99"))
        assert candidate.match_criteria.amount.matched is False
        assert candidate.confidence_score > 0.5

    def test_currency_mismatch_warns(self, engine, make_transaction, make_receipt):
        candidate = engine.evaluate(make_transaction(), make_receipt(currency="EUR"))
        assert candidate.match_criteria.currency.score == 0.0
        assert "Currency mismatch: USD vs EUR" in candidate.warnings

    def test_bank_description_stands_in_for_merchant(self, engine, make_transaction, make_receipt):
        tx = make_transaction(merchant=None, description="STARBUCKS STORE 00412")
        candidate = engine.evaluate(tx, make_receipt(merchant="Starbucks"))
        assert candidate.match_criteria.merchant.matched is True


class TestToleranceBoundaries:
    """Amount and date windows are inclusive."""

    @pytest.fixture
    def engine(self):
        return MatchingEngine(MatchingConfig())

    def test_amount_exactly_at_tolerance_matches(self, engine, make_transaction, make_receipt):
        """Receipt 10.00: tolerance is max(5% = 0.50, fixed 1.00) = 1.00."""
        amount = engine.score_amount(make_transaction(amount="11.00"), make_receipt(amount="10.00"))
        assert amount.tolerance_applied == Decimal("1.00")
        assert amount.matched is True
        assert amount.score == 0.0

    def test_amount_just_beyond_tolerance_fails(self, engine, make_transaction, make_receipt):
        amount = engine.score_amount(make_transaction(amount="11.01"), make_receipt(amount="10.00"))
        assert amount.matched is False
        assert amount.difference == Decimal("1.01")

    def test_percentage_tolerance_for_large_amounts(self, engine, make_transaction, make_receipt):
        amount = engine.score_amount(
            make_transaction(amount="1040.00"), make_receipt(amount="1000.00")
        )
        assert amount.tolerance_applied == Decimal("50.00")
        assert amount.matched is True
        assert amount.score == pytest.approx(0.2)

    def test_signed_transaction_amount_compared_by_magnitude(
        self, engine, make_transaction, make_receipt
    ):
        amount = engine.score_amount(make_transaction(amount="-12.50"), make_receipt())
        assert amount.difference == Decimal("0")
        assert amount.score == 1.0

    def test_date_at_window_edge_matches(self, engine, make_transaction, make_receipt):
        result = engine.score_date(make_transaction(), make_receipt(day="2024-02-08"))
        assert result.days_difference == 7
        assert result.matched is True
        assert result.score == 0.0

    def test_date_beyond_window_fails(self, engine, make_transaction, make_receipt):
        result = engine.score_date(make_transaction(), make_receipt(day="2024-01-24"))
        assert result.days_difference == 8
        assert result.matched is False

    @pytest.mark.parametrize(
        "score,expected",
        [
            (1.0, MatchType.AUTO),
            (0.85, MatchType.AUTO),
            (0.849, MatchType.SUGGESTED),
            (0.5, MatchType.SUGGESTED),
            (0.499, MatchType.MANUAL),
            (0.0, MatchType.MANUAL),
        ],
    )
    def test_classification_thresholds(self, engine, score, expected):
        assert engine.get_match_type(score) == expected


class TestLocationScoring:
    """Location is optional evidence."""

    @pytest.fixture
    def engine(self):
        return MatchingEngine(MatchingConfig())

    def test_missing_location_is_neutral(self, engine, make_transaction, make_receipt):
        candidate = engine.evaluate(make_transaction(), make_receipt())
        assert candidate.match_criteria.location is None
        assert "location" not in candidate.match_criteria.scores()

    def test_same_coordinates(self, engine, make_transaction, make_receipt):
        here = Location(latitude=40.7128, longitude=-74.0060)
        location = engine.score_location(
            make_transaction(location=here), make_receipt(location=here)
        )
        assert location.matched is True
        assert location.distance_km == pytest.approx(0.0)
        assert location.score == pytest.approx(1.0)

    def test_far_apart_warns(self, engine, make_transaction, make_receipt):
        candidate = engine.evaluate(
            make_transaction(location=Location(latitude=40.0, longitude=-74.0)),
            make_receipt(location=Location(latitude=41.0, longitude=-74.0)),
        )
        assert candidate.match_criteria.location.matched is False
        assert any(w.startswith("Too far apart") for w in candidate.warnings)

    def test_same_address_without_coordinates(self, engine, make_transaction, make_receipt):
        location = engine.score_location(
            make_transaction(location=Location(address="123 Main Street")),
            make_receipt(location=Location(address="123 main st.")),
        )
        assert location.same_address is True
        assert location.score == pytest.approx(0.8)


class TestCandidateSearch:
    """Tests for find_candidates / find_transaction_candidates."""

    @pytest.fixture
    def engine(self):
        return MatchingEngine(MatchingConfig())

    def test_ranked_best_first(self, engine, make_transaction, make_receipt):
        receipts = [
            make_receipt(id="r-close", amount="12.90"),
            make_receipt(id="r-exact"),
            make_receipt(id="r-far", amount="89.99"),
        ]
        candidates = engine.find_candidates(make_transaction(), receipts)
        assert [c.receipt_id for c in candidates] == ["r-exact", "r-close"]

    def test_ties_ordered_by_receipt_id(self, engine, make_transaction, make_receipt):
        receipts = [make_receipt(id="r-b"), make_receipt(id="r-c"), make_receipt(id="r-a")]
        candidates = engine.find_candidates(make_transaction(), receipts)
        assert [c.receipt_id for c in candidates] == ["r-a", "r-b", "r-c"]

    def test_limited_to_max_candidates(self, make_transaction, make_receipt):
        engine = MatchingEngine(MatchingConfig(max_candidates=2))
        receipts = [make_receipt(id=f"r-{i}") for i in range(5)]
        assert len(engine.find_candidates(make_transaction(), receipts)) == 2

    def test_other_organizations_skipped(self, engine, make_transaction, make_receipt):
        receipts = [make_receipt(id="r-other", organization_id="org-other"), make_receipt()]
        candidates = engine.find_candidates(make_transaction(), receipts)
        assert [c.receipt_id for c in candidates] == ["r-1"]

    def test_bad_geodata_skips_only_that_pair(self, engine, make_transaction, make_receipt):
        tx = make_transaction(location=Location(latitude=40.0, longitude=-74.0))
        receipts = [
            make_receipt(id="r-bad", location=Location(latitude=123.0, longitude=-74.0)),
            make_receipt(id="r-good"),
        ]
        candidates = engine.find_candidates(tx, receipts)
        assert [c.receipt_id for c in candidates] == ["r-good"]

    def test_invalid_transaction_raises(self, engine, make_transaction, make_receipt):
        tx = make_transaction()
        tx.amount = None
        with pytest.raises(RecordValidationError, match="missing amount"):
            engine.find_candidates(tx, [make_receipt()])

    def test_transaction_candidates_mirror(self, engine, make_transaction, make_receipt):
        transactions = [
            make_transaction(id="tx-far", amount="40.00"),
            make_transaction(id="tx-match"),
        ]
        candidates = engine.find_transaction_candidates(make_receipt(), transactions)
        assert [c.transaction_id for c in candidates] == ["tx-match"]

    def test_update_config_returns_new_snapshot(self, engine):
        before = engine.get_config()
        after = engine.update_config({"auto_match_threshold": 0.9})
        assert after.auto_match_threshold == 0.9
        assert before.auto_match_threshold == 0.85
