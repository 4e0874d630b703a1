"""Tests for the matching orchestration service."""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from expense_matching.config import ConfigValidationError
from expense_matching.errors import NotFoundError, PersistenceConflictError
from expense_matching.schemas import MatchStatus, MatchType
from expense_matching.services import MatchingService

ORG = "org-acme"


@pytest.fixture
def example_pair(store, make_transaction, make_receipt):
    tx = make_transaction()
    receipt = make_receipt()
    store.upsert_transaction(tx)
    store.upsert_receipt(receipt)
    return tx, receipt


@pytest.fixture
def no_sleep():
    with patch("expense_matching.services.matching_service.time.sleep") as sleep:
        yield sleep


class TestAutoMatching:
    """Tests for perform_auto_matching."""

    def test_auto_match_is_persisted(self, service, store, example_pair):
        tx, receipt = example_pair

        result = service.perform_auto_matching(ORG, [tx], [receipt])

        assert result.stats.auto_matches == 1
        assert [c.receipt_id for c in result.auto_matched] == ["r-1"]
        active = store.get_active_match_for_transaction(ORG, "tx-1")
        assert active.receipt_id == "r-1"
        assert active.match_type == MatchType.AUTO
        assert result.unmatched_transactions == []
        assert result.unmatched_receipts == []

    def test_auto_match_teaches_unverified_mapping(self, service, store, example_pair):
        tx, receipt = example_pair
        service.perform_auto_matching(ORG, [tx], [receipt])

        (mapping,) = store.get_merchant_mappings(ORG)
        assert mapping.canonical_name == "Starbucks"
        assert mapping.verified is False

    def test_greedy_first_transaction_wins(self, service, store, make_transaction, make_receipt):
        """Input order decides which of two equal transactions takes the receipt."""
        first = make_transaction(id="tx-b")
        second = make_transaction(id="tx-a")
        receipt = make_receipt()
        for record in (first, second):
            store.upsert_transaction(record)
        store.upsert_receipt(receipt)

        result = service.perform_auto_matching(ORG, [first, second], [receipt])

        assert [c.transaction_id for c in result.candidates] == ["tx-b"]
        assert result.unmatched_transactions == ["tx-a"]
        assert store.get_active_match_for_receipt(ORG, "r-1").transaction_id == "tx-b"

    def test_one_to_one(self, service, store, make_transaction, make_receipt):
        transactions = [make_transaction(id=f"tx-{i}") for i in range(3)]
        receipts = [make_receipt(id=f"r-{i}") for i in range(2)]
        for record in transactions:
            store.upsert_transaction(record)
        for record in receipts:
            store.upsert_receipt(record)

        result = service.perform_auto_matching(ORG, transactions, receipts)

        matched_receipts = [c.receipt_id for c in result.auto_matched]
        assert len(matched_receipts) == len(set(matched_receipts)) == 2

    def test_weak_pair_becomes_suggestion(self, service, store, make_transaction, make_receipt):
        tx = make_transaction()
        receipt = make_receipt(day="2024-02-04", merchant="Dunkin Donuts", uploaded_by="U2")
        store.upsert_transaction(tx)
        store.upsert_receipt(receipt)

        result = service.perform_auto_matching(ORG, [tx], [receipt])

        assert result.stats.suggestions == 1
        assert result.stats.auto_matches == 0
        assert [s.receipt_id for s in store.get_suggestions(ORG)] == ["r-1"]
        assert store.get_active_match_for_transaction(ORG, "tx-1") is None

    def test_suggested_pair_stays_unmatched(self, service, store, make_transaction, make_receipt):
        tx = make_transaction(id="tx-s", merchant="Shell Gas")
        receipt = make_receipt(id="r-s", day="2024-02-05", merchant="Shell Oil", uploaded_by="U2")
        store.upsert_transaction(tx)
        store.upsert_receipt(receipt)

        result = service.perform_auto_matching(ORG, [tx], [receipt])

        assert [(c.transaction_id, c.match_type) for c in result.candidates] == [
            ("tx-s", MatchType.SUGGESTED)
        ]
        assert result.unmatched_transactions == ["tx-s"]
        assert result.unmatched_receipts == ["r-s"]

    def test_preview_does_not_count_merchant_usage(self, service, store, example_pair):
        tx, receipt = example_pair
        mapping = service.merchant_matcher.learn(ORG, "Starbucks", "Starbucks Coffee #1234")

        service.perform_auto_matching(ORG, [tx], [receipt], persist=False)

        assert service.merchant_matcher.flush_usage(ORG) == 0
        (stored,) = store.get_merchant_mappings(ORG)
        assert stored.usage_count == mapping.usage_count

    def test_preview_does_not_persist(self, service, store, example_pair):
        tx, receipt = example_pair
        result = service.perform_auto_matching(ORG, [tx], [receipt], persist=False)

        assert result.stats.auto_matches == 1
        assert store.get_active_match_for_transaction(ORG, "tx-1") is None
        assert store.get_stats()["matches_active"] == 0

    def test_rejected_pair_not_proposed_again(self, service, example_pair):
        tx, receipt = example_pair
        service.reject_match(ORG, "tx-1", "r-1", user_id="alice", reason="different visit")

        result = service.perform_auto_matching(ORG, [tx], [receipt])

        assert result.candidates == []
        assert result.unmatched_transactions == ["tx-1"]

    def test_foreign_and_invalid_records_reported(
        self, service, store, example_pair, make_transaction, make_receipt
    ):
        tx, receipt = example_pair
        foreign = make_transaction(id="tx-foreign", organization_id="org-other")
        broken = make_receipt(id="r-broken")
        broken.total_amount = None

        result = service.perform_auto_matching(ORG, [tx, foreign], [receipt, broken])

        assert result.stats.auto_matches == 1
        assert any("belongs to organization org-other" in e for e in result.errors)
        assert any("missing total_amount" in e for e in result.errors)
        assert "r-broken" in result.unmatched_receipts

    def test_run_is_recorded(self, service, store, example_pair):
        tx, receipt = example_pair
        service.perform_auto_matching(ORG, [tx], [receipt])
        stats = store.get_matching_stats(ORG, since="2000-01-01T00:00:00Z")
        assert stats["processing_time_avg_ms"] is not None

    def test_per_call_config_override(self, service, example_pair):
        tx, receipt = example_pair
        result = service.perform_auto_matching(
            ORG, [tx], [receipt], config={"auto_match_threshold": 0.99}, persist=False
        )
        assert result.stats.auto_matches == 0
        assert result.stats.suggestions == 1


class TestSuggestions:
    """Tests for get_match_suggestions."""

    def test_for_transaction(self, service, example_pair, make_receipt):
        tx, receipt = example_pair
        candidates = service.get_match_suggestions(
            ORG, "tx-1", "transaction", [receipt, make_receipt(id="r-2", amount="90.00")]
        )
        assert [c.receipt_id for c in candidates] == ["r-1"]

    def test_for_receipt_loaded_from_store(self, service, example_pair, make_transaction):
        tx, _ = example_pair
        candidates = service.get_match_suggestions(ORG, "r-1", "receipt", [tx])
        assert [c.transaction_id for c in candidates] == ["tx-1"]

    def test_unknown_item(self, service):
        with pytest.raises(NotFoundError):
            service.get_match_suggestions(ORG, "tx-missing", "transaction", [])

    def test_bad_item_type(self, service):
        with pytest.raises(ValueError):
            service.get_match_suggestions(ORG, "tx-1", "invoice", [])


class TestConfirmAndReject:
    """Tests for human decisions."""

    def test_confirm_supersedes_previous_match(
        self, service, store, example_pair, make_receipt
    ):
        tx, receipt = example_pair
        store.upsert_receipt(make_receipt(id="r-2", amount="13.00"))
        service.perform_auto_matching(ORG, [tx], [receipt])
        auto = store.get_active_match_for_transaction(ORG, "tx-1")

        result = service.confirm_match(ORG, "tx-1", "r-2", user_id="alice", notes="split bill")

        assert result.superseded_match_ids == [auto.id]
        assert result.match_type == MatchType.MANUAL
        assert result.matched_by == "alice"
        assert store.get_match(auto.id).status == MatchStatus.SUPERSEDED
        assert store.get_active_match_for_transaction(ORG, "tx-1").receipt_id == "r-2"
        assert store.get_active_match_for_receipt(ORG, "r-1") is None

    def test_confirm_records_positive_feedback(self, service, example_pair):
        service.confirm_match(ORG, "tx-1", "r-1", user_id="alice")

        stats = service.get_learning_stats(ORG)
        assert stats["total_feedback"] == 1
        assert stats["correct"] == 1
        assert stats["verified_mappings"] == 1

    def test_system_confirmation_records_no_feedback(self, service, example_pair):
        service.confirm_match(ORG, "tx-1", "r-1", match_type=MatchType.REVIEWED)
        assert service.get_learning_stats(ORG)["total_feedback"] == 0

    def test_confirm_unknown_receipt(self, service, example_pair):
        with pytest.raises(NotFoundError):
            service.confirm_match(ORG, "tx-1", "r-missing", user_id="alice")

    def test_confirm_with_non_confirmation_type(self, service, example_pair):
        with pytest.raises(ValueError):
            service.confirm_match(ORG, "tx-1", "r-1", match_type="rejected")

    def test_reject_keeps_record_and_feedback(self, service, store, example_pair, make_receipt):
        tx, receipt = example_pair
        store.upsert_receipt(make_receipt(id="r-right", day="2024-02-02"))
        service.perform_auto_matching(ORG, [tx], [receipt])

        record = service.reject_match(
            ORG, "tx-1", "r-1", user_id="alice", reason="duplicate", correct_receipt_id="r-right"
        )

        assert record.status == MatchStatus.REJECTED
        assert store.get_active_match_for_transaction(ORG, "tx-1") is None
        (feedback,) = store.get_learning_feedback(ORG)
        assert feedback.was_correct is False
        assert feedback.correct_receipt_id == "r-right"
        assert feedback.original_confidence == pytest.approx(record.confidence_score)
        assert feedback.criteria["amount"]["matched"] is True
        assert feedback.correction_criteria["date"]["days_difference"] == 1

    def test_reject_unknown_correction(self, service, example_pair):
        with pytest.raises(NotFoundError):
            service.reject_match(ORG, "tx-1", "r-1", user_id="alice", correct_receipt_id="r-nope")

    @staticmethod
    def _confirm_concurrently(service, pairs):
        """Confirm all pairs from parallel threads released at the same moment."""
        start = threading.Barrier(len(pairs))

        def confirm(pair):
            start.wait(5)
            return service.confirm_match(ORG, *pair)

        with ThreadPoolExecutor(max_workers=len(pairs)) as pool:
            futures = [pool.submit(confirm, pair) for pair in pairs]
        return [f.result() for f in futures]

    def test_racing_confirmations_on_one_transaction(self, service, store, make_transaction, make_receipt):
        store.upsert_transaction(make_transaction())
        receipt_ids = [f"r-{i}" for i in range(6)]
        for receipt_id in receipt_ids:
            store.upsert_receipt(make_receipt(id=receipt_id))

        results = self._confirm_concurrently(service, [("tx-1", r) for r in receipt_ids])

        history = store.get_match_history(ORG, transaction_id="tx-1")
        active = [m for m in history if m.active]
        assert len(results) == len(history) == 6
        assert len(active) == 1
        assert all(m.status == MatchStatus.SUPERSEDED for m in history if not m.active)
        assert store.get_active_match_for_transaction(ORG, "tx-1").id == active[0].id

    def test_racing_confirmations_on_one_receipt(self, service, store, make_transaction, make_receipt):
        store.upsert_receipt(make_receipt())
        transaction_ids = [f"tx-{i}" for i in range(6)]
        for transaction_id in transaction_ids:
            store.upsert_transaction(make_transaction(id=transaction_id))

        self._confirm_concurrently(service, [(t, "r-1") for t in transaction_ids])

        history = store.get_match_history(ORG, receipt_id="r-1")
        active = [m for m in history if m.active]
        assert len(history) == 6
        assert len(active) == 1
        assert store.get_active_match_for_receipt(ORG, "r-1").id == active[0].id
        assert store.get_stats()["matches_active"] == 1


class TestConflictRetry:
    """Persistence conflicts are retried, then surfaced."""

    def test_retry_then_success(self, service, store, example_pair, no_sleep):
        real_save = store.save_match
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise PersistenceConflictError("database is locked")
            return real_save(*args, **kwargs)

        with patch.object(store, "save_match", side_effect=flaky):
            result = service.confirm_match(ORG, "tx-1", "r-1", user_id="alice")

        assert len(calls) == 2
        assert result.receipt_id == "r-1"
        no_sleep.assert_called_once()

    def test_gives_up_after_retries(self, service, store, config, example_pair, no_sleep):
        with patch.object(
            store, "save_match", side_effect=PersistenceConflictError("database is locked")
        ) as save:
            with pytest.raises(PersistenceConflictError):
                service.confirm_match(ORG, "tx-1", "r-1", user_id="alice")

        assert save.call_count == config.conflict_retries + 1


class TestBulkMatching:
    """Tests for perform_bulk_matching and incremental runs."""

    @pytest.fixture
    def backlog(self, store, make_transaction, make_receipt):
        for i, amount in enumerate(("10.00", "20.00", "30.00", "40.00", "50.00")):
            store.upsert_transaction(make_transaction(id=f"tx-{i}", amount=amount))
            store.upsert_receipt(make_receipt(id=f"r-{i}", amount=amount))
        return store

    def test_matches_whole_backlog(self, service, backlog):
        progress = []
        result = service.perform_bulk_matching(
            ORG, batch_size=2, progress=lambda done, batch: progress.append((done, batch))
        )

        assert result.success
        assert result.total_processed == 5
        assert result.matches_created == 5
        assert progress == [(2, 1), (4, 2), (5, 3)]
        assert backlog.get_unmatched_transactions(ORG) == []

    def test_matches_bounded_by_smaller_side(self, service, store, make_transaction, make_receipt):
        for i in range(4):
            store.upsert_transaction(make_transaction(id=f"tx-{i}"))
        store.upsert_receipt(make_receipt(id="r-0"))
        store.upsert_receipt(make_receipt(id="r-1"))

        result = service.perform_bulk_matching(ORG, batch_size=3)

        assert result.total_processed == 4
        assert result.matches_created == 2

    def test_older_receipt_reached_past_newer_backlog(
        self, service, store, make_transaction, make_receipt
    ):
        store.upsert_transaction(make_transaction(id="tx-jan", amount="99.00", day="2024-01-05"))
        store.upsert_receipt(make_receipt(id="r-jan", amount="99.00", day="2024-01-05"))
        for i in range(4):
            store.upsert_receipt(make_receipt(id=f"r-mar-{i}", amount=f"{i + 1}.00", day=f"2024-03-0{i + 1}"))

        result = service.perform_bulk_matching(ORG, batch_size=1)

        assert result.matches_created == 1
        assert store.get_active_match_for_transaction(ORG, "tx-jan").receipt_id == "r-jan"

    def test_claims_released(self, service, backlog):
        service.perform_bulk_matching(ORG, batch_size=2)
        conn = backlog._get_connection()
        try:
            claimed = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE claimed_by IS NOT NULL"
            ).fetchone()[0]
        finally:
            conn.close()
        assert claimed == 0

    def test_failing_batch_recorded_and_run_continues(self, service, backlog):
        real = service.perform_auto_matching
        calls = []

        def failing_first(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("scoring backend down")
            return real(*args, **kwargs)

        with patch.object(service, "perform_auto_matching", side_effect=failing_first):
            result = service.perform_bulk_matching(ORG, batch_size=2)

        assert result.errors == ["Batch 1-2: scoring backend down"]
        assert not result.success
        assert result.total_processed == 3
        assert result.matches_created == 3

    def test_auto_match_new_items(self, service, backlog):
        result = service.auto_match_new(ORG, transaction_ids=["tx-3"])
        assert [c.receipt_id for c in result.auto_matched] == ["r-3"]

    def test_reprocess_rejected(self, service, store, example_pair, make_receipt):
        tx, receipt = example_pair
        service.perform_auto_matching(ORG, [tx], [receipt])
        service.reject_match(ORG, "tx-1", "r-1", user_id="alice")
        store.upsert_receipt(make_receipt(id="r-new"))

        result = service.reprocess_rejected(ORG)

        assert [c.receipt_id for c in result.auto_matched] == ["r-new"]


class TestConfigRegistry:
    """Per-organization configuration."""

    def test_defaults(self, service, config):
        assert service.get_config(ORG) == config.matching

    def test_update_persists_and_isolates(self, service, store, config):
        service.set_matching_config(ORG, {"auto_match_threshold": 0.9}, updated_by="admin")

        assert service.get_config(ORG).auto_match_threshold == 0.9
        assert service.get_config("org-other").auto_match_threshold == 0.85
        # A fresh service sees the stored override
        assert MatchingService(store, config).get_config(ORG).auto_match_threshold == 0.9

    def test_partial_weights(self, service):
        updated = service.set_matching_config(ORG, {"confidence_weights": {"merchant": 0.4}})
        assert updated.confidence_weights.merchant == 0.4
        assert updated.confidence_weights.amount == 0.35

    def test_invalid_update_rejected(self, service):
        with pytest.raises(ConfigValidationError):
            service.set_matching_config(ORG, {"suggest_threshold": 0.9, "auto_match_threshold": 0.8})
        assert service.get_config(ORG).auto_match_threshold == 0.85

    def test_update_with_learning(self, service, example_pair, make_receipt, store):
        store.upsert_receipt(make_receipt(id="r-off", amount="14.00"))
        for _ in range(5):
            service.reject_match(ORG, "tx-1", "r-1", user_id="alice", correct_receipt_id="r-off")

        preview = service.get_suggested_config(ORG)
        assert preview["amount_tolerance_fixed"] == pytest.approx(1.5)
        assert service.get_config(ORG).amount_tolerance_fixed == 1.0

        updated = service.update_config_with_learning(ORG)
        assert updated.amount_tolerance_fixed == pytest.approx(1.5)
        assert store.get_matching_config(ORG)["amount_tolerance_fixed"] == pytest.approx(1.5)

    def test_metrics(self, service, example_pair):
        tx, receipt = example_pair
        service.perform_auto_matching(ORG, [tx], [receipt])
        metrics = service.get_matching_metrics(ORG)
        assert metrics.auto_matched == 1
        assert metrics.unmatched_transactions == 0
