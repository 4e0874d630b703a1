"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from expense_matching.config import (
    Config,
    ConfigValidationError,
    MatchingConfig,
    create_default_config,
    load_config,
)

ENV_VARS = (
    "EXPENSE_MATCHING_DB",
    "MATCHING_AUTO_THRESHOLD",
    "MATCHING_SUGGEST_THRESHOLD",
    "MATCHING_DATE_WINDOW_DAYS",
    "MATCHING_MAX_CONCURRENT_JOBS",
    "MATCHING_POLL_INTERVAL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.matching == MatchingConfig()
        assert config.state_db_path == Path("data/matching.db")
        assert config.bulk_batch_size == 100
        assert config.jobs.max_concurrent_jobs == 3

    def test_default_file_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        create_default_config(path)

        config = load_config(path)

        assert config.matching == MatchingConfig()
        assert config.learning.min_feedback_samples == 5
        assert config.claim_ttl_seconds == 900

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
matching:
  auto_match_threshold: 0.9
  date_window_days: 3
  confidence_weights:
    merchant: 0.4
learning:
  window_days: 30
jobs:
  max_concurrent_jobs: 1
state_db_path: /var/lib/matching/state.db
bulk_batch_size: 25
"""
        )

        config = load_config(path)

        assert config.matching.auto_match_threshold == 0.9
        assert config.matching.date_window_days == 3
        assert config.matching.confidence_weights.merchant == 0.4
        assert config.matching.confidence_weights.amount == 0.35
        assert config.learning.window_days == 30
        assert config.jobs.max_concurrent_jobs == 1
        assert config.state_db_path == Path("/var/lib/matching/state.db")
        assert config.bulk_batch_size == 25

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MATCHING_AUTO_THRESHOLD", "0.92")
        monkeypatch.setenv("MATCHING_DATE_WINDOW_DAYS", "10")
        monkeypatch.setenv("MATCHING_MAX_CONCURRENT_JOBS", "6")
        monkeypatch.setenv("EXPENSE_MATCHING_DB", str(tmp_path / "env.db"))

        config = load_config(tmp_path / "missing.yaml")

        assert config.matching.auto_match_threshold == 0.92
        assert config.matching.date_window_days == 10
        assert config.jobs.max_concurrent_jobs == 6
        assert config.state_db_path == tmp_path / "env.db"

    def test_non_numeric_environment_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MATCHING_AUTO_THRESHOLD", "high")
        with pytest.raises(ConfigValidationError, match="MATCHING_AUTO_THRESHOLD"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_thresholds_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("matching:\n  auto_match_threshold: 0.4\n  suggest_threshold: 0.6\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            load_config(path)
        assert "matching.auto_match_threshold must be >= suggest_threshold" in exc_info.value.errors


class TestMatchingConfig:
    """Tests for MatchingConfig helpers."""

    def test_merged_does_not_modify_original(self):
        base = MatchingConfig()
        updated = base.merged({"date_window_days": 14, "confidence_weights": {"user": 0.0}})

        assert updated.date_window_days == 14
        assert updated.confidence_weights.user == 0.0
        assert base.date_window_days == 7
        assert base.confidence_weights.user == 0.05

    def test_unknown_keys_ignored(self):
        config = MatchingConfig.from_dict({"auto_match_threshold": 0.9, "colour": "blue"})
        assert config.auto_match_threshold == 0.9

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"amount_tolerance_fixed": -1}, "amount_tolerance_fixed must be >= 0"),
            ({"date_window_days": -2}, "date_window_days must be >= 0"),
            ({"auto_match_threshold": 1.5}, "auto_match_threshold must be between 0 and 1"),
            ({"max_candidates": 0}, "max_candidates must be >= 1"),
            ({"location_radius_km": 0}, "location_radius_km must be > 0"),
            ({"confidence_weights": {"amount": -0.1}}, "confidence_weights must be non-negative"),
        ],
    )
    def test_validation(self, overrides, message):
        assert message in MatchingConfig().merged(overrides).validate()

    def test_defaults_are_valid(self):
        assert Config().validate() == []
