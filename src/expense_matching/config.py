"""
Configuration management (SSOT).

This module defines ALL configuration for the matching system.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- MatchingConfig is per organization; Config.matching is only the default
  every organization starts from
- suggest_threshold <= auto_match_threshold
- Learned adjustments are proposals; they are never applied implicitly
"""

import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid configuration: " + "; ".join(errors))


@dataclass
class ConfidenceWeights:
    """Relative importance of each matching criterion.

    Weights need not sum to 1.0; the engine renormalizes over the criteria
    actually evaluated for a pair.
    """

    amount: float = 0.35
    date: float = 0.20
    merchant: float = 0.25
    location: float = 0.10
    user: float = 0.05
    currency: float = 0.05

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class MatchingConfig:
    """Per-organization matching parameters."""

    # Amount tolerance: max(percentage * receipt_total, fixed)
    amount_tolerance_percentage: float = 0.05
    amount_tolerance_fixed: float = 1.00
    # Calendar days between transaction and receipt date
    date_window_days: int = 7
    merchant_similarity_threshold: float = 0.7
    location_radius_km: float = 5.0
    # Classification thresholds
    auto_match_threshold: float = 0.85
    suggest_threshold: float = 0.5
    confidence_weights: ConfidenceWeights = field(default_factory=ConfidenceWeights)
    max_candidates: int = 10
    enable_learning: bool = True
    # Amount outside tolerance vetoes the pair (confidence 0)
    require_amount_match: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to plain dictionary for JSON/YAML serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MatchingConfig":
        """Build from a (possibly partial) dictionary; unknown keys are ignored."""
        return cls().merged(data or {})

    def merged(self, overrides: dict[str, Any] | None) -> "MatchingConfig":
        """Return a copy with the given partial overrides applied.

        Args:
            overrides: Partial config. ``confidence_weights`` may itself be
                partial.

        Returns:
            New MatchingConfig; self is not modified.
        """
        if not overrides:
            return replace(self, confidence_weights=replace(self.confidence_weights))

        known = {f.name for f in fields(self)}
        values: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known or value is None:
                continue
            if key == "confidence_weights":
                if isinstance(value, ConfidenceWeights):
                    value = value.as_dict()
                weights = self.confidence_weights.as_dict()
                weights.update({k: float(v) for k, v in value.items() if k in weights})
                values[key] = ConfidenceWeights(**weights)
            else:
                values[key] = value

        if "confidence_weights" not in values:
            values["confidence_weights"] = replace(self.confidence_weights)
        return replace(self, **values)

    def validate(self) -> list[str]:
        """Validate parameter ranges.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.amount_tolerance_percentage < 0:
            errors.append("amount_tolerance_percentage must be >= 0")
        if self.amount_tolerance_fixed < 0:
            errors.append("amount_tolerance_fixed must be >= 0")
        if self.date_window_days < 0:
            errors.append("date_window_days must be >= 0")
        if not 0.0 <= self.merchant_similarity_threshold <= 1.0:
            errors.append("merchant_similarity_threshold must be between 0 and 1")
        if self.location_radius_km <= 0:
            errors.append("location_radius_km must be > 0")
        for name in ("auto_match_threshold", "suggest_threshold"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                errors.append(f"{name} must be between 0 and 1")
        if self.auto_match_threshold < self.suggest_threshold:
            errors.append("auto_match_threshold must be >= suggest_threshold")
        if self.max_candidates < 1:
            errors.append("max_candidates must be >= 1")

        weights = self.confidence_weights.as_dict()
        if any(w < 0 for w in weights.values()):
            errors.append("confidence_weights must be non-negative")
        if sum(weights.values()) <= 0:
            errors.append("confidence_weights must not all be zero")

        return errors


@dataclass
class LearningConfig:
    """Feedback learning settings."""

    # Minimum number of false negatives before proposing changes
    min_feedback_samples: int = 5
    # Share of misses attributable to one criterion that counts as significant
    significance_share: float = 0.3
    # Only feedback from this many recent days is considered
    window_days: int = 90
    # Upper bounds for proposed values
    max_amount_tolerance_fixed: float = 25.00
    max_date_window_days: int = 30
    max_auto_match_threshold: float = 0.95


@dataclass
class JobProcessorConfig:
    """Background job processor settings."""

    max_concurrent_jobs: int = 3
    poll_interval_seconds: float = 5.0
    # Finished jobs older than this are dropped by cleanup
    job_retention_days: int = 7


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    matching: MatchingConfig = field(default_factory=MatchingConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    jobs: JobProcessorConfig = field(default_factory=JobProcessorConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/matching.db"))

    # Bulk matching page size
    bulk_batch_size: int = 100
    # Retries for persistence conflicts during confirmation
    conflict_retries: int = 3
    # Claims older than this are considered abandoned
    claim_ttl_seconds: int = 900

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = [f"matching.{e}" for e in self.matching.validate()]

        if self.jobs.max_concurrent_jobs < 1:
            errors.append("jobs.max_concurrent_jobs must be >= 1")
        if self.jobs.poll_interval_seconds <= 0:
            errors.append("jobs.poll_interval_seconds must be > 0")
        if self.learning.min_feedback_samples < 1:
            errors.append("learning.min_feedback_samples must be >= 1")
        if not 0.0 < self.learning.significance_share <= 1.0:
            errors.append("learning.significance_share must be in (0, 1]")
        if self.bulk_batch_size < 1:
            errors.append("bulk_batch_size must be >= 1")
        if self.conflict_retries < 0:
            errors.append("conflict_retries must be >= 0")

        return errors


def _env_float(name: str, default: Any) -> Any:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigValidationError([f"{name} must be a number, got {value!r}"])


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    A missing file yields the defaults. Environment variables can override
    config values:
    - EXPENSE_MATCHING_DB (state database path)
    - MATCHING_AUTO_THRESHOLD
    - MATCHING_SUGGEST_THRESHOLD
    - MATCHING_DATE_WINDOW_DAYS
    - MATCHING_MAX_CONCURRENT_JOBS
    - MATCHING_POLL_INTERVAL (seconds)

    Raises:
        ConfigValidationError: If the resulting configuration is invalid.
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Organization defaults
    matching_data = dict(data.get("matching", {}) or {})
    matching_data["auto_match_threshold"] = _env_float(
        "MATCHING_AUTO_THRESHOLD", matching_data.get("auto_match_threshold")
    )
    matching_data["suggest_threshold"] = _env_float(
        "MATCHING_SUGGEST_THRESHOLD", matching_data.get("suggest_threshold")
    )
    window = _env_float("MATCHING_DATE_WINDOW_DAYS", matching_data.get("date_window_days"))
    matching_data["date_window_days"] = int(window) if window is not None else None
    matching = MatchingConfig.from_dict(matching_data)

    # Learning
    learning_data = data.get("learning", {}) or {}
    learning = LearningConfig(
        min_feedback_samples=learning_data.get("min_feedback_samples", 5),
        significance_share=learning_data.get("significance_share", 0.3),
        window_days=learning_data.get("window_days", 90),
        max_amount_tolerance_fixed=learning_data.get("max_amount_tolerance_fixed", 25.00),
        max_date_window_days=learning_data.get("max_date_window_days", 30),
        max_auto_match_threshold=learning_data.get("max_auto_match_threshold", 0.95),
    )

    # Job processor
    jobs_data = data.get("jobs", {}) or {}
    jobs = JobProcessorConfig(
        max_concurrent_jobs=int(
            _env_float("MATCHING_MAX_CONCURRENT_JOBS", jobs_data.get("max_concurrent_jobs", 3))
        ),
        poll_interval_seconds=_env_float(
            "MATCHING_POLL_INTERVAL", jobs_data.get("poll_interval_seconds", 5.0)
        ),
        job_retention_days=jobs_data.get("job_retention_days", 7),
    )

    # State DB
    state_db = os.environ.get(
        "EXPENSE_MATCHING_DB", data.get("state_db_path", "data/matching.db")
    )

    config = Config(
        matching=matching,
        learning=learning,
        jobs=jobs,
        state_db_path=Path(state_db),
        bulk_batch_size=data.get("bulk_batch_size", 100),
        conflict_retries=data.get("conflict_retries", 3),
        claim_ttl_seconds=data.get("claim_ttl_seconds", 900),
    )

    errors = config.validate()
    if errors:
        raise ConfigValidationError(errors)

    return config


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Expense matching configuration
#
# The `matching` section is the default for every organization. Per-organization
# overrides (admin edits, adopted learning suggestions) live in the state database.

matching:
  amount_tolerance_percentage: 0.05   # Tolerance = max(5% of receipt total, fixed)
  amount_tolerance_fixed: 1.00
  date_window_days: 7                 # Calendar days between transaction and receipt
  merchant_similarity_threshold: 0.7
  location_radius_km: 5.0
  auto_match_threshold: 0.85          # At/above: confirm automatically
  suggest_threshold: 0.5              # At/above: queue for review, below: discard
  max_candidates: 10
  enable_learning: true
  require_amount_match: true          # Amount outside tolerance vetoes the pair
  confidence_weights:
    amount: 0.35
    date: 0.20
    merchant: 0.25
    location: 0.10
    user: 0.05
    currency: 0.05

# Feedback learning (suggestions only, never auto-applied)
learning:
  min_feedback_samples: 5
  significance_share: 0.3
  window_days: 90
  max_amount_tolerance_fixed: 25.00
  max_date_window_days: 30
  max_auto_match_threshold: 0.95

# Background job processor
jobs:
  max_concurrent_jobs: 3
  poll_interval_seconds: 5.0
  job_retention_days: 7

# State database path
state_db_path: "data/matching.db"

bulk_batch_size: 100
conflict_retries: 3
claim_ttl_seconds: 900
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
