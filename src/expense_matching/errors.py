"""
Error types for the matching system.

Callers distinguish four failure classes:
- RecordValidationError: one input record is malformed; skip it and continue
- NotFoundError: an id does not resolve; surface to the caller
- PersistenceConflictError: a concurrent write won the race; retry
- ScoringError: one pair could not be scored; log and skip the pair
"""


class MatchingError(Exception):
    """Base exception for matching errors."""

    pass


class RecordValidationError(MatchingError):
    """A transaction or receipt is missing required data."""

    def __init__(self, record_type: str, record_id: str | None, problems: list[str]):
        self.record_type = record_type
        self.record_id = record_id
        self.problems = problems
        super().__init__(f"Invalid {record_type} {record_id or '<no id>'}: {', '.join(problems)}")


class NotFoundError(MatchingError):
    """Referenced record does not exist (or belongs to another organization)."""

    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} {item_id} not found")


class PersistenceConflictError(MatchingError):
    """Concurrent write conflict on the matches table."""

    pass


class AlreadyMatchedError(MatchingError):
    """A non-superseding confirmation found an active match on either side."""

    def __init__(self, transaction_id: str, receipt_id: str, active_match_id: str):
        self.transaction_id = transaction_id
        self.receipt_id = receipt_id
        self.active_match_id = active_match_id
        super().__init__(
            f"Transaction {transaction_id} or receipt {receipt_id} "
            f"already has active match {active_match_id}"
        )


class ScoringError(MatchingError):
    """Scoring a single transaction/receipt pair failed."""

    pass


class InvalidCoordinatesError(ScoringError, ValueError):
    """Latitude/longitude are not numeric or out of range."""

    pass


class JobError(MatchingError):
    """Invalid job type or job state transition."""

    pass
