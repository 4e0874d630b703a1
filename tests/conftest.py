"""Test fixtures and utilities."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from expense_matching.config import Config, MatchingConfig
from expense_matching.schemas.records import Location, Receipt, Transaction
from expense_matching.services import MatchingService
from expense_matching.state_store import MatchingDatabaseService

ORG = "org-acme"


def _transaction(
    id: str = "tx-1",
    amount: str = "12.50",
    day: str = "2024-02-01",
    merchant: str | None = "Starbucks",
    user: str | None = "U1",
    organization_id: str = ORG,
    currency: str = "USD",
    description: str = "",
    location: Location | None = None,
) -> Transaction:
    return Transaction(
        id=id,
        organization_id=organization_id,
        amount=Decimal(amount),
        transaction_date=date.fromisoformat(day),
        description=description,
        currency=currency,
        merchant_name=merchant,
        location=location,
        user_id=user,
    )


def _receipt(
    id: str = "r-1",
    amount: str = "12.50",
    day: str = "2024-02-01",
    merchant: str | None = "Starbucks Coffee #1234",
    uploaded_by: str | None = "U1",
    organization_id: str = ORG,
    currency: str = "USD",
    location: Location | None = None,
) -> Receipt:
    return Receipt(
        id=id,
        organization_id=organization_id,
        total_amount=Decimal(amount),
        receipt_date=date.fromisoformat(day),
        currency=currency,
        merchant_name=merchant,
        location=location,
        uploaded_by=uploaded_by,
    )


@pytest.fixture
def make_transaction():
    """Factory for transactions (defaults: 12.50 at Starbucks on 2024-02-01 by U1)."""
    return _transaction


@pytest.fixture
def make_receipt():
    """Factory for receipts (defaults match the default transaction)."""
    return _receipt


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_matching.db"


@pytest.fixture
def store(temp_db) -> MatchingDatabaseService:
    """Fresh database service with all migrations applied."""
    return MatchingDatabaseService(temp_db)


@pytest.fixture
def config() -> Config:
    """Default configuration with fast conflict retries."""
    return Config(matching=MatchingConfig(), conflict_retries=2, bulk_batch_size=10)


@pytest.fixture
def service(store, config) -> MatchingService:
    return MatchingService(store, config)
