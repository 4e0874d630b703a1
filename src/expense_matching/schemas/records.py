"""
Transaction and receipt records (SSOT).

These are the only input shapes the matching engine understands. Upstream
sources (card feeds, receipt upload/OCR) map into them via ``from_dict``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from ..errors import RecordValidationError


class TransactionStatus(str, Enum):
    """Lifecycle status of a transaction."""

    PENDING = "pending"
    PROCESSED = "processed"
    MATCHED = "matched"
    CANCELLED = "cancelled"


class ReceiptStatus(str, Enum):
    """Lifecycle status of a receipt."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    MATCHED = "matched"
    FAILED = "failed"


# Receipts in these states are eligible for matching
MATCHABLE_RECEIPT_STATUSES = (ReceiptStatus.UPLOADED.value, ReceiptStatus.PROCESSED.value)


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse an amount from Decimal, number or string ("$1,234.50")."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    try:
        cleaned = str(value).replace("$", "").replace("€", "").replace(",", "").strip()
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar date from date, datetime or ISO string."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


@dataclass
class Location:
    """Point of sale location; any part may be missing."""

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude, "address": self.address}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Location"]:
        if not data:
            return None
        return cls(
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            address=data.get("address"),
        )


@dataclass
class ExtractedField:
    """One OCR-extracted receipt field."""

    field_name: str
    field_value: Any
    field_type: str = "text"  # text, number, date, currency
    confidence_score: float = 0.0
    verified: bool = False

    def to_dict(self) -> dict:
        return {
            "field_name": self.field_name,
            "field_value": self.field_value,
            "field_type": self.field_type,
            "confidence_score": self.confidence_score,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedField":
        return cls(
            field_name=data["field_name"],
            field_value=data.get("field_value"),
            field_type=data.get("field_type", "text"),
            confidence_score=float(data.get("confidence_score", 0.0)),
            verified=bool(data.get("verified", False)),
        )


@dataclass
class Transaction:
    """A card or bank transaction.

    ``amount`` is signed as reported by the source (charges are usually
    negative); matching compares its absolute value.
    """

    id: str
    organization_id: str
    amount: Optional[Decimal]
    transaction_date: Optional[date]
    description: str = ""
    currency: str = "USD"
    posted_date: Optional[date] = None
    merchant_name: Optional[str] = None
    merchant_category: Optional[str] = None
    location: Optional[Location] = None
    user_id: Optional[str] = None
    account_id: Optional[str] = None
    status: str = TransactionStatus.PENDING.value

    def validate(self) -> None:
        """Raise RecordValidationError if the transaction cannot be scored."""
        problems = []
        if not self.id:
            problems.append("missing id")
        if not self.organization_id:
            problems.append("missing organization_id")
        if self.amount is None:
            problems.append("missing amount")
        if self.transaction_date is None:
            problems.append("missing transaction_date")
        if problems:
            raise RecordValidationError("transaction", self.id, problems)

    @property
    def merchant_text(self) -> str:
        """Merchant name, falling back to the bank description."""
        return self.merchant_name or self.description or ""

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON storage."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "posted_date": self.posted_date.isoformat() if self.posted_date else None,
            "description": self.description,
            "merchant_name": self.merchant_name,
            "merchant_category": self.merchant_category,
            "location": self.location.to_dict() if self.location else None,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        """Deserialize from dictionary. Does not validate."""
        return cls(
            id=str(data.get("id") or ""),
            organization_id=str(data.get("organization_id") or ""),
            amount=parse_amount(data.get("amount")),
            transaction_date=parse_date(data.get("transaction_date")),
            description=data.get("description") or "",
            currency=(data.get("currency") or "USD").upper(),
            posted_date=parse_date(data.get("posted_date")),
            merchant_name=data.get("merchant_name"),
            merchant_category=data.get("merchant_category"),
            location=Location.from_dict(data.get("location")),
            user_id=data.get("user_id"),
            account_id=data.get("account_id"),
            status=data.get("status") or TransactionStatus.PENDING.value,
        )


# Extracted field names that may stand in for missing receipt attributes
_FIELD_ALIASES = {
    "total_amount": ("total_amount", "total", "amount"),
    "receipt_date": ("receipt_date", "date", "transaction_date"),
    "merchant_name": ("merchant_name", "merchant", "vendor"),
}


@dataclass
class Receipt:
    """An uploaded expense receipt."""

    id: str
    organization_id: str
    total_amount: Optional[Decimal]
    receipt_date: Optional[date]
    currency: str = "USD"
    merchant_name: Optional[str] = None
    merchant_id: Optional[str] = None
    location: Optional[Location] = None
    uploaded_by: Optional[str] = None
    status: str = ReceiptStatus.UPLOADED.value
    extracted_fields: list[ExtractedField] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise RecordValidationError if the receipt cannot be scored."""
        problems = []
        if not self.id:
            problems.append("missing id")
        if not self.organization_id:
            problems.append("missing organization_id")
        if self.total_amount is None:
            problems.append("missing total_amount")
        if self.receipt_date is None:
            problems.append("missing receipt_date")
        if problems:
            raise RecordValidationError("receipt", self.id, problems)

    def best_field(self, attribute: str) -> Optional[ExtractedField]:
        """Highest-confidence extracted field standing in for ``attribute``."""
        names = _FIELD_ALIASES.get(attribute, (attribute,))
        candidates = [
            f for f in self.extracted_fields if f.field_name in names and f.field_value not in (None, "")
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda f: (f.verified, f.confidence_score))

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON storage."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "total_amount": str(self.total_amount) if self.total_amount is not None else None,
            "currency": self.currency,
            "receipt_date": self.receipt_date.isoformat() if self.receipt_date else None,
            "merchant_name": self.merchant_name,
            "merchant_id": self.merchant_id,
            "location": self.location.to_dict() if self.location else None,
            "uploaded_by": self.uploaded_by,
            "status": self.status,
            "extracted_fields": [f.to_dict() for f in self.extracted_fields],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Receipt":
        """Deserialize from dictionary. Does not validate.

        Missing total, date or merchant are filled from extracted fields when
        OCR produced them.
        """
        receipt = cls(
            id=str(data.get("id") or ""),
            organization_id=str(data.get("organization_id") or ""),
            total_amount=parse_amount(data.get("total_amount")),
            receipt_date=parse_date(data.get("receipt_date")),
            currency=(data.get("currency") or "USD").upper(),
            merchant_name=data.get("merchant_name"),
            merchant_id=data.get("merchant_id"),
            location=Location.from_dict(data.get("location")),
            uploaded_by=data.get("uploaded_by"),
            status=data.get("status") or ReceiptStatus.UPLOADED.value,
            extracted_fields=[
                ExtractedField.from_dict(f) for f in data.get("extracted_fields") or []
            ],
            metadata=data.get("metadata") or {},
        )

        if receipt.total_amount is None:
            f = receipt.best_field("total_amount")
            receipt.total_amount = parse_amount(f.field_value) if f else None
        if receipt.receipt_date is None:
            f = receipt.best_field("receipt_date")
            receipt.receipt_date = parse_date(f.field_value) if f else None
        if not receipt.merchant_name:
            f = receipt.best_field("merchant_name")
            receipt.merchant_name = str(f.field_value) if f else None

        return receipt
