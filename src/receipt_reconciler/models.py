"""Domain and extraction models for receipt reconciliation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class ReceiptStatus(StrEnum):
    """Reconciliation lifecycle of a stored receipt."""

    SETTLED = "settled"
    UNDER_REVIEW = "under_review"
    DISCARDED = "discarded"


class TransactionType(StrEnum):
    PURCHASE = "purchase"
    REFUND = "refund"


class ReceiptSource(StrEnum):
    SCAN = "scan"
    CSV = "csv"
    MANUAL = "manual"


class PlanTier(StrEnum):
    FREE = "free"
    PRO = "pro"


@dataclass(frozen=True)
class PlanLimits:
    """Metered-call ceilings for a plan tier. None means unbounded."""

    daily: int | None
    monthly: int | None


class ReceiptItem(BaseModel):
    """A single line on a receipt."""

    name: str
    quantity: Decimal = Decimal(1)
    price: Decimal
    category: str | None = None
    subcategory: str | None = None


class ReceiptDraft(BaseModel):
    """An incoming receipt that has not been persisted yet.

    Every field is optional so partially extracted receipts can still be
    probed; saving enforces the required ones. Totals are stored as a
    magnitude, the direction comes from ``transaction_type``.
    """

    merchant_name: str | None = None
    transaction_date: date | None = None
    transaction_type: TransactionType = TransactionType.PURCHASE
    total: Decimal | None = None
    currency: str = "USD"
    items: list[ReceiptItem] = Field(default_factory=list)
    time: str | None = None
    store_location: str | None = None
    image_url: str | None = None
    raw_text: str | None = None
    source: ReceiptSource = ReceiptSource.MANUAL

    @field_validator("total")
    @classmethod
    def _magnitude(cls, value: Decimal | None) -> Decimal | None:
        return abs(value) if value is not None else None


class Receipt(BaseModel):
    """Full receipt record as stored in the repository."""

    id: str
    owner_id: str
    merchant_name: str | None = None
    transaction_date: date | None = None
    transaction_type: TransactionType = TransactionType.PURCHASE
    total: Decimal | None = Field(default=None, ge=0)
    currency: str = "USD"
    items: list[ReceiptItem] = Field(default_factory=list)
    time: str | None = None
    store_location: str | None = None
    image_url: str | None = None
    raw_text: str | None = None
    source: ReceiptSource = ReceiptSource.MANUAL
    canonical_key: str | None = None
    status: ReceiptStatus = ReceiptStatus.SETTLED
    original_receipt_id: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    discarded_at: datetime | None = None

    @property
    def net_total(self) -> Decimal:
        """Signed effect on spending: refunds count negative."""
        magnitude = self.total or Decimal(0)
        if self.transaction_type is TransactionType.REFUND:
            return -magnitude
        return magnitude


# Fields a merge copies from the duplicate onto the original.
MERGED_FIELDS: tuple[str, ...] = (
    "merchant_name",
    "transaction_date",
    "transaction_type",
    "total",
    "currency",
    "items",
    "time",
    "store_location",
    "image_url",
    "raw_text",
    "source",
    "canonical_key",
    "created_at",
)

# Fields an edit may never touch directly.
PROTECTED_FIELDS: frozenset[str] = frozenset(
    {"id", "owner_id", "status", "original_receipt_id", "discarded_at"}
)


class ExtractedReceipt(BaseModel):
    """Structured receipt fields guessed by the AI extractor."""

    merchant_name: str = Field(min_length=1)
    transaction_date: date
    transaction_type: TransactionType = TransactionType.PURCHASE
    total: Decimal = Field(ge=0)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    time: str | None = None
    items: list[ReceiptItem] = Field(default_factory=list)

    def to_draft(self) -> ReceiptDraft:
        return ReceiptDraft(
            merchant_name=self.merchant_name,
            transaction_date=self.transaction_date,
            transaction_type=self.transaction_type,
            total=self.total,
            currency=self.currency,
            time=self.time,
            items=self.items,
            source=ReceiptSource.SCAN,
        )


class UsageCounter(BaseModel):
    """Metered-call counts for one user in the current quota windows."""

    user_id: str
    plan: PlanTier = PlanTier.FREE
    daily_count: int = Field(default=0, ge=0)
    monthly_count: int = Field(default=0, ge=0)
    daily_window_start: datetime | None = None
    monthly_window_start: datetime | None = None
    updated_at: datetime | None = None
