"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import pytest

from receipt_reconciler.keys import canonical_key
from receipt_reconciler.models import (
    PlanLimits,
    PlanTier,
    Receipt,
    ReceiptDraft,
    ReceiptStatus,
)
from receipt_reconciler.repository import InMemoryRepository

if TYPE_CHECKING:
    from collections.abc import Callable

USER = "user-1"
OTHER_USER = "user-2"


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Provide a clock fixed at 2024-03-01 12:00 UTC."""
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def repo() -> InMemoryRepository:
    """Provide an empty in-memory repository."""
    return InMemoryRepository()


@pytest.fixture
def limits() -> dict[PlanTier, PlanLimits]:
    """Provide the default plan ceilings."""
    return {
        PlanTier.FREE: PlanLimits(daily=20, monthly=300),
        PlanTier.PRO: PlanLimits(daily=200, monthly=None),
    }


@pytest.fixture
def costco_draft() -> ReceiptDraft:
    """Provide a complete draft for a Costco purchase."""
    return ReceiptDraft(
        merchant_name="Costco Wholesale",
        transaction_date=date(2024, 3, 1),
        total=Decimal("54.20"),
    )


@pytest.fixture
def add_receipt(
    repo: InMemoryRepository, clock: FakeClock
) -> Callable[..., Receipt]:
    """Insert a receipt straight into the repository.

    Each call advances the clock by a minute so creation order is stable.
    """

    def _add(
        merchant_name: str | None = "Costco",
        transaction_date: date | None = date(2024, 3, 1),
        total: Decimal | None = Decimal("54.20"),
        *,
        owner_id: str = USER,
        status: ReceiptStatus = ReceiptStatus.SETTLED,
        **extra: Any,
    ) -> Receipt:
        created = clock.advance(minutes=1)
        receipt = Receipt(
            id=extra.pop("id", str(uuid4())),
            owner_id=owner_id,
            merchant_name=merchant_name,
            transaction_date=transaction_date,
            total=total,
            canonical_key=extra.pop(
                "canonical_key",
                canonical_key(merchant_name, transaction_date, total),
            ),
            status=status,
            created_at=extra.pop("created_at", created),
            **extra,
        )
        return repo.add(receipt)

    return _add
