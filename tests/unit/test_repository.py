"""Tests for receipt_reconciler.repository.InMemoryRepository."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from receipt_reconciler.errors import InvalidArgument, NotFound, PermissionDenied
from receipt_reconciler.models import ReceiptStatus, UsageCounter

if TYPE_CHECKING:
    from collections.abc import Callable

    from receipt_reconciler.models import Receipt
    from receipt_reconciler.repository import InMemoryRepository

USER = "user-1"


class TestReceipts:
    """Receipt reads and writes."""

    def test_returned_models_are_copies(
        self, repo: InMemoryRepository, add_receipt: Callable[..., Receipt]
    ) -> None:
        receipt = add_receipt()
        fetched = repo.get(USER, receipt.id)
        assert fetched is not None

        fetched.merchant_name = "Changed"

        again = repo.get(USER, receipt.id)
        assert again is not None
        assert again.merchant_name == "Costco"

    def test_get_other_owner_raises(
        self, repo: InMemoryRepository, add_receipt: Callable[..., Receipt]
    ) -> None:
        receipt = add_receipt(owner_id="someone-else")
        with pytest.raises(PermissionDenied):
            repo.get(USER, receipt.id)

    def test_list_filters_and_orders(
        self, repo: InMemoryRepository, add_receipt: Callable[..., Receipt]
    ) -> None:
        first = add_receipt()
        review = add_receipt(status=ReceiptStatus.UNDER_REVIEW)
        discarded = add_receipt(status=ReceiptStatus.DISCARDED)
        target = add_receipt("Target")

        assert [r.id for r in repo.list(USER)] == [first.id, review.id, target.id]
        assert [r.id for r in repo.list(USER, include_discarded=True)] == [
            first.id,
            review.id,
            discarded.id,
            target.id,
        ]
        assert [r.id for r in repo.list(USER, status=ReceiptStatus.DISCARDED)] == [
            discarded.id
        ]
        assert [
            r.id for r in repo.list(USER, canonical_key=first.canonical_key, limit=1)
        ] == [first.id]

    def test_update_missing_raises(self, repo: InMemoryRepository) -> None:
        with pytest.raises(NotFound):
            repo.update(USER, "missing", {"currency": "CAD"})

    def test_unknown_field_rejected(
        self, repo: InMemoryRepository, add_receipt: Callable[..., Receipt]
    ) -> None:
        receipt = add_receipt()

        with pytest.raises(InvalidArgument, match="colour"):
            repo.update(USER, receipt.id, {"colour": "red"})
        with pytest.raises(InvalidArgument, match="colour"):
            repo.write_batch(USER, [(receipt.id, {"colour": "red"})])

    def test_write_batch_is_all_or_nothing(
        self, repo: InMemoryRepository, add_receipt: Callable[..., Receipt]
    ) -> None:
        receipt = add_receipt()

        with pytest.raises(NotFound):
            repo.write_batch(
                USER,
                [(receipt.id, {"currency": "CAD"}), ("missing", {"currency": "CAD"})],
            )

        stored = repo.get(USER, receipt.id)
        assert stored is not None
        assert stored.currency == "USD"


class TestUsageTransaction:
    """Per-user usage transactions."""

    def test_saved_counter_committed(self, repo: InMemoryRepository) -> None:
        counter = UsageCounter(user_id=USER, daily_count=3)

        with repo.usage_transaction(USER) as txn:
            assert txn.counter is None
            txn.save(counter)

        assert repo.get_usage(USER) == counter

    def test_exception_discards_pending_save(self, repo: InMemoryRepository) -> None:
        with pytest.raises(RuntimeError), repo.usage_transaction(USER) as txn:
            txn.save(UsageCounter(user_id=USER, daily_count=1))
            raise RuntimeError("boom")

        assert repo.get_usage(USER) is None

    def test_counter_is_snapshot(self, repo: InMemoryRepository) -> None:
        with repo.usage_transaction(USER) as txn:
            txn.save(
                UsageCounter(
                    user_id=USER,
                    daily_count=1,
                    updated_at=datetime(2024, 3, 1, tzinfo=UTC),
                )
            )

        with repo.usage_transaction(USER) as txn:
            assert txn.counter is not None
            txn.counter.daily_count = 99

        stored = repo.get_usage(USER)
        assert stored is not None
        assert stored.daily_count == 1
