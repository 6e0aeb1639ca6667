"""Tests for receipt_reconciler.quota."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

import pytest

from receipt_reconciler.errors import InvalidArgument, QuotaExceeded
from receipt_reconciler.models import PlanLimits, PlanTier, UsageCounter
from receipt_reconciler.quota import UsageQuota

if TYPE_CHECKING:
    from receipt_reconciler.repository import InMemoryRepository
    from tests.conftest import FakeClock

USER = "user-1"


@pytest.fixture
def quota(
    repo: InMemoryRepository,
    limits: dict[PlanTier, PlanLimits],
    clock: FakeClock,
) -> UsageQuota:
    return UsageQuota(repo, limits, clock=clock)


class TestReserve:
    """Tests for UsageQuota.reserve()."""

    def test_first_call_creates_counter(
        self, quota: UsageQuota, repo: InMemoryRepository
    ) -> None:
        counter = quota.reserve(USER)

        assert counter.daily_count == 1
        assert counter.monthly_count == 1
        assert counter.plan is PlanTier.FREE
        assert counter.daily_window_start == datetime(2024, 3, 1, tzinfo=UTC)
        assert counter.monthly_window_start == datetime(2024, 3, 1, tzinfo=UTC)
        assert repo.get_usage(USER) == counter

    def test_increments(self, quota: UsageQuota) -> None:
        for _ in range(3):
            counter = quota.reserve(USER)
        assert counter.daily_count == 3
        assert counter.monthly_count == 3

    def test_twenty_first_call_fails_without_increment(
        self, quota: UsageQuota, repo: InMemoryRepository
    ) -> None:
        for _ in range(20):
            quota.reserve(USER, "free")

        with pytest.raises(QuotaExceeded) as exc_info:
            quota.reserve(USER, "free")

        assert exc_info.value.window == "daily"
        assert exc_info.value.limit == 20
        stored = repo.get_usage(USER)
        assert stored is not None
        assert stored.daily_count == 20
        assert stored.monthly_count == 20

    def test_daily_window_resets_next_day(
        self, quota: UsageQuota, clock: FakeClock
    ) -> None:
        for _ in range(20):
            quota.reserve(USER)

        clock.advance(days=1)
        counter = quota.reserve(USER)

        assert counter.daily_count == 1
        assert counter.monthly_count == 21
        assert counter.daily_window_start == datetime(2024, 3, 2, tzinfo=UTC)

    def test_monthly_limit(
        self, repo: InMemoryRepository, clock: FakeClock
    ) -> None:
        quota = UsageQuota(
            repo, {PlanTier.FREE: PlanLimits(daily=None, monthly=2)}, clock=clock
        )
        quota.reserve(USER)
        quota.reserve(USER)

        with pytest.raises(QuotaExceeded) as exc_info:
            quota.reserve(USER)
        assert exc_info.value.window == "monthly"

    def test_monthly_window_resets_next_month(
        self, repo: InMemoryRepository, clock: FakeClock
    ) -> None:
        quota = UsageQuota(
            repo, {PlanTier.FREE: PlanLimits(daily=None, monthly=2)}, clock=clock
        )
        quota.reserve(USER)
        quota.reserve(USER)

        clock.advance(days=31)
        counter = quota.reserve(USER)

        assert counter.monthly_count == 1
        assert counter.monthly_window_start == datetime(2024, 4, 1, tzinfo=UTC)

    def test_plan_hint_used_when_no_counter(self, quota: UsageQuota) -> None:
        counter = quota.reserve(USER, PlanTier.PRO)
        assert counter.plan is PlanTier.PRO

    def test_stored_plan_wins_over_hint(
        self, quota: UsageQuota, repo: InMemoryRepository
    ) -> None:
        quota.reserve(USER, "pro")
        counter = quota.reserve(USER, "free")
        assert counter.plan is PlanTier.PRO

    def test_unbounded_monthly_for_pro(
        self, repo: InMemoryRepository, clock: FakeClock
    ) -> None:
        quota = UsageQuota(
            repo, {PlanTier.PRO: PlanLimits(daily=None, monthly=None)}, clock=clock
        )
        for _ in range(500):
            counter = quota.reserve(USER, "pro")
        assert counter.monthly_count == 500

    def test_unknown_plan_hint_rejected(self, quota: UsageQuota) -> None:
        with pytest.raises(InvalidArgument, match="plan"):
            quota.reserve(USER, "platinum")

    def test_failed_reserve_does_not_persist_window_reset(
        self, repo: InMemoryRepository, clock: FakeClock
    ) -> None:
        stale = UsageCounter(
            user_id=USER,
            daily_count=0,
            monthly_count=5,
            daily_window_start=datetime(2024, 2, 29, tzinfo=UTC),
            monthly_window_start=datetime(2024, 3, 1, tzinfo=UTC),
        )
        with repo.usage_transaction(USER) as txn:
            txn.save(stale)
        quota = UsageQuota(
            repo, {PlanTier.FREE: PlanLimits(daily=20, monthly=5)}, clock=clock
        )

        with pytest.raises(QuotaExceeded):
            quota.reserve(USER)

        assert repo.get_usage(USER) == stale

    def test_timezone_defines_day_boundary(
        self, repo: InMemoryRepository, limits: dict[PlanTier, PlanLimits]
    ) -> None:
        # 03:00 UTC on March 2 is still March 1 in Toronto
        now = datetime(2024, 3, 2, 3, 0, tzinfo=UTC)
        quota = UsageQuota(
            repo, limits, timezone=ZoneInfo("America/Toronto"), clock=lambda: now
        )
        counter = quota.reserve(USER)
        assert counter.daily_window_start is not None
        assert counter.daily_window_start.date().isoformat() == "2024-03-01"

    def test_concurrent_reserves_never_exceed_limit(
        self, repo: InMemoryRepository, clock: FakeClock
    ) -> None:
        quota = UsageQuota(
            repo, {PlanTier.FREE: PlanLimits(daily=20, monthly=None)}, clock=clock
        )
        outcomes: list[bool] = []
        lock = threading.Lock()

        def worker() -> None:
            try:
                quota.reserve(USER)
                ok = True
            except QuotaExceeded:
                ok = False
            with lock:
                outcomes.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(True) == 20
        stored = repo.get_usage(USER)
        assert stored is not None
        assert stored.daily_count == 20


class TestPeek:
    """Tests for UsageQuota.peek()."""

    def test_zero_state_without_counter(
        self, quota: UsageQuota, repo: InMemoryRepository
    ) -> None:
        counter = quota.peek(USER)
        assert counter.daily_count == 0
        assert repo.get_usage(USER) is None

    def test_rolls_stale_window_without_persisting(
        self, quota: UsageQuota, repo: InMemoryRepository, clock: FakeClock
    ) -> None:
        quota.reserve(USER)
        clock.advance(days=1)

        assert quota.peek(USER).daily_count == 0
        stored = repo.get_usage(USER)
        assert stored is not None
        assert stored.daily_count == 1
