"""Daily and monthly usage quotas for metered AI calls.

``reserve`` must succeed before the guarded call is issued. The increment
is kept even when that call later fails: users are charged for attempts,
not successes.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, tzinfo
from typing import TYPE_CHECKING

from receipt_reconciler.errors import InvalidArgument, QuotaExceeded
from receipt_reconciler.models import PlanTier, UsageCounter

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from receipt_reconciler.models import PlanLimits
    from receipt_reconciler.repository import UsageRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class UsageQuota:
    """Transactional check-and-increment of per-user usage counters."""

    def __init__(
        self,
        repository: UsageRepository,
        limits: Mapping[PlanTier, PlanLimits],
        *,
        timezone: tzinfo = UTC,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.limits = dict(limits)
        self.timezone = timezone
        self.clock = clock

    def reserve(
        self, user_id: str, plan_hint: PlanTier | str | None = None
    ) -> UsageCounter:
        """Count one metered call for ``user_id``.

        Windows are rolled, the limit checked and both counters incremented
        inside a single per-user transaction. Raises QuotaExceeded, leaving
        the stored counter untouched, when a finite ceiling is already met.
        Returns the counter as persisted.
        """
        hint = _parse_plan(plan_hint)
        now = self.clock()
        day_start, month_start = self.window_starts(now)

        with self.repository.usage_transaction(user_id) as txn:
            counter = _rolled(txn.counter, user_id, hint, day_start, month_start)
            self._check_limits(counter)
            counter = counter.model_copy(
                update={
                    "daily_count": counter.daily_count + 1,
                    "monthly_count": counter.monthly_count + 1,
                    "updated_at": now,
                }
            )
            txn.save(counter)

        logger.debug(
            "Reserved usage for %s (%s): daily=%d monthly=%d",
            user_id,
            counter.plan,
            counter.daily_count,
            counter.monthly_count,
        )
        return counter

    def peek(
        self, user_id: str, plan_hint: PlanTier | str | None = None
    ) -> UsageCounter:
        """Return the counter as it reads now, with stale windows zeroed.

        Nothing is persisted.
        """
        day_start, month_start = self.window_starts(self.clock())
        stored = self.repository.get_usage(user_id)
        return _rolled(stored, user_id, _parse_plan(plan_hint), day_start, month_start)

    def window_starts(self, now: datetime) -> tuple[datetime, datetime]:
        """Return the start of today and of this month in the quota timezone."""
        local = now.astimezone(self.timezone)
        day_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return day_start, day_start.replace(day=1)

    def _check_limits(self, counter: UsageCounter) -> None:
        limits = self.limits.get(counter.plan)
        if limits is None:
            msg = f"No quota limits configured for plan {counter.plan!r}"
            raise InvalidArgument(msg)
        if limits.daily is not None and counter.daily_count >= limits.daily:
            logger.info("Daily quota reached for %s", counter.user_id)
            raise QuotaExceeded(counter.user_id, counter.plan, "daily", limits.daily)
        if limits.monthly is not None and counter.monthly_count >= limits.monthly:
            logger.info("Monthly quota reached for %s", counter.user_id)
            raise QuotaExceeded(
                counter.user_id, counter.plan, "monthly", limits.monthly
            )


def _parse_plan(plan: PlanTier | str | None) -> PlanTier | None:
    if plan is None or isinstance(plan, PlanTier):
        return plan
    try:
        return PlanTier(plan)
    except ValueError:
        msg = f"Unknown plan tier: {plan!r}"
        raise InvalidArgument(msg) from None


def _rolled(
    stored: UsageCounter | None,
    user_id: str,
    plan_hint: PlanTier | None,
    day_start: datetime,
    month_start: datetime,
) -> UsageCounter:
    """Return ``stored`` (or a zero counter) with expired windows reset."""
    if stored is None:
        return UsageCounter(
            user_id=user_id,
            plan=plan_hint or PlanTier.FREE,
            daily_window_start=day_start,
            monthly_window_start=month_start,
        )

    update: dict[str, object] = {}
    if stored.daily_window_start is None or stored.daily_window_start < day_start:
        update["daily_count"] = 0
        update["daily_window_start"] = day_start
    if (
        stored.monthly_window_start is None
        or stored.monthly_window_start < month_start
    ):
        update["monthly_count"] = 0
        update["monthly_window_start"] = month_start
    return stored.model_copy(update=update)
