"""Resolution of duplicate review pairs.

A receipt enters review only through the save-time probe or the duplicate
scanner, which both record the settled receipt it may duplicate. A review
pair leaves review through one of four actions:

    action     original                     duplicate
    MERGE      takes the duplicate's data,  discarded
               settled
    KEEP       unchanged                    settled, link cleared
    DELETE     unchanged                    discarded
    KEEP_NEW   discarded                    settled, link cleared

Each action is two dependent writes. Records are re-read before acting; a
pair whose original (or duplicate) no longer exists counts as already
resolved and is passed over without any write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, assert_never

from receipt_reconciler.errors import InvalidArgument, PermissionDenied
from receipt_reconciler.models import MERGED_FIELDS, ReceiptStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from receipt_reconciler.models import Receipt
    from receipt_reconciler.repository import ReceiptRepository

logger = logging.getLogger(__name__)


class ResolutionAction(StrEnum):
    MERGE = "merge"
    KEEP = "keep"
    DELETE = "delete"
    KEEP_NEW = "keep_new"


BULK_ACTIONS = frozenset({ResolutionAction.KEEP, ResolutionAction.DELETE})


@dataclass
class BulkResolution:
    """Counts from resolving every outstanding review pair."""

    resolved: int = 0
    skipped: int = 0
    failed: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def parse_action(action: ResolutionAction | str) -> ResolutionAction:
    try:
        return ResolutionAction(action)
    except ValueError:
        msg = f"Unknown resolution action: {action!r}"
        raise InvalidArgument(msg) from None


def resolve_duplicate(
    repository: ReceiptRepository,
    user_id: str,
    action: ResolutionAction | str,
    original: Receipt,
    duplicate: Receipt,
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> bool:
    """Apply ``action`` to a review pair.

    Returns False, writing nothing, when either receipt no longer exists.
    """
    action = parse_action(action)
    live_original = repository.get(user_id, original.id)
    live_duplicate = repository.get(user_id, duplicate.id)
    if live_original is None or live_duplicate is None:
        logger.warning(
            "Skipping %s for pair %s/%s: receipt no longer exists",
            action,
            original.id,
            duplicate.id,
        )
        return False

    now = clock()
    match action:
        case ResolutionAction.MERGE:
            merged = {name: getattr(live_duplicate, name) for name in MERGED_FIELDS}
            repository.update(
                user_id,
                live_original.id,
                {**merged, "status": ReceiptStatus.SETTLED, "updated_at": now},
            )
            repository.update(user_id, live_duplicate.id, _discarded(now))
        case ResolutionAction.KEEP:
            repository.update(user_id, live_duplicate.id, _settled(now))
        case ResolutionAction.DELETE:
            repository.update(user_id, live_duplicate.id, _discarded(now))
        case ResolutionAction.KEEP_NEW:
            repository.update(user_id, live_original.id, _discarded(now))
            repository.update(user_id, live_duplicate.id, _settled(now))
        case _:
            assert_never(action)

    logger.debug(
        "Resolved pair %s/%s with %s", live_original.id, live_duplicate.id, action
    )
    return True


def resolve_all_duplicates(
    repository: ReceiptRepository,
    user_id: str,
    action: ResolutionAction | str,
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> BulkResolution:
    """Apply KEEP or DELETE to every receipt currently under review.

    The outstanding set is read fresh. Pairs are handled independently: a
    failing pair is recorded and the rest still run. PermissionDenied is
    never absorbed.
    """
    action = parse_action(action)
    if action not in BULK_ACTIONS:
        msg = f"Bulk resolution supports only keep or delete, got {action!r}"
        raise InvalidArgument(msg)

    outcome = BulkResolution()
    pending = repository.list(user_id, status=ReceiptStatus.UNDER_REVIEW)
    for duplicate in pending:
        try:
            original = (
                repository.get(user_id, duplicate.original_receipt_id)
                if duplicate.original_receipt_id
                else None
            )
            if original is None:
                logger.warning(
                    "Original of %s no longer exists; skipping", duplicate.id
                )
                outcome.skipped += 1
                continue
            if resolve_duplicate(
                repository, user_id, action, original, duplicate, clock=clock
            ):
                outcome.resolved += 1
            else:
                outcome.skipped += 1
        except PermissionDenied:
            raise
        except Exception:
            logger.warning(
                "Failed to resolve review pair for %s", duplicate.id, exc_info=True
            )
            outcome.failed.append(duplicate.id)

    logger.info(
        "Bulk %s complete for %s: resolved=%d skipped=%d failed=%d",
        action,
        user_id,
        outcome.resolved,
        outcome.skipped,
        len(outcome.failed),
    )
    return outcome


def _settled(now: datetime) -> dict[str, object]:
    return {
        "status": ReceiptStatus.SETTLED,
        "original_receipt_id": None,
        "updated_at": now,
    }


def _discarded(now: datetime) -> dict[str, object]:
    return {
        "status": ReceiptStatus.DISCARDED,
        "discarded_at": now,
        "updated_at": now,
    }
