"""Interactive walk through outstanding duplicate reviews."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from receipt_reconciler.models import ReceiptStatus
from receipt_reconciler.reconciliation import (
    BulkResolution,
    ResolutionAction,
    resolve_all_duplicates,
    resolve_duplicate,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from receipt_reconciler.models import Receipt
    from receipt_reconciler.repository import ReceiptRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class ReviewPair:
    """A receipt under review and the settled receipt it may duplicate."""

    duplicate: Receipt
    original: Receipt | None


class ReviewSession:
    """Step through receipts under review one at a time.

    Moving between pairs never writes. ``resolve`` commits exactly one
    action for the current pair, re-reads the outstanding list and keeps
    the position in range as the list shrinks.
    """

    def __init__(
        self,
        repository: ReceiptRepository,
        user_id: str,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.user_id = user_id
        self.clock = clock
        self.position = 0
        self._pending: list[Receipt] = []
        self._passed: set[str] = set()
        self.refresh()

    @property
    def total(self) -> int:
        return len(self._pending)

    @property
    def finished(self) -> bool:
        return not self._pending

    @property
    def current(self) -> ReviewPair | None:
        if self.finished:
            return None
        duplicate = self._pending[self.position]
        original = None
        if duplicate.original_receipt_id:
            original = self.repository.get(self.user_id, duplicate.original_receipt_id)
        return ReviewPair(duplicate=duplicate, original=original)

    def refresh(self) -> None:
        """Reload the outstanding reviews and clamp the position."""
        self._pending = [
            receipt
            for receipt in self.repository.list(
                self.user_id, status=ReceiptStatus.UNDER_REVIEW
            )
            if receipt.id not in self._passed
        ]
        self.position = max(0, min(self.position, len(self._pending) - 1))

    def next(self) -> bool:
        if self.position < len(self._pending) - 1:
            self.position += 1
            return True
        return False

    def previous(self) -> bool:
        if self.position > 0:
            self.position -= 1
            return True
        return False

    def resolve(self, action: ResolutionAction | str) -> bool:
        """Resolve the current pair and move on.

        A pair whose original has disappeared is passed over without any
        write and drops out of the session. Returns whether an action was
        applied.
        """
        pair = self.current
        if pair is None:
            return False

        if pair.original is None:
            logger.warning(
                "Original of %s no longer exists; passing over", pair.duplicate.id
            )
            self._passed.add(pair.duplicate.id)
            self.refresh()
            return False

        applied = resolve_duplicate(
            self.repository,
            self.user_id,
            action,
            pair.original,
            pair.duplicate,
            clock=self.clock,
        )
        self.refresh()
        return applied

    def resolve_all(self, action: ResolutionAction | str) -> BulkResolution:
        """Apply KEEP or DELETE to the live outstanding set."""
        outcome = resolve_all_duplicates(
            self.repository, self.user_id, action, clock=self.clock
        )
        self.refresh()
        return outcome
