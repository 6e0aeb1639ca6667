"""Full-history duplicate scan and canonical key backfill.

Both jobs read the whole of a user's collection and commit their writes in
sequential batches. A failure leaves earlier batches committed and raises
BatchInterrupted with the number already applied; running the job again is
safe. There is no cancellation once a job has started.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from receipt_reconciler.config import DEFAULT_BATCH_SIZE
from receipt_reconciler.errors import BatchInterrupted, InvalidArgument
from receipt_reconciler.keys import receipt_key
from receipt_reconciler.models import Receipt, ReceiptStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from receipt_reconciler.repository import ReceiptChanges, ReceiptRepository

logger = logging.getLogger(__name__)


class ScanMode(StrEnum):
    """What to do with duplicates found by a scan."""

    FLAG = "flag"
    DELETE = "delete"


@dataclass(frozen=True)
class ScanResult:
    found: int


@dataclass(frozen=True)
class BackfillResult:
    scanned: int
    updated: int


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def group_by_key(receipts: Sequence[Receipt]) -> dict[str, list[Receipt]]:
    """Group receipts by canonical key, oldest first within each group.

    Receipts without a key are left out.
    """
    groups: dict[str, list[Receipt]] = {}
    for receipt in receipts:
        if receipt.canonical_key:
            groups.setdefault(receipt.canonical_key, []).append(receipt)
    for members in groups.values():
        members.sort(key=lambda r: (r.created_at, r.id))
    return groups


def find_and_flag_duplicates(
    repository: ReceiptRepository,
    user_id: str,
    mode: ScanMode | str = ScanMode.FLAG,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    clock: Callable[[], datetime] = _utcnow,
) -> ScanResult:
    """Scan all settled receipts and act on every duplicate found.

    Within each key group the oldest receipt is the original. In flag mode
    every later member goes under review pointing at the original; in
    delete mode they are discarded.
    """
    mode = _parse_mode(mode)
    _check_batch_size(batch_size)
    now = clock()

    settled = repository.list(user_id, status=ReceiptStatus.SETTLED)
    updates: list[ReceiptChanges] = []
    for members in group_by_key(settled).values():
        if len(members) < 2:
            continue
        original = members[0]
        for duplicate in members[1:]:
            if mode is ScanMode.FLAG:
                changes: dict[str, object] = {
                    "status": ReceiptStatus.UNDER_REVIEW,
                    "original_receipt_id": original.id,
                    "updated_at": now,
                }
            else:
                changes = {
                    "status": ReceiptStatus.DISCARDED,
                    "discarded_at": now,
                    "updated_at": now,
                }
            updates.append((duplicate.id, changes))

    found = _commit_in_batches(
        repository, user_id, updates, batch_size, "find_and_flag_duplicates"
    )
    logger.info(
        "Duplicate scan complete for %s: mode=%s scanned=%d found=%d",
        user_id,
        mode,
        len(settled),
        found,
    )
    return ScanResult(found=found)


def backfill_keys(
    repository: ReceiptRepository,
    user_id: str,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> BackfillResult:
    """Recompute the canonical key of every receipt the user owns.

    Only receipts whose stored key differs are written, so a second run
    with no edits in between updates nothing.
    """
    _check_batch_size(batch_size)

    receipts = repository.list(user_id, include_discarded=True)
    updates: list[ReceiptChanges] = []
    for receipt in receipts:
        key = receipt_key(receipt)
        if key != receipt.canonical_key:
            updates.append((receipt.id, {"canonical_key": key}))

    updated = _commit_in_batches(
        repository, user_id, updates, batch_size, "backfill_keys"
    )
    logger.info(
        "Key backfill complete for %s: scanned=%d updated=%d",
        user_id,
        len(receipts),
        updated,
    )
    return BackfillResult(scanned=len(receipts), updated=updated)


def _commit_in_batches(
    repository: ReceiptRepository,
    user_id: str,
    updates: Sequence[ReceiptChanges],
    batch_size: int,
    operation: str,
) -> int:
    committed = 0
    for start in range(0, len(updates), batch_size):
        batch = updates[start : start + batch_size]
        try:
            repository.write_batch(user_id, batch)
        except Exception as exc:
            logger.error(
                "%s failed after %d committed writes", operation, committed
            )
            raise BatchInterrupted(operation, committed) from exc
        committed += len(batch)
    return committed


def _parse_mode(mode: ScanMode | str) -> ScanMode:
    try:
        return ScanMode(mode)
    except ValueError:
        msg = f"Unknown scan mode: {mode!r}"
        raise InvalidArgument(msg) from None


def _check_batch_size(batch_size: int) -> None:
    if batch_size < 1:
        msg = f"batch_size must be positive, got {batch_size}"
        raise InvalidArgument(msg)
