"""Saving, editing and deleting receipts, and batch image ingestion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import uuid4

from receipt_reconciler.errors import (
    BatchInterrupted,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    QuotaExceeded,
)
from receipt_reconciler.extraction import create_extraction_agent, extract_receipt
from receipt_reconciler.keys import receipt_key
from receipt_reconciler.models import (
    PROTECTED_FIELDS,
    Receipt,
    ReceiptStatus,
)
from receipt_reconciler.probe import check_duplicate

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from pydantic_ai import Agent

    from receipt_reconciler.models import ExtractedReceipt, PlanTier, ReceiptDraft
    from receipt_reconciler.quota import UsageQuota
    from receipt_reconciler.repository import ReceiptRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class ImageUpload:
    """An image queued for AI extraction."""

    name: str
    data: bytes
    media_type: str = "image/jpeg"


@dataclass
class IngestResult:
    """Outcome of a batch ingestion."""

    settled: list[Receipt] = field(default_factory=list)
    flagged: list[Receipt] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return len(self.settled) + len(self.flagged)


def save_receipt(
    repository: ReceiptRepository,
    user_id: str,
    draft: ReceiptDraft,
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> Receipt:
    """Persist a new receipt, flagging it for review if it looks duplicated.

    A match among the user's settled receipts stores the new receipt as
    under review pointing at the match; otherwise it is stored settled.
    """
    missing = [
        name
        for name in ("merchant_name", "transaction_date", "total")
        if getattr(draft, name) in (None, "")
    ]
    if missing:
        msg = f"Receipt is missing required fields: {', '.join(missing)}"
        raise InvalidArgument(msg)

    existing = check_duplicate(repository, user_id, draft)
    now = clock()
    receipt = Receipt(
        **draft.model_dump(),
        id=str(uuid4()),
        owner_id=user_id,
        canonical_key=receipt_key(draft),
        status=ReceiptStatus.UNDER_REVIEW if existing else ReceiptStatus.SETTLED,
        original_receipt_id=existing.id if existing else None,
        created_at=now,
        updated_at=now,
    )
    saved = repository.add(receipt)
    if existing is not None:
        logger.info(
            "Receipt %s flagged as possible duplicate of %s", saved.id, existing.id
        )
    return saved


def update_receipt(
    repository: ReceiptRepository,
    user_id: str,
    receipt_id: str,
    changes: Mapping[str, object],
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> Receipt:
    """Apply an edit and recompute the canonical key.

    Raises NotFound for a missing receipt and PermissionDenied for a receipt
    owned by someone else. Lifecycle fields cannot be edited directly.
    """
    protected = sorted(PROTECTED_FIELDS.intersection(changes))
    if protected:
        msg = f"Fields cannot be edited: {', '.join(protected)}"
        raise InvalidArgument(msg)

    current = repository.get(user_id, receipt_id)
    if current is None:
        raise NotFound(receipt_id)

    changes = dict(changes)
    if changes.get("total") is not None:
        changes["total"] = abs(Decimal(str(changes["total"])))
    edited = Receipt.model_validate({**current.model_dump(), **changes})
    return repository.update(
        user_id,
        receipt_id,
        {**changes, "canonical_key": receipt_key(edited), "updated_at": clock()},
    )


def delete_receipt(
    repository: ReceiptRepository,
    user_id: str,
    receipt_id: str,
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> None:
    """Soft-delete a receipt. Deleting a missing receipt succeeds."""
    current = repository.get(user_id, receipt_id)
    if current is None:
        logger.warning("Delete requested for missing receipt %s", receipt_id)
        return
    now = clock()
    repository.update(
        user_id,
        receipt_id,
        {"status": ReceiptStatus.DISCARDED, "discarded_at": now, "updated_at": now},
    )


def ingest_images(
    repository: ReceiptRepository,
    quota: UsageQuota,
    user_id: str,
    images: Iterable[ImageUpload],
    *,
    plan_hint: PlanTier | str | None = None,
    agent: Agent[None, ExtractedReceipt] | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> IngestResult:
    """Extract and save a sequence of receipt images, one at a time.

    Each extraction is preceded by a quota reservation. An item whose
    extraction or save fails is recorded in ``failed`` and the batch moves
    on. Running out of quota, or the provider reporting exhaustion, stops
    the batch with BatchInterrupted since every later item would need
    another metered call.

    Configuration problems (no API key, no quota limits for the plan) are
    raised before anything is charged.
    """
    if agent is None:
        agent = create_extraction_agent()

    result = IngestResult()
    for image in images:
        try:
            counter = quota.reserve(user_id, plan_hint)
            try:
                extracted = extract_receipt(
                    image.data,
                    image.media_type,
                    user_id=user_id,
                    plan=counter.plan,
                    agent=agent,
                )
                saved = save_receipt(
                    repository, user_id, extracted.to_draft(), clock=clock
                )
            except (QuotaExceeded, PermissionDenied):
                raise
            except Exception:
                logger.warning("Failed to ingest image %s", image.name, exc_info=True)
                result.failed.append(image.name)
                continue
        except QuotaExceeded as exc:
            logger.warning("Stopping image ingestion at %s: %s", image.name, exc)
            raise BatchInterrupted("ingest_images", result.saved) from exc

        if saved.status is ReceiptStatus.UNDER_REVIEW:
            result.flagged.append(saved)
        else:
            result.settled.append(saved)

    logger.info(
        "Image ingestion complete for %s: settled=%d flagged=%d failed=%d",
        user_id,
        len(result.settled),
        len(result.flagged),
        len(result.failed),
    )
    return result
