"""Entry points offered to the UI and transport layer."""

from __future__ import annotations

from datetime import UTC, datetime, tzinfo
from typing import TYPE_CHECKING

from receipt_reconciler import csv_import, ingest, probe, reconciliation, scanner
from receipt_reconciler.config import (
    DEFAULT_BATCH_SIZE,
    get_batch_size,
    get_quota_config,
)
from receipt_reconciler.quota import UsageQuota

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from pydantic_ai import Agent

    from receipt_reconciler.models import (
        ExtractedReceipt,
        PlanLimits,
        PlanTier,
        Receipt,
        ReceiptDraft,
        ReceiptStatus,
        UsageCounter,
    )
    from receipt_reconciler.postgres import PostgresRepository
    from receipt_reconciler.repository import InMemoryRepository


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class ReconcilerService:
    """Receipt operations scoped to a single repository.

    The repository must provide both receipt and usage storage.
    """

    def __init__(
        self,
        repository: InMemoryRepository | PostgresRepository,
        limits: Mapping[PlanTier, PlanLimits],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timezone: tzinfo | None = None,
        clock: Callable[[], datetime] = _utcnow,
        agent: Agent[None, ExtractedReceipt] | None = None,
    ) -> None:
        self.repository = repository
        self.batch_size = batch_size
        self.clock = clock
        self.agent = agent
        self.quota = UsageQuota(
            repository, limits, timezone=timezone or UTC, clock=clock
        )

    @classmethod
    def from_env(
        cls, repository: InMemoryRepository | PostgresRepository
    ) -> ReconcilerService:
        """Build a service from environment configuration."""
        quota_config = get_quota_config()
        return cls(
            repository,
            quota_config.limits,
            batch_size=get_batch_size(),
            timezone=quota_config.timezone,
        )

    def check_duplicate(
        self, user_id: str, receipt: Receipt | ReceiptDraft
    ) -> Receipt | None:
        return probe.check_duplicate(self.repository, user_id, receipt)

    def find_and_flag_duplicates(
        self, user_id: str, action: scanner.ScanMode | str = scanner.ScanMode.FLAG
    ) -> scanner.ScanResult:
        return scanner.find_and_flag_duplicates(
            self.repository,
            user_id,
            action,
            batch_size=self.batch_size,
            clock=self.clock,
        )

    def backfill_hashes(self, user_id: str) -> scanner.BackfillResult:
        return scanner.backfill_keys(
            self.repository, user_id, batch_size=self.batch_size
        )

    def resolve_duplicate(
        self,
        user_id: str,
        action: reconciliation.ResolutionAction | str,
        original: Receipt,
        duplicate: Receipt,
    ) -> bool:
        return reconciliation.resolve_duplicate(
            self.repository, user_id, action, original, duplicate, clock=self.clock
        )

    def resolve_all_duplicates(
        self, user_id: str, action: reconciliation.ResolutionAction | str
    ) -> reconciliation.BulkResolution:
        return reconciliation.resolve_all_duplicates(
            self.repository, user_id, action, clock=self.clock
        )

    def reserve_usage(
        self, user_id: str, plan_hint: PlanTier | str | None = None
    ) -> UsageCounter:
        return self.quota.reserve(user_id, plan_hint)

    def usage(
        self, user_id: str, plan_hint: PlanTier | str | None = None
    ) -> UsageCounter:
        return self.quota.peek(user_id, plan_hint)

    def list_receipts(
        self, user_id: str, status: ReceiptStatus | None = None
    ) -> list[Receipt]:
        return self.repository.list(user_id, status=status)

    def save_receipt(self, user_id: str, draft: ReceiptDraft) -> Receipt:
        return ingest.save_receipt(self.repository, user_id, draft, clock=self.clock)

    def update_receipt(
        self, user_id: str, receipt_id: str, changes: Mapping[str, object]
    ) -> Receipt:
        return ingest.update_receipt(
            self.repository, user_id, receipt_id, changes, clock=self.clock
        )

    def delete_receipt(self, user_id: str, receipt_id: str) -> None:
        ingest.delete_receipt(self.repository, user_id, receipt_id, clock=self.clock)

    def import_csv(self, user_id: str, lines: Iterable[str]) -> ingest.IngestResult:
        return csv_import.import_csv(
            self.repository, user_id, lines, clock=self.clock
        )

    def scan_images(
        self,
        user_id: str,
        images: Iterable[ingest.ImageUpload],
        plan_hint: PlanTier | str | None = None,
    ) -> ingest.IngestResult:
        return ingest.ingest_images(
            self.repository,
            self.quota,
            user_id,
            images,
            plan_hint=plan_hint,
            agent=self.agent,
            clock=self.clock,
        )
