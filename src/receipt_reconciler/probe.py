"""Save-time duplicate probe.

The probe is a plain read, not a transaction: two identical receipts saved
at the same moment can both settle. The batch scanner catches those later.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from receipt_reconciler.keys import receipt_key
from receipt_reconciler.models import ReceiptStatus

if TYPE_CHECKING:
    from receipt_reconciler.models import Receipt, ReceiptDraft
    from receipt_reconciler.repository import ReceiptRepository

logger = logging.getLogger(__name__)


def check_duplicate(
    repository: ReceiptRepository, user_id: str, draft: Receipt | ReceiptDraft
) -> Receipt | None:
    """Return a settled receipt with the same canonical key, if any.

    Receipts that cannot be keyed are never reported as duplicates.
    """
    key = receipt_key(draft)
    if key is None:
        return None

    matches = repository.list(
        user_id, status=ReceiptStatus.SETTLED, canonical_key=key, limit=1
    )
    if not matches:
        return None

    logger.debug("Probe hit for key %s: %s", key, matches[0].id)
    return matches[0]
