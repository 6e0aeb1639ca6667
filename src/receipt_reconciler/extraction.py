"""AI receipt extraction using pydantic-ai."""

from __future__ import annotations

import logging
from typing import Any

from pydantic_ai import Agent, BinaryContent
from pydantic_ai.exceptions import ModelHTTPError, UsageLimitExceeded

from receipt_reconciler.config import get_anthropic_api_key, get_llm_model
from receipt_reconciler.errors import ExtractionExhausted
from receipt_reconciler.models import ExtractedReceipt

logger = logging.getLogger(__name__)

# HTTP status used by providers for rate limits and exhausted quotas
RESOURCE_EXHAUSTED_STATUS = 429

_SYSTEM_PROMPT = """\
You are a receipt data extractor. Given a photo of a receipt, extract:

- merchant_name: The trade name of the merchant (e.g. "Costco", not the legal entity)
- transaction_date: The purchase date (YYYY-MM-DD)
- time: The purchase time (HH:MM:SS), if printed
- transaction_type: "refund" if the receipt is a return or refund, otherwise "purchase"
- total: The total amount as a positive number, even for refunds
- currency: ISO 4217 currency code (e.g. "USD", "CAD", "EUR")
- items: One entry per line with name, quantity, unit price, category and \
subcategory. Report each tax as its own item with category "fee".

If a line shows "2 x MILK 12.00", the unit price is 6.00 and the quantity 2. \
If the currency is not stated, assume USD.\
"""


def create_extraction_agent() -> Agent[None, ExtractedReceipt]:
    """Create a pydantic-ai Agent configured for receipt image extraction."""
    # Ensure API key is available (fail fast)
    get_anthropic_api_key()

    model_name = get_llm_model()
    return Agent(
        f"anthropic:{model_name}",
        output_type=ExtractedReceipt,
        system_prompt=_SYSTEM_PROMPT,
    )


def extract_receipt(
    image: bytes,
    media_type: str = "image/jpeg",
    *,
    user_id: str,
    plan: str = "free",
    agent: Agent[None, ExtractedReceipt] | None = None,
) -> ExtractedReceipt:
    """Extract structured receipt fields from an image.

    Provider rate-limit and usage-limit failures are raised as
    ExtractionExhausted; any other failure propagates unchanged.
    Accepts an optional agent for dependency injection in tests.
    """
    if agent is None:
        agent = create_extraction_agent()

    try:
        result: Any = agent.run_sync(
            [
                "Extract the receipt in this image.",
                BinaryContent(data=image, media_type=media_type),
            ]
        )
    except ModelHTTPError as exc:
        if exc.status_code == RESOURCE_EXHAUSTED_STATUS:
            raise ExtractionExhausted(user_id, plan, str(exc)) from exc
        raise
    except UsageLimitExceeded as exc:
        raise ExtractionExhausted(user_id, plan, str(exc)) from exc

    return result.output  # type: ignore[no-any-return]
