"""Canonical identity keys for receipts.

Two receipts with the same key are treated as the same purchase. The key is
built from the merchant name, the transaction date and the total:

    {merchant}-{YYYY-MM-DD}-{total}

The merchant part is lower-cased, loses store-number markers such as
``#123`` and generic legal or shop suffix words, and is reduced to
``[a-z0-9]``. The total is rounded half-up to two decimals before it is
formatted, so ``19.9999999`` and ``20.00`` agree.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from receipt_reconciler.models import Receipt, ReceiptDraft

MERCHANT_SUFFIXES = (
    "wholesale",
    "inc",
    "llc",
    "corp",
    "ltd",
    "co",
    "store",
    "market",
    "supermarket",
    "grocery",
)

_SUFFIX_RE = re.compile(r"\b(?:" + "|".join(MERCHANT_SUFFIXES) + r")\b")
_STORE_NUMBER_RE = re.compile(r"#\s*\d+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_CENT = Decimal("0.01")


def canonical_key(
    merchant_name: str | None,
    transaction_date: date | str | None,
    total: object,
) -> str | None:
    """Return the canonical key, or None when any input is unusable."""
    merchant = normalize_merchant(merchant_name)
    day = _normalize_date(transaction_date)
    amount = _normalize_total(total)
    if not merchant or day is None or amount is None:
        return None
    return f"{merchant}-{day}-{amount}"


def receipt_key(receipt: Receipt | ReceiptDraft) -> str | None:
    """Return the canonical key for a stored or incoming receipt."""
    return canonical_key(
        receipt.merchant_name, receipt.transaction_date, receipt.total
    )


def normalize_merchant(name: str | None) -> str:
    """Reduce a merchant name to its comparable form."""
    if not name:
        return ""
    cleaned = name.strip().lower()
    cleaned = _STORE_NUMBER_RE.sub(" ", cleaned)
    cleaned = _SUFFIX_RE.sub(" ", cleaned)
    return _NON_ALNUM_RE.sub("", cleaned)


def _normalize_date(value: date | str | None) -> str | None:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _normalize_total(value: object) -> str | None:
    # bool is an int subclass but never a total
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        value = Decimal(repr(value))
    if not isinstance(value, (int, Decimal)):
        return None
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            return None
        return str(amount.quantize(_CENT, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return None
