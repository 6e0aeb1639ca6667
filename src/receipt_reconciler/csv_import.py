"""CSV receipt import.

The format has one ``RH`` (receipt header) row per receipt followed by its
``RI`` (receipt item) rows::

    RH,<merchant>,<YYYY-MM-DD>,<total>[,<currency>[,<purchase|refund>]]
    RI,<name>,<quantity>,<unit price>[,<category>[,<subcategory>]]

Blank lines are ignored.
"""

from __future__ import annotations

import csv
import logging
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from receipt_reconciler.errors import InvalidArgument
from receipt_reconciler.ingest import IngestResult, save_receipt
from receipt_reconciler.models import (
    ReceiptDraft,
    ReceiptItem,
    ReceiptSource,
    ReceiptStatus,
    TransactionType,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from receipt_reconciler.repository import ReceiptRepository

logger = logging.getLogger(__name__)

_Row = tuple[int, list[str]]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def parse_csv(lines: Iterable[str]) -> list[ReceiptDraft]:
    """Parse RH/RI rows into drafts. Raises InvalidArgument on bad rows."""
    return [_parse_block(block) for block in _read_blocks(lines)]


def import_csv(
    repository: ReceiptRepository,
    user_id: str,
    lines: Iterable[str],
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> IngestResult:
    """Parse a CSV export and save every receipt through the duplicate probe.

    Each RH block is parsed and saved on its own; a malformed or incomplete
    block is recorded in ``failed`` and the rest of the file still imports.
    """
    result = IngestResult()
    for index, block in enumerate(_read_blocks(lines), start=1):
        try:
            draft = _parse_block(block)
            saved = save_receipt(repository, user_id, draft, clock=clock)
        except InvalidArgument:
            logger.warning("Skipping CSV receipt %d", index, exc_info=True)
            result.failed.append(f"receipt {index}")
            continue
        if saved.status is ReceiptStatus.UNDER_REVIEW:
            result.flagged.append(saved)
        else:
            result.settled.append(saved)

    logger.info(
        "CSV import complete for %s: settled=%d flagged=%d failed=%d",
        user_id,
        len(result.settled),
        len(result.flagged),
        len(result.failed),
    )
    return result


def _read_blocks(lines: Iterable[str]) -> Iterator[list[_Row]]:
    """Group non-blank rows so each block starts at an RH row."""
    block: list[_Row] = []
    for line_no, row in enumerate(csv.reader(lines), start=1):
        cells = [cell.strip() for cell in row]
        if not any(cells):
            continue
        if cells[0].upper() == "RH" and block:
            yield block
            block = []
        block.append((line_no, cells))
    if block:
        yield block


def _parse_block(block: list[_Row]) -> ReceiptDraft:
    (first_no, first), *rest = block
    kind = first[0].upper()
    if kind == "RI":
        msg = f"line {first_no}: item row before any receipt header"
        raise InvalidArgument(msg)
    if kind != "RH":
        msg = f"line {first_no}: unknown row type {first[0]!r}"
        raise InvalidArgument(msg)

    draft = _parse_header(first, first_no)
    for line_no, cells in rest:
        if cells[0].upper() != "RI":
            msg = f"line {line_no}: unknown row type {cells[0]!r}"
            raise InvalidArgument(msg)
        draft.items.append(_parse_item(cells, line_no))
    return draft


def _parse_header(cells: list[str], line_no: int) -> ReceiptDraft:
    if len(cells) < 4:
        msg = f"line {line_no}: header needs merchant, date and total"
        raise InvalidArgument(msg)
    currency = cells[4] if len(cells) > 4 and cells[4] else "USD"
    kind = cells[5].lower() if len(cells) > 5 and cells[5] else "purchase"
    try:
        transaction_type = TransactionType(kind)
    except ValueError:
        msg = f"line {line_no}: unknown transaction type {kind!r}"
        raise InvalidArgument(msg) from None
    return ReceiptDraft(
        merchant_name=cells[1] or None,
        transaction_date=_parse_date(cells[2], line_no),
        total=_parse_decimal(cells[3], line_no, "total"),
        currency=currency.upper(),
        transaction_type=transaction_type,
        source=ReceiptSource.CSV,
    )


def _parse_item(cells: list[str], line_no: int) -> ReceiptItem:
    if len(cells) < 4:
        msg = f"line {line_no}: item needs name, quantity and price"
        raise InvalidArgument(msg)
    quantity = _parse_decimal(cells[2], line_no, "quantity")
    price = _parse_decimal(cells[3], line_no, "price")
    return ReceiptItem(
        name=cells[1],
        quantity=quantity if quantity is not None else Decimal(1),
        price=price if price is not None else Decimal(0),
        category=cells[4] if len(cells) > 4 and cells[4] else None,
        subcategory=cells[5] if len(cells) > 5 and cells[5] else None,
    )


def _parse_date(value: str, line_no: int) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        msg = f"line {line_no}: invalid date {value!r}"
        raise InvalidArgument(msg) from None


def _parse_decimal(value: str, line_no: int, name: str) -> Decimal | None:
    if not value:
        return None
    try:
        number = Decimal(value.replace("$", "").replace(",", ""))
    except InvalidOperation:
        number = None
    if number is None or not number.is_finite():
        msg = f"line {line_no}: invalid {name} {value!r}"
        raise InvalidArgument(msg)
    return number
