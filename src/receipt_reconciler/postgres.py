"""PostgreSQL implementation of the receipt and usage repositories."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any

from psycopg import sql
from psycopg.types.json import Jsonb
from pydantic import BaseModel

from receipt_reconciler.errors import InvalidArgument, NotFound, PermissionDenied
from receipt_reconciler.models import Receipt, ReceiptStatus, UsageCounter

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    import psycopg

    from receipt_reconciler.repository import ReceiptChanges

logger = logging.getLogger(__name__)

RECEIPT_COLUMNS: tuple[str, ...] = tuple(Receipt.model_fields)
USAGE_COLUMNS: tuple[str, ...] = tuple(UsageCounter.model_fields)


def _to_db(value: Any) -> Any:
    """Adapt model values to what psycopg stores."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return Jsonb(
            [
                v.model_dump(mode="json") if isinstance(v, BaseModel) else v
                for v in value
            ]
        )
    return value


class _PostgresUsageTransaction:
    def __init__(
        self, conn: psycopg.Connection[Any], counter: UsageCounter | None
    ) -> None:
        self._conn = conn
        self._counter = counter

    @property
    def counter(self) -> UsageCounter | None:
        return self._counter

    def save(self, counter: UsageCounter) -> None:
        columns = sql.SQL(", ").join(map(sql.Identifier, USAGE_COLUMNS))
        placeholders = sql.SQL(", ").join(sql.Placeholder() * len(USAGE_COLUMNS))
        assignments = sql.SQL(", ").join(
            sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(name))
            for name in USAGE_COLUMNS
            if name != "user_id"
        )
        query = sql.SQL(
            "INSERT INTO usage_counters ({}) VALUES ({}) "
            "ON CONFLICT (user_id) DO UPDATE SET {}"
        ).format(columns, placeholders, assignments)
        self._conn.execute(
            query, [_to_db(getattr(counter, name)) for name in USAGE_COLUMNS]
        )
        self._counter = counter


class PostgresRepository:
    """Receipt and usage store backed by PostgreSQL.

    Expects an autocommit connection with ``dict_row`` rows (see
    ``receipt_reconciler.db.get_connection``).
    """

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn

    def add(self, receipt: Receipt) -> Receipt:
        columns = sql.SQL(", ").join(map(sql.Identifier, RECEIPT_COLUMNS))
        placeholders = sql.SQL(", ").join(sql.Placeholder() * len(RECEIPT_COLUMNS))
        query = sql.SQL("INSERT INTO receipts ({}) VALUES ({}) RETURNING *").format(
            columns, placeholders
        )
        with self.conn.transaction():
            row = self.conn.execute(
                query, [_to_db(getattr(receipt, name)) for name in RECEIPT_COLUMNS]
            ).fetchone()
        return Receipt.model_validate(row)

    def get(
        self, owner_id: str, receipt_id: str, *, include_discarded: bool = False
    ) -> Receipt | None:
        row = self.conn.execute(
            "SELECT * FROM receipts WHERE id = %s", (receipt_id,)
        ).fetchone()
        if row is None:
            return None
        receipt = Receipt.model_validate(row)
        if receipt.owner_id != owner_id:
            raise PermissionDenied(receipt_id, owner_id)
        if receipt.status is ReceiptStatus.DISCARDED and not include_discarded:
            return None
        return receipt

    def list(
        self,
        owner_id: str,
        *,
        status: ReceiptStatus | None = None,
        canonical_key: str | None = None,
        limit: int | None = None,
        include_discarded: bool = False,
    ) -> list[Receipt]:
        clauses = [sql.SQL("owner_id = %s")]
        params: list[Any] = [owner_id]
        if status is not None:
            clauses.append(sql.SQL("status = %s"))
            params.append(status.value)
        elif not include_discarded:
            clauses.append(sql.SQL("status <> %s"))
            params.append(ReceiptStatus.DISCARDED.value)
        if canonical_key is not None:
            clauses.append(sql.SQL("canonical_key = %s"))
            params.append(canonical_key)

        query = sql.SQL(
            "SELECT * FROM receipts WHERE {} ORDER BY created_at, id"
        ).format(sql.SQL(" AND ").join(clauses))
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(limit)

        rows = self.conn.execute(query, params).fetchall()
        return [Receipt.model_validate(row) for row in rows]

    def update(
        self, owner_id: str, receipt_id: str, changes: Mapping[str, object]
    ) -> Receipt:
        with self.conn.transaction():
            return self._apply(owner_id, receipt_id, changes)

    def write_batch(self, owner_id: str, updates: Sequence[ReceiptChanges]) -> None:
        with self.conn.transaction():
            for receipt_id, changes in updates:
                self._apply(owner_id, receipt_id, changes)
        logger.debug("Committed batch of %d receipt updates", len(updates))

    @contextmanager
    def usage_transaction(self, user_id: str) -> Iterator[_PostgresUsageTransaction]:
        with self.conn.transaction():
            # serialises reserves for this user until the transaction ends
            self.conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))
            row = self.conn.execute(
                "SELECT * FROM usage_counters WHERE user_id = %s", (user_id,)
            ).fetchone()
            counter = UsageCounter.model_validate(row) if row is not None else None
            yield _PostgresUsageTransaction(self.conn, counter)

    def get_usage(self, user_id: str) -> UsageCounter | None:
        row = self.conn.execute(
            "SELECT * FROM usage_counters WHERE user_id = %s", (user_id,)
        ).fetchone()
        return UsageCounter.model_validate(row) if row is not None else None

    def _apply(
        self, owner_id: str, receipt_id: str, changes: Mapping[str, object]
    ) -> Receipt:
        unknown = set(changes).difference(RECEIPT_COLUMNS)
        if unknown:
            msg = f"Unknown receipt fields: {', '.join(sorted(unknown))}"
            raise InvalidArgument(msg)

        row = self.conn.execute(
            "SELECT owner_id FROM receipts WHERE id = %s FOR UPDATE", (receipt_id,)
        ).fetchone()
        if row is None:
            raise NotFound(receipt_id)
        if row["owner_id"] != owner_id:
            raise PermissionDenied(receipt_id, owner_id)
        if not changes:
            return self._fetch(receipt_id)

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in changes
        )
        query = sql.SQL("UPDATE receipts SET {} WHERE id = %s RETURNING *").format(
            assignments
        )
        updated = self.conn.execute(
            query, [*(_to_db(v) for v in changes.values()), receipt_id]
        ).fetchone()
        return Receipt.model_validate(updated)

    def _fetch(self, receipt_id: str) -> Receipt:
        row = self.conn.execute(
            "SELECT * FROM receipts WHERE id = %s", (receipt_id,)
        ).fetchone()
        return Receipt.model_validate(row)
