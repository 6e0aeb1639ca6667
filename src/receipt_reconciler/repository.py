"""Repository protocols and the in-memory implementation."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Protocol

from receipt_reconciler.errors import InvalidArgument, NotFound, PermissionDenied
from receipt_reconciler.models import Receipt, ReceiptStatus, UsageCounter

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from contextlib import AbstractContextManager

ReceiptChanges = tuple[str, Mapping[str, object]]


class ReceiptRepository(Protocol):
    """Owner-scoped receipt persistence.

    Reads exclude discarded receipts unless ``include_discarded`` is set.
    Accessing another user's receipt raises PermissionDenied.
    """

    def add(self, receipt: Receipt) -> Receipt: ...

    def get(
        self, owner_id: str, receipt_id: str, *, include_discarded: bool = False
    ) -> Receipt | None: ...

    def list(
        self,
        owner_id: str,
        *,
        status: ReceiptStatus | None = None,
        canonical_key: str | None = None,
        limit: int | None = None,
        include_discarded: bool = False,
    ) -> list[Receipt]: ...

    def update(
        self, owner_id: str, receipt_id: str, changes: Mapping[str, object]
    ) -> Receipt: ...

    def write_batch(
        self, owner_id: str, updates: Sequence[ReceiptChanges]
    ) -> None: ...


class UsageTransaction(Protocol):
    """Handle on one user's usage counter inside an atomic transaction."""

    @property
    def counter(self) -> UsageCounter | None: ...

    def save(self, counter: UsageCounter) -> None: ...


class UsageRepository(Protocol):
    """Per-user usage counters with an atomic read-decide-write primitive."""

    def usage_transaction(
        self, user_id: str
    ) -> AbstractContextManager[UsageTransaction]: ...

    def get_usage(self, user_id: str) -> UsageCounter | None: ...


class _MemoryUsageTransaction:
    def __init__(self, counter: UsageCounter | None) -> None:
        self._counter = counter
        self.pending: UsageCounter | None = None

    @property
    def counter(self) -> UsageCounter | None:
        return self._counter

    def save(self, counter: UsageCounter) -> None:
        self.pending = counter.model_copy(deep=True)


class InMemoryRepository:
    """Thread-safe in-memory receipt and usage store.

    Stored models are copied on the way in and out so callers never hold
    references into the store.
    """

    def __init__(self) -> None:
        self._receipts: dict[str, Receipt] = {}
        self._usage: dict[str, UsageCounter] = {}
        self._lock = threading.Lock()
        self._user_locks: dict[str, threading.Lock] = {}

    def add(self, receipt: Receipt) -> Receipt:
        with self._lock:
            self._receipts[receipt.id] = receipt.model_copy(deep=True)
        return receipt.model_copy(deep=True)

    def get(
        self, owner_id: str, receipt_id: str, *, include_discarded: bool = False
    ) -> Receipt | None:
        with self._lock:
            stored = self._receipts.get(receipt_id)
            if stored is None:
                return None
            _check_owner(stored, owner_id)
            if stored.status is ReceiptStatus.DISCARDED and not include_discarded:
                return None
            return stored.model_copy(deep=True)

    def list(
        self,
        owner_id: str,
        *,
        status: ReceiptStatus | None = None,
        canonical_key: str | None = None,
        limit: int | None = None,
        include_discarded: bool = False,
    ) -> list[Receipt]:
        with self._lock:
            matches = [
                r
                for r in self._receipts.values()
                if r.owner_id == owner_id
                and (status is None or r.status is status)
                and (canonical_key is None or r.canonical_key == canonical_key)
                and (
                    include_discarded
                    or status is ReceiptStatus.DISCARDED
                    or r.status is not ReceiptStatus.DISCARDED
                )
            ]
            matches.sort(key=lambda r: (r.created_at, r.id))
            if limit is not None:
                matches = matches[:limit]
            return [r.model_copy(deep=True) for r in matches]

    def update(
        self, owner_id: str, receipt_id: str, changes: Mapping[str, object]
    ) -> Receipt:
        with self._lock:
            updated = self._apply(owner_id, receipt_id, changes)
            self._receipts[receipt_id] = updated
            return updated.model_copy(deep=True)

    def write_batch(self, owner_id: str, updates: Sequence[ReceiptChanges]) -> None:
        with self._lock:
            # validate everything first so the batch is all-or-nothing
            staged = [
                (receipt_id, self._apply(owner_id, receipt_id, changes))
                for receipt_id, changes in updates
            ]
            for receipt_id, updated in staged:
                self._receipts[receipt_id] = updated

    @contextmanager
    def usage_transaction(self, user_id: str) -> Iterator[_MemoryUsageTransaction]:
        with self._user_lock(user_id):
            current = self._usage.get(user_id)
            txn = _MemoryUsageTransaction(
                current.model_copy(deep=True) if current is not None else None
            )
            yield txn
            if txn.pending is not None:
                self._usage[user_id] = txn.pending

    def get_usage(self, user_id: str) -> UsageCounter | None:
        counter = self._usage.get(user_id)
        return counter.model_copy(deep=True) if counter is not None else None

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._lock:
            return self._user_locks.setdefault(user_id, threading.Lock())

    def _apply(
        self, owner_id: str, receipt_id: str, changes: Mapping[str, object]
    ) -> Receipt:
        unknown = set(changes).difference(Receipt.model_fields)
        if unknown:
            msg = f"Unknown receipt fields: {', '.join(sorted(unknown))}"
            raise InvalidArgument(msg)
        stored = self._receipts.get(receipt_id)
        if stored is None:
            raise NotFound(receipt_id)
        _check_owner(stored, owner_id)
        merged = stored.model_dump()
        merged.update(changes)
        return Receipt.model_validate(merged)


def _check_owner(receipt: Receipt, owner_id: str) -> None:
    if receipt.owner_id != owner_id:
        raise PermissionDenied(receipt.id, owner_id)
