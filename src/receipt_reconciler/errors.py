"""Exception hierarchy for reconciliation and quota operations."""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for all receipt-reconciler errors."""


class QuotaExceeded(ReconcilerError):
    """A daily or monthly metered-call ceiling has been reached.

    Surfaced to the user as an upgrade prompt; never retried automatically.
    """

    def __init__(
        self,
        user_id: str,
        plan: str,
        window: str,
        limit: int | None,
        message: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.plan = plan
        self.window = window
        self.limit = limit
        if message is None:
            message = f"{window} limit of {limit} reached for {plan} plan"
        super().__init__(message)


class ExtractionExhausted(QuotaExceeded):
    """The AI extraction provider reported its resources as exhausted."""

    def __init__(self, user_id: str, plan: str, detail: str = "") -> None:
        message = "AI extraction resources exhausted"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(user_id, plan, "provider", None, message)


class NotFound(ReconcilerError):
    """A receipt referenced by an operation no longer exists."""

    def __init__(self, receipt_id: str) -> None:
        self.receipt_id = receipt_id
        super().__init__(f"Receipt {receipt_id} not found")


class PermissionDenied(ReconcilerError):
    """The receipt belongs to a different user than the caller."""

    def __init__(self, receipt_id: str, user_id: str) -> None:
        self.receipt_id = receipt_id
        self.user_id = user_id
        super().__init__(f"User {user_id} does not own receipt {receipt_id}")


class InvalidArgument(ReconcilerError, ValueError):
    """Required fields are missing or an argument is out of range."""


class BatchInterrupted(ReconcilerError):
    """A batch operation stopped part way; earlier batches stay committed.

    ``completed`` holds the count already applied. The cause is chained.
    Re-invoking the operation is safe.
    """

    def __init__(self, operation: str, completed: int) -> None:
        self.operation = operation
        self.completed = completed
        super().__init__(f"{operation} interrupted after {completed} completed")
