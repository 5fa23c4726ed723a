"""Typed errors raised by the stock ledger.

Every error carries a machine-readable ``code`` and structured ``details`` so
callers (the bulk adjuster, the HTTP layer) can branch on type and report
without parsing messages.

    LedgerError
    +-- ItemNotFoundError
    +-- InvalidMovementError
    +-- InsufficientStockError
    +-- StaleAdjustmentError
    +-- TransactionConflictError
    +-- BatchTooLargeError
    +-- LedgerTimeoutError
    +-- LedgerStoreError
    +-- MovementImmutableError
    +-- ReplayMismatchError
"""

from typing import Any


class LedgerError(Exception):
    """Base class for all ledger errors."""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "detail": self.message, **self.details}


class ItemNotFoundError(LedgerError):
    code = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        super().__init__(f"Item {item_id} not found", item_id=item_id)
        self.item_id = item_id


class InvalidMovementError(LedgerError):
    """Rejected before any transaction begins."""

    code = "INVALID_MOVEMENT"


class InsufficientStockError(LedgerError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for item {item_id}. Available: {available}, requested: {requested}",
            item_id=item_id,
            available=available,
            requested=requested,
        )
        self.item_id = item_id
        self.available = available
        self.requested = requested


class StaleAdjustmentError(LedgerError):
    """An adjustment's expected previous stock no longer matches the live value."""

    code = "STALE_ADJUSTMENT"

    def __init__(self, item_id: str, expected: int, actual: int):
        super().__init__(
            f"Stale adjustment for item {item_id}. Expected previous stock {expected}, actual {actual}",
            item_id=item_id,
            expected=expected,
            actual=actual,
        )
        self.item_id = item_id
        self.expected = expected
        self.actual = actual


class TransactionConflictError(LedgerError):
    """Transient lock, deadlock or version conflict in the store."""

    code = "TRANSACTION_CONFLICT"


class BatchTooLargeError(LedgerError):
    code = "BATCH_TOO_LARGE"

    def __init__(self, size: int, limit: int):
        super().__init__(f"Batch of {size} adjustments exceeds the limit of {limit}", size=size, limit=limit)
        self.size = size
        self.limit = limit


class LedgerTimeoutError(LedgerError):
    """The call's deadline passed before commit; nothing was applied."""

    code = "LEDGER_TIMEOUT"


class LedgerStoreError(LedgerError):
    """Non-transient failure of the underlying store."""

    code = "LEDGER_STORE_ERROR"


class MovementImmutableError(LedgerError):
    code = "MOVEMENT_IMMUTABLE"

    def __init__(self, movement_id: int | None, operation: str):
        super().__init__(
            f"Movement {movement_id} is immutable and cannot be {operation}",
            movement_id=movement_id,
            operation=operation,
        )


class ReplayMismatchError(LedgerError):
    """Replaying the movement history does not reproduce the recorded values."""

    code = "REPLAY_MISMATCH"
