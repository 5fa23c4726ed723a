"""Signed effect of movement types, and replay of movement sequences.

Adjustments have no signed effect. They assert the previous absolute stock
and replace it, so they are planned as a ``StockAssertion`` rather than
pushed through the delta path.
"""

from dataclasses import dataclass
from typing import Iterable, Protocol

from stockledger.exceptions import InsufficientStockError, ReplayMismatchError, StaleAdjustmentError
from stockledger.models.movement import MovementType

CREDIT_TYPES = frozenset({MovementType.IN, MovementType.RETURN})
DEBIT_TYPES = frozenset({MovementType.OUT, MovementType.DAMAGE})


@dataclass(frozen=True)
class StockDelta:
    delta: int
    debit: bool = False


@dataclass(frozen=True)
class StockAssertion:
    previous: int
    new: int


StockChange = StockDelta | StockAssertion


class LedgerEntry(Protocol):
    movement_type: MovementType
    quantity: int
    stock_before: int
    stock_after: int


def effect_of(movement_type: MovementType, quantity: int) -> int:
    movement_type = MovementType(movement_type)
    if movement_type in CREDIT_TYPES:
        return quantity
    if movement_type in DEBIT_TYPES:
        return -quantity
    # transfer is single-item and audit-only; adjustment asserts instead
    return 0


def plan(
    movement_type: MovementType,
    quantity: int,
    expected_previous: int | None = None,
    new: int | None = None,
) -> StockChange:
    movement_type = MovementType(movement_type)
    if movement_type == MovementType.ADJUSTMENT:
        if expected_previous is None or new is None:
            raise ValueError("adjustment requires expected previous and new stock")
        return StockAssertion(previous=expected_previous, new=new)
    return StockDelta(delta=effect_of(movement_type, quantity), debit=movement_type in DEBIT_TYPES)


def apply(current: int, change: StockChange, item_id: str) -> int:
    if isinstance(change, StockAssertion):
        if change.previous != current:
            raise StaleAdjustmentError(item_id, expected=change.previous, actual=current)
        return change.new
    if change.debit and current < -change.delta:
        raise InsufficientStockError(item_id, available=current, requested=-change.delta)
    return current + change.delta


def replay(initial: int, movements: Iterable[LedgerEntry]) -> int:
    """Fold movements (oldest first) into the stock they produce."""
    stock = initial
    for m in movements:
        if m.movement_type == MovementType.ADJUSTMENT:
            if m.stock_before != stock:
                raise ReplayMismatchError(
                    f"Adjustment asserts previous stock {m.stock_before} but replay reached {stock}",
                    expected=m.stock_before,
                    actual=stock,
                )
            stock = m.stock_after
        else:
            stock += effect_of(m.movement_type, m.quantity)
    return stock
