"""Running-stock reconstruction over a slice of movement history.

The walk starts at a known endpoint (normally today's stock) and steps
backwards, so a slice that does not reach the start of the item's history
still gets a value at every movement. Those values are only as good as the
endpoint: if the slice is not the most recent part of the history, or
movements were filtered out, the numbers are relative to that endpoint and
are not absolute historical truth.
"""

from collections import OrderedDict
from typing import Sequence

from stockledger.models.movement import MovementType
from stockledger.schemas.movement import DailyStockLevel, HistoryEntry, HistoryStats, MovementOut
from stockledger.services.stock_projector import CREDIT_TYPES, DEBIT_TYPES, effect_of


def _ordering_key(m: MovementOut):
    return (m.created_at, m.id)


def reconstruct(item_id: str, movements: Sequence[MovementOut], current_stock: int) -> list[HistoryEntry]:
    """Attach stock before/after to each movement (oldest first).

    The last entry's ``stock_after`` always equals ``current_stock``.
    """
    for m in movements:
        if m.item_id != item_id:
            raise ValueError(f"Movement {m.id} belongs to item {m.item_id}, not {item_id}")
    for prev, nxt in zip(movements, movements[1:]):
        if _ordering_key(prev) > _ordering_key(nxt):
            raise ValueError("Movements must be ordered oldest first")

    entries: list[HistoryEntry] = []
    stock_after = current_stock
    for m in reversed(movements):
        if m.movement_type == MovementType.ADJUSTMENT:
            stock_before = m.stock_before
        else:
            stock_before = stock_after - effect_of(m.movement_type, m.quantity)
        entries.append(HistoryEntry(movement=m, stock_before=stock_before, stock_after=stock_after))
        stock_after = stock_before
    entries.reverse()
    return entries


def summarize(movements: Sequence[MovementOut]) -> HistoryStats:
    stats = HistoryStats(total_movements=len(movements))
    for m in movements:
        if m.movement_type in CREDIT_TYPES:
            stats.total_in += m.quantity
        elif m.movement_type in DEBIT_TYPES:
            stats.total_out += m.quantity
    stats.net_change = stats.total_in - stats.total_out
    return stats


def daily_levels(entries: Sequence[HistoryEntry]) -> list[DailyStockLevel]:
    """Group reconstructed entries by calendar day (UTC)."""
    days: OrderedDict[str, DailyStockLevel] = OrderedDict()
    for entry in entries:
        m = entry.movement
        key = m.created_at.date().isoformat()
        level = days.get(key)
        if level is None:
            level = DailyStockLevel(
                day=key, stock_in=0, stock_out=0, net_change=0, closing_stock=entry.stock_after, movement_count=0
            )
            days[key] = level
        if m.movement_type in CREDIT_TYPES:
            level.stock_in += m.quantity
        elif m.movement_type in DEBIT_TYPES:
            level.stock_out += m.quantity
        level.net_change += entry.stock_after - entry.stock_before
        level.closing_stock = entry.stock_after
        level.movement_count += 1
    return list(days.values())
