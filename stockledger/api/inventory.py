from datetime import datetime

from fastapi import APIRouter, Depends, Query

from stockledger.api.deps import get_bulk_adjuster, get_ledger
from stockledger.config import settings
from stockledger.models.movement import MovementType
from stockledger.schemas.adjustment import BatchResult, BulkAdjustRequest
from stockledger.schemas.item import StockLevelOut, StockSnapshotOut
from stockledger.schemas.movement import (
    DailyStockLevel,
    HistoryFilters,
    InventoryStats,
    MovementCreate,
    MovementOut,
    MovementPage,
    MovementQuery,
    ReplayReport,
    StockHistory,
)
from stockledger.services.bulk_adjuster import BulkAdjuster
from stockledger.services.ledger_engine import LedgerEngine

router = APIRouter(prefix="/inventory", tags=["Inventory"])

# Stand-in until authentication is wired in front of the ledger
DEFAULT_ACTOR = "api"


@router.post("/movements", response_model=MovementOut, status_code=201)
def create_movement(
    data: MovementCreate,
    actor: str = Query(DEFAULT_ACTOR),
    ledger: LedgerEngine = Depends(get_ledger),
):
    return ledger.record(data.item_id, data.quantity, data.movement_type, data.metadata(), actor=actor)


@router.post("/adjustments/bulk", response_model=BatchResult)
def bulk_adjust(
    data: BulkAdjustRequest,
    actor: str = Query(DEFAULT_ACTOR),
    adjuster: BulkAdjuster = Depends(get_bulk_adjuster),
):
    return adjuster.apply_batch(data.adjustments, actor, timeout_per_item=data.timeout_per_item)


@router.get("/movements", response_model=MovementPage)
def list_movements(
    item_id: str | None = Query(None),
    movement_type: list[MovementType] | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    search: str | None = Query(None, max_length=100),
    limit: int = Query(settings.HISTORY_DEFAULT_LIMIT, ge=1, le=settings.HISTORY_MAX_LIMIT),
    offset: int = Query(0, ge=0),
    ledger: LedgerEngine = Depends(get_ledger),
):
    query = MovementQuery(
        item_id=item_id,
        movement_types=movement_type,
        start_date=start_date,
        end_date=end_date,
        search=search,
        limit=limit,
        offset=offset,
    )
    return ledger.get_all_history(query)


@router.get("/stats", response_model=InventoryStats)
def inventory_stats(threshold: int | None = None, ledger: LedgerEngine = Depends(get_ledger)):
    return ledger.inventory_stats(threshold)


@router.get("/low-stock", response_model=list[StockSnapshotOut])
def low_stock(threshold: int | None = None, ledger: LedgerEngine = Depends(get_ledger)):
    return ledger.get_low_stock(threshold)


@router.get("/cache/stats")
def cache_stats(ledger: LedgerEngine = Depends(get_ledger)):
    return ledger.cache_stats()


@router.get("/{item_id}/stock", response_model=StockLevelOut)
def current_stock(item_id: str, use_cache: bool = True, ledger: LedgerEngine = Depends(get_ledger)):
    hits_before = ledger.cache.hits
    stock = ledger.get_current_stock(item_id, use_cache=use_cache)
    return StockLevelOut(item_id=item_id, current_stock=stock, cached=ledger.cache.hits > hits_before)


@router.get("/{item_id}/history", response_model=StockHistory)
def history(
    item_id: str,
    movement_type: list[MovementType] | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    search: str | None = Query(None, max_length=100),
    limit: int = Query(settings.HISTORY_DEFAULT_LIMIT, ge=1, le=settings.HISTORY_MAX_LIMIT),
    offset: int = Query(0, ge=0),
    ledger: LedgerEngine = Depends(get_ledger),
):
    filters = HistoryFilters(
        movement_types=movement_type,
        start_date=start_date,
        end_date=end_date,
        search=search,
        limit=limit,
        offset=offset,
    )
    return ledger.get_history(item_id, filters)


@router.get("/{item_id}/history/daily", response_model=list[DailyStockLevel])
def daily_history(item_id: str, days: int = Query(30, ge=1, le=365), ledger: LedgerEngine = Depends(get_ledger)):
    return ledger.daily_stock_levels(item_id, days)


@router.get("/{item_id}/verify", response_model=ReplayReport)
def verify(item_id: str, ledger: LedgerEngine = Depends(get_ledger)):
    return ledger.verify_replay(item_id)
