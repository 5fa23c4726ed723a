from datetime import datetime

from pydantic import BaseModel, Field

from stockledger.models.movement import MovementType


class MovementMetadata(BaseModel):
    reference: str | None = Field(None, max_length=100)
    notes: str | None = Field(None, max_length=500)
    location: str | None = Field(None, max_length=100)
    # Required for adjustments only
    expected_previous_stock: int | None = Field(None, ge=0)
    new_stock: int | None = Field(None, ge=0)

    model_config = {"extra": "forbid"}


class MovementCreate(BaseModel):
    item_id: str
    quantity: int
    movement_type: MovementType
    reference: str | None = None
    notes: str | None = None
    location: str | None = None
    expected_previous_stock: int | None = None
    new_stock: int | None = None

    def metadata(self) -> dict:
        return self.model_dump(exclude={"item_id", "quantity", "movement_type"}, exclude_none=True)


class MovementOut(BaseModel):
    id: int
    item_id: str
    quantity: int
    movement_type: MovementType
    reference: str | None = None
    notes: str | None = None
    location: str | None = None
    stock_before: int
    stock_after: int
    created_by: str
    created_at: datetime

    model_config = {"from_attributes": True}


class HistoryFilters(BaseModel):
    movement_types: list[MovementType] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = Field(None, max_length=100)
    limit: int = Field(50, ge=1, le=1000)
    offset: int = Field(0, ge=0)

    def is_unfiltered(self) -> bool:
        return not (self.movement_types or self.start_date or self.end_date or self.search)


class HistoryEntry(BaseModel):
    movement: MovementOut
    stock_before: int
    stock_after: int


class HistoryStats(BaseModel):
    total_movements: int = 0
    total_in: int = 0
    total_out: int = 0
    net_change: int = 0


class StockHistory(BaseModel):
    """A reconstructed slice of an item's movement history.

    ``stock_before``/``stock_after`` are only absolute when
    ``anchored_to_present`` is true. Otherwise they are relative to the
    recorded stock at the slice's last movement, and movements hidden by
    the filters are not reflected in the intermediate values.
    """

    item_id: str
    item_name: str
    current_stock: int
    entries: list[HistoryEntry]
    stats: HistoryStats
    total_count: int
    complete: bool
    anchored_to_present: bool
    filters: HistoryFilters
    generated_at: datetime


class DailyStockLevel(BaseModel):
    day: str
    stock_in: int
    stock_out: int
    net_change: int
    closing_stock: int
    movement_count: int


class ReplayReport(BaseModel):
    item_id: str
    initial_stock: int
    replayed_stock: int | None
    current_stock: int
    movement_count: int
    consistent: bool
    detail: str | None = None


class MovementQuery(HistoryFilters):
    item_id: str | None = None


class MovementPage(BaseModel):
    """One page of movements across items, newest first."""

    movements: list[MovementOut]
    total_count: int
    query: MovementQuery


class InventoryStats(BaseModel):
    tracked_items: int
    total_units: int
    average_stock: float
    out_of_stock_count: int
    low_stock_count: int
    low_stock_threshold: int
    movements_today: int
    items_moved_today: int
    net_movement_today: int
    generated_at: datetime
