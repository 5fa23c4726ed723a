from pydantic import BaseModel, Field


class BulkAdjustment(BaseModel):
    item_id: str
    expected_previous_stock: int = Field(ge=0)
    new_stock: int = Field(ge=0)
    notes: str | None = Field(None, max_length=500)
    reference: str | None = Field(None, max_length=100)


class BulkAdjustRequest(BaseModel):
    adjustments: list[dict]
    timeout_per_item: float | None = Field(None, gt=0)


class BatchItemResult(BaseModel):
    index: int
    item_id: str | None
    success: bool
    movement_id: int | None = None
    previous_stock: int | None = None
    new_stock: int | None = None
    error_code: str | None = None
    reason: str | None = None


class BatchResult(BaseModel):
    batch_id: str
    results: list[BatchItemResult]
    success_count: int
    failure_count: int
