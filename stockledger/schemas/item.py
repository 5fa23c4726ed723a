from datetime import datetime

from pydantic import BaseModel, Field


class ItemCreate(BaseModel):
    sku: str
    name: str
    opening_stock: int = Field(0, ge=0)


class ItemOut(BaseModel):
    id: str
    sku: str
    name: str
    opening_stock: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StockLevelOut(BaseModel):
    item_id: str
    current_stock: int
    cached: bool = False


class StockSnapshotOut(BaseModel):
    item_id: str
    initial_stock: int
    current_stock: int
    version: int
    last_updated_at: datetime

    model_config = {"from_attributes": True}
