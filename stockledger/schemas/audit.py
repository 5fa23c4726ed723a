from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from stockledger.models.movement import utcnow


class AuditRecord(BaseModel):
    action: str
    item_id: str | None = None
    actor: str
    before: int | None = None
    after: int | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = {}
