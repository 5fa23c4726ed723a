import logging
import uuid
from datetime import datetime, timezone
from typing import Sequence

from pydantic import ValidationError

from stockledger.config import settings
from stockledger.exceptions import BatchTooLargeError, InvalidMovementError, LedgerError
from stockledger.schemas.adjustment import BatchItemResult, BatchResult, BulkAdjustment
from stockledger.schemas.audit import AuditRecord
from stockledger.schemas.movement import MovementMetadata
from stockledger.services.ledger_engine import LedgerEngine

logger = logging.getLogger(__name__)

BATCH_ACTION = "INVENTORY_BULK_ADJUST"
DEFAULT_NOTES = "Bulk stock adjustment"


def _generate_batch_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    short = uuid.uuid4().hex[:6].upper()
    return f"BATCH-{ts}-{short}"


class BulkAdjuster:
    """Applies a batch of stock corrections one item at a time.

    Every item runs in its own ledger transaction. A failing item is
    reported in its slot and the batch moves on; items already applied stay
    applied.
    """

    def __init__(self, ledger: LedgerEngine, max_batch_size: int | None = None):
        self.ledger = ledger
        self.max_batch_size = settings.MAX_BULK_ADJUSTMENTS if max_batch_size is None else max_batch_size

    def apply_batch(
        self,
        adjustments: Sequence[BulkAdjustment | dict],
        actor: str,
        timeout_per_item: float | None = None,
    ) -> BatchResult:
        if not adjustments:
            raise InvalidMovementError("A batch needs at least one adjustment")
        if len(adjustments) > self.max_batch_size:
            raise BatchTooLargeError(len(adjustments), self.max_batch_size)

        batch_id = _generate_batch_id()
        results = [
            self._apply_one(batch_id, index, raw, actor, timeout_per_item) for index, raw in enumerate(adjustments)
        ]
        result = BatchResult(
            batch_id=batch_id,
            results=results,
            success_count=sum(1 for r in results if r.success),
            failure_count=sum(1 for r in results if not r.success),
        )

        logger.info(
            "Bulk adjustment %s by %s: %d succeeded, %d failed",
            batch_id,
            actor,
            result.success_count,
            result.failure_count,
        )
        self.ledger.emit_audit(
            AuditRecord(
                action=BATCH_ACTION,
                actor=actor,
                metadata={
                    "batch_id": batch_id,
                    "total": len(results),
                    "successful": result.success_count,
                    "failed": result.failure_count,
                    "results": [
                        {"item_id": r.item_id, "success": r.success, "error_code": r.error_code} for r in results
                    ],
                },
            )
        )
        return result

    def _apply_one(
        self,
        batch_id: str,
        index: int,
        raw: BulkAdjustment | dict,
        actor: str,
        timeout: float | None,
    ) -> BatchItemResult:
        item_id = raw.get("item_id") if isinstance(raw, dict) else getattr(raw, "item_id", None)
        try:
            adjustment = raw if isinstance(raw, BulkAdjustment) else BulkAdjustment.model_validate(raw)
            movement = self.ledger.assert_stock(
                adjustment.item_id,
                adjustment.expected_previous_stock,
                adjustment.new_stock,
                MovementMetadata(
                    notes=adjustment.notes or DEFAULT_NOTES,
                    reference=adjustment.reference or f"{batch_id}-{adjustment.item_id}"[:100],
                ),
                actor=actor,
                timeout=timeout,
            )
        except ValidationError as e:
            logger.warning("Bulk adjustment %s item #%d is malformed: %s", batch_id, index, e)
            return BatchItemResult(
                index=index,
                item_id=item_id if isinstance(item_id, str) else None,
                success=False,
                error_code=InvalidMovementError.code,
                reason=str(e.errors(include_url=False)),
            )
        except LedgerError as e:
            logger.warning("Bulk adjustment %s item #%d (%s) failed: %s", batch_id, index, item_id, e)
            return BatchItemResult(index=index, item_id=item_id, success=False, error_code=e.code, reason=e.message)

        return BatchItemResult(
            index=index,
            item_id=adjustment.item_id,
            success=True,
            movement_id=movement.id,
            previous_stock=movement.stock_before,
            new_stock=movement.stock_after,
        )
