import logging
import time
from datetime import timedelta
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from stockledger.config import settings
from stockledger.exceptions import (
    InvalidMovementError,
    ItemNotFoundError,
    LedgerError,
    LedgerTimeoutError,
    ReplayMismatchError,
    TransactionConflictError,
)
from stockledger.models.movement import Movement, MovementType, utcnow
from stockledger.schemas.audit import AuditRecord
from stockledger.schemas.item import StockSnapshotOut
from stockledger.schemas.movement import (
    DailyStockLevel,
    HistoryFilters,
    InventoryStats,
    MovementMetadata,
    MovementOut,
    MovementPage,
    MovementQuery,
    ReplayReport,
    StockHistory,
)
from stockledger.services import history_reconstructor, movement_store, stock_projector
from stockledger.services.audit_sink import AuditSink, LoggingAuditSink
from stockledger.services.item_service import ItemLookup, SqlItemLookup
from stockledger.services.stock_cache import StockCache

logger = logging.getLogger(__name__)

MOVEMENT_ACTION = "INVENTORY_MOVEMENT_CREATE"


class LedgerEngine:
    """Single write path for stock movements.

    Each ``record`` call is one transaction: lock/read the snapshot, check,
    insert the movement, update the snapshot, commit. The cache entry is
    dropped and the audit record emitted only after the commit succeeded.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        item_lookup: ItemLookup | None = None,
        audit_sink: AuditSink | None = None,
        cache: StockCache | None = None,
        max_retries: int | None = None,
        retry_backoff: float | None = None,
        default_timeout: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self.items = item_lookup or SqlItemLookup(session_factory)
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.cache = cache or StockCache()
        self.max_retries = settings.LEDGER_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = settings.LEDGER_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff
        self.default_timeout = settings.RECORD_TIMEOUT_SECONDS if default_timeout is None else default_timeout
        self._monotonic = monotonic

    # --- write path ---

    def record(
        self,
        item_id: str,
        quantity: int,
        movement_type: MovementType | str,
        metadata: MovementMetadata | dict | None = None,
        actor: str = "system",
        timeout: float | None = None,
    ) -> MovementOut:
        movement_type, meta = self._validate(item_id, quantity, movement_type, metadata)
        if not self._item_exists(item_id):
            raise ItemNotFoundError(item_id)

        deadline = self._deadline(timeout)
        attempt = 0
        while True:
            attempt += 1
            self._check_deadline(deadline, item_id)
            try:
                movement = self._record_once(item_id, quantity, movement_type, meta, actor, deadline)
                break
            except TransactionConflictError as e:
                if attempt > self.max_retries:
                    logger.warning("Giving up on item %s after %d conflicting attempts", item_id, attempt)
                    raise
                logger.info("Retrying movement on item %s after conflict (attempt %d): %s", item_id, attempt, e)
                time.sleep(self.retry_backoff * attempt)

        self.cache.invalidate(item_id)
        logger.info(
            "Recorded %s of %d on item %s (%d -> %d) by %s",
            movement.movement_type.value,
            movement.quantity,
            item_id,
            movement.stock_before,
            movement.stock_after,
            actor,
        )
        self._emit_movement(movement, actor)
        return movement

    def assert_stock(
        self,
        item_id: str,
        expected_previous_stock: int,
        new_stock: int,
        metadata: MovementMetadata | dict | None = None,
        actor: str = "system",
        timeout: float | None = None,
    ) -> MovementOut:
        """Record an adjustment replacing ``expected_previous_stock`` with ``new_stock``."""
        if new_stock == expected_previous_stock:
            raise InvalidMovementError(
                "Adjustment does not change stock",
                expected_previous_stock=expected_previous_stock,
                new_stock=new_stock,
            )
        meta = self._parse_metadata(metadata).model_dump(exclude_none=True)
        meta.update(expected_previous_stock=expected_previous_stock, new_stock=new_stock)
        quantity = abs(new_stock - expected_previous_stock)
        return self.record(item_id, quantity, MovementType.ADJUSTMENT, meta, actor=actor, timeout=timeout)

    def _record_once(
        self,
        item_id: str,
        quantity: int,
        movement_type: MovementType,
        meta: MovementMetadata,
        actor: str,
        deadline: float | None,
    ) -> MovementOut:
        db = self._session_factory()
        try:
            self._apply_statement_timeout(db, deadline)
            snapshot = movement_store.lock_snapshot(db, item_id)
            if snapshot is None:
                snapshot = movement_store.create_snapshot(db, item_id, self._recorded_stock(item_id))
            self._check_deadline(deadline, item_id)

            change = stock_projector.plan(movement_type, quantity, meta.expected_previous_stock, meta.new_stock)
            before = snapshot.current_stock
            after = stock_projector.apply(before, change, item_id)

            movement = movement_store.append(
                db,
                Movement(
                    item_id=item_id,
                    quantity=quantity,
                    movement_type=movement_type,
                    reference=meta.reference,
                    notes=meta.notes,
                    location=meta.location,
                    stock_before=before,
                    stock_after=after,
                    created_by=actor,
                ),
            )
            movement_store.update_snapshot(db, snapshot, after)

            self._check_deadline(deadline, item_id)
            result = MovementOut.model_validate(movement)
            db.commit()
            return result
        except LedgerError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            raise movement_store.translate_db_error(e) from e
        finally:
            db.close()

    # --- read path ---

    def get_current_stock(self, item_id: str, use_cache: bool = True) -> int:
        if use_cache:
            cached = self.cache.get(item_id)
            if cached is not None:
                return cached

        # Taken before the read so a write committed meanwhile keeps our value out of the cache
        generation = self.cache.generation(item_id)
        db = self._session_factory()
        try:
            snapshot = movement_store.read_snapshot(db, item_id)
        except SQLAlchemyError as e:
            raise movement_store.translate_db_error(e) from e
        finally:
            db.close()

        if snapshot is not None:
            stock = snapshot.current_stock
        else:
            if not self._item_exists(item_id):
                raise ItemNotFoundError(item_id)
            stock = self._recorded_stock(item_id)

        self.cache.set(item_id, stock, generation=generation)
        return stock

    def has_sufficient_stock(self, item_id: str, required: int) -> bool:
        if required <= 0:
            return True
        current = self.get_current_stock(item_id)
        if current < required:
            logger.warning("Insufficient stock on item %s: %d available, %d required", item_id, current, required)
            return False
        return True

    def get_history(self, item_id: str, filters: HistoryFilters | None = None) -> StockHistory:
        filters = filters or HistoryFilters()
        if not self._item_exists(item_id):
            raise ItemNotFoundError(item_id)

        # Anchor at live stock only when the slice ends at the latest movement
        anchored = filters.offset == 0 and not (filters.movement_types or filters.end_date or filters.search)
        current_stock, movements, total = self._read_anchored(
            item_id, lambda db: movement_store.list_for_item(db, item_id, filters), anchored
        )

        anchor = current_stock if anchored or not movements else movements[-1].stock_after
        entries = history_reconstructor.reconstruct(item_id, movements, anchor)

        return StockHistory(
            item_id=item_id,
            item_name=self._item_name(item_id),
            current_stock=current_stock,
            entries=entries,
            stats=history_reconstructor.summarize(movements),
            total_count=total,
            complete=filters.is_unfiltered() and filters.offset == 0 and len(movements) == total,
            anchored_to_present=anchored,
            filters=filters,
            generated_at=utcnow(),
        )

    def daily_stock_levels(self, item_id: str, days: int = 30) -> list[DailyStockLevel]:
        if not self._item_exists(item_id):
            raise ItemNotFoundError(item_id)
        days = max(1, min(days, 365))
        since = utcnow() - timedelta(days=days)

        current_stock, movements, _ = self._read_anchored(
            item_id, lambda db: (movement_store.movements_since(db, item_id, since), None)
        )
        entries = history_reconstructor.reconstruct(item_id, movements, current_stock)
        return history_reconstructor.daily_levels(entries)

    def get_low_stock(self, threshold: int | None = None) -> list[StockSnapshotOut]:
        threshold = settings.LOW_STOCK_THRESHOLD if threshold is None else threshold
        db = self._session_factory()
        try:
            return [StockSnapshotOut.model_validate(s) for s in movement_store.low_stock(db, threshold)]
        except SQLAlchemyError as e:
            raise movement_store.translate_db_error(e) from e
        finally:
            db.close()

    def verify_replay(self, item_id: str) -> ReplayReport:
        """Check that replaying every movement reproduces the stored snapshot."""
        if not self._item_exists(item_id):
            raise ItemNotFoundError(item_id)

        db = self._session_factory()
        try:
            snapshot = movement_store.read_snapshot(db, item_id)
            movements = movement_store.all_for_item(db, item_id)
        except SQLAlchemyError as e:
            raise movement_store.translate_db_error(e) from e
        finally:
            db.close()

        if snapshot is None:
            seed = self._recorded_stock(item_id)
            initial, current = seed, seed
        else:
            initial, current = snapshot.initial_stock, snapshot.current_stock

        try:
            replayed = stock_projector.replay(initial, movements)
        except ReplayMismatchError as e:
            logger.error("Replay of item %s broke: %s", item_id, e)
            return ReplayReport(
                item_id=item_id,
                initial_stock=initial,
                replayed_stock=None,
                current_stock=current,
                movement_count=len(movements),
                consistent=False,
                detail=str(e),
            )

        consistent = replayed == current
        if not consistent:
            logger.error("Item %s snapshot %d differs from replayed stock %d", item_id, current, replayed)
        return ReplayReport(
            item_id=item_id,
            initial_stock=initial,
            replayed_stock=replayed,
            current_stock=current,
            movement_count=len(movements),
            consistent=consistent,
            detail=None if consistent else f"snapshot {current} != replay {replayed}",
        )

    def get_all_history(self, query: MovementQuery | None = None) -> MovementPage:
        """Movements across all items, newest first."""
        query = query or MovementQuery()
        db = self._session_factory()
        try:
            rows, total = movement_store.list_all(db, query)
            movements = [MovementOut.model_validate(m) for m in rows]
        except SQLAlchemyError as e:
            raise movement_store.translate_db_error(e) from e
        finally:
            db.close()
        return MovementPage(movements=movements, total_count=total, query=query)

    def inventory_stats(self, threshold: int | None = None) -> InventoryStats:
        """Totals over every item that has a stock snapshot, plus today's movement activity."""
        threshold = settings.LOW_STOCK_THRESHOLD if threshold is None else threshold
        now = utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        db = self._session_factory()
        try:
            stock = movement_store.stock_totals(db, threshold)
            today = movement_store.movement_totals_since(db, day_start)
        except SQLAlchemyError as e:
            raise movement_store.translate_db_error(e) from e
        finally:
            db.close()

        return InventoryStats(
            tracked_items=stock.tracked_items,
            total_units=stock.total_units,
            average_stock=stock.total_units / stock.tracked_items if stock.tracked_items else 0.0,
            out_of_stock_count=stock.out_of_stock,
            low_stock_count=stock.low_stock,
            low_stock_threshold=threshold,
            movements_today=today.movements,
            items_moved_today=today.items_moved,
            net_movement_today=today.net_change,
            generated_at=now,
        )

    def cache_stats(self) -> dict:
        return self.cache.stats()

    # --- helpers ---

    def emit_audit(self, record: AuditRecord) -> None:
        self._emit(record)

    def _emit(self, record: AuditRecord) -> None:
        try:
            self.audit_sink.emit(record)
        except Exception:
            # The change is already committed; a sink outage must not undo or fail it
            logger.exception("Audit emission failed for %s on item %s", record.action, record.item_id)

    def _emit_movement(self, movement: MovementOut, actor: str) -> None:
        self._emit(
            AuditRecord(
                action=MOVEMENT_ACTION,
                item_id=movement.item_id,
                actor=actor,
                before=movement.stock_before,
                after=movement.stock_after,
                metadata={
                    "movement_id": movement.id,
                    "movement_type": movement.movement_type.value,
                    "quantity": movement.quantity,
                    "item_name": self._item_name(movement.item_id),
                    "reference": movement.reference,
                },
            )
        )

    def _read_anchored(
        self,
        item_id: str,
        query: Callable[[Session], tuple[list[Movement], int | None]],
        anchored: bool = True,
    ) -> tuple[int, list[MovementOut], int | None]:
        """Read the snapshot and a movement slice that agree with each other.

        When ``anchored``, the newest movement of the slice must end at the
        snapshot's stock. A write committed between the two reads breaks that
        and the pair is read again.
        """
        attempt = 0
        while True:
            attempt += 1
            db = self._session_factory()
            try:
                snapshot = movement_store.read_snapshot(db, item_id)
                rows, total = query(db)
                movements = [MovementOut.model_validate(m) for m in rows]
            except SQLAlchemyError as e:
                raise movement_store.translate_db_error(e) from e
            finally:
                db.close()

            current_stock = snapshot.current_stock if snapshot is not None else self._recorded_stock(item_id)
            if not (anchored and movements) or movements[-1].stock_after == current_stock:
                return current_stock, movements, total
            if attempt > self.max_retries:
                raise TransactionConflictError(
                    f"Movements of item {item_id} kept changing while they were read", item_id=item_id
                )
            logger.info("Item %s moved while its history was read, reading again (attempt %d)", item_id, attempt)

    def _item_exists(self, item_id: str) -> bool:
        try:
            return self.items.item_exists(item_id)
        except SQLAlchemyError as e:
            raise movement_store.translate_db_error(e) from e

    def _recorded_stock(self, item_id: str) -> int:
        try:
            return self.items.recorded_stock(item_id)
        except SQLAlchemyError as e:
            raise movement_store.translate_db_error(e) from e

    def _item_name(self, item_id: str) -> str:
        # Only feeds audit records, which may be built after the commit
        try:
            return self.items.item_name(item_id)
        except Exception as e:
            logger.warning("Could not resolve name of item %s: %s", item_id, e)
            return ""

    def _validate(
        self,
        item_id: str,
        quantity: Any,
        movement_type: MovementType | str,
        metadata: MovementMetadata | dict | None,
    ) -> tuple[MovementType, MovementMetadata]:
        if not item_id:
            raise InvalidMovementError("item_id is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidMovementError(f"Quantity must be a positive integer, got {quantity!r}", quantity=quantity)
        try:
            movement_type = MovementType(movement_type)
        except ValueError:
            raise InvalidMovementError(f"Unknown movement type {movement_type!r}", movement_type=movement_type)

        meta = self._parse_metadata(metadata)
        if movement_type == MovementType.ADJUSTMENT:
            if meta.expected_previous_stock is None or meta.new_stock is None:
                raise InvalidMovementError("Adjustments require expected_previous_stock and new_stock")
            if quantity != abs(meta.new_stock - meta.expected_previous_stock):
                raise InvalidMovementError(
                    "Adjustment quantity must equal the difference between new and previous stock",
                    quantity=quantity,
                    expected_previous_stock=meta.expected_previous_stock,
                    new_stock=meta.new_stock,
                )
        elif meta.expected_previous_stock is not None or meta.new_stock is not None:
            raise InvalidMovementError("expected_previous_stock/new_stock only apply to adjustments")
        return movement_type, meta

    @staticmethod
    def _parse_metadata(metadata: MovementMetadata | dict | None) -> MovementMetadata:
        if isinstance(metadata, MovementMetadata):
            return metadata
        try:
            return MovementMetadata.model_validate(metadata or {})
        except ValidationError as e:
            raise InvalidMovementError(f"Invalid movement metadata: {e.errors(include_url=False)}")

    def _deadline(self, timeout: float | None) -> float | None:
        timeout = self.default_timeout if timeout is None else timeout
        if not timeout:
            return None
        if timeout < 0:
            raise InvalidMovementError(f"Timeout must be positive, got {timeout}")
        return self._monotonic() + timeout

    def _check_deadline(self, deadline: float | None, item_id: str) -> None:
        if deadline is not None and self._monotonic() >= deadline:
            raise LedgerTimeoutError(f"Movement on item {item_id} timed out before commit", item_id=item_id)

    def _apply_statement_timeout(self, db: Session, deadline: float | None) -> None:
        if deadline is None or db.get_bind().dialect.name != "postgresql":
            return
        remaining_ms = max(1, int((deadline - self._monotonic()) * 1000))
        db.execute(text(f"SET LOCAL statement_timeout = {remaining_ms}"))
