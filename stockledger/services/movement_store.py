import logging

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stockledger.config import settings
from stockledger.exceptions import LedgerError, LedgerStoreError, LedgerTimeoutError, TransactionConflictError
from stockledger.models.movement import Movement, utcnow
from stockledger.models.stock_snapshot import StockSnapshot
from stockledger.schemas.movement import HistoryFilters, MovementQuery
from stockledger.services.stock_projector import CREDIT_TYPES, DEBIT_TYPES

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available
_PG_CONFLICT_CODES = {"40001", "40P01", "55P03"}
_PG_UNIQUE_VIOLATION = "23505"
_PG_QUERY_CANCELED = "57014"


def lock_snapshot(db: Session, item_id: str) -> StockSnapshot | None:
    """Read the durable snapshot, holding a row lock where the backend supports one."""
    stmt = select(StockSnapshot).where(StockSnapshot.item_id == item_id).with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def read_snapshot(db: Session, item_id: str) -> StockSnapshot | None:
    return db.get(StockSnapshot, item_id)


def create_snapshot(db: Session, item_id: str, seed: int) -> StockSnapshot:
    snapshot = StockSnapshot(item_id=item_id, initial_stock=seed, current_stock=seed, last_updated_at=utcnow())
    db.add(snapshot)
    # Surfaces a concurrent first write on the same item as a unique violation
    db.flush()
    return snapshot


def update_snapshot(db: Session, snapshot: StockSnapshot, new_stock: int) -> StockSnapshot:
    snapshot.current_stock = new_stock
    snapshot.last_updated_at = utcnow()
    db.flush()
    return snapshot


def append(db: Session, movement: Movement) -> Movement:
    db.add(movement)
    db.flush()
    return movement


def all_for_item(db: Session, item_id: str) -> list[Movement]:
    stmt = select(Movement).where(Movement.item_id == item_id).order_by(Movement.created_at, Movement.id)
    return list(db.execute(stmt).scalars())


def _filter_conditions(filters: HistoryFilters) -> list:
    conditions = []
    if filters.movement_types:
        conditions.append(Movement.movement_type.in_(filters.movement_types))
    if filters.start_date:
        conditions.append(Movement.created_at >= filters.start_date)
    if filters.end_date:
        conditions.append(Movement.created_at <= filters.end_date)
    if filters.search:
        term = f"%{filters.search}%"
        conditions.append(or_(Movement.reference.like(term), Movement.notes.like(term)))
    return conditions


def _newest_page(db: Session, conditions: list, filters: HistoryFilters) -> tuple[list[Movement], int]:
    total = db.execute(select(func.count()).select_from(Movement).where(*conditions)).scalar_one()
    stmt = (
        select(Movement)
        .where(*conditions)
        .order_by(Movement.created_at.desc(), Movement.id.desc())
        .offset(filters.offset)
        .limit(min(filters.limit, settings.HISTORY_MAX_LIMIT))
    )
    return list(db.execute(stmt).scalars()), total


def list_for_item(db: Session, item_id: str, filters: HistoryFilters) -> tuple[list[Movement], int]:
    """Return one page of movements, oldest first, and the filtered total.

    Pages are counted from the most recent movement backwards, so offset 0
    is always the newest slice.
    """
    page, total = _newest_page(db, [Movement.item_id == item_id, *_filter_conditions(filters)], filters)
    page.reverse()
    return page, total


def list_all(db: Session, query: MovementQuery) -> tuple[list[Movement], int]:
    """Return one page of movements across items, newest first, and the filtered total."""
    conditions = _filter_conditions(query)
    if query.item_id:
        conditions.append(Movement.item_id == query.item_id)
    return _newest_page(db, conditions, query)


def movements_since(db: Session, item_id: str, since) -> list[Movement]:
    stmt = (
        select(Movement)
        .where(Movement.item_id == item_id, Movement.created_at >= since)
        .order_by(Movement.created_at, Movement.id)
    )
    return list(db.execute(stmt).scalars())


def low_stock(db: Session, threshold: int) -> list[StockSnapshot]:
    stmt = (
        select(StockSnapshot)
        .where(StockSnapshot.current_stock <= threshold)
        .order_by(StockSnapshot.current_stock, StockSnapshot.item_id)
    )
    return list(db.execute(stmt).scalars())


def stock_totals(db: Session, threshold: int):
    stmt = select(
        func.count().label("tracked_items"),
        func.coalesce(func.sum(StockSnapshot.current_stock), 0).label("total_units"),
        func.coalesce(func.sum(case((StockSnapshot.current_stock == 0, 1), else_=0)), 0).label("out_of_stock"),
        func.coalesce(func.sum(case((StockSnapshot.current_stock <= threshold, 1), else_=0)), 0).label("low_stock"),
    ).select_from(StockSnapshot)
    return db.execute(stmt).one()


def movement_totals_since(db: Session, since):
    # Adjustments and transfers count as movements but not towards the net change
    signed = case(
        (Movement.movement_type.in_(list(CREDIT_TYPES)), Movement.quantity),
        (Movement.movement_type.in_(list(DEBIT_TYPES)), -Movement.quantity),
        else_=0,
    )
    stmt = select(
        func.count().label("movements"),
        func.count(func.distinct(Movement.item_id)).label("items_moved"),
        func.coalesce(func.sum(signed), 0).label("net_change"),
    ).where(Movement.created_at >= since)
    return db.execute(stmt).one()


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    # psycopg2 exposes pgcode, psycopg 3 exposes sqlstate
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def translate_db_error(exc: SQLAlchemyError) -> LedgerError:
    """Map a driver/ORM error onto the ledger's error taxonomy."""
    if isinstance(exc, StaleDataError):
        return TransactionConflictError("Stock snapshot was modified concurrently")

    if isinstance(exc, DBAPIError):
        code = _sqlstate(exc)
        message = str(exc.orig).lower()
        if isinstance(exc, IntegrityError):
            if code == _PG_UNIQUE_VIOLATION or "unique" in message or "duplicate" in message:
                return TransactionConflictError("Stock snapshot was created concurrently")
            return LedgerStoreError(f"Integrity violation: {exc.orig}")
        if code == _PG_QUERY_CANCELED:
            return LedgerTimeoutError("Statement timed out before commit")
        if code in _PG_CONFLICT_CODES:
            return TransactionConflictError(f"Transaction conflict ({code})")
        if isinstance(exc, OperationalError) and ("database is locked" in message or "deadlock" in message):
            return TransactionConflictError("Database is locked by a concurrent writer")

    logger.error("Unmapped store error: %s", exc)
    return LedgerStoreError(f"Store failure: {exc}")
