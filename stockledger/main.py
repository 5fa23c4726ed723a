import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from stockledger.api import inventory, items
from stockledger.config import settings
from stockledger.database import SessionLocal, init_db
from stockledger.exceptions import (
    BatchTooLargeError,
    InsufficientStockError,
    InvalidMovementError,
    ItemNotFoundError,
    LedgerError,
    LedgerTimeoutError,
    MovementImmutableError,
    StaleAdjustmentError,
    TransactionConflictError,
)
from stockledger.services.audit_sink import build_audit_sink
from stockledger.services.bulk_adjuster import BulkAdjuster
from stockledger.services.ledger_engine import LedgerEngine

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ItemNotFoundError: 404,
    InvalidMovementError: 422,
    InsufficientStockError: 409,
    StaleAdjustmentError: 409,
    MovementImmutableError: 409,
    TransactionConflictError: 503,
    BatchTooLargeError: 413,
    LedgerTimeoutError: 504,
}


def _status_for(exc: LedgerError) -> int:
    for exc_type, status in ERROR_STATUS.items():
        if isinstance(exc, exc_type):
            return status
    return 500


def create_app(session_factory: sessionmaker | None = None, ledger: LedgerEngine | None = None) -> FastAPI:
    owns_database = session_factory is None
    session_factory = session_factory or SessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_database:
            init_db()
        yield

    app = FastAPI(
        title=settings.APP_NAME,
        description="Inventory ledger: stock movements, current stock, bulk corrections and history",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.ledger = ledger or LedgerEngine(session_factory, audit_sink=build_audit_sink())
    app.state.bulk_adjuster = BulkAdjuster(app.state.ledger)

    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request, exc: LedgerError):
        status = _status_for(exc)
        if status >= 500:
            logger.error("Ledger error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=exc.to_dict())

    app.include_router(items.router, prefix="/api/v1")
    app.include_router(inventory.router, prefix="/api/v1")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


logging.basicConfig(level=settings.LOG_LEVEL)
app = create_app()
