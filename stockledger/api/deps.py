from fastapi import Request
from sqlalchemy.orm import Session

from stockledger.services.bulk_adjuster import BulkAdjuster
from stockledger.services.ledger_engine import LedgerEngine


def get_db(request: Request):
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_ledger(request: Request) -> LedgerEngine:
    return request.app.state.ledger


def get_bulk_adjuster(request: Request) -> BulkAdjuster:
    return request.app.state.bulk_adjuster
