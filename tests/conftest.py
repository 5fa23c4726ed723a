import pytest

from fakes import RecordingAuditSink
from stockledger.database import init_db, make_engine, make_session_factory
from stockledger.schemas.item import ItemCreate
from stockledger.services import item_service
from stockledger.services.bulk_adjuster import BulkAdjuster
from stockledger.services.ledger_engine import LedgerEngine
from stockledger.services.stock_cache import StockCache


@pytest.fixture
def engine(tmp_path):
    # File-backed so several threads/connections see the same database
    eng = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def ledger(session_factory, audit_sink):
    return LedgerEngine(session_factory, audit_sink=audit_sink, cache=StockCache(ttl_seconds=60), retry_backoff=0.01)


@pytest.fixture
def adjuster(ledger):
    return BulkAdjuster(ledger)


@pytest.fixture
def make_item(db):
    counter = {"n": 0}

    def _make(opening_stock: int = 0, name: str | None = None) -> str:
        counter["n"] += 1
        sku = f"SKU-{counter['n']:03d}"
        item = item_service.create_item(db, ItemCreate(sku=sku, name=name or f"Item {sku}", opening_stock=opening_stock))
        return item.id

    return _make
