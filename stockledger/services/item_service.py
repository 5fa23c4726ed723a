from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from stockledger.exceptions import ItemNotFoundError
from stockledger.models.item import Item
from stockledger.schemas.item import ItemCreate
from stockledger.services.movement_store import translate_db_error


class ItemLookup(Protocol):
    """What the ledger needs to know about items it does not own."""

    def item_exists(self, item_id: str) -> bool: ...

    def item_name(self, item_id: str) -> str: ...

    def recorded_stock(self, item_id: str) -> int: ...


class SqlItemLookup:
    """Item lookup backed by the ``items`` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def item_exists(self, item_id: str) -> bool:
        return self._fetch(item_id) is not None

    def item_name(self, item_id: str) -> str:
        return self._require(item_id).name

    def recorded_stock(self, item_id: str) -> int:
        return self._require(item_id).opening_stock

    def _fetch(self, item_id: str) -> Item | None:
        db = self._session_factory()
        try:
            return get_item(db, item_id)
        except SQLAlchemyError as e:
            raise translate_db_error(e) from e
        finally:
            db.close()

    def _require(self, item_id: str) -> Item:
        item = self._fetch(item_id)
        if not item:
            raise ItemNotFoundError(item_id)
        return item


def create_item(db: Session, data: ItemCreate) -> Item:
    if get_item_by_sku(db, data.sku):
        raise ValueError(f"Item with SKU {data.sku} already exists")
    item = Item(sku=data.sku, name=data.name, opening_stock=data.opening_stock)
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def get_item(db: Session, item_id: str) -> Item | None:
    return db.query(Item).filter(Item.id == item_id).first()


def get_item_by_sku(db: Session, sku: str) -> Item | None:
    return db.query(Item).filter(Item.sku == sku).first()


def list_items(db: Session, skip: int = 0, limit: int = 100) -> list[Item]:
    return db.query(Item).order_by(Item.sku).offset(skip).limit(limit).all()
