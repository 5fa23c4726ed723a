from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stockledger.api.deps import get_db
from stockledger.schemas.item import ItemCreate, ItemOut
from stockledger.services import item_service

router = APIRouter(prefix="/items", tags=["Items"])


@router.post("", response_model=ItemOut, status_code=201)
def create_item(data: ItemCreate, db: Session = Depends(get_db)):
    try:
        return item_service.create_item(db, data)
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.get("", response_model=list[ItemOut])
def list_items(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    return item_service.list_items(db, skip=skip, limit=limit)


@router.get("/{item_id}", response_model=ItemOut)
def get_item(item_id: str, db: Session = Depends(get_db)):
    item = item_service.get_item(db, item_id)
    if not item:
        raise HTTPException(404, "Item not found")
    return item
