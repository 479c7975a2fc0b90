# routes/stores.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import schemas
from auth import get_current_user, require_admin
from crud import store as crud_store
from database import get_db

router = APIRouter(prefix="/api/stores", tags=["Stores"], dependencies=[Depends(get_current_user)])


@router.get("/", response_model=List[schemas.Store])
def list_stores(db: Session = Depends(get_db)):
    return crud_store.get_all_stores(db)


@router.post("/", response_model=schemas.Store, dependencies=[Depends(require_admin)])
def add_store(store: schemas.StoreCreate, db: Session = Depends(get_db)):
    if crud_store.get_store_by_code(db, store.store_code):
        raise HTTPException(status_code=409, detail=f"Store code {store.store_code} already exists")
    return crud_store.create_store(db, store)


@router.patch("/{store_id}", response_model=schemas.Store, dependencies=[Depends(require_admin)])
def update_store(store_id: int, changes: schemas.StoreUpdate, db: Session = Depends(get_db)):
    db_store = crud_store.get_store(db, store_id)
    if db_store is None:
        raise HTTPException(status_code=404, detail="Store not found")
    return crud_store.update_store(db, db_store, changes)
