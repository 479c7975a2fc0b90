from typing import List, Optional
from sqlalchemy.orm import Session
import models
import schemas
from services import hybrid_stock

# Changing these re-derives the hybrid stock read model.
_STOCK_FIELDS = {"status", "is_backup_warehouse", "select_backup_warehouse"}

def get_store(db: Session, store_id: int) -> Optional[models.Store]:
    return db.query(models.Store).filter(models.Store.id == store_id).first()

def get_store_by_code(db: Session, store_code: str) -> Optional[models.Store]:
    return db.query(models.Store).filter(models.Store.store_code == store_code).first()

def get_all_stores(db: Session) -> List[models.Store]:
    return db.query(models.Store).order_by(models.Store.erp_store_id.asc()).all()

def get_active_stores(db: Session) -> List[models.Store]:
    return (
        db.query(models.Store)
        .filter(models.Store.status == "Active")
        .order_by(models.Store.erp_store_id.asc())
        .all()
    )

def create_store(db: Session, store: schemas.StoreCreate) -> models.Store:
    db_store = models.Store(**store.model_dump())
    db.add(db_store)
    db.commit()
    db.refresh(db_store)
    hybrid_stock.recompute_all(db)
    return db_store

def update_store(db: Session, db_store: models.Store, changes: schemas.StoreUpdate) -> models.Store:
    data = changes.model_dump(exclude_unset=True)
    for key, value in data.items():
        setattr(db_store, key, value)
    db.commit()
    db.refresh(db_store)
    if _STOCK_FIELDS & data.keys():
        hybrid_stock.recompute_all(db)
    return db_store
