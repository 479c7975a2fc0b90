# routes/inventory.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

import models
import schemas
from auth import get_current_user
from crud import product as crud_product
from database import get_db
from services import hybrid_stock

router = APIRouter(prefix="/api/inventory", tags=["Inventory"], dependencies=[Depends(get_current_user)])


@router.get("/hybrid", response_model=List[schemas.HybridStock])
def list_hybrid_stock(
    sku: Optional[str] = Query(None),
    outlet_id: Optional[int] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return hybrid_stock.list_hybrid_stock(db, sku=sku, outlet_id=outlet_id, skip=skip, limit=limit)


@router.get("/erp-items", response_model=List[schemas.ErpItem])
def list_erp_items(
    outlet_id: Optional[int] = Query(None),
    item_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    q = db.query(models.ErpItem)
    if outlet_id is not None:
        q = q.filter(models.ErpItem.outlet_id == outlet_id)
    if item_id:
        q = q.filter(models.ErpItem.item_id == item_id)
    return q.order_by(models.ErpItem.outlet_id.asc(), models.ErpItem.item_id.asc()).offset(skip).limit(limit).all()


@router.get("/variants", response_model=List[schemas.VariantInfo])
def list_variants(
    new_only: bool = Query(False),
    sku: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return crud_product.list_variants(db, new_only=new_only, sku=sku, skip=skip, limit=limit)


@router.post("/variants")
def upsert_variants(variants: List[schemas.VariantInfoIn], db: Session = Depends(get_db)):
    """Storefront variant mirror, keyed by variant id."""
    return crud_product.upsert_variants(db, variants)
