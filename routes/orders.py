# routes/orders.py

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional

import schemas
from auth import get_current_user
from database import get_db
from crud import order as crud_order
from services import order_split

router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"],
    responses={404: {"description": "Not found"}},
    dependencies=[Depends(get_current_user)],
)

def _order_or_404(db: Session, order_id: int):
    order = crud_order.get_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@router.get("/", response_model=List[schemas.Order])
def list_orders(skip: int = Query(0, ge=0), limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return crud_order.list_orders(db, skip=skip, limit=limit)

@router.get("/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    order = _order_or_404(db, order_id)
    return {
        "order": schemas.Order.model_validate(order),
        "splits": [schemas.OrderSplit.model_validate(s) for s in order_split.splits_for_order(db, order.id)],
    }

@router.post("/{order_id}/split", response_model=List[schemas.OrderSplit])
def split_order(order_id: int, body: Optional[schemas.SplitRequest] = None, db: Session = Depends(get_db)):
    """
    Runs the split engine for an already mirrored order. Splitting twice
    returns the existing splits.
    """
    order = _order_or_404(db, order_id)
    body = body or schemas.SplitRequest()
    return order_split.split_order(db, order, method=body.method, store_override=body.store_override)

@router.get("/{order_id}/allocation")
def get_allocation(order_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    order = _order_or_404(db, order_id)
    return {
        "ordered": order_split.ordered_quantities(order),
        "allocated": order_split.allocated_quantities(db, order.id),
    }
