# routes/splits.py

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional

import models
import schemas
from auth import get_current_user, require_admin
from database import get_db
from crud import order as crud_order
from services import order_split, split_lifecycle
from services.clients import SideEffectClients, get_clients
from services.split_status import allowed_targets

router = APIRouter(
    prefix="/api/splits",
    tags=["Order Splits"],
    responses={404: {"description": "Not found"}},
    dependencies=[Depends(get_current_user)],
)

def _out(result: split_lifecycle.TransitionResult) -> schemas.TransitionOut:
    return schemas.TransitionOut(
        split=schemas.OrderSplit.model_validate(result.split),
        failed_effects=result.failed_effects,
    )

@router.get("/", response_model=List[schemas.OrderSplit])
def list_splits(
    status: Optional[str] = Query(None),
    store_code: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return crud_order.list_splits(db, status=status, store_code=store_code, skip=skip, limit=limit)

@router.get("/{split_pk}")
def get_split(split_pk: int, db: Session = Depends(get_db),
              user: models.User = Depends(get_current_user)) -> Dict[str, Any]:
    split = order_split.get_split(db, split_pk)
    return {
        "split": schemas.OrderSplit.model_validate(split),
        "timeline": split_lifecycle.timeline(split),
        "allowedTransitions": sorted(s.value for s in allowed_targets(split.order_status, admin=user.role == "admin")),
    }

# ---------------- lifecycle ----------------

@router.post("/{split_pk}/confirm", response_model=schemas.TransitionOut)
def confirm(split_pk: int, db: Session = Depends(get_db), clients: SideEffectClients = Depends(get_clients)):
    return _out(split_lifecycle.confirm(db, split_pk, clients))

@router.post("/{split_pk}/ready-for-pickup", response_model=schemas.TransitionOut)
def ready_for_pickup(split_pk: int, db: Session = Depends(get_db), clients: SideEffectClients = Depends(get_clients)):
    return _out(split_lifecycle.ready_for_pickup(db, split_pk, clients))

@router.post("/{split_pk}/out-for-delivery", response_model=schemas.TransitionOut)
def out_for_delivery(split_pk: int, db: Session = Depends(get_db), clients: SideEffectClients = Depends(get_clients)):
    return _out(split_lifecycle.out_for_delivery(db, split_pk, clients))

@router.post("/{split_pk}/delivered", response_model=schemas.TransitionOut)
def delivered(split_pk: int, db: Session = Depends(get_db), clients: SideEffectClients = Depends(get_clients)):
    return _out(split_lifecycle.delivered(db, split_pk, clients))

@router.post("/{split_pk}/on-hold", response_model=schemas.TransitionOut)
def on_hold(split_pk: int, body: schemas.OnHoldRequest, db: Session = Depends(get_db),
            clients: SideEffectClients = Depends(get_clients)):
    return _out(split_lifecycle.on_hold(db, split_pk, clients, body.comment, body.on_hold_status))

@router.patch("/{split_pk}/on-hold-status", response_model=schemas.OrderSplit)
def update_on_hold_status(split_pk: int, body: schemas.OnHoldStatusUpdate, db: Session = Depends(get_db)):
    return split_lifecycle.update_on_hold_status(db, split_pk, body.on_hold_status, body.comment)

@router.post("/{split_pk}/cancel", response_model=schemas.TransitionOut)
def cancel(split_pk: int, db: Session = Depends(get_db), clients: SideEffectClients = Depends(get_clients)):
    return _out(split_lifecycle.cancel(db, split_pk, clients))

@router.post("/{split_pk}/status", response_model=schemas.OrderSplit, dependencies=[Depends(require_admin)])
def admin_set_status(split_pk: int, body: schemas.AdminStatusRequest, db: Session = Depends(get_db)):
    return split_lifecycle.admin_set_status(db, split_pk, body.order_status, body.comment)

# ---------------- reassignment ----------------

@router.get("/{split_pk}/reassign-candidates", response_model=List[schemas.HybridStock])
def reassign_candidates(split_pk: int, line_item_id: int = Query(...), quantity: Optional[int] = Query(None, gt=0),
                        db: Session = Depends(get_db)):
    return order_split.reassignment_candidates(db, split_pk, line_item_id, quantity)

@router.post("/{split_pk}/reassign", response_model=List[schemas.OrderSplit])
def reassign(split_pk: int, body: schemas.ReassignRequest, db: Session = Depends(get_db)):
    moves = [m.model_dump(by_alias=True) for m in body.moves]
    return order_split.reassign_items(db, split_pk, moves)

@router.post("/{split_pk}/reassign-to-backup", response_model=schemas.OrderSplit)
def reassign_to_backup(split_pk: int, db: Session = Depends(get_db)):
    return order_split.reassign_to_backup(db, split_pk)
