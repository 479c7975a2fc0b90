from typing import Optional, Dict, Any, Callable
from fastapi import APIRouter, Depends, BackgroundTasks, HTTPException, Query
from sqlalchemy.orm import Session

from auth import get_current_user, require_admin
from database import get_db, get_session_factory
from crud import store as crud_store
from services import erp_item_sync, hybrid_stock, storefront_sync, sync_tracker
from services.clients import SideEffectClients, get_clients

router = APIRouter(prefix="/api/sync-control", tags=["Sync Control"], dependencies=[Depends(get_current_user)])

@router.get("/status")
def get_all_task_status(kind: Optional[str] = Query(None)) -> Dict[str, Any]:
    sync_tracker.clear_finished(older_than_seconds=3600)
    return {"tasks": sync_tracker.list_tasks(kind)}

def _require_erp(clients: SideEffectClients):
    if clients.erp is None:
        raise HTTPException(status_code=503, detail="ERP credentials are not configured.")
    return clients.erp

@router.post("/erp/incremental")
def trigger_erp_incremental(
    background_tasks: BackgroundTasks,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clients: SideEffectClients = Depends(get_clients),
) -> Dict[str, Any]:
    erp = _require_erp(clients)
    task_id = sync_tracker.add_task("ERP item sync (all outlets)", kind="erp")
    background_tasks.add_task(erp_item_sync.run_incremental_sync, session_factory, erp, task_id)
    return {"status": "ok", "message": "ERP item sync started.", "task_id": task_id}

@router.post("/erp/outlets/{outlet_id}")
def trigger_erp_outlet(
    outlet_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clients: SideEffectClients = Depends(get_clients),
) -> Dict[str, Any]:
    erp = _require_erp(clients)
    store = next((s for s in crud_store.get_active_stores(db) if int(s.erp_store_id) == outlet_id), None)
    if store is None:
        raise HTTPException(status_code=404, detail="No active store for this outlet")
    task_id = sync_tracker.add_task(f"ERP item sync for {store.store_name}", kind="erp")
    background_tasks.add_task(erp_item_sync.run_outlet_sync, session_factory, outlet_id, erp, task_id)
    return {"status": "ok", "message": f"ERP item sync started for {store.store_name}.", "task_id": task_id}

@router.post("/erp/full", dependencies=[Depends(require_admin)])
def trigger_erp_full(
    background_tasks: BackgroundTasks,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clients: SideEffectClients = Depends(get_clients),
) -> Dict[str, Any]:
    erp = _require_erp(clients)
    task_id = sync_tracker.add_task("ERP full item sweep", kind="erp")
    background_tasks.add_task(erp_item_sync.run_full_sync, session_factory, erp, None, task_id)
    return {"status": "ok", "message": "Full ERP sweep started.", "task_id": task_id}

@router.post("/storefront")
def trigger_storefront_sync(
    background_tasks: BackgroundTasks,
    scope: str = Query(storefront_sync.SCOPE_NEW_PRODUCTS),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clients: SideEffectClients = Depends(get_clients),
) -> Dict[str, Any]:
    if scope not in storefront_sync.SCOPES:
        raise HTTPException(status_code=400, detail=f"Unknown scope: {scope}")
    if clients.shopify is None:
        raise HTTPException(status_code=503, detail="Storefront credentials are not configured.")
    task_id = sync_tracker.add_task(f"Storefront price + inventory sync ({scope})", kind="storefront")
    background_tasks.add_task(storefront_sync.run_storefront_sync_job, session_factory, scope, clients.shopify, task_id)
    return {"status": "ok", "message": "Storefront sync started.", "task_id": task_id}

@router.post("/storefront/recover")
def recover_storefront_sync(db: Session = Depends(get_db)) -> Dict[str, Any]:
    return {"recovered": storefront_sync.recover_stuck_syncs(db)}

@router.post("/hybrid-stock/recompute", dependencies=[Depends(require_admin)])
def recompute_hybrid_stock(db: Session = Depends(get_db)) -> Dict[str, Any]:
    return {"rows": hybrid_stock.recompute_all(db)}
