# routes/sync_status.py

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import schemas
from auth import get_current_user
from database import get_db
from services import storefront_sync, sync_tracker

router = APIRouter(
    prefix="/api/sync-status",
    tags=["Sync Status"],
    responses={404: {"description": "Not found"}},
    dependencies=[Depends(get_current_user)],
)

@router.get("/storefront/latest", response_model=schemas.SyncStatus)
def latest_storefront_run(db: Session = Depends(get_db)):
    status = storefront_sync.latest_status(db)
    if status is None:
        raise HTTPException(status_code=404, detail="No storefront sync has run yet")
    return status

@router.post("/storefront/{status_id}/dismiss", response_model=schemas.SyncStatus)
def dismiss_storefront_run(status_id: int, db: Session = Depends(get_db)):
    status = storefront_sync.dismiss(db, status_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return status

@router.get("/tasks/{task_id}")
def get_status(task_id: str):
    """
    Pollable endpoint to get the status of a background sync task.
    """
    task = sync_tracker.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task
