# routes/notifications.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

import models
import schemas
from auth import get_current_user, require_admin
from database import get_db
from services import notification_log

router = APIRouter(prefix="/api/notifications", tags=["Notifications"], dependencies=[Depends(get_current_user)])


@router.get("/", response_model=List[schemas.Notification])
def list_notifications(
    unread_only: bool = Query(False),
    log_type: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return notification_log.list_notifications(db, unread_only=unread_only, log_type=log_type, skip=skip, limit=limit)


@router.get("/unread-count")
def unread_count(db: Session = Depends(get_db)):
    return {"unread": notification_log.unread_count(db)}


@router.post("/mark-read")
def mark_read(body: schemas.MarkReadRequest, db: Session = Depends(get_db)):
    return {"updated": notification_log.mark_read(db, body.ids)}


@router.get("/templates", response_model=List[schemas.NotificationTemplate])
def list_templates(db: Session = Depends(get_db)):
    return db.query(models.NotificationTemplate).order_by(models.NotificationTemplate.id.asc()).all()


@router.put("/templates", response_model=schemas.NotificationTemplate, dependencies=[Depends(require_admin)])
def upsert_template(body: schemas.NotificationTemplateIn, db: Session = Depends(get_db)):
    row = db.query(models.NotificationTemplate).filter_by(channel=body.channel, event=body.event).first()
    if row is None:
        row = models.NotificationTemplate(channel=body.channel, event=body.event)
        db.add(row)
    row.status = body.status
    row.template_id = body.template_id
    row.body = body.body
    db.commit()
    db.refresh(row)
    return row
