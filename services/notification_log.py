# services/notification_log.py
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)

INFO = "info"
ERROR = "error"


def create_notification(db: Session, title: str, markdown: str, log_type: str = INFO,
                        commit: bool = True) -> models.NotificationLog:
    """Append an entry to the notification log shown in the UI."""
    if log_type not in (INFO, ERROR):
        raise ValueError(f"Unknown log type: {log_type}")
    entry = models.NotificationLog(
        notification_info=title,
        notification_details={"markdown": markdown},
        log_type=log_type,
        notification_view_status=False,
    )
    db.add(entry)
    if commit:
        db.commit()
    else:
        db.flush()
    log = logger.error if log_type == ERROR else logger.info
    log("[NOTIFY] %s: %s", title, markdown)
    return entry


def record_failure(db: Session, title: str, error: Exception) -> Optional[models.NotificationLog]:
    """Best effort error entry after a failed operation; the session may need a rollback first."""
    db.rollback()
    return create_notification(db, title, f"**Error:** {error}", ERROR)


def list_notifications(db: Session, unread_only: bool = False, log_type: Optional[str] = None,
                       skip: int = 0, limit: int = 50) -> List[models.NotificationLog]:
    q = db.query(models.NotificationLog)
    if unread_only:
        q = q.filter(models.NotificationLog.notification_view_status == False)  # noqa: E712
    if log_type:
        q = q.filter(models.NotificationLog.log_type == log_type)
    return q.order_by(models.NotificationLog.id.desc()).offset(skip).limit(limit).all()


def unread_count(db: Session) -> int:
    return db.query(models.NotificationLog).filter(
        models.NotificationLog.notification_view_status == False  # noqa: E712
    ).count()


def mark_read(db: Session, ids: Optional[List[int]] = None) -> int:
    """Marks the given entries (or every unread entry) as viewed."""
    q = db.query(models.NotificationLog).filter(models.NotificationLog.notification_view_status == False)  # noqa: E712
    if ids:
        q = q.filter(models.NotificationLog.id.in_(ids))
    count = q.update({"notification_view_status": True}, synchronize_session=False)
    db.commit()
    return count
