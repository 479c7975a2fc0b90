# services/split_lifecycle.py
"""
Split lifecycle controller.

Each operation validates the move against the transition table, writes the new
status and its timestamp, commits, and only then runs the outbound side
effects (ERP push, rider dispatch, storefront fulfillment/cancel, customer
SMS/email). A failing side effect is logged and written to the notification
log; the committed transition stays.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from jinja2 import TemplateError
from sqlalchemy.orm import Session

import models
from config import settings
from utils import now_ms, utcnow
from . import customer_notify, erp_order_push, notification_log, rider_dispatch
from .clients import SideEffectClients
from .errors import RetailOpsError, SplitNotFoundError
from .order_split import get_split, splits_for_order
from .split_status import (OnHoldStatus, OrderStatus, STATUS_LABELS, can_transition, check_on_hold_transition,
                           check_transition, parse_status)

logger = logging.getLogger(__name__)

ERP_STATUS_PENDING = "pending"
ERP_STATUS_CANCELLED = "cancelled"


@dataclass
class TransitionResult:
    split: models.OrderSplit
    failed_effects: List[str] = field(default_factory=list)


# --------------------------------------------------------------------------
# Core
# --------------------------------------------------------------------------

def _apply(db: Session, split: models.OrderSplit, target: OrderStatus, admin: bool = False,
           comment: Optional[str] = None, on_hold_status: Optional[str] = None) -> models.OrderSplit:
    previous = split.order_status
    target = check_transition(previous, target, admin)

    if target is OrderStatus.ON_HOLD:
        if not admin and not (comment and comment.strip()):
            raise ValueError("An on-hold comment is required")
        split.on_hold_status = check_on_hold_transition(None, on_hold_status or OnHoldStatus.OPEN).value
        if comment:
            split.on_hold_comment = comment.strip()
    elif split.on_hold_status is not None:
        split.on_hold_status = OnHoldStatus.CLOSED.value

    split.order_status = target.value
    split.time_stamp = {**(split.time_stamp or {}), target.value: now_ms()}
    if target is OrderStatus.CANCEL:
        split.cancelled_at = utcnow()
    if target is OrderStatus.DELIVERED:
        split.closed_at = utcnow()
    db.commit()
    db.refresh(split)
    logger.info("[LIFECYCLE] %s %s -> %s%s", split.split_id, previous, target.value, " (admin)" if admin else "")
    return split


def _run_effects(db: Session, split: models.OrderSplit, effects: List[tuple]) -> List[str]:
    failed = []
    split_id = split.split_id
    for name, fn in effects:
        try:
            fn()
        except (RetailOpsError, ValueError, TemplateError) as e:
            logger.error("[LIFECYCLE] %s for %s failed: %s", name, split_id, e)
            notification_log.record_failure(db, f"{name} failed for {split_id}", e)
            failed.append(name)
    return failed


def _order(db: Session, split: models.OrderSplit) -> models.Order:
    return db.query(models.Order).filter(models.Order.id == split.order_reference_id).one()


def _store(db: Session, split: models.OrderSplit) -> Optional[models.Store]:
    return db.query(models.Store).filter(models.Store.erp_store_id == split.erp_store_id).first()


def _notify(db: Session, split: models.OrderSplit, clients: SideEffectClients, event: str,
            email: bool = False) -> List[tuple]:
    effects = []
    if clients.sms is not None:
        effects.append((f"SMS {event}", lambda: customer_notify.send_sms(db, clients.sms, _order(db, split), event)))
    if email and clients.email is not None:
        effects.append((f"Email {event}", lambda: customer_notify.send_email(
            db, clients.email, _order(db, split), event, split)))
    return effects


def _rider_effect(db: Session, split: models.OrderSplit, clients: SideEffectClients) -> List[tuple]:
    rider = clients.rider(_store(db, split))
    if rider is None:
        return []
    return [("Rider task", lambda: rider_dispatch.create_task(db, rider, split, clients.geocoder))]


def _erp_effect(db: Session, split: models.OrderSplit, clients: SideEffectClients, status: str) -> List[tuple]:
    if clients.erp is None:
        return []
    return [("ERP sales order push", lambda: erp_order_push.push_split(db, clients.erp, split, status))]


# --------------------------------------------------------------------------
# Transitions
# --------------------------------------------------------------------------

def confirm(db: Session, split_pk: int, clients: SideEffectClients) -> TransitionResult:
    split = _apply(db, get_split(db, split_pk), OrderStatus.CONFIRM)
    effects = _erp_effect(db, split, clients, ERP_STATUS_PENDING) + _notify(db, split, clients, "confirm")
    return TransitionResult(split, _run_effects(db, split, effects))


def ready_for_pickup(db: Session, split_pk: int, clients: SideEffectClients) -> TransitionResult:
    split = _apply(db, get_split(db, split_pk), OrderStatus.READY_FOR_PICKUP)
    effects = [] if split.tpl_task_id else _rider_effect(db, split, clients)
    return TransitionResult(split, _run_effects(db, split, effects))


def out_for_delivery(db: Session, split_pk: int, clients: SideEffectClients) -> TransitionResult:
    split = _apply(db, get_split(db, split_pk), OrderStatus.OUT_FOR_DELIVERY)
    effects = [] if split.tpl_task_id else _rider_effect(db, split, clients)
    effects += _notify(db, split, clients, "out_for_delivery")
    return TransitionResult(split, _run_effects(db, split, effects))


def delivered(db: Session, split_pk: int, clients: SideEffectClients) -> TransitionResult:
    split = _apply(db, get_split(db, split_pk), OrderStatus.DELIVERED)
    effects = []
    if clients.shopify is not None:
        line_ids = [i["id"] for i in split.line_items or []]
        effects.append(("Storefront fulfillment", lambda: clients.shopify.create_fulfillment(
            split.order_reference_id, line_ids)))
    effects += _notify(db, split, clients, "delivered", email=True)
    return TransitionResult(split, _run_effects(db, split, effects))


def on_hold(db: Session, split_pk: int, clients: SideEffectClients, comment: str,
            on_hold_status: str = OnHoldStatus.OPEN.value) -> TransitionResult:
    split = _apply(db, get_split(db, split_pk), OrderStatus.ON_HOLD, comment=comment, on_hold_status=on_hold_status)
    return TransitionResult(split, _run_effects(db, split, _notify(db, split, clients, "on_hold", email=True)))


def update_on_hold_status(db: Session, split_pk: int, on_hold_status: str,
                          comment: Optional[str] = None) -> models.OrderSplit:
    """Support-queue triage of a held split; the main status is untouched."""
    split = get_split(db, split_pk)
    if split.order_status != OrderStatus.ON_HOLD.value:
        raise ValueError(f"Split {split.split_id} is not on hold")
    split.on_hold_status = check_on_hold_transition(split.on_hold_status, on_hold_status).value
    if comment:
        split.on_hold_comment = comment.strip()
    db.commit()
    db.refresh(split)
    return split


def _all_cancelled(db: Session, order_id: int) -> bool:
    return all(s.order_status == OrderStatus.CANCEL.value for s in splits_for_order(db, order_id))


def cancel(db: Session, split_pk: int, clients: SideEffectClients) -> TransitionResult:
    split = _apply(db, get_split(db, split_pk), OrderStatus.CANCEL)
    effects = []
    if clients.shopify is not None and _all_cancelled(db, split.order_reference_id):
        effects.append(("Storefront order cancel", lambda: clients.shopify.cancel_order(split.order_reference_id)))
    if split.tpl_task_id:
        rider = clients.rider(_store(db, split))
        if rider is not None:
            effects.append(("Rider task cancel", lambda: rider_dispatch.cancel_task(db, rider, split)))
    effects += _erp_effect(db, split, clients, ERP_STATUS_CANCELLED)
    effects += _notify(db, split, clients, "cancel", email=True)
    return TransitionResult(split, _run_effects(db, split, effects))


TRANSITION_OPERATIONS: Dict[OrderStatus, Callable[..., TransitionResult]] = {
    OrderStatus.CONFIRM: confirm,
    OrderStatus.READY_FOR_PICKUP: ready_for_pickup,
    OrderStatus.OUT_FOR_DELIVERY: out_for_delivery,
    OrderStatus.DELIVERED: delivered,
    OrderStatus.CANCEL: cancel,
}


def admin_set_status(db: Session, split_pk: int, target: str, comment: Optional[str] = None) -> models.OrderSplit:
    """
    Admin correction: any status to any other, including out of `cancel`.
    No outbound side effects run on this path.
    """
    split = get_split(db, split_pk)
    split = _apply(db, split, parse_status(target), admin=True, comment=comment)
    notification_log.create_notification(
        db, "Split Status Overridden", f"`{split.split_id}` set to **{split.order_status}** by an admin."
    )
    return split


# --------------------------------------------------------------------------
# Webhook driven
# --------------------------------------------------------------------------

def resume_paid_order(db: Session, order_id: int) -> List[models.OrderSplit]:
    """Payment arrived for an order: held splits go back to `new`."""
    resumed = []
    for split in splits_for_order(db, order_id):
        if split.order_status == OrderStatus.ON_HOLD.value:
            resumed.append(_apply(db, split, OrderStatus.NEW))
    if resumed:
        notification_log.create_notification(
            db, "Held Order Resumed",
            "Payment received; " + ", ".join(f"`{s.split_id}`" for s in resumed) + " moved back to new.",
        )
    return resumed


def _find_tracked_split(db: Session, task_id: Any, order_ref: Any) -> models.OrderSplit:
    q = db.query(models.OrderSplit)
    split = None
    if task_id not in (None, ""):
        split = q.filter(models.OrderSplit.tpl_task_id == str(task_id)).first()
    if split is None and order_ref not in (None, ""):
        split = q.filter(models.OrderSplit.split_id == str(order_ref)).first()
        if split is None and str(order_ref).isdigit():
            split = q.filter(models.OrderSplit.order_number == int(order_ref)).order_by(models.OrderSplit.id).first()
    if split is None:
        raise SplitNotFoundError(f"No split for rider task {task_id} / order {order_ref}")
    return split


def apply_rider_update(db: Session, payload: Dict[str, Any], clients: SideEffectClients) -> TransitionResult:
    """
    Rider tracking callback:
        {"status": bool, "status_code": "DISPATCHED", "message": "...",
         "data": {"taskId": ..., "orderId": ..., "rider_name": ..., "rider_contact": ...}}

    Rider metadata is always stored; the status moves only when the mapped
    target is a legal next step from where the split is.
    """
    data = payload.get("data") or {}
    split = _find_tracked_split(db, data.get("taskId"), data.get("orderId"))
    status_code = payload.get("status_code")

    split.tpl_status = bool(payload.get("status"))
    split.tpl_status_code = status_code
    split.tpl_message = {"status": "info", "msg": payload.get("message") or ""}
    if data.get("rider_name"):
        split.rider_name = data["rider_name"]
    if data.get("rider_contact"):
        split.rider_contact = str(data["rider_contact"])
    if data.get("taskId") and not split.tpl_task_id:
        split.tpl_task_id = str(data["taskId"])
    db.commit()

    target = rider_dispatch.tracking_target(status_code)
    if target is None or target == split.order_status or not can_transition(split.order_status, target):
        if target is not None and target != split.order_status:
            logger.warning("[RIDER] %s: ignoring %s while %s", split.split_id, status_code, split.order_status)
        return TransitionResult(split)
    return TRANSITION_OPERATIONS[OrderStatus(target)](db, split.id, clients)


# --------------------------------------------------------------------------
# Timeline
# --------------------------------------------------------------------------

def _day_label(day, today) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return day.strftime("%b %d")


def timeline(split: models.OrderSplit, now: Optional[datetime] = None,
             tz: Optional[str] = None) -> List[Dict[str, Any]]:
    """timeStamp entries newest first, grouped under Today / Yesterday / "Mon DD"."""
    zone = ZoneInfo(tz or settings.scheduler_timezone)
    today = (now or utcnow()).astimezone(zone).date()

    entries = []
    for status, ms in (split.time_stamp or {}).items():
        at = datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc).astimezone(zone)
        try:
            label = STATUS_LABELS[OrderStatus(status)]
        except ValueError:
            label = status
        entries.append({"status": status, "label": label, "at": at})
    entries.sort(key=lambda e: e["at"], reverse=True)

    groups: List[Dict[str, Any]] = []
    for entry in entries:
        day = _day_label(entry["at"].date(), today)
        if not groups or groups[-1]["day"] != day:
            groups.append({"day": day, "entries": []})
        groups[-1]["entries"].append({**entry, "at": entry["at"].isoformat()})
    return groups
