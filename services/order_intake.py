# services/order_intake.py
"""Storefront order webhooks -> order mirror -> splits."""
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from crud import order as crud_order
from . import notification_log, order_split, split_lifecycle
from .errors import RetailOpsError

logger = logging.getLogger(__name__)

ORDER_TOPICS = ("orders/create", "orders/paid", "orders/updated", "orders/cancelled")

# Manual store selection at checkout is carried as this note attribute (an erpStoreId).
STORE_OVERRIDE_ATTRIBUTE = "orderType"


def _store_override(payload: Dict[str, Any]) -> Optional[int]:
    for pair in payload.get("note_attributes") or []:
        if pair.get("name") == STORE_OVERRIDE_ATTRIBUTE and str(pair.get("value") or "").isdigit():
            return int(pair["value"])
    return None


def handle_order_event(db: Session, topic: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if topic not in ORDER_TOPICS:
        raise ValueError(f"Unhandled order topic: {topic}")
    order = crud_order.upsert_order_from_webhook(db, payload)
    result: Dict[str, Any] = {"orderId": order.id, "topic": topic}

    if topic == "orders/create":
        splits = order_split.split_order(db, order, store_override=_store_override(payload))
        result["splits"] = [s.split_id for s in splits]
    elif topic == "orders/paid":
        resumed = split_lifecycle.resume_paid_order(db, order.id)
        result["resumed"] = [s.split_id for s in resumed]
    return result


def handle_order_webhook(session_factory: Callable[[], Session], topic: str, payload: Dict[str, Any]):
    """Background entry point; failures end up in the notification log."""
    db: Session = session_factory()
    try:
        result = handle_order_event(db, topic, payload)
        logger.info("[ORDER-WEBHOOK] %s", result)
        return result
    except (RetailOpsError, ValueError, KeyError) as e:
        logger.exception("[ORDER-WEBHOOK] %s for order %s failed", topic, payload.get("id"))
        notification_log.record_failure(db, f"Order webhook {topic} failed for #{payload.get('order_number')}", e)
        return None
    finally:
        db.close()
