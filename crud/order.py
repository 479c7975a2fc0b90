# crud/order.py

from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone

import models


# ---------------- helpers (dict/attr-safe) ----------------

def _get(obj: Any, key: str, default=None):
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _parse_dt(val) -> Optional[datetime]:
    """
    Parse ISO/Shopify timestamps and return TZ-aware UTC datetimes.
    """
    if not val:
        return None
    if isinstance(val, datetime):
        return val.astimezone(timezone.utc) if val.tzinfo else val.replace(tzinfo=timezone.utc)
    s = str(val).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    if " " in s and "T" not in s:
        s = s.replace(" ", "T")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _line_item(li: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": int(_get(li, "id")),
        "sku": _get(li, "sku"),
        "quantity": int(_get(li, "quantity") or 0),
        "productId": _get(li, "product_id"),
        "variantId": _get(li, "variant_id"),
        "title": _get(li, "title"),
        "variantTitle": _get(li, "variant_title"),
        "price": _get(li, "price"),
        "properties": _get(li, "properties") or [],
    }


def _shipping_total(payload: Dict[str, Any]) -> Any:
    money = ((_get(payload, "total_shipping_price_set") or {}).get("shop_money") or {})
    if money.get("amount") is not None:
        return money["amount"]
    return sum(float(_get(l, "price") or 0) for l in _get(payload, "shipping_lines") or [])


# ---------------- order mirror ----------------

def upsert_order_from_webhook(db: Session, payload: Dict[str, Any]) -> models.Order:
    """
    Mirror a storefront order (REST webhook shape). The mirror is read-only
    for fulfillment purposes; splits carry the fulfillment state.
    """
    order_id = int(payload["id"])
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if order is None:
        order = models.Order(id=order_id)
        db.add(order)

    order.order_number = _get(payload, "order_number")
    order.name = _get(payload, "name")
    order.email = _get(payload, "email") or _get(payload, "contact_email")
    order.phone = _get(payload, "phone")
    order.financial_status = _get(payload, "financial_status")
    gateways = _get(payload, "payment_gateway_names") or []
    order.gateway = _get(payload, "gateway") or (gateways[0] if gateways else None)
    order.currency = _get(payload, "currency")
    order.line_items = [_line_item(li) for li in _get(payload, "line_items") or []]
    order.shipping_address = _get(payload, "shipping_address")
    order.billing_address = _get(payload, "billing_address")
    order.note_attributes = _get(payload, "note_attributes") or []
    order.total_shipping = _shipping_total(payload)
    order.total_discounts = _get(payload, "total_discounts") or 0
    order.total_price = _get(payload, "total_price") or 0
    order.taxes_included = bool(_get(payload, "taxes_included", True))
    order.tags = _get(payload, "tags")
    order.created_at = _parse_dt(_get(payload, "created_at"))
    order.processed_at = _parse_dt(_get(payload, "processed_at"))
    order.cancelled_at = _parse_dt(_get(payload, "cancelled_at"))
    db.commit()
    db.refresh(order)
    return order


def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def list_orders(db: Session, skip: int = 0, limit: int = 50) -> List[models.Order]:
    return db.query(models.Order).order_by(models.Order.id.desc()).offset(skip).limit(limit).all()


def list_splits(db: Session, status: Optional[str] = None, store_code: Optional[str] = None,
                skip: int = 0, limit: int = 50) -> List[models.OrderSplit]:
    q = db.query(models.OrderSplit)
    if status:
        q = q.filter(models.OrderSplit.order_status == status)
    if store_code:
        q = q.filter(models.OrderSplit.store_code == store_code)
    return q.order_by(models.OrderSplit.id.desc()).offset(skip).limit(limit).all()
