# services/customer_notify.py
"""
Customer SMS / email on split status changes.

Templates are looked up by (channel, event) in `notification_templates`
(active rows only) and fall back to the built-in defaults below. SMS bodies
are Jinja2 templates; email templates live at the provider and only their id
is stored here.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from jinja2 import Environment, StrictUndefined
from sqlalchemy.orm import Session

import models
from config import settings
from messaging_service import EmailService, SmsService
from utils import format_phone_number, ensure_aware
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

SMS = "sms"
EMAIL = "email"

_env = Environment(autoescape=False, undefined=StrictUndefined, keep_trailing_newline=False)

DEFAULT_TEMPLATES: Dict[Tuple[str, str], Dict[str, Optional[str]]] = {
    (SMS, "confirm"): {
        "template_id": "1707172603984328014",
        "body": "Dear {{ customer_name }},\nThank you for shopping with us. Your Order Number is {{ order_name }}. "
                "We are preparing your order for shipping and will update you once it is shipped.\n{{ brand }}.",
    },
    (SMS, "out_for_delivery"): {
        "template_id": "1707172604006764624",
        "body": "Dear {{ customer_name }},\nYour order {{ order_name }} is shipped and is on its way to reach you. "
                "We hope you receive it at the earliest.\n{{ brand }}.",
    },
    (SMS, "delivered"): {
        "template_id": "1707172604035592043",
        "body": "Dear {{ customer_name }},\nYour order ({{ order_name }}) is delivered. Please contact our customer "
                "care team on {{ support_phone }} if you need any help with your order.\n{{ brand }}.",
    },
    (SMS, "on_hold"): {
        "template_id": "1707173261404130453",
        "body": "Hey! Your order is on hold, but don't worry - we're on it and will reach out soon. In the meantime, "
                "feel free to call or WhatsApp us on {{ support_phone }}. {{ brand }}",
    },
    (SMS, "cancel"): {
        "template_id": "1707173261412555484",
        "body": "Hey, your order's been cancelled. We're sorry for the inconvenience. We'll process your refund, "
                "if any, soon. Feel free to reach us at {{ support_phone }}. {{ brand }}",
    },
    (EMAIL, "on_hold"): {"template_id": "THEP-0127316-HOLD", "body": None},
    (EMAIL, "delivered"): {"template_id": "THEP-0127316-DELIEVER", "body": None},
    (EMAIL, "cancel"): {"template_id": "THEP-0127316-CANCEL", "body": None},
}


def resolve_template(db: Session, channel: str, event: str) -> Optional[Dict[str, Optional[str]]]:
    row = db.query(models.NotificationTemplate).filter(
        models.NotificationTemplate.channel == channel,
        models.NotificationTemplate.event == event,
    ).first()
    if row is not None:
        if row.status != "active":
            return None
        return {"template_id": row.template_id, "body": row.body}
    return DEFAULT_TEMPLATES.get((channel, event))


def _customer_name(order: models.Order) -> str:
    address = order.shipping_address or {}
    name = " ".join(p for p in (address.get("first_name"), address.get("last_name")) if p)
    return name or address.get("name") or "Customer"


def render_sms(body: str, order: models.Order) -> str:
    return _env.from_string(body).render(
        customer_name=_customer_name(order),
        order_name=order.name or f"#{order.order_number}",
        brand=settings.brand_name,
        support_phone=settings.support_phone,
    )


def email_template_data(order: models.Order, split: Optional[models.OrderSplit] = None) -> Dict[str, Any]:
    address = order.shipping_address or {}
    lines = split.line_items if split is not None else [
        {"title": li.get("title"), "quantity": li.get("quantity"), "price": li.get("price")}
        for li in order.line_items or []
    ]
    total = sum((Decimal(str(li.get("price") or 0)) * int(li.get("quantity") or 0) for li in lines), Decimal("0"))
    shipping = Decimal(str(order.total_shipping or 0))
    discount = Decimal(str(order.total_discounts or 0))
    created = ensure_aware(order.created_at)
    return {
        "orderName": order.name or f"#{order.order_number}",
        "orderDate": created.strftime("%d %b %Y") if isinstance(created, datetime) else None,
        "totalPrice": f"{total:.2f}",
        "finalTotalPrice": f"{total + shipping - discount:.2f}",
        "shippingPrice": f"{shipping:.2f}",
        "discountPrice": f"{discount:.2f}",
        "itemsCount": sum(int(li.get("quantity") or 0) for li in lines),
        "currency": "₹" if (order.currency or "INR") == "INR" else "$",
        "customerName": _customer_name(order),
        "shippingAddress": " ".join(p for p in (address.get("address1"), address.get("address2")) if p),
        "shippingCity": address.get("city"),
        "shippingProvince": address.get("province"),
        "shippingZipcode": address.get("zip"),
        "shippingCountry": address.get("country"),
        "items": [
            {"productName": li.get("title"), "quantities": li.get("quantity"), "price": li.get("price")}
            for li in lines
        ],
    }


def send_sms(db: Session, sms: SmsService, order: models.Order, event: str) -> Optional[str]:
    template = resolve_template(db, SMS, event)
    if not template or not template.get("body"):
        logger.info("[NOTIFY] no SMS template for %s", event)
        return None
    phone = format_phone_number((order.shipping_address or {}).get("phone") or order.phone)
    if not phone:
        raise ExternalServiceError("sms", f"Invalid phone number on order {order.order_number}")
    return sms.send(phone, render_sms(template["body"], order))


def send_email(db: Session, email: EmailService, order: models.Order, event: str,
               split: Optional[models.OrderSplit] = None) -> Optional[Dict[str, Any]]:
    template = resolve_template(db, EMAIL, event)
    if not template or not template.get("template_id"):
        logger.info("[NOTIFY] no email template for %s", event)
        return None
    if not order.email:
        raise ExternalServiceError("email", f"Order {order.order_number} has no email address")
    return email.send_template([order.email], template["template_id"], email_template_data(order, split))
