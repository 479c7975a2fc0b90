# services/erp_order_push.py
"""Sales order push to the POS/ERP for one split."""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

import models
from erp_service import ErpService
from utils import format_phone_number
from . import tax
from .errors import OrderNotFoundError

logger = logging.getLogger(__name__)

PAYMENT_MODES = {
    "PhonePe PG": "The Pet Project - Website",
    "manual": "Manual",
}

CHANNEL = "E-Commerce API"
CENT = Decimal("0.01")


def payment_mode(gateway: Optional[str]) -> Optional[str]:
    if not gateway:
        return None
    return PAYMENT_MODES.get(gateway, gateway)


def _d(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value))


def _money(value: Decimal) -> float:
    return float(Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def _order_subtotal(order: models.Order) -> Decimal:
    return sum((_d(li.get("price")) * int(li.get("quantity") or 0) for li in order.line_items or []), Decimal("0"))


def _variant_infos(db: Session, line_items: List[Dict[str, Any]]) -> Dict[int, models.ProductVariantInfo]:
    variant_ids = [int(i["variantId"]) for i in line_items if i.get("variantId") is not None]
    if not variant_ids:
        return {}
    rows = db.query(models.ProductVariantInfo).filter(models.ProductVariantInfo.variant_id.in_(variant_ids)).all()
    return {int(r.variant_id): r for r in rows}


def _order_line(order: models.Order, line_id: Any) -> Dict[str, Any]:
    for li in order.line_items or []:
        if str(li["id"]) == str(line_id):
            return li
    return {}


def line_tax_rate(line: Dict[str, Any], info: Optional[models.ProductVariantInfo]) -> Optional[Decimal]:
    category = line.get("taxCategory") or (info.tax_category if info else None)
    tags = line.get("tags") or (info.tags if info else None)
    return tax.rate_for(category, tags)


def build_sales_order(db: Session, order: models.Order, split: models.OrderSplit,
                      erp: Optional[ErpService] = None, status: str = "pending") -> Dict[str, Any]:
    """
    Totals are computed over the split's own line items. The order discount is
    spread pro rata by subtotal, and shipping is carried by the first split of
    the order only.
    """
    items = split.line_items or []
    infos = _variant_infos(db, items)
    first_split = (
        db.query(models.OrderSplit)
        .filter(models.OrderSplit.order_reference_id == order.id)
        .order_by(models.OrderSplit.id.asc())
        .first()
    )
    carries_shipping = first_split is not None and first_split.id == split.id

    order_items = []
    subtotal = Decimal("0")
    total_tax = Decimal("0")
    total_qty = 0
    for row_no, item in enumerate(items, start=1):
        line = _order_line(order, item["id"])
        price = _d(item.get("price") if item.get("price") is not None else line.get("price"))
        qty = int(item.get("quantity") or 0)
        amount = price * qty
        info = infos.get(int(item["variantId"])) if item.get("variantId") is not None else None
        rate = line_tax_rate(line, info)
        total_tax += tax.inclusive_tax(amount, rate)
        subtotal += amount
        total_qty += qty

        item_id = int(info.item_id) if info is not None and info.item_id and str(info.item_id).isdigit() else None
        if item_id is None and erp is not None and item.get("itemReferenceCode"):
            item_id = erp.find_item_id(item["itemReferenceCode"])

        order_items.append({
            "rowNo": row_no,
            "itemId": item_id,
            "itemReferenceCode": item.get("itemReferenceCode"),
            "salePrice": _money(price),
            "quantity": qty,
            "itemAmount": _money(amount),
            "taxPercentage": float(rate) if rate is not None else None,
            "itemMarketPrice": _money(amount),
        })

    order_subtotal = _order_subtotal(order)
    discount = Decimal("0")
    if order_subtotal > 0:
        discount = _d(order.total_discounts) * subtotal / order_subtotal
    shipping = _d(order.total_shipping) if carries_shipping else Decimal("0")
    if shipping:
        total_tax += tax.inclusive_tax(shipping, tax.TAX_CATEGORY_RATES[tax.SHIPPING_TAX_CATEGORY])
    discount_pct = (discount / subtotal * 100) if subtotal > 0 else Decimal("0")

    address = order.shipping_address or {}
    phone = format_phone_number(address.get("phone") or order.phone)
    return {
        "salesOrder": {
            "outletId": int(split.erp_store_id),
            "status": status,
            "orderDiscPerc": _money(discount_pct),
            "orderDiscAmt": _money(discount),
            "vendorDiscount": _money(discount),
            "totalQuantity": total_qty,
            "onlineReferenceNo": str(order.id),
            "paymentMode": payment_mode(order.gateway),
            "totalAmount": _money(subtotal + shipping),
            "totalTaxAmount": _money(total_tax),
            "totalDiscountAmount": _money(discount),
            "shippingId": str(order.id),
            "shippingName": address.get("name"),
            "shippingAddress1": address.get("address1"),
            "shippingAddress2": address.get("address2"),
            "shippingState": address.get("province"),
            "shippingCountry": address.get("country"),
            "shippingPincode": address.get("zip"),
            "shippingMobile": address.get("phone"),
            "shippingCharge": _money(shipping),
            "packingCharge": "0.0",
            "shipmentItems": len(items),
            "customerName": address.get("name"),
            "customerAddressLine1": address.get("address1"),
            "customerAddressLine2": address.get("address2"),
            "customerArea": address.get("city"),
            "customerState": address.get("province"),
            "customerCountry": address.get("country"),
            "customerPincode": address.get("zip"),
            "customerMobile": phone,
            "customerPhone": phone,
            "customerEmail": order.email,
            "channel": CHANNEL,
            "orderItems": order_items,
        }
    }


def push_split(db: Session, erp: ErpService, split: models.OrderSplit, status: str = "pending") -> Dict[str, Any]:
    order = db.query(models.Order).filter(models.Order.id == split.order_reference_id).first()
    if order is None:
        raise OrderNotFoundError(f"Order {split.order_reference_id} not found")
    body = build_sales_order(db, order, split, erp=erp, status=status)
    response = erp.push_sales_order(body)
    split.erp_order_push = True
    db.commit()
    logger.info("[ERP-PUSH] %s pushed to outlet %s as %s", split.split_id, split.erp_store_id, status)
    return response
