# services/rider_dispatch.py
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

import models
from delivery_service import RiderService
from geocoding_service import GeocodingService
from utils import local_phone_number
from .errors import ExternalServiceError, StoreNotFoundError

logger = logging.getLogger(__name__)

# rider status code -> split status
TRACKING_STATUS = {
    "ALLOTTED": "ready_for_pickup",
    "REACHED_PICKUP": "ready_for_pickup",
    "DISPATCHED": "out_for_delivery",
    "ARRIVED_CUSTOMER_DOORSTEP": "out_for_delivery",
    "DELIVERED": "delivered",
}


def _store(db: Session, split: models.OrderSplit) -> models.Store:
    store = db.query(models.Store).filter(models.Store.erp_store_id == split.erp_store_id).first()
    if store is None:
        raise StoreNotFoundError(f"No store data found for outlet {split.erp_store_id}")
    return store


def _address_line(address: Dict[str, Any]) -> str:
    parts = [address.get(k) for k in ("address1", "address2", "city", "province", "country")]
    return ", ".join(p for p in parts if p)


def pickup_details(store: models.Store) -> Dict[str, Any]:
    return {
        "name": store.store_name,
        "contact_number": local_phone_number(store.contact_number),
        "latitude": float(store.lat) if store.lat is not None else None,
        "longitude": float(store.lng) if store.lng is not None else None,
        "address": store.address,
        "city": store.city,
    }


def drop_details(order: models.Order, geocoder: Optional[GeocodingService] = None) -> Dict[str, Any]:
    address = order.shipping_address or {}
    lat, lng = address.get("latitude"), address.get("longitude")
    if (lat is None or lng is None) and geocoder is not None:
        found = geocoder.try_lat_lng(_address_line(address))
        if found:
            lat, lng = found
    return {
        "name": address.get("name"),
        "contact_number": local_phone_number(address.get("phone") or order.phone),
        "latitude": lat,
        "longitude": lng,
        "address": _address_line(address),
        "city": address.get("city"),
    }


def _set_message(split: models.OrderSplit, status: str, msg: str):
    split.tpl_message = {"status": status, "msg": msg}


def create_task(db: Session, rider: RiderService, split: models.OrderSplit,
                geocoder: Optional[GeocodingService] = None, check_serviceability: bool = True) -> Dict[str, Any]:
    """
    Check serviceability, then create the rider task. Whatever happens the
    outcome is written to the split's tplMessage; failures are re-raised after.
    """
    order = db.query(models.Order).filter(models.Order.id == split.order_reference_id).first()
    try:
        store = _store(db, split)
        pickup = pickup_details(store)
        drop = drop_details(order, geocoder)

        if check_serviceability:
            ability = rider.get_serviceability(
                {"lat": pickup["latitude"], "lng": pickup["longitude"]},
                {"lat": drop["latitude"], "lng": drop["longitude"]},
            )
            payouts = ability.get("payouts") or {}
            if payouts.get("total") is not None:
                _set_message(split, "info", "Order is available")

        paid = (order.financial_status or "").lower() == "paid"
        result = rider.create_task(
            order_details={
                "order_total": float(order.total_price or 0),
                "paid": "true" if paid else "false",
                "vendor_order_id": split.split_id,
                "order_source": "shopify",
                "customer_orderId": str(order.order_number),
            },
            pickup_details=pickup,
            drop_details=drop,
            order_items=[
                {"id": str(i.get("variantId") or i["id"]), "name": i.get("title"),
                 "quantity": int(i["quantity"]), "price": float(i.get("price") or 0)}
                for i in split.line_items or []
            ],
        )
    except (ExternalServiceError, StoreNotFoundError) as e:
        db.rollback()
        _set_message(split, "error", str(e))
        split.tpl_status = False
        db.commit()
        logger.error("[RIDER] task for %s failed: %s", split.split_id, e)
        raise

    split.tpl_status = bool(result.get("status"))
    split.tpl_task_id = str(result.get("taskId")) if result.get("taskId") is not None else None
    split.tpl_status_code = result.get("Status_code")
    _set_message(split, "info", result.get("message") or "Task created")
    db.commit()
    logger.info("[RIDER] task %s created for %s", split.tpl_task_id, split.split_id)
    return result


def cancel_task(db: Session, rider: RiderService, split: models.OrderSplit) -> Optional[Dict[str, Any]]:
    if not split.tpl_task_id:
        return None
    try:
        result = rider.cancel_task(split.tpl_task_id)
    except ExternalServiceError as e:
        db.rollback()
        _set_message(split, "error", str(e))
        db.commit()
        raise
    split.tpl_status_code = result.get("status_code") or "CANCELLED"
    _set_message(split, "info", result.get("msg") or "Task cancelled")
    db.commit()
    return result


def tracking_target(status_code: Optional[str]) -> Optional[str]:
    return TRACKING_STATUS.get((status_code or "").upper())
