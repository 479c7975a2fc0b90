# services/order_split.py
"""
Order split engine: partitions an order's line items across fulfilling stores
and handles manual reassignment, either per item or wholesale to the backup
warehouse.

Invariant kept by every write in this module: for each SKU, the quantities
across all splits of an order never exceed the order's quantity for it.
"""
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

import models
from config import settings
from utils import now_ms
from . import notification_log
from .errors import (BackupWarehouseError, DataIntegrityError, LineItemNotFoundError, NoInventoryError,
                     OrderNotFoundError, ReassignmentError, SplitNotFoundError, StoreNotFoundError)
from .split_status import OrderStatus

logger = logging.getLogger(__name__)

METHOD_PRIMARY = "primary"
METHOD_PRIMARY_WITH_BACKUP = "primary_with_backup"
SPLIT_METHODS = (METHOD_PRIMARY, METHOD_PRIMARY_WITH_BACKUP)

OUTLET_ATTRIBUTE = "_outletId"

REASSIGNABLE = (OrderStatus.NEW.value, OrderStatus.CONFIRM.value, OrderStatus.ON_HOLD.value)


def split_id_for(order_number: Any, store_code: str) -> str:
    return f"{order_number}-{store_code}"


def get_split(db: Session, split_pk: int) -> models.OrderSplit:
    split = db.query(models.OrderSplit).filter(models.OrderSplit.id == split_pk).first()
    if split is None:
        raise SplitNotFoundError()
    return split


def splits_for_order(db: Session, order_id: int) -> List[models.OrderSplit]:
    return (
        db.query(models.OrderSplit)
        .filter(models.OrderSplit.order_reference_id == order_id)
        .order_by(models.OrderSplit.id.asc())
        .all()
    )


def _split_at_store(db: Session, order_id: int, store_code: str) -> Optional[models.OrderSplit]:
    return db.query(models.OrderSplit).filter(
        models.OrderSplit.order_reference_id == order_id,
        models.OrderSplit.store_code == store_code,
    ).first()


def _store_by_outlet(db: Session, outlet_id: Any) -> Optional[models.Store]:
    try:
        outlet = int(outlet_id)
    except (TypeError, ValueError):
        return None
    return db.query(models.Store).filter(
        models.Store.erp_store_id == outlet, models.Store.status == "Active"
    ).first()


def _attribute(pairs: Optional[List[Dict[str, Any]]], name: str) -> Optional[str]:
    for pair in pairs or []:
        if pair.get("name") == name and pair.get("value") not in (None, ""):
            return pair["value"]
    return None


def resolve_designated_store(db: Session, order: models.Order, store_override: Optional[int] = None) -> models.Store:
    """Explicit selection first, then the order's `_outletId` note, then the line item property."""
    candidates = [store_override, _attribute(order.note_attributes, OUTLET_ATTRIBUTE)]
    candidates += [_attribute(li.get("properties"), OUTLET_ATTRIBUTE) for li in order.line_items or []]
    for outlet in candidates:
        if outlet is None:
            continue
        store = _store_by_outlet(db, outlet)
        if store is not None:
            return store
        if outlet == store_override:
            raise StoreNotFoundError(f"No active store for ERP outlet {outlet}")
    raise StoreNotFoundError(f"Order {order.id} has no designated store")


def _split_line(li: Dict[str, Any], quantity: int, store: models.Store) -> Dict[str, Any]:
    return {
        "id": li["id"],
        "quantity": int(quantity),
        "itemReferenceCode": li.get("sku"),
        "outletId": int(store.erp_store_id),
        "productId": li.get("productId"),
        "variantId": li.get("variantId"),
        "title": li.get("title"),
        "price": li.get("price"),
    }


def _new_split(order: models.Order, store: models.Store, line_items: List[Dict[str, Any]],
               re_assigned: bool = False, previous_store_id: Optional[int] = None) -> models.OrderSplit:
    return models.OrderSplit(
        order_reference_id=order.id,
        order_number=order.order_number,
        split_id=split_id_for(order.order_number, store.store_code),
        store_code=store.store_code,
        store_name=store.store_name,
        erp_store_id=store.erp_store_id,
        erp_previous_store_id=previous_store_id,
        line_items=line_items,
        order_status=OrderStatus.NEW.value,
        re_assign_status=re_assigned,
        time_stamp={OrderStatus.NEW.value: now_ms()},
        tpl_message={"status": "", "msg": ""},
    )


def _primary_stock(db: Session, sku: Optional[str], outlet_id: int) -> int:
    row = db.query(models.HybridStock).filter(
        models.HybridStock.sku == sku, models.HybridStock.outlet_id == outlet_id
    ).first()
    return max(row.primary_stock, 0) if row else 0


def split_order(db: Session, order: models.Order, method: Optional[str] = None,
                store_override: Optional[int] = None) -> List[models.OrderSplit]:
    """
    Create the order's splits. Re-running on an order that already has splits
    returns them unchanged.
    """
    existing = splits_for_order(db, order.id)
    if existing:
        logger.info("[SPLIT] order %s already split into %s; nothing to do", order.order_number, len(existing))
        return existing

    method = method or settings.order_split_method
    if method not in SPLIT_METHODS:
        raise ValueError(f"Unknown split method: {method}")

    primary = resolve_designated_store(db, order, store_override)
    allocations: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
    stores: Dict[int, models.Store] = {int(primary.erp_store_id): primary}

    backup = None
    if method == METHOD_PRIMARY_WITH_BACKUP and store_override is None and primary.select_backup_warehouse:
        backup = _store_by_outlet(db, primary.select_backup_warehouse)
        if backup is None:
            logger.warning("[SPLIT] backup warehouse %s of %s is not active; using primary only",
                           primary.select_backup_warehouse, primary.store_code)

    for li in order.line_items or []:
        qty = int(li.get("quantity") or 0)
        if qty <= 0:
            continue
        if backup is None:
            allocations[int(primary.erp_store_id)].append(_split_line(li, qty, primary))
            continue
        available = _primary_stock(db, li.get("sku"), int(primary.erp_store_id))
        if available >= qty:
            allocations[int(primary.erp_store_id)].append(_split_line(li, qty, primary))
            continue
        if available > 0:
            allocations[int(primary.erp_store_id)].append(_split_line(li, available, primary))
        stores[int(backup.erp_store_id)] = backup
        allocations[int(backup.erp_store_id)].append(_split_line(li, qty - available, backup))

    if not allocations:
        raise LineItemNotFoundError(f"Order {order.id} has no line items to split")

    created = []
    for outlet, items in allocations.items():
        split = _new_split(order, stores[outlet], items)
        db.add(split)
        created.append(split)
    db.flush()
    assert_partition(db, order)
    db.commit()

    notification_log.create_notification(
        db, "Order Split Created",
        f"Order **#{order.order_number}** split into " + ", ".join(f"`{s.split_id}`" for s in created) + ".",
    )
    logger.info("[SPLIT] order %s -> %s", order.order_number, [s.split_id for s in created])
    return created


# --------------------------------------------------------------------------
# Partition invariant
# --------------------------------------------------------------------------

def ordered_quantities(order: models.Order) -> Dict[str, int]:
    totals: Dict[str, int] = defaultdict(int)
    for li in order.line_items or []:
        totals[li.get("sku") or str(li["id"])] += int(li.get("quantity") or 0)
    return totals


def allocated_quantities(db: Session, order_id: int) -> Dict[str, int]:
    totals: Dict[str, int] = defaultdict(int)
    for split in splits_for_order(db, order_id):
        for item in split.line_items or []:
            totals[item.get("itemReferenceCode") or str(item["id"])] += int(item.get("quantity") or 0)
    return totals


def assert_partition(db: Session, order: models.Order):
    ordered = ordered_quantities(order)
    for sku, qty in allocated_quantities(db, order.id).items():
        if qty > ordered.get(sku, 0):
            raise DataIntegrityError(
                f"Order {order.order_number}: {qty} units of {sku} allocated, only {ordered.get(sku, 0)} ordered"
            )


# --------------------------------------------------------------------------
# Reassignment
# --------------------------------------------------------------------------

def _find_line(split: models.OrderSplit, line_item_id: Any) -> Dict[str, Any]:
    for item in split.line_items or []:
        if str(item["id"]) == str(line_item_id):
            return item
    raise LineItemNotFoundError(f"Line item {line_item_id} not in split {split.split_id}")


def reassignment_candidates(db: Session, split_pk: int, line_item_id: Any,
                            quantity: Optional[int] = None) -> List[models.HybridStock]:
    """Stores (other than the current one) whose primary stock covers the quantity."""
    split = get_split(db, split_pk)
    item = _find_line(split, line_item_id)
    quantity = int(quantity or item["quantity"])
    q = db.query(models.HybridStock).filter(
        models.HybridStock.sku == item.get("itemReferenceCode"),
        models.HybridStock.primary_stock >= quantity,
        models.HybridStock.outlet_id != split.erp_store_id,
    )
    if item.get("productId") is not None:
        q = q.filter(models.HybridStock.product_id == int(item["productId"]))
    rows = q.order_by(models.HybridStock.primary_stock.desc(), models.HybridStock.outlet_id.asc()).all()
    active = {
        int(s.erp_store_id) for s in db.query(models.Store).filter(models.Store.status == "Active").all()
    }
    rows = [r for r in rows if int(r.outlet_id) in active]
    if not rows:
        raise NoInventoryError(field=str(line_item_id))
    return rows


def _merge_items(target: List[Dict[str, Any]], moved: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged = [dict(i) for i in target]
    for item in moved:
        same = next((m for m in merged if str(m["id"]) == str(item["id"])), None)
        if same is None:
            merged.append(dict(item))
        else:
            same["quantity"] = int(same["quantity"]) + int(item["quantity"])
    return merged


def _get_order(db: Session, order_id: int) -> models.Order:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return order


def reassign_items(db: Session, split_pk: int, moves: List[Dict[str, Any]]) -> List[models.OrderSplit]:
    """
    moves: [{"lineItemId": ..., "quantity": n, "storeCode": "S2"}, ...]

    Items headed to the same store land in one split. The source split keeps
    whatever is left, or is deleted when nothing is. Returns the splits of the
    order after the move.
    """
    split = get_split(db, split_pk)
    if split.order_status not in REASSIGNABLE:
        raise ReassignmentError(f"Split {split.split_id} is {split.order_status} and can't be reassigned")
    if not moves:
        raise ReassignmentError("Nothing to reassign")
    order = _get_order(db, split.order_reference_id)

    remaining = {str(i["id"]): dict(i) for i in split.line_items or []}
    by_store: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    targets: Dict[str, models.Store] = {}

    for move in moves:
        line_id = str(move["lineItemId"])
        qty = int(move.get("quantity") or 0)
        item = _find_line(split, line_id)
        if qty <= 0 or qty > int(remaining[line_id]["quantity"]):
            raise ReassignmentError(f"Invalid quantity {qty} for line item {line_id}")

        store_code = move["storeCode"]
        store = targets.get(store_code) or db.query(models.Store).filter(
            models.Store.store_code == store_code, models.Store.status == "Active").first()
        if store is None:
            raise StoreNotFoundError(f"No active store {store_code}")
        if store.store_code == split.store_code:
            raise ReassignmentError(f"Line item {line_id} is already at {store_code}")
        if _primary_stock(db, item.get("itemReferenceCode"), int(store.erp_store_id)) < qty:
            raise NoInventoryError(field=line_id)
        targets[store_code] = store

        remaining[line_id]["quantity"] = int(remaining[line_id]["quantity"]) - qty
        by_store[store_code].append({**item, "quantity": qty, "outletId": int(store.erp_store_id)})

    existing = {code: _split_at_store(db, order.id, code) for code in by_store}
    for target in existing.values():
        if target is not None and target.order_status not in REASSIGNABLE:
            raise ReassignmentError(f"Split {target.split_id} is {target.order_status} and can't take new items")

    for store_code, items in by_store.items():
        store = targets[store_code]
        target = existing[store_code]
        if target is None:
            db.add(_new_split(order, store, items, re_assigned=True, previous_store_id=split.erp_store_id))
        else:
            target.line_items = _merge_items(target.line_items or [], items)
            target.re_assign_status = True

    left = [i for i in remaining.values() if int(i["quantity"]) > 0]
    source_code = split.split_id
    if left:
        split.line_items = left
        split.re_assign_status = True
    else:
        db.delete(split)
    db.flush()
    assert_partition(db, order)
    db.commit()

    notification_log.create_notification(
        db, "Order Split Reassigned",
        f"`{source_code}`: " + ", ".join(
            f"{sum(i['quantity'] for i in items)} unit(s) to **{code}**" for code, items in by_store.items()),
    )
    return splits_for_order(db, order.id)


def backup_warehouse(db: Session) -> models.Store:
    """The single active backup warehouse; zero or several is a configuration error."""
    stores = db.query(models.Store).filter(
        models.Store.status == "Active", models.Store.is_backup_warehouse == True  # noqa: E712
    ).all()
    if len(stores) != 1:
        raise BackupWarehouseError(f"Expected exactly one active backup warehouse, found {len(stores)}")
    return stores[0]


def reassign_to_backup(db: Session, split_pk: int) -> models.OrderSplit:
    """
    Rebind the whole split to the backup warehouse. There is no stock check on
    this path.
    """
    split = get_split(db, split_pk)
    if split.order_status not in REASSIGNABLE:
        raise ReassignmentError(f"Split {split.split_id} is {split.order_status} and can't be reassigned")
    backup = backup_warehouse(db)
    if split.store_code == backup.store_code:
        raise ReassignmentError(f"Split {split.split_id} is already at the backup warehouse")

    order = _get_order(db, split.order_reference_id)
    items = [{**i, "outletId": int(backup.erp_store_id)} for i in split.line_items or []]
    previous = split.split_id

    existing = _split_at_store(db, order.id, backup.store_code)
    if existing is not None and existing.order_status not in REASSIGNABLE:
        raise ReassignmentError(f"Split {existing.split_id} is {existing.order_status} and can't take new items")
    if existing is not None:
        existing.line_items = _merge_items(existing.line_items or [], items)
        existing.re_assign_status = True
        db.delete(split)
        result = existing
    else:
        split.erp_previous_store_id = split.erp_store_id
        split.store_code = backup.store_code
        split.store_name = backup.store_name
        split.erp_store_id = backup.erp_store_id
        split.split_id = split_id_for(split.order_number, backup.store_code)
        split.line_items = items
        split.re_assign_status = True
        result = split
    db.flush()
    assert_partition(db, order)
    db.commit()

    notification_log.create_notification(
        db, "Order Split Moved To Backup", f"`{previous}` reassigned to backup warehouse **{backup.store_code}**."
    )
    return result
