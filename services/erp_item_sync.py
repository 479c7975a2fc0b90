# services/erp_item_sync.py
"""
ERP item mirror sync.

Incremental mode walks the active stores in ascending erp_store_id order and
pulls, per outlet, every row stamped at or after that outlet's watermark. A
failing outlet is logged and the sweep moves on.

Full mode sweeps a fixed outlet universe page by page from the global
watermark minus one, and stops at the first error.

Both modes upsert by (item_id, outlet_id) and hold leases so two sweeps of the
same outlet never overlap; a busy outlet is skipped, not queued.
"""
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
from config import settings
from erp_service import ErpService, build_filter, flatten_item_rows
from . import hybrid_stock, notification_log, sync_lease, sync_tracker

logger = logging.getLogger(__name__)

LEASE_TYPE = "erp_item_sync"
GLOBAL_SCOPE = "*"


def _ts_int(value: Any) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return 0


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def _int_stock(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def latest_watermark(db: Session, outlet_id: int) -> str:
    """Most recent itemTimeStamp mirrored for an outlet, or "0"."""
    value = db.query(func.max(models.ErpItem.item_time_stamp)).filter(
        models.ErpItem.outlet_id == outlet_id
    ).scalar()
    return value or "0"


def latest_global_watermark(db: Session) -> str:
    value = db.query(func.max(models.ErpItem.item_time_stamp)).scalar()
    return value or "0"


def upsert_erp_rows(db: Session, rows: List[Dict[str, Any]], chunk_size: Optional[int] = None) -> Dict[str, Any]:
    """
    Idempotent upsert keyed by (itemId, outletId), committed per chunk.

    Rows older than what is already mirrored are skipped, so a stale page can't
    roll a row (or the outlet watermark) backwards.
    """
    chunk_size = chunk_size or settings.erp_chunk_size
    stats = {"created": 0, "updated": 0, "unchanged": 0, "skipped": 0}
    touched: set = set()

    # the last occurrence of a key wins unless it is older
    latest: Dict[Tuple[str, int], Dict[str, Any]] = {}
    for row in rows:
        key = (str(row["itemId"]), int(row["outletId"]))
        prev = latest.get(key)
        if prev is None or _ts_int(row.get("itemTimeStamp")) >= _ts_int(prev.get("itemTimeStamp")):
            latest[key] = row
    stats["skipped"] += len(rows) - len(latest)

    keys = list(latest)
    for start in range(0, len(keys), chunk_size):
        chunk = keys[start:start + chunk_size]
        item_ids = {k[0] for k in chunk}
        outlet_ids = {k[1] for k in chunk}
        existing = {
            (e.item_id, int(e.outlet_id)): e
            for e in db.query(models.ErpItem).filter(
                models.ErpItem.item_id.in_(sorted(item_ids)),
                models.ErpItem.outlet_id.in_(sorted(outlet_ids)),
            ).all()
        }

        for key in chunk:
            row = latest[key]
            ts = str(row.get("itemTimeStamp") or "0")
            values = {
                "item_name": row.get("itemName"),
                "mrp": _decimal(row.get("mrp")),
                "stock": _int_stock(row.get("stock")),
                "item_time_stamp": ts,
            }
            current = existing.get(key)
            if current is None:
                db.add(models.ErpItem(item_id=key[0], outlet_id=key[1], **values))
                stats["created"] += 1
                touched.add(key[0])
                continue

            if _ts_int(ts) < _ts_int(current.item_time_stamp):
                stats["skipped"] += 1
                continue

            changed = False
            for field, value in values.items():
                if field == "item_name" and value is None:
                    continue
                if getattr(current, field) != value:
                    setattr(current, field, value)
                    changed = True
            if changed:
                stats["updated"] += 1
                touched.add(key[0])
            else:
                stats["unchanged"] += 1

        db.commit()

    if touched:
        hybrid_stock.recompute_for_items(db, touched)
    stats["item_ids"] = sorted(touched)
    return stats


def sync_incremental(db: Session, erp: ErpService, outlet_id: int) -> Dict[str, Any]:
    """Pull and upsert every row for one outlet at or after its watermark."""
    outlet_id = int(outlet_id)
    watermark = latest_watermark(db, outlet_id)
    query = build_filter(("itemTimeStamp", ">=", watermark), ("outletId", "==", outlet_id))
    logger.info("[ERP-SYNC] outlet=%s watermark=%s", outlet_id, watermark)

    rows: List[Dict[str, Any]] = []
    for _page, items, _total in erp.iter_item_pages(query, limit=settings.erp_page_limit):
        rows.extend(r for r in flatten_item_rows(items) if int(r["outletId"]) == outlet_id)

    stats = upsert_erp_rows(db, rows)
    result = {
        "outletId": outlet_id,
        "created": stats["created"],
        "updated": stats["updated"],
        "unchanged": stats["unchanged"],
        "skipped": stats["skipped"],
        "watermarkBefore": watermark,
        "watermarkAfter": latest_watermark(db, outlet_id),
    }
    notification_log.create_notification(
        db,
        "ERP Item Sync Complete",
        f"Outlet **{outlet_id}**: {result['created']} created, {result['updated']} updated "
        f"(watermark {watermark} -> {result['watermarkAfter']}).",
    )
    return result


def _active_outlets(db: Session) -> List[int]:
    stores = (
        db.query(models.Store)
        .filter(models.Store.status == "Active")
        .order_by(models.Store.erp_store_id.asc())
        .all()
    )
    return [int(s.erp_store_id) for s in stores]


def run_incremental_sync(session_factory: Callable[[], Session], erp: Optional[ErpService] = None,
                         task_id: Optional[str] = None, holder: Optional[str] = None) -> Dict[str, Any]:
    """Scheduled entry point: every active outlet, one after the other."""
    db: Session = session_factory()
    holder = holder or sync_lease.new_holder_id()
    ttl = settings.sync_lease_ttl_seconds
    summary: Dict[str, Any] = {"skipped": False, "outlets": [], "failed": []}
    try:
        if not sync_lease.acquire(db, LEASE_TYPE, GLOBAL_SCOPE, holder, ttl):
            logger.warning("[ERP-SYNC] another ERP sync is running; skipping this run")
            summary["skipped"] = True
            if task_id:
                sync_tracker.finish_task(task_id, ok=True, note="Skipped; another ERP sync is running.")
            return summary

        try:
            erp = erp or ErpService(settings.erp_base_url, settings.erp_auth_token)
            deadline = time.monotonic() + settings.sync_timeout_seconds
            outlets = _active_outlets(db)
            for idx, outlet_id in enumerate(outlets, start=1):
                if time.monotonic() > deadline:
                    logger.error("[ERP-SYNC] time budget exhausted before outlet %s", outlet_id)
                    summary["timedOut"] = True
                    break
                sync_lease.heartbeat(db, LEASE_TYPE, GLOBAL_SCOPE, holder, ttl)
                if not sync_lease.acquire(db, LEASE_TYPE, str(outlet_id), holder, ttl):
                    logger.warning("[ERP-SYNC] outlet %s is already being processed; skipped", outlet_id)
                    continue
                try:
                    summary["outlets"].append(sync_incremental(db, erp, outlet_id))
                except Exception as e:
                    logger.exception("[ERP-SYNC] outlet %s failed", outlet_id)
                    notification_log.record_failure(db, f"ERP Item Sync Failed for outlet {outlet_id}", e)
                    summary["failed"].append({"outletId": outlet_id, "error": str(e)})
                finally:
                    sync_lease.release(db, LEASE_TYPE, str(outlet_id), holder)
                if task_id:
                    sync_tracker.step(task_id, idx, note=f"Outlet {outlet_id} done ({idx}/{len(outlets)})", total=len(outlets))
        finally:
            db.rollback()
            sync_lease.release(db, LEASE_TYPE, GLOBAL_SCOPE, holder)

        if task_id:
            sync_tracker.finish_task(task_id, ok=not summary["failed"],
                                     note=f"{len(summary['outlets'])} outlets synced, {len(summary['failed'])} failed.")
        return summary
    except Exception as e:
        logger.exception("[ERP-SYNC] fatal error")
        if task_id:
            sync_tracker.finish_task(task_id, ok=False, note=f"A fatal error occurred: {e}")
        raise
    finally:
        db.close()


def run_outlet_sync(session_factory: Callable[[], Session], outlet_id: int, erp: Optional[ErpService] = None,
                    task_id: Optional[str] = None, holder: Optional[str] = None) -> Dict[str, Any]:
    """Manual single-outlet trigger."""
    db: Session = session_factory()
    holder = holder or sync_lease.new_holder_id()
    try:
        with sync_lease.held(db, LEASE_TYPE, str(outlet_id), holder, settings.sync_lease_ttl_seconds) as ok:
            if not ok:
                logger.warning("[ERP-SYNC] outlet %s is already being processed; skipped", outlet_id)
                if task_id:
                    sync_tracker.finish_task(task_id, ok=True, note="Skipped; outlet is already syncing.")
                return {"outletId": int(outlet_id), "skipped": True}
            try:
                erp = erp or ErpService(settings.erp_base_url, settings.erp_auth_token)
                result = sync_incremental(db, erp, outlet_id)
            except Exception as e:
                logger.exception("[ERP-SYNC] outlet %s failed", outlet_id)
                notification_log.record_failure(db, f"ERP Item Sync Failed for outlet {outlet_id}", e)
                if task_id:
                    sync_tracker.finish_task(task_id, ok=False, note=str(e))
                raise
        if task_id:
            sync_tracker.finish_task(task_id, ok=True, note=f"{result['created']} created, {result['updated']} updated.")
        return result
    finally:
        db.close()


def sync_full(db: Session, erp: ErpService, outlets: Optional[List[int]] = None) -> Dict[str, Any]:
    """
    Full sweep. The watermark is the newest mirrored timestamp minus one so rows
    stamped exactly on the boundary are fetched again. Stops on the first error.
    """
    outlets = sorted(int(o) for o in (outlets or settings.full_sync_outlets))
    watermark = max(_ts_int(latest_global_watermark(db)) - 1, 0)
    result: Dict[str, Any] = {"success": True, "pages": 0, "created": 0, "updated": 0, "watermark": str(watermark)}
    deadline = time.monotonic() + settings.sync_timeout_seconds

    for outlet_id in outlets:
        query = build_filter(("itemTimeStamp", ">=", watermark), ("outletId", "==", outlet_id))
        try:
            for page, items, total_pages in erp.iter_item_pages(query, limit=settings.erp_page_limit):
                rows = flatten_item_rows(items)
                stats = upsert_erp_rows(db, rows)
                result["pages"] += 1
                result["created"] += stats["created"]
                result["updated"] += stats["updated"]
                notification_log.create_notification(
                    db,
                    "Full Sync Item Processing Complete",
                    f"Outlet **{outlet_id}** page {page}/{total_pages}: "
                    f"{stats['created']} created, {stats['updated']} updated.",
                )
                if time.monotonic() > deadline:
                    raise TimeoutError("Full sync exceeded its time budget")
        except Exception as e:
            logger.exception("[ERP-SYNC] full sweep aborted at outlet %s", outlet_id)
            notification_log.record_failure(db, f"Full Sync Failed at outlet {outlet_id}", e)
            result["success"] = False
            result["error"] = str(e)
            result["failedOutlet"] = outlet_id
            break

    return result


def run_full_sync(session_factory: Callable[[], Session], erp: Optional[ErpService] = None,
                  outlets: Optional[List[int]] = None, task_id: Optional[str] = None,
                  holder: Optional[str] = None) -> Dict[str, Any]:
    db: Session = session_factory()
    holder = holder or sync_lease.new_holder_id()
    try:
        with sync_lease.held(db, LEASE_TYPE, GLOBAL_SCOPE, holder, settings.sync_lease_ttl_seconds) as ok:
            if not ok:
                logger.warning("[ERP-SYNC] another ERP sync is running; full sweep skipped")
                if task_id:
                    sync_tracker.finish_task(task_id, ok=True, note="Skipped; another ERP sync is running.")
                return {"success": False, "skipped": True}
            erp = erp or ErpService(settings.erp_base_url, settings.erp_auth_token)
            result = sync_full(db, erp, outlets)
        if task_id:
            sync_tracker.finish_task(task_id, ok=result["success"],
                                     note=f"{result['pages']} pages, {result['created']} created, {result['updated']} updated.")
        return result
    finally:
        db.close()
