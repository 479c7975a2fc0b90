# services/storefront_sync.py
"""
Storefront price + inventory pipeline.

    start_sync -> run_price_sync -> run_inventory_sync

The price stage creates the SyncStatus row and hands a SyncContext (the row
plus the variant ids it matched) to the inventory stage. The inventory stage
only accepts a context whose price stage completed; there is no "latest
status" lookup. Either stage marks the run failed before re-raising.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

import models
from config import settings
from shopify_service import ShopifyService
from utils import utcnow, ensure_aware, erp_timestamp_minutes_ago
from . import hybrid_stock, notification_log, sync_lease, sync_tracker
from .errors import ExternalServiceError, SyncInProgressError, SyncSequenceError

logger = logging.getLogger(__name__)

PRICE_SYNC = "priceSync"
INVENTORY_SYNC = "inventorySync"

SCOPE_NEW_PRODUCTS = "new_products"
SCOPE_INCREMENTAL = "incremental"
SCOPES = (SCOPE_NEW_PRODUCTS, SCOPE_INCREMENTAL)

RUNNING = "running"
PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

LEASE_TYPE = "storefront_sync"
GLOBAL_SCOPE = "*"


@dataclass
class SyncContext:
    status: models.SyncStatus
    scope: str
    variant_ids: List[int] = field(default_factory=list)
    price_failed: int = 0
    inventory_failed: int = 0


def _set_stage(status: models.SyncStatus, stage: str, state: str, **extra):
    sync_types = dict(status.sync_types or {})
    sync_types[stage] = {**(sync_types.get(stage) or {}), "status": state, **extra}
    status.sync_types = sync_types


def _mark_failed(db: Session, status: models.SyncStatus, stage: str, error: Exception):
    db.rollback()
    _set_stage(status, stage, FAILED, error=str(error))
    status.overall_status = FAILED
    status.is_syncing = False
    status.last_sync_completed_at = utcnow()
    status.note = str(error)
    db.commit()
    notification_log.create_notification(
        db, "Storefront Sync Failed", f"Stage **{stage}** failed: {error}", notification_log.ERROR
    )


def recover_stuck_syncs(db: Session, timeout_seconds: Optional[int] = None) -> int:
    """Fail runs that have been 'running' for longer than the time budget."""
    timeout_seconds = timeout_seconds or settings.sync_timeout_seconds
    cutoff = utcnow() - timedelta(seconds=timeout_seconds)
    stuck = db.query(models.SyncStatus).filter(models.SyncStatus.overall_status == RUNNING).all()
    recovered = 0
    for status in stuck:
        started = ensure_aware(status.last_sync_started_at)
        if started is not None and started > cutoff:
            continue
        for stage in (PRICE_SYNC, INVENTORY_SYNC):
            if (status.sync_types or {}).get(stage, {}).get("status") in (RUNNING, PENDING):
                _set_stage(status, stage, FAILED, error="timed out")
        status.overall_status = FAILED
        status.is_syncing = False
        status.last_sync_completed_at = utcnow()
        status.note = f"Marked failed by stuck-sync recovery after {timeout_seconds}s"
        recovered += 1
    if recovered:
        db.commit()
        notification_log.create_notification(
            db, "Stuck Sync Recovered", f"{recovered} sync run(s) exceeded {timeout_seconds}s and were marked failed.",
            notification_log.ERROR,
        )
        logger.warning("[PRICE-SYNC] recovered %s stuck sync run(s)", recovered)
    return recovered


def start_sync(db: Session, scope: str = SCOPE_NEW_PRODUCTS) -> models.SyncStatus:
    if scope not in SCOPES:
        raise ValueError(f"Unknown sync scope: {scope}")
    recover_stuck_syncs(db)
    running = db.query(models.SyncStatus).filter(models.SyncStatus.overall_status == RUNNING).first()
    if running is not None:
        raise SyncInProgressError(f"Sync run {running.id} is still running")
    status = models.SyncStatus(
        scope=scope,
        is_syncing=True,
        last_sync_started_at=utcnow(),
        overall_status=RUNNING,
        sync_types={PRICE_SYNC: {"status": RUNNING}, INVENTORY_SYNC: {"status": PENDING}},
        context={},
    )
    db.add(status)
    db.commit()
    return status


def _erp_lookup(db: Session, keys: Iterable[Tuple[int, str]]) -> Dict[Tuple[int, str], models.ErpItem]:
    keys = list(keys)
    if not keys:
        return {}
    outlets = {k[0] for k in keys}
    items = {k[1] for k in keys}
    rows = db.query(models.ErpItem).filter(
        models.ErpItem.outlet_id.in_(sorted(outlets)), models.ErpItem.item_id.in_(sorted(items))
    ).all()
    return {(int(r.outlet_id), r.item_id): r for r in rows}


def select_candidates(db: Session, scope: str) -> Tuple[List[Tuple[models.ProductVariantInfo, models.ErpItem]], int]:
    """
    (variant, erp_row) pairs to push, plus the count of variants that had to be
    skipped (missing ERP key or no mirrored ERP row).
    """
    q = db.query(models.ProductVariantInfo)
    if scope == SCOPE_NEW_PRODUCTS:
        variants = q.filter(models.ProductVariantInfo.is_new_product == True).order_by(  # noqa: E712
            models.ProductVariantInfo.id.asc()).all()
    else:
        since = erp_timestamp_minutes_ago(settings.incremental_lookback_minutes)
        changed = db.query(models.ErpItem.outlet_id, models.ErpItem.item_id).filter(
            models.ErpItem.item_time_stamp >= since).all()
        changed_keys = {(int(o), i) for o, i in changed}
        variants = [
            v for v in q.filter(models.ProductVariantInfo.item_id.in_(sorted({k[1] for k in changed_keys})))
            .order_by(models.ProductVariantInfo.id.asc()).all()
            if v.outlet_id is not None and (int(v.outlet_id), v.item_id) in changed_keys
        ]

    skipped = 0
    keyed = []
    for v in variants:
        if v.outlet_id is None or not v.item_id:
            skipped += 1
            continue
        keyed.append(v)
    lookup = _erp_lookup(db, [(int(v.outlet_id), v.item_id) for v in keyed])

    pairs = []
    for v in keyed:
        erp_row = lookup.get((int(v.outlet_id), v.item_id))
        if erp_row is None:
            logger.info("[PRICE-SYNC] no ERP row for variant %s (outlet=%s item=%s); skipped",
                        v.variant_id, v.outlet_id, v.item_id)
            skipped += 1
            continue
        pairs.append((v, erp_row))
    return pairs, skipped


def _money(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


def _flush_prices(db: Session, shopify: ShopifyService, batch: List[Tuple[models.ProductVariantInfo, models.ErpItem]]) -> List[int]:
    """One productVariantsBulkUpdate per product in the batch. Returns the variant ids that succeeded."""
    by_product: Dict[int, List[Tuple[models.ProductVariantInfo, models.ErpItem]]] = {}
    for v, e in batch:
        by_product.setdefault(int(v.product_id), []).append((v, e))

    done: List[int] = []
    for product_id, pairs in by_product.items():
        shopify.variants_bulk_update(
            product_id,
            [{"id": v.variant_id, "compareAtPrice": _money(e.mrp)} for v, e in pairs],
        )
        for v, e in pairs:
            v.compare_at_price = e.mrp
            done.append(int(v.variant_id))
    db.commit()
    return done


def run_price_sync(db: Session, shopify: ShopifyService, scope: str = SCOPE_NEW_PRODUCTS,
                   batch_size: Optional[int] = None) -> SyncContext:
    """Stage 1: push ERP mrp as compareAtPrice, flushing every `batch_size` variants."""
    batch_size = batch_size or settings.storefront_batch_size
    status = start_sync(db, scope)
    ctx = SyncContext(status=status, scope=scope)
    try:
        pairs, skipped = select_candidates(db, scope)
        pairs = [(v, e) for v, e in pairs if e.mrp is not None]
        logger.info("[PRICE-SYNC] run=%s scope=%s candidates=%s skipped=%s", status.id, scope, len(pairs), skipped)

        batches = [pairs[i:i + batch_size] for i in range(0, len(pairs), batch_size)]
        for batch in batches:
            try:
                ctx.variant_ids.extend(_flush_prices(db, shopify, batch))
            except ExternalServiceError as e:
                db.rollback()
                ctx.price_failed += len(batch)
                logger.error("[PRICE-SYNC] batch of %s failed: %s", len(batch), e)
                notification_log.create_notification(
                    db, "Price Sync Batch Failed", f"{len(batch)} variants not updated: {e}", notification_log.ERROR
                )
        if batches and not ctx.variant_ids:
            raise ExternalServiceError("storefront", "Every price batch failed")

        _set_stage(status, PRICE_SYNC, COMPLETED, updated=len(ctx.variant_ids),
                   failed=ctx.price_failed, skipped=skipped, batches=len(batches))
        status.context = {"variantIds": list(ctx.variant_ids)}
        db.commit()
        return ctx
    except Exception as e:
        logger.exception("[PRICE-SYNC] run %s failed", status.id)
        _mark_failed(db, status, PRICE_SYNC, e)
        raise


def _flush_inventory(db: Session, shopify: ShopifyService, batch: List[Tuple[models.ProductVariantInfo, int]]) -> List[int]:
    shopify.set_on_hand_quantities(
        [{"inventoryItemId": v.inventory_item_id, "locationId": v.location_id, "quantity": qty} for v, qty in batch],
        reason="correction",
    )
    for v, _qty in batch:
        v.is_new_product = False
    db.commit()
    return [int(v.variant_id) for v, _qty in batch]


def run_inventory_sync(db: Session, shopify: ShopifyService, ctx: SyncContext,
                       batch_size: Optional[int] = None) -> models.SyncStatus:
    """Stage 2: set absolute on-hand quantities for the variants the price stage matched."""
    batch_size = batch_size or settings.storefront_batch_size
    status = ctx.status
    db.refresh(status)
    price_state = (status.sync_types or {}).get(PRICE_SYNC, {}).get("status")
    if status.overall_status != RUNNING or price_state != COMPLETED:
        raise SyncSequenceError(
            f"Sync run {status.id} is not ready for inventory sync (overall={status.overall_status}, price={price_state})"
        )

    try:
        _set_stage(status, INVENTORY_SYNC, RUNNING)
        db.commit()

        variants = []
        if ctx.variant_ids:
            variants = db.query(models.ProductVariantInfo).filter(
                models.ProductVariantInfo.variant_id.in_(ctx.variant_ids)
            ).order_by(models.ProductVariantInfo.id.asc()).all()
        lookup = _erp_lookup(db, [(int(v.outlet_id), v.item_id) for v in variants])

        ready: List[Tuple[models.ProductVariantInfo, int]] = []
        skipped = 0
        for v in variants:
            erp_row = lookup.get((int(v.outlet_id), v.item_id))
            if erp_row is None or not v.inventory_item_id:
                skipped += 1
                continue
            if not v.location_id:
                try:
                    v.location_id = shopify.get_location_id(v.inventory_item_id)
                except ExternalServiceError as e:
                    logger.warning("[INVENTORY-SYNC] location lookup failed for %s: %s", v.inventory_item_id, e)
                    skipped += 1
                    continue
                if not v.location_id:
                    skipped += 1
                    continue
            qty = hybrid_stock.published_stock_for(db, v.sku, int(v.outlet_id), erp_row.stock)
            ready.append((v, qty))
        db.commit()

        done: List[int] = []
        batches = [ready[i:i + batch_size] for i in range(0, len(ready), batch_size)]
        for batch in batches:
            try:
                done.extend(_flush_inventory(db, shopify, batch))
            except ExternalServiceError as e:
                db.rollback()
                ctx.inventory_failed += len(batch)
                logger.error("[INVENTORY-SYNC] batch of %s failed: %s", len(batch), e)
                notification_log.create_notification(
                    db, "Inventory Sync Batch Failed", f"{len(batch)} variants not updated: {e}", notification_log.ERROR
                )
        if batches and not done:
            raise ExternalServiceError("storefront", "Every inventory batch failed")

        _set_stage(status, INVENTORY_SYNC, COMPLETED, updated=len(done),
                   failed=ctx.inventory_failed, skipped=skipped, batches=len(batches))
        status.overall_status = COMPLETED
        status.is_syncing = False
        status.last_sync_completed_at = utcnow()
        db.commit()
        notification_log.create_notification(
            db,
            "Storefront Sync Complete",
            f"Run **{status.id}** ({ctx.scope}): {len(ctx.variant_ids)} prices and {len(done)} stock levels updated.",
        )
        return status
    except Exception as e:
        logger.exception("[INVENTORY-SYNC] run %s failed", status.id)
        _mark_failed(db, status, INVENTORY_SYNC, e)
        raise


def run_storefront_sync(db: Session, shopify: ShopifyService, scope: str = SCOPE_NEW_PRODUCTS) -> models.SyncStatus:
    ctx = run_price_sync(db, shopify, scope)
    return run_inventory_sync(db, shopify, ctx)


def run_storefront_sync_job(session_factory: Callable[[], Session], scope: str = SCOPE_NEW_PRODUCTS,
                            shopify: Optional[ShopifyService] = None, task_id: Optional[str] = None,
                            holder: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Scheduler / background-task entry point."""
    db: Session = session_factory()
    holder = holder or sync_lease.new_holder_id()
    try:
        with sync_lease.held(db, LEASE_TYPE, GLOBAL_SCOPE, holder, settings.sync_lease_ttl_seconds) as ok:
            if not ok:
                logger.warning("[PRICE-SYNC] storefront sync already running; skipped")
                if task_id:
                    sync_tracker.finish_task(task_id, ok=True, note="Skipped; a storefront sync is running.")
                return None
            try:
                shopify = shopify or ShopifyService(settings.shop_url, settings.shop_token, settings.shopify_api_version)
                status = run_storefront_sync(db, shopify, scope)
            except SyncInProgressError as e:
                logger.warning("[PRICE-SYNC] %s", e)
                if task_id:
                    sync_tracker.finish_task(task_id, ok=True, note=str(e))
                return None
            except Exception as e:
                if task_id:
                    sync_tracker.finish_task(task_id, ok=False, note=f"Sync failed: {e}")
                raise
        if task_id:
            sync_tracker.finish_task(task_id, ok=True, note=f"Run {status.id} completed.")
        return {"id": status.id, "overallStatus": status.overall_status, "syncTypes": status.sync_types}
    finally:
        db.close()


def latest_status(db: Session) -> Optional[models.SyncStatus]:
    return db.query(models.SyncStatus).order_by(models.SyncStatus.id.desc()).first()


def dismiss(db: Session, status_id: int) -> Optional[models.SyncStatus]:
    status = db.query(models.SyncStatus).filter(models.SyncStatus.id == status_id).first()
    if status is None:
        return None
    status.user_dismissed_at = utcnow()
    db.commit()
    return status
