# services/hybrid_stock.py
"""
Hybrid stock read model.

For every storefront SKU and every active (non-warehouse) store that carries
it in the ERP mirror:

    primary_stock  = ERP stock at the store's own outlet
    back_up_stock  = ERP stock at the store's backup warehouse (0 if none)
    hybrid_stock   = primary_stock                      (mode "primary")
                   = primary_stock + back_up_stock      (mode "primary_with_backup")

ErpItem stays the source of truth; these rows are rebuilt whenever the mirror
or the store configuration changes.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

import models
from config import settings

logger = logging.getLogger(__name__)

PRIMARY = "primary"
PRIMARY_WITH_BACKUP = "primary_with_backup"
MODES = (PRIMARY, PRIMARY_WITH_BACKUP)

_IN_CHUNK = 500


def compute_hybrid(primary: int, backup: int, mode: str = PRIMARY) -> int:
    if mode not in MODES:
        raise ValueError(f"Unknown stock calculation mode: {mode}")
    primary = max(int(primary or 0), 0)
    backup = max(int(backup or 0), 0)
    if mode == PRIMARY_WITH_BACKUP:
        return primary + backup
    return primary


def _chunks(values: List, size: int) -> Iterable[List]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def _serving_stores(db: Session) -> List[models.Store]:
    return (
        db.query(models.Store)
        .filter(models.Store.status == "Active", models.Store.is_backup_warehouse == False)  # noqa: E712
        .order_by(models.Store.erp_store_id.asc())
        .all()
    )


def recompute_for_items(db: Session, item_ids: Iterable[str], mode: Optional[str] = None,
                        commit: bool = True) -> int:
    """Rebuild the hybrid rows for every SKU mapped to the given ERP item ids."""
    mode = mode or settings.stock_calculation_mode
    ids = sorted({str(i) for i in item_ids if i is not None})
    if not ids:
        return 0

    stores = _serving_stores(db)
    written = 0
    for chunk in _chunks(ids, _IN_CHUNK):
        written += _recompute_chunk(db, chunk, stores, mode)
    if commit:
        db.commit()
    logger.info("[HYBRID] recomputed %s rows for %s items (mode=%s)", written, len(ids), mode)
    return written


def _recompute_chunk(db: Session, item_ids: List[str], stores: List[models.Store], mode: str) -> int:
    variants = (
        db.query(models.ProductVariantInfo)
        .filter(models.ProductVariantInfo.item_id.in_(item_ids), models.ProductVariantInfo.sku.isnot(None))
        .order_by(models.ProductVariantInfo.id.asc())
        .all()
    )
    # one SKU may be listed once per outlet; the first listing carries the metadata
    by_sku: Dict[str, models.ProductVariantInfo] = {}
    for v in variants:
        by_sku.setdefault(v.sku, v)
    if not by_sku:
        return 0

    stock: Dict[Tuple[str, int], int] = {
        (row.item_id, int(row.outlet_id)): row.stock
        for row in db.query(models.ErpItem).filter(models.ErpItem.item_id.in_(item_ids)).all()
    }
    existing: Dict[Tuple[str, int], models.HybridStock] = {
        (row.sku, int(row.outlet_id)): row
        for row in db.query(models.HybridStock).filter(models.HybridStock.sku.in_(list(by_sku))).all()
    }

    written = 0
    for sku, variant in by_sku.items():
        for store in stores:
            outlet = int(store.erp_store_id)
            key = (sku, outlet)
            has_primary = (variant.item_id, outlet) in stock
            if not has_primary and key not in existing:
                continue
            primary = max(stock.get((variant.item_id, outlet), 0) or 0, 0)
            backup = 0
            if store.select_backup_warehouse:
                backup = max(stock.get((variant.item_id, int(store.select_backup_warehouse)), 0) or 0, 0)

            row = existing.get(key)
            if row is None:
                row = models.HybridStock(sku=sku, outlet_id=outlet)
                db.add(row)
                existing[key] = row
            row.store_code = store.store_code
            row.item_id = variant.item_id
            row.product_id = variant.product_id
            row.variant_id = variant.variant_id
            row.product_title = variant.product_title
            row.variant_title = variant.variant_title
            row.product_image = variant.product_image
            row.primary_stock = primary
            row.back_up_stock = backup
            row.hybrid_stock = compute_hybrid(primary, backup, mode)
            written += 1
    db.flush()
    return written


def recompute_all(db: Session, mode: Optional[str] = None) -> int:
    """Full rebuild, used after store configuration changes."""
    item_ids: Set[str] = {
        row[0] for row in db.query(models.ProductVariantInfo.item_id)
        .filter(models.ProductVariantInfo.item_id.isnot(None)).distinct().all()
    }
    return recompute_for_items(db, item_ids, mode=mode)


def published_stock_for(db: Session, sku: Optional[str], outlet_id: int, fallback: int) -> int:
    """The figure pushed to the storefront: hybrid stock when known, else the raw ERP stock."""
    if sku:
        row = db.query(models.HybridStock).filter(
            models.HybridStock.sku == sku,
            models.HybridStock.outlet_id == outlet_id,
        ).first()
        if row is not None:
            return row.hybrid_stock
    return max(int(fallback or 0), 0)


def list_hybrid_stock(db: Session, sku: Optional[str] = None, outlet_id: Optional[int] = None,
                      skip: int = 0, limit: int = 100) -> List[models.HybridStock]:
    q = db.query(models.HybridStock)
    if sku:
        q = q.filter(models.HybridStock.sku == sku)
    if outlet_id is not None:
        q = q.filter(models.HybridStock.outlet_id == outlet_id)
    return q.order_by(models.HybridStock.sku.asc(), models.HybridStock.outlet_id.asc()).offset(skip).limit(limit).all()
