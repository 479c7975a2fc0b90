# crud/product.py
from typing import List, Optional

from sqlalchemy.orm import Session

import models
import schemas
from services import hybrid_stock


def upsert_variants(db: Session, variants: List[schemas.VariantInfoIn]) -> dict:
    """
    Mirror storefront variants. New variants start with is_new_product=True so
    the next price/inventory run picks them up.
    """
    ids = [v.variant_id for v in variants]
    existing = {
        int(r.variant_id): r
        for r in db.query(models.ProductVariantInfo).filter(models.ProductVariantInfo.variant_id.in_(ids)).all()
    } if ids else {}

    created = updated = 0
    item_ids = set()
    for v in variants:
        data = v.model_dump(exclude_unset=True)
        row = existing.get(v.variant_id)
        if row is None:
            row = models.ProductVariantInfo(is_new_product=True)
            db.add(row)
            existing[v.variant_id] = row
            created += 1
        else:
            updated += 1
        for key, value in data.items():
            if hasattr(models.ProductVariantInfo, key):
                setattr(row, key, value)
        if row.item_id:
            item_ids.add(row.item_id)
    db.commit()

    hybrid_stock.recompute_for_items(db, item_ids)
    return {"created": created, "updated": updated}


def list_variants(db: Session, new_only: bool = False, sku: Optional[str] = None,
                  skip: int = 0, limit: int = 100) -> List[models.ProductVariantInfo]:
    q = db.query(models.ProductVariantInfo)
    if new_only:
        q = q.filter(models.ProductVariantInfo.is_new_product == True)  # noqa: E712
    if sku:
        q = q.filter(models.ProductVariantInfo.sku == sku)
    return q.order_by(models.ProductVariantInfo.id.asc()).offset(skip).limit(limit).all()
