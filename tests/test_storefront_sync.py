from datetime import timedelta
from decimal import Decimal

import pytest

import models
from services import storefront_sync, sync_lease
from services.errors import ExternalServiceError, SyncInProgressError, SyncSequenceError
from services.storefront_sync import (COMPLETED, FAILED, INVENTORY_SYNC, PRICE_SYNC, RUNNING, SyncContext,
                                      recover_stuck_syncs, run_inventory_sync, run_price_sync, start_sync)
from utils import erp_timestamp, utcnow


def _seed_variants(db, count, product_id=500, outlet=7, ts="20240101000000", location_id=31):
    for i in range(count):
        db.add(models.ProductVariantInfo(
            variant_id=10_000 + i,
            product_id=product_id,
            inventory_item_id=20_000 + i,
            location_id=location_id,
            sku=f"SKU-{i}",
            item_id=str(i),
            outlet_id=outlet,
            is_new_product=True,
        ))
        db.add(models.ErpItem(item_id=str(i), outlet_id=outlet, mrp=Decimal("250.00"), stock=i % 4,
                              item_time_stamp=ts))
    db.commit()


def test_125_variants_flush_in_batches_of_50(db, fake_shopify):
    _seed_variants(db, 125)

    ctx = run_price_sync(db, fake_shopify, batch_size=50)

    assert [len(variants) for _pid, variants in fake_shopify.price_calls] == [50, 50, 25]
    assert all(pid == 500 for pid, _variants in fake_shopify.price_calls)
    assert fake_shopify.price_calls[0][1][0] == {"id": 10_000, "compareAtPrice": "250.00"}
    assert len(ctx.variant_ids) == 125

    status = run_inventory_sync(db, fake_shopify, ctx, batch_size=50)

    assert [len(q) for q, _reason in fake_shopify.inventory_calls] == [50, 50, 25]
    assert {reason for _q, reason in fake_shopify.inventory_calls} == {"correction"}
    assert status.overall_status == COMPLETED
    assert status.is_syncing is False
    assert status.sync_types[PRICE_SYNC]["status"] == COMPLETED
    assert status.sync_types[INVENTORY_SYNC]["updated"] == 125
    assert db.query(models.ProductVariantInfo).filter_by(is_new_product=True).count() == 0


def test_price_batches_split_by_product(db, fake_shopify):
    _seed_variants(db, 3, product_id=1)
    db.query(models.ProductVariantInfo).filter_by(variant_id=10_002).update({"product_id": 2})
    db.commit()

    run_price_sync(db, fake_shopify, batch_size=50)

    assert sorted((pid, len(v)) for pid, v in fake_shopify.price_calls) == [(1, 2), (2, 1)]


def test_inventory_pushes_hybrid_stock_and_looks_up_missing_location(db, fake_shopify, make_store, seed_stock):
    make_store("S1", 1)
    seed_stock("A", 1, 4)

    status = storefront_sync.run_storefront_sync(db, fake_shopify)

    variant = db.query(models.ProductVariantInfo).filter_by(sku="A").one()
    assert fake_shopify.inventory_calls == [([
        {"inventoryItemId": variant.inventory_item_id, "locationId": 777, "quantity": 4},
    ], "correction")]
    assert variant.location_id == 777
    assert status.overall_status == COMPLETED


def test_inventory_stage_requires_a_completed_price_stage(db, fake_shopify):
    status = start_sync(db)
    with pytest.raises(SyncSequenceError):
        run_inventory_sync(db, fake_shopify, SyncContext(status=status, scope=status.scope))
    assert fake_shopify.inventory_calls == []


def test_failed_price_stage_marks_run_failed(db, fake_shopify):
    _seed_variants(db, 10)
    fake_shopify.fail_price_calls = {0}

    with pytest.raises(ExternalServiceError):
        run_price_sync(db, fake_shopify)

    status = storefront_sync.latest_status(db)
    assert status.overall_status == FAILED
    assert status.is_syncing is False
    assert status.sync_types[PRICE_SYNC]["status"] == FAILED
    assert db.query(models.NotificationLog).filter_by(notification_info="Storefront Sync Failed").count() == 1


def test_one_failed_batch_does_not_sink_the_run(db, fake_shopify):
    _seed_variants(db, 125)
    fake_shopify.fail_price_calls = {1}

    ctx = run_price_sync(db, fake_shopify, batch_size=50)
    status = run_inventory_sync(db, fake_shopify, ctx, batch_size=50)

    assert ctx.price_failed == 50
    assert status.sync_types[PRICE_SYNC]["failed"] == 50
    assert [len(q) for q, _reason in fake_shopify.inventory_calls] == [50, 25]
    assert status.overall_status == COMPLETED
    # the failed batch stays queued for the next new-products run
    assert db.query(models.ProductVariantInfo).filter_by(is_new_product=True).count() == 50


def test_failed_inventory_stage_marks_run_failed(db, fake_shopify):
    _seed_variants(db, 5)
    fake_shopify.fail_inventory = True
    ctx = run_price_sync(db, fake_shopify)

    with pytest.raises(ExternalServiceError):
        run_inventory_sync(db, fake_shopify, ctx)

    db.refresh(ctx.status)
    assert ctx.status.overall_status == FAILED
    assert ctx.status.sync_types[INVENTORY_SYNC]["status"] == FAILED
    assert ctx.status.sync_types[PRICE_SYNC]["status"] == COMPLETED


def test_only_one_run_at_a_time(db):
    start_sync(db)
    with pytest.raises(SyncInProgressError):
        start_sync(db)


def test_stuck_runs_are_recovered(db):
    status = start_sync(db)
    status.last_sync_started_at = utcnow() - timedelta(hours=2)
    db.commit()

    assert recover_stuck_syncs(db, timeout_seconds=900) == 1
    db.refresh(status)
    assert status.overall_status == FAILED
    assert status.sync_types[PRICE_SYNC]["status"] == FAILED
    assert status.sync_types[INVENTORY_SYNC]["status"] == FAILED

    fresh = start_sync(db)
    assert fresh.overall_status == RUNNING


def test_fresh_runs_are_not_recovered(db):
    start_sync(db)
    assert recover_stuck_syncs(db, timeout_seconds=900) == 0


def test_incremental_scope_picks_recently_changed_rows(db):
    _seed_variants(db, 2)
    db.query(models.ErpItem).filter_by(item_id="1").update({"item_time_stamp": erp_timestamp(utcnow())})
    db.commit()

    pairs, skipped = storefront_sync.select_candidates(db, storefront_sync.SCOPE_INCREMENTAL)

    assert [v.item_id for v, _e in pairs] == ["1"]
    assert skipped == 0


def test_variants_without_erp_rows_are_skipped(db):
    _seed_variants(db, 2)
    db.add(models.ProductVariantInfo(variant_id=1, product_id=1, sku="NOERP", item_id="zz", outlet_id=7))
    db.add(models.ProductVariantInfo(variant_id=2, product_id=1, sku="NOKEY"))
    db.commit()

    pairs, skipped = storefront_sync.select_candidates(db, storefront_sync.SCOPE_NEW_PRODUCTS)

    assert len(pairs) == 2
    assert skipped == 2


def test_job_skips_while_lease_is_held(db, session_factory, fake_shopify):
    _seed_variants(db, 3)
    assert sync_lease.acquire(db, storefront_sync.LEASE_TYPE, storefront_sync.GLOBAL_SCOPE, "other-instance")

    assert storefront_sync.run_storefront_sync_job(session_factory, shopify=fake_shopify) is None
    assert fake_shopify.price_calls == []


def test_job_runs_both_stages(db, session_factory, fake_shopify):
    _seed_variants(db, 3)

    result = storefront_sync.run_storefront_sync_job(session_factory, shopify=fake_shopify)

    assert result["overallStatus"] == COMPLETED
    assert len(fake_shopify.price_calls) == 1
    assert len(fake_shopify.inventory_calls) == 1
    assert db.query(models.SyncLease).count() == 0


def test_dismiss_marks_status(db):
    status = start_sync(db)
    assert storefront_sync.dismiss(db, status.id).user_dismissed_at is not None
    assert storefront_sync.dismiss(db, status.id + 100) is None
