import pytest

import models
from erp_service import build_filter, flatten_item_rows
from services import erp_item_sync, sync_lease
from services.erp_item_sync import latest_watermark, sync_full, sync_incremental, upsert_erp_rows


def _row(item_id, outlet_id, stock, ts, mrp="100.00"):
    return {"itemId": str(item_id), "outletId": outlet_id, "itemName": f"Item {item_id}",
            "mrp": mrp, "stock": stock, "itemTimeStamp": ts}


def _rows_for(db, item_id, outlet_id):
    return db.query(models.ErpItem).filter_by(item_id=str(item_id), outlet_id=outlet_id).all()


def test_later_sync_updates_existing_row_in_place(db, fake_erp):
    fake_erp.rows = {7: [_row(42, 7, 10, "20240101000000")]}
    first = sync_incremental(db, fake_erp, 7)
    assert first["created"] == 1

    fake_erp.rows = {7: [_row(42, 7, 7, "20240101000000")]}
    second = sync_incremental(db, fake_erp, 7)

    rows = _rows_for(db, 42, 7)
    assert len(rows) == 1
    assert rows[0].stock == 7
    assert second["created"] == 0
    assert second["updated"] == 1


def test_replaying_the_same_rows_changes_nothing(db, fake_erp):
    fake_erp.rows = {7: [_row(42, 7, 10, "20240101000000"), _row(43, 7, 2, "20240101000000")]}
    sync_incremental(db, fake_erp, 7)
    again = sync_incremental(db, fake_erp, 7)

    assert again["created"] == 0
    assert again["updated"] == 0
    assert again["unchanged"] == 2
    assert db.query(models.ErpItem).count() == 2


def test_incremental_query_starts_at_outlet_watermark(db, fake_erp):
    fake_erp.rows = {7: [_row(42, 7, 10, "20240101000000")]}
    result = sync_incremental(db, fake_erp, 7)
    assert fake_erp.queries[0] == "itemTimeStamp>=0,outletId==7"
    assert result["watermarkBefore"] == "0"
    assert result["watermarkAfter"] == "20240101000000"

    fake_erp.rows[7].append(_row(44, 7, 1, "20240105120000"))
    result = sync_incremental(db, fake_erp, 7)
    assert fake_erp.queries[1] == "itemTimeStamp>=20240101000000,outletId==7"
    assert result["watermarkAfter"] == "20240105120000"


def test_stale_rows_never_move_watermark_backwards(db):
    upsert_erp_rows(db, [_row(42, 7, 10, "20240105000000")])
    stats = upsert_erp_rows(db, [_row(42, 7, 99, "20240101000000")])

    assert stats["skipped"] == 1
    assert _rows_for(db, 42, 7)[0].stock == 10
    assert latest_watermark(db, 7) == "20240105000000"


def test_duplicate_keys_in_one_page_keep_the_newest(db):
    stats = upsert_erp_rows(db, [
        _row(42, 7, 10, "20240102000000"),
        _row(42, 7, 3, "20240101000000"),
    ])
    assert stats["created"] == 1
    assert stats["skipped"] == 1
    assert _rows_for(db, 42, 7)[0].stock == 10


def test_upsert_recomputes_hybrid_stock(db, make_store, seed_stock):
    make_store("S1", 1)
    seed_stock("A", 1, 2)
    upsert_erp_rows(db, [_row("I-A", 1, 9, "20250101000000")])

    row = db.query(models.HybridStock).filter_by(sku="A", outlet_id=1).one()
    assert row.primary_stock == 9


def test_incremental_run_walks_outlets_in_order_and_survives_failures(db, session_factory, fake_erp, make_store):
    make_store("S30", 30)
    make_store("S10", 10)
    make_store("S20", 20)
    make_store("S40", 40, status="Inactive")
    fake_erp.rows = {10: [_row(1, 10, 5, "20240101000000")], 30: [_row(3, 30, 5, "20240101000000")]}
    fake_erp.fail_outlets = {20}

    summary = erp_item_sync.run_incremental_sync(session_factory, fake_erp)

    assert [q.rsplit("==", 1)[1] for q in fake_erp.queries] == ["10", "20", "30"]
    assert [o["outletId"] for o in summary["outlets"]] == [10, 30]
    assert [f["outletId"] for f in summary["failed"]] == [20]
    errors = db.query(models.NotificationLog).filter_by(log_type="error").all()
    assert any("outlet 20" in e.notification_info for e in errors)
    assert db.query(models.SyncLease).count() == 0


def test_incremental_run_is_skipped_while_another_holds_the_lease(db, session_factory, fake_erp, make_store):
    make_store("S10", 10)
    assert sync_lease.acquire(db, erp_item_sync.LEASE_TYPE, erp_item_sync.GLOBAL_SCOPE, "other-instance")

    summary = erp_item_sync.run_incremental_sync(session_factory, fake_erp)

    assert summary["skipped"] is True
    assert fake_erp.queries == []


def test_full_sweep_refetches_boundary_and_stops_at_first_error(db, fake_erp):
    upsert_erp_rows(db, [_row(42, 7, 10, "20240101000000")])
    fake_erp.fail_outlets = {8}
    fake_erp.rows = {7: [_row(42, 7, 4, "20240101000000")]}

    result = sync_full(db, fake_erp, outlets=[9, 7, 8])

    assert result["watermark"] == str(20240101000000 - 1)
    assert fake_erp.queries[0].startswith(f"itemTimeStamp>={20240101000000 - 1},")
    assert result["success"] is False
    assert result["failedOutlet"] == 8
    # 7 ran, 8 failed, 9 never attempted
    assert [q.rsplit("==", 1)[1] for q in fake_erp.queries] == ["7", "8"]
    assert _rows_for(db, 42, 7)[0].stock == 4


def test_full_sweep_pages_through_every_outlet(db, fake_erp):
    fake_erp.page_size = 2
    fake_erp.rows = {
        7: [_row(i, 7, i, "20240101000000") for i in range(1, 6)],
        8: [_row(9, 8, 1, "20240101000000")],
    }
    result = sync_full(db, fake_erp, outlets=[7, 8])

    assert result["success"] is True
    assert result["pages"] == 4
    assert result["created"] == 6


def test_build_filter_joins_conditions():
    assert build_filter(("itemTimeStamp", ">=", "20240101000000"), ("outletId", "==", 7)) == \
        "itemTimeStamp>=20240101000000,outletId==7"
    with pytest.raises(ValueError):
        build_filter(("stock", "<", 3))


def test_flatten_nested_stock_rows():
    rows = flatten_item_rows([
        {"itemId": 42, "itemName": "Kibble", "mrp": 100,
         "stock": [{"outletId": 7, "stock": 3, "itemTimeStamp": "20240101000000"},
                   {"outletId": 8, "stock": 1, "mrp": 95, "itemTimeStamp": "20240101000001"}]},
        {"itemId": 43, "outletId": 7, "stock": 2, "itemTimeStamp": "20240101000000"},
        {"itemId": None, "outletId": 7, "stock": 2},
    ])
    assert [(r["itemId"], r["outletId"], r["stock"]) for r in rows] == [("42", 7, 3), ("42", 8, 1), ("43", 7, 2)]
    assert rows[1]["mrp"] == 95
