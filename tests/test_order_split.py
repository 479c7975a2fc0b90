import pytest

import models
from services import order_split
from services.errors import (BackupWarehouseError, DataIntegrityError, NoInventoryError, ReassignmentError,
                             StoreNotFoundError)
from services.order_split import METHOD_PRIMARY, METHOD_PRIMARY_WITH_BACKUP


def _quantities(split):
    return {i["itemReferenceCode"]: i["quantity"] for i in split.line_items}


@pytest.fixture
def order_1001(db, make_store, seed_stock, make_order):
    """Order #1001: 2 x A and 3 x B for S1; S1 holds 1 A, S2 holds 1 A."""
    make_store("S1", 1)
    make_store("S2", 2)
    seed_stock("A", 1, 1)
    seed_stock("A", 2, 1)
    seed_stock("B", 1, 5)
    return make_order(outlet=1)


def test_reassigning_one_unit_splits_the_order(db, order_1001):
    (split,) = order_split.split_order(db, order_1001, method=METHOD_PRIMARY)
    assert split.split_id == "1001-S1"
    assert _quantities(split) == {"A": 2, "B": 3}

    splits = order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 1, "storeCode": "S2"}])

    by_id = {s.split_id: s for s in splits}
    assert set(by_id) == {"1001-S1", "1001-S2"}
    assert _quantities(by_id["1001-S1"]) == {"A": 1, "B": 3}
    assert _quantities(by_id["1001-S2"]) == {"A": 1}
    assert all(s.re_assign_status for s in splits)
    assert by_id["1001-S2"].erp_previous_store_id == 1
    assert by_id["1001-S2"].line_items[0]["outletId"] == 2


def test_split_order_is_idempotent(db, order_1001):
    first = order_split.split_order(db, order_1001)
    again = order_split.split_order(db, order_1001)
    assert [s.id for s in first] == [s.id for s in again]
    assert db.query(models.OrderSplit).count() == 1


def test_primary_with_backup_sends_shortfall_to_warehouse(db, make_store, seed_stock, make_order):
    make_store("W", 9, backup=True)
    make_store("S1", 1, select_backup=9)
    seed_stock("A", 1, 1)
    seed_stock("B", 1, 5)
    order = make_order(outlet=1)

    splits = order_split.split_order(db, order, method=METHOD_PRIMARY_WITH_BACKUP)

    by_id = {s.split_id: s for s in splits}
    assert _quantities(by_id["1001-S1"]) == {"A": 1, "B": 3}
    assert _quantities(by_id["1001-W"]) == {"A": 1}
    assert order_split.allocated_quantities(db, order.id) == order_split.ordered_quantities(order)


def test_store_override_wins_over_note_attribute(db, order_1001):
    (split,) = order_split.split_order(db, order_1001, store_override=2)
    assert split.store_code == "S2"


def test_unknown_override_is_rejected(db, order_1001):
    with pytest.raises(StoreNotFoundError):
        order_split.split_order(db, order_1001, store_override=404)


def test_order_without_designated_store(db, make_store, make_order):
    make_store("S1", 1)
    order = make_order(outlet=None)
    with pytest.raises(StoreNotFoundError):
        order_split.split_order(db, order)


def test_reassign_requires_stock_at_target(db, order_1001):
    (split,) = order_split.split_order(db, order_1001)
    with pytest.raises(NoInventoryError) as exc:
        order_split.reassign_items(db, split.id, [{"lineItemId": 12, "quantity": 3, "storeCode": "S2"}])
    assert exc.value.field == "12"
    db.refresh(split)
    assert _quantities(split) == {"A": 2, "B": 3}


def test_reassign_rejects_more_than_remaining(db, order_1001):
    (split,) = order_split.split_order(db, order_1001)
    with pytest.raises(ReassignmentError):
        order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 3, "storeCode": "S2"}])


def test_moving_everything_removes_the_source_split(db, make_store, seed_stock, make_order):
    make_store("S1", 1)
    make_store("S2", 2)
    seed_stock("A", 2, 5)
    order = make_order(lines=(("A", 2),), outlet=1)
    (split,) = order_split.split_order(db, order)

    splits = order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 2, "storeCode": "S2"}])

    assert [s.split_id for s in splits] == ["1001-S2"]
    assert _quantities(splits[0]) == {"A": 2}


def test_moves_into_an_existing_split_are_merged(db, order_1001):
    (split,) = order_split.split_order(db, order_1001)
    order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 1, "storeCode": "S2"}])
    db.query(models.HybridStock).filter_by(sku="A", outlet_id=2).update({"primary_stock": 3})
    db.commit()

    splits = order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 1, "storeCode": "S2"}])

    by_id = {s.split_id: s for s in splits}
    assert _quantities(by_id["1001-S1"]) == {"B": 3}
    assert _quantities(by_id["1001-S2"]) == {"A": 2}


@pytest.mark.parametrize("closed", ["delivered", "cancel"])
def test_closed_target_split_takes_no_new_items(db, order_1001, closed):
    (split,) = order_split.split_order(db, order_1001)
    order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 1, "storeCode": "S2"}])
    s2 = db.query(models.OrderSplit).filter_by(split_id="1001-S2").one()
    s2.order_status = closed
    db.query(models.HybridStock).filter_by(sku="A", outlet_id=2).update({"primary_stock": 3})
    db.commit()

    with pytest.raises(ReassignmentError):
        order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 1, "storeCode": "S2"}])

    db.expire_all()
    by_id = {s.split_id: s for s in order_split.splits_for_order(db, order_1001.id)}
    assert by_id["1001-S2"].order_status == closed
    assert _quantities(by_id["1001-S2"]) == {"A": 1}
    assert _quantities(by_id["1001-S1"]) == {"A": 1, "B": 3}


def test_reassignment_candidates(db, order_1001):
    (split,) = order_split.split_order(db, order_1001)
    rows = order_split.reassignment_candidates(db, split.id, 11, 1)
    assert [(r.store_code, r.primary_stock) for r in rows] == [("S2", 1)]

    with pytest.raises(NoInventoryError):
        order_split.reassignment_candidates(db, split.id, 12)


def test_closed_splits_cannot_be_reassigned(db, order_1001):
    (split,) = order_split.split_order(db, order_1001)
    split.order_status = "delivered"
    db.commit()
    with pytest.raises(ReassignmentError):
        order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 1, "storeCode": "S2"}])
    with pytest.raises(ReassignmentError):
        order_split.reassign_to_backup(db, split.id)


def test_reassign_to_backup_needs_exactly_one_warehouse(db, order_1001, make_store):
    (split,) = order_split.split_order(db, order_1001)
    with pytest.raises(BackupWarehouseError):
        order_split.reassign_to_backup(db, split.id)

    make_store("W1", 9, backup=True, name="Central Warehouse")
    moved = order_split.reassign_to_backup(db, split.id)
    assert moved.split_id == "1001-W1"
    assert moved.store_name == "Central Warehouse"
    assert moved.erp_previous_store_id == 1
    assert moved.re_assign_status is True
    assert {i["outletId"] for i in moved.line_items} == {9}

    make_store("W2", 10, backup=True)
    with pytest.raises(BackupWarehouseError):
        order_split.backup_warehouse(db)


def test_reassign_to_backup_merges_into_existing_warehouse_split(db, order_1001, make_store):
    make_store("W", 9, backup=True)
    (split,) = order_split.split_order(db, order_1001)
    order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 1, "storeCode": "S2"}])
    s2 = db.query(models.OrderSplit).filter_by(split_id="1001-S2").one()
    s2_pk = s2.id

    first = order_split.reassign_to_backup(db, split.id)
    second = order_split.reassign_to_backup(db, s2_pk)

    assert second.id == first.id
    assert _quantities(second) == {"A": 2, "B": 3}
    assert [s.split_id for s in order_split.splits_for_order(db, order_1001.id)] == ["1001-W"]


def test_reassign_to_backup_refuses_a_cancelled_warehouse_split(db, order_1001, make_store):
    make_store("W", 9, backup=True)
    (split,) = order_split.split_order(db, order_1001)
    order_split.reassign_items(db, split.id, [{"lineItemId": 11, "quantity": 1, "storeCode": "S2"}])
    s2_pk = db.query(models.OrderSplit).filter_by(split_id="1001-S2").one().id
    warehouse = order_split.reassign_to_backup(db, split.id)
    warehouse.order_status = "cancel"
    db.commit()

    with pytest.raises(ReassignmentError):
        order_split.reassign_to_backup(db, s2_pk)

    db.expire_all()
    by_id = {s.split_id: s for s in order_split.splits_for_order(db, order_1001.id)}
    assert set(by_id) == {"1001-S2", "1001-W"}
    assert _quantities(by_id["1001-S2"]) == {"A": 1}
    assert _quantities(by_id["1001-W"]) == {"A": 1, "B": 3}


def test_over_allocation_is_detected(db, order_1001):
    (split,) = order_split.split_order(db, order_1001)
    db.add(models.OrderSplit(
        order_reference_id=order_1001.id, order_number=1001, split_id="1001-S2", store_code="S2",
        erp_store_id=2, line_items=[{"id": 11, "quantity": 1, "itemReferenceCode": "A"}],
    ))
    db.commit()
    with pytest.raises(DataIntegrityError):
        order_split.assert_partition(db, order_1001)


def test_split_id_format():
    assert order_split.split_id_for(1001, "S1") == "1001-S1"
