from datetime import timedelta

import models
from services import sync_lease
from utils import utcnow

TYPE = "erp_item_sync"


def test_second_holder_is_blocked_until_release(db):
    assert sync_lease.acquire(db, TYPE, "26311", "a")
    assert not sync_lease.acquire(db, TYPE, "26311", "b")
    assert sync_lease.current_holder(db, TYPE, "26311") == "a"

    assert sync_lease.release(db, TYPE, "26311", "a")
    assert sync_lease.acquire(db, TYPE, "26311", "b")


def test_scopes_are_independent(db):
    assert sync_lease.acquire(db, TYPE, "1", "a")
    assert sync_lease.acquire(db, TYPE, "2", "b")
    assert sync_lease.acquire(db, "storefront_sync", "1", "b")


def test_holder_can_reacquire(db):
    assert sync_lease.acquire(db, TYPE, "1", "a")
    assert sync_lease.acquire(db, TYPE, "1", "a")
    assert db.query(models.SyncLease).count() == 1


def test_expired_lease_can_be_taken_over(db):
    assert sync_lease.acquire(db, TYPE, "1", "a")
    db.query(models.SyncLease).update({"expires_at": utcnow() - timedelta(seconds=1)})
    db.commit()

    assert sync_lease.current_holder(db, TYPE, "1") is None
    assert sync_lease.acquire(db, TYPE, "1", "b")
    assert sync_lease.current_holder(db, TYPE, "1") == "b"
    assert not sync_lease.heartbeat(db, TYPE, "1", "a")
    assert sync_lease.heartbeat(db, TYPE, "1", "b")


def test_release_by_non_holder_is_a_no_op(db):
    assert sync_lease.acquire(db, TYPE, "1", "a")
    assert not sync_lease.release(db, TYPE, "1", "b")
    assert sync_lease.current_holder(db, TYPE, "1") == "a"


def test_held_releases_on_exit(db):
    with sync_lease.held(db, TYPE, "1", "a") as ok:
        assert ok
        with sync_lease.held(db, TYPE, "1", "b") as other:
            assert not other
        assert sync_lease.current_holder(db, TYPE, "1") == "a"
    assert sync_lease.current_holder(db, TYPE, "1") is None
