# services/sync_lease.py
"""
Lease locks for sync runs, stored in the `sync_leases` table.

A lease is keyed by (sync_type, scope), e.g. ("erp_item_sync", "26311").
It is free when no row exists or the row has expired; the same holder may
re-acquire (and thereby extend) its own lease. Rows survive process restarts,
so two scheduler instances can't sweep the same outlet at once.
"""
import logging
import os
import socket
import threading
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Dict, Iterator, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
from utils import utcnow, ensure_aware

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 900

# Serialises acquire/release inside one process; the table handles the rest.
_scope_locks: Dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def _local_lock(sync_type: str, scope: str) -> threading.Lock:
    key = f"{sync_type}:{scope}"
    with _registry_lock:
        if key not in _scope_locks:
            _scope_locks[key] = threading.Lock()
        return _scope_locks[key]


def new_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def acquire(db: Session, sync_type: str, scope: str, holder: str,
            ttl_seconds: int = DEFAULT_TTL_SECONDS) -> bool:
    """Try to take the lease. Returns False when another holder has a live lease."""
    scope = str(scope)
    with _local_lock(sync_type, scope):
        now = utcnow()
        lease = db.query(models.SyncLease).filter(
            models.SyncLease.sync_type == sync_type,
            models.SyncLease.scope == scope,
        ).first()

        if lease is None:
            db.add(models.SyncLease(
                sync_type=sync_type, scope=scope, holder=holder,
                acquired_at=now, heartbeat_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            ))
            try:
                db.commit()
            except IntegrityError:
                # another process inserted the row first
                db.rollback()
                return False
            return True

        if lease.holder != holder and ensure_aware(lease.expires_at) > now:
            return False

        if lease.holder != holder:
            logger.warning("[LEASE] taking over expired lease %s/%s from %s", sync_type, scope, lease.holder)
            lease.acquired_at = now
        lease.holder = holder
        lease.heartbeat_at = now
        lease.expires_at = now + timedelta(seconds=ttl_seconds)
        db.commit()
        return True


def heartbeat(db: Session, sync_type: str, scope: str, holder: str,
              ttl_seconds: int = DEFAULT_TTL_SECONDS) -> bool:
    """Extends a held lease. Returns False if the lease was lost."""
    now = utcnow()
    count = db.query(models.SyncLease).filter(
        models.SyncLease.sync_type == sync_type,
        models.SyncLease.scope == str(scope),
        models.SyncLease.holder == holder,
    ).update({
        "heartbeat_at": now,
        "expires_at": now + timedelta(seconds=ttl_seconds),
    }, synchronize_session=False)
    db.commit()
    return count == 1


def release(db: Session, sync_type: str, scope: str, holder: str) -> bool:
    scope = str(scope)
    with _local_lock(sync_type, scope):
        count = db.query(models.SyncLease).filter(
            models.SyncLease.sync_type == sync_type,
            models.SyncLease.scope == scope,
            models.SyncLease.holder == holder,
        ).delete(synchronize_session=False)
        db.commit()
        return count == 1


def current_holder(db: Session, sync_type: str, scope: str) -> Optional[str]:
    lease = db.query(models.SyncLease).filter(
        models.SyncLease.sync_type == sync_type,
        models.SyncLease.scope == str(scope),
    ).first()
    if lease is None or ensure_aware(lease.expires_at) <= utcnow():
        return None
    return lease.holder


@contextmanager
def held(db: Session, sync_type: str, scope: str, holder: str,
         ttl_seconds: int = DEFAULT_TTL_SECONDS) -> Iterator[bool]:
    """
    Context manager yielding whether the lease was obtained; releases on exit
    only if it was.
    """
    ok = acquire(db, sync_type, scope, holder, ttl_seconds)
    try:
        yield ok
    finally:
        if ok:
            db.rollback()
            release(db, sync_type, scope, holder)
