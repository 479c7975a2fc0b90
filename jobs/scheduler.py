"""
APScheduler configuration.

The app is synchronous (SQLAlchemy sessions, requests), so jobs run on the
BackgroundScheduler's thread pool. Each job opens its own session through the
session factory and takes its lease before doing work, so a second firing
while a run is in flight is skipped rather than queued.
"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from config import settings
from services import erp_item_sync, storefront_sync
from services.clients import get_clients

logger = logging.getLogger(__name__)

ERP_SYNC_CRON = "*/15 * * * *"
STOREFRONT_INCREMENTAL_CRON = "*/15 2-17 * * *"
# 02:30 UTC is 08:00 IST; new products go out once before the shops open.
STOREFRONT_NEW_PRODUCTS_CRON = "30 2 * * *"
# Storefront crons are written against UTC hours.
STOREFRONT_CRON_TIMEZONE = "UTC"

jobstores = {
    'default': MemoryJobStore()
}

executors = {
    'default': ThreadPoolExecutor(4),
}

job_defaults = {
    'coalesce': True,
    'max_instances': 1,
    'misfire_grace_time': 120,
}

scheduler = BackgroundScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.scheduler_timezone,
)


def run_erp_sync(session_factory: Callable[[], Session]):
    clients = get_clients()
    if clients.erp is None:
        logger.warning("[SCHEDULER] ERP credentials missing; ERP sync skipped")
        return None
    try:
        result = erp_item_sync.run_incremental_sync(session_factory, clients.erp)
        logger.info("[SCHEDULER] ERP sync: %s outlets, %s failed", len(result["outlets"]), len(result["failed"]))
        return result
    except Exception as e:
        logger.error("[SCHEDULER] ERP sync failed: %s", e)
        return None


def run_storefront_sync(session_factory: Callable[[], Session], scope: str):
    clients = get_clients()
    if clients.shopify is None:
        logger.warning("[SCHEDULER] storefront credentials missing; %s sync skipped", scope)
        return None
    try:
        return storefront_sync.run_storefront_sync_job(session_factory, scope, clients.shopify)
    except Exception as e:
        # the run is already marked failed on its SyncStatus row
        logger.error("[SCHEDULER] storefront %s sync failed: %s", scope, e)
        return None


def recover_stuck_syncs(session_factory: Callable[[], Session]) -> int:
    db = session_factory()
    try:
        return storefront_sync.recover_stuck_syncs(db)
    finally:
        db.close()


def register_jobs(session_factory: Callable[[], Session], target: Optional[BackgroundScheduler] = None):
    target = target or scheduler
    target.add_job(
        run_erp_sync,
        CronTrigger.from_crontab(ERP_SYNC_CRON, timezone=settings.scheduler_timezone),
        args=[session_factory],
        id='erp_item_sync',
        name='ERP item sync (incremental)',
        replace_existing=True,
    )
    target.add_job(
        run_storefront_sync,
        CronTrigger.from_crontab(STOREFRONT_INCREMENTAL_CRON, timezone=STOREFRONT_CRON_TIMEZONE),
        args=[session_factory, storefront_sync.SCOPE_INCREMENTAL],
        id='storefront_sync_incremental',
        name='Storefront price + inventory sync (incremental)',
        replace_existing=True,
    )
    target.add_job(
        run_storefront_sync,
        CronTrigger.from_crontab(STOREFRONT_NEW_PRODUCTS_CRON, timezone=STOREFRONT_CRON_TIMEZONE),
        args=[session_factory, storefront_sync.SCOPE_NEW_PRODUCTS],
        id='storefront_sync_new_products',
        name='Storefront price + inventory sync (new products)',
        replace_existing=True,
    )
    target.add_job(
        recover_stuck_syncs,
        'interval',
        minutes=15,
        args=[session_factory],
        id='recover_stuck_syncs',
        name='Recover stuck storefront syncs',
        replace_existing=True,
    )


def start_scheduler(session_factory: Callable[[], Session]):
    """Start the background job scheduler."""
    if not scheduler.running:
        register_jobs(session_factory)
        scheduler.start()
        logger.info("[SCHEDULER] background job scheduler started")
        for job in scheduler.get_jobs():
            logger.info("[SCHEDULER] %s - next run: %s", job.name, job.next_run_time)


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("[SCHEDULER] background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
