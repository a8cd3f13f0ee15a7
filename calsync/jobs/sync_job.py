"""Periodic sync job."""

import logging
import sqlite3
from datetime import timedelta

from calsync.config import get_settings
from calsync.database import get_database
from calsync.sync.engine import is_sync_paused, trigger_sync_for_subscription
from calsync.sync.subscriptions import list_syncable_subscriptions
from calsync.utils.dates import to_db_datetime, utcnow

logger = logging.getLogger(__name__)


async def run_periodic_sync() -> dict:
    """Run one sync pass over every syncable subscription, least recently looked at first."""
    summary = {"synced": 0, "skipped": 0, "failed": 0}

    if await is_sync_paused():
        logger.debug("Sync is paused, skipping periodic sync")
        return summary

    if not await acquire_job_lock("periodic_sync"):
        logger.debug("Periodic sync already running, skipping")
        return summary

    try:
        subscriptions = await list_syncable_subscriptions()
        logger.info(f"Running periodic sync for {len(subscriptions)} subscriptions")

        for subscription in subscriptions:
            try:
                if await trigger_sync_for_subscription(subscription.id):
                    summary["synced"] += 1
                else:
                    summary["skipped"] += 1
            except Exception as e:
                logger.error(f"Error syncing subscription {subscription.id}: {e}")
                summary["failed"] += 1

        logger.info(f"Periodic sync completed: {summary}")
    finally:
        await release_job_lock("periodic_sync")

    return summary


async def acquire_job_lock(job_name: str, timeout_minutes: int | None = None) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    if timeout_minutes is None:
        timeout_minutes = get_settings().job_lock_timeout_minutes

    db = await get_database()
    now = utcnow()
    cutoff = to_db_datetime(now - timedelta(minutes=timeout_minutes))

    # First, clean up stale locks
    await db.execute(
        """DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?""",
        (job_name, cutoff)
    )
    await db.commit()

    try:
        await db.execute(
            """INSERT INTO job_locks (job_name, locked_at, locked_by)
               VALUES (?, ?, ?)""",
            (job_name, to_db_datetime(now), "worker")
        )
        await db.commit()
        return True
    except sqlite3.IntegrityError:
        # Lock already held by another process
        return False


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()
