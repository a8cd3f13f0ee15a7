"""Retention cleanup job."""

import json
import logging
from datetime import timedelta

from calsync.config import get_settings
from calsync.database import get_database, write_sync_log
from calsync.utils.dates import to_db_datetime, utcnow

logger = logging.getLogger(__name__)


async def run_retention_cleanup() -> dict:
    """
    Run retention cleanup according to policy.

    Retention policy:
    - Sync log entries: sync_log_retention_days
    - Recurring queue entries of inactive or removed subscriptions: dropped
    - Job locks older than the lock timeout: dropped
    """
    settings = get_settings()
    db = await get_database()
    now = utcnow()

    summary = {
        "old_sync_logs": 0,
        "orphaned_recurring_entries": 0,
        "stale_job_locks": 0,
    }

    log_cutoff = to_db_datetime(now - timedelta(days=settings.sync_log_retention_days))
    cursor = await db.execute(
        "DELETE FROM sync_log WHERE created_at < ? RETURNING id",
        (log_cutoff,)
    )
    summary["old_sync_logs"] = len(await cursor.fetchall())

    cursor = await db.execute(
        """DELETE FROM recurring_event_queue
           WHERE subscription_id NOT IN (
               SELECT id FROM calendar_subscriptions WHERE is_active = TRUE
           )
           RETURNING id"""
    )
    summary["orphaned_recurring_entries"] = len(await cursor.fetchall())

    lock_cutoff = to_db_datetime(now - timedelta(minutes=settings.job_lock_timeout_minutes))
    cursor = await db.execute(
        "DELETE FROM job_locks WHERE locked_at < ? RETURNING job_name",
        (lock_cutoff,)
    )
    summary["stale_job_locks"] = len(await cursor.fetchall())

    await db.commit()

    logger.info(f"Retention cleanup completed: {summary}")
    await write_sync_log("retention_cleanup", "success", json.dumps(summary))

    return summary
