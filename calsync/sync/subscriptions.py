"""Persistence of calendar subscriptions."""

import json
import logging
from typing import Optional

from calsync.database import get_database, write_sync_log
from calsync.sync.errors import StaleSubscriptionError
from calsync.sync.models import SUBSCRIPTION_MAIN, CalendarSubscription

logger = logging.getLogger(__name__)

MUTABLE_COLUMNS = (
    "provider_calendar_id",
    "remote_calendar_id",
    "type",
    "direction",
    "start_date",
    "entity_types",
    "entity_labels",
    "default_entity_type",
    "sync_token",
    "page_token",
    "last_sync",
    "last_looked",
    "remove_remote_on_delete",
    "skip_attendee_sync",
    "assign_default_team",
    "is_active",
)


async def get_subscription(subscription_id: str) -> Optional[CalendarSubscription]:
    """Load a subscription by ID."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_subscriptions WHERE id = ?", (subscription_id,)
    )
    row = await cursor.fetchone()
    return CalendarSubscription.from_row(row) if row else None


async def save_subscription(subscription: CalendarSubscription) -> None:
    """
    Persist a subscription's mutable state.

    Raises StaleSubscriptionError when another writer saved it since it
    was loaded.
    """
    values = []
    for column in MUTABLE_COLUMNS:
        value = getattr(subscription, column)
        if column in ("entity_types", "entity_labels"):
            value = json.dumps(value)
        values.append(value)

    assignments = ", ".join(f"{column} = ?" for column in MUTABLE_COLUMNS)
    db = await get_database()
    cursor = await db.execute(
        f"""UPDATE calendar_subscriptions
            SET {assignments}, version = version + 1
            WHERE id = ? AND version = ?""",
        [*values, subscription.id, subscription.version],
    )
    await db.commit()

    if cursor.rowcount == 0:
        raise StaleSubscriptionError(
            f"Subscription {subscription.id} was modified concurrently (version {subscription.version})"
        )
    subscription.version += 1


async def get_user_main_subscription(user_id: str) -> Optional[CalendarSubscription]:
    """The user's active primary subscription, if any."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_subscriptions
           WHERE user_id = ? AND type = ? AND is_active = TRUE
           ORDER BY created_at LIMIT 1""",
        (user_id, SUBSCRIPTION_MAIN),
    )
    row = await cursor.fetchone()
    return CalendarSubscription.from_row(row) if row else None


async def list_syncable_subscriptions() -> list[CalendarSubscription]:
    """Active subscriptions with a direction, least recently looked at first."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT s.* FROM calendar_subscriptions s
           JOIN users u ON u.id = s.user_id
           WHERE s.is_active = TRUE
             AND s.direction IS NOT NULL AND s.direction != ''
             AND u.is_active = TRUE AND u.deleted = FALSE
           ORDER BY s.last_looked IS NOT NULL, s.last_looked"""
    )
    return [CalendarSubscription.from_row(row) for row in await cursor.fetchall()]


async def get_provider_calendar(provider_calendar_id: str) -> Optional[dict]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM provider_calendars WHERE id = ?", (provider_calendar_id,)
    )
    row = await cursor.fetchone()
    return dict(row) if row else None


async def stored_user_calendars(user_id: str) -> dict:
    """The user's subscriptions grouped into main and monitored."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT s.id, s.type, s.direction, s.is_active, s.last_looked,
                  pc.calendar_id, pc.name
           FROM calendar_subscriptions s
           LEFT JOIN provider_calendars pc ON pc.id = s.provider_calendar_id
           WHERE s.user_id = ?
           ORDER BY s.type, pc.name""",
        (user_id,),
    )
    grouped: dict = {"main": [], "monitored": []}
    for row in await cursor.fetchall():
        entry = dict(row)
        entry["is_active"] = bool(entry["is_active"])
        grouped.setdefault(entry["type"], []).append(entry)
    return grouped


async def record_sync_success(subscription: CalendarSubscription, details: dict) -> None:
    """Reset the failure streak and audit the run."""
    db = await get_database()
    await db.execute(
        """UPDATE calendar_subscriptions
           SET consecutive_failures = 0, last_error = NULL, version = version + 1
           WHERE id = ?""",
        (subscription.id,),
    )
    await db.commit()
    subscription.version += 1
    subscription.consecutive_failures = 0
    subscription.last_error = None

    await write_sync_log(
        action="sync",
        status="success",
        details=json.dumps(details),
        user_id=subscription.user_id,
        subscription_id=subscription.id,
    )


async def record_sync_failure(subscription: CalendarSubscription, error: str) -> None:
    """Count a failed run and audit it."""
    db = await get_database()
    await db.execute(
        """UPDATE calendar_subscriptions
           SET consecutive_failures = consecutive_failures + 1,
               last_error = ?, version = version + 1
           WHERE id = ?""",
        (error, subscription.id),
    )
    await db.commit()
    subscription.version += 1
    subscription.consecutive_failures += 1
    subscription.last_error = error

    await write_sync_log(
        action="sync",
        status="failure",
        details=json.dumps({"error": error}),
        user_id=subscription.user_id,
        subscription_id=subscription.id,
    )
