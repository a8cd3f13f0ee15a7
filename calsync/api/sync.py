"""Sync status and control API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from calsync.auth.session import get_current_user, require_admin, User
from calsync.database import get_database, set_setting
from calsync.sync.engine import trigger_sync_for_subscription
from calsync.sync.subscriptions import get_subscription

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class SyncLogEntry(BaseModel):
    """Sync log entry."""
    id: int
    subscription_id: Optional[str] = None
    action: str
    status: str
    details: Optional[str] = None
    created_at: str


class SyncLogResponse(BaseModel):
    """Sync log response."""
    entries: list[SyncLogEntry]
    total: int
    page: int
    page_size: int


@router.post("/subscriptions/{subscription_id}")
async def trigger_subscription_sync(
    subscription_id: str,
    user: User = Depends(get_current_user),
):
    """Run one sync of a subscription now."""
    subscription = await get_subscription(subscription_id)
    if not subscription:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )
    if subscription.user_id != user.id and not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not your subscription",
        )

    synced = await trigger_sync_for_subscription(subscription_id)
    logger.info(f"Manual sync of subscription {subscription_id} by {user.id}: {synced}")
    return {"status": "ok", "synced": synced}


@router.get("/log", response_model=SyncLogResponse)
async def get_sync_log(
    user: User = Depends(get_current_user),
    page: int = 1,
    page_size: int = 50,
    subscription_id: Optional[str] = None,
    status_filter: Optional[str] = None,
):
    """Get sync activity log for current user."""
    db = await get_database()

    query = "SELECT * FROM sync_log WHERE user_id = ?"
    params: list = [user.id]

    if subscription_id:
        query += " AND subscription_id = ?"
        params.append(subscription_id)

    if status_filter:
        query += " AND status = ?"
        params.append(status_filter)

    count_query = query.replace("SELECT *", "SELECT COUNT(*)", 1)
    cursor = await db.execute(count_query, params)
    total = (await cursor.fetchone())[0]

    query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([page_size, (page - 1) * page_size])

    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()

    entries = [
        SyncLogEntry(
            id=row["id"],
            subscription_id=row["subscription_id"],
            action=row["action"],
            status=row["status"],
            details=row["details"],
            created_at=str(row["created_at"]),
        )
        for row in rows
    ]

    return SyncLogResponse(entries=entries, total=total, page=page, page_size=page_size)


@router.post("/pause")
async def pause_sync(admin: User = Depends(require_admin)):
    """Pause all sync operations."""
    await set_setting("sync_paused", "true")
    return {"status": "ok", "sync_paused": True}


@router.post("/resume")
async def resume_sync(admin: User = Depends(require_admin)):
    """Resume sync operations."""
    await set_setting("sync_paused", "false")
    return {"status": "ok", "sync_paused": False}
