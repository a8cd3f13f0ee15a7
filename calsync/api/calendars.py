"""Calendar listing API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from calsync.auth.session import get_current_user, User
from calsync.sync.engine import build_client
from calsync.sync.errors import SyncConfigurationError
from calsync.sync.google_calendar import list_all_calendars
from calsync.sync.subscriptions import get_user_main_subscription, stored_user_calendars

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendars", tags=["calendars"])


class ProviderCalendarResponse(BaseModel):
    """A calendar the user owns at the provider."""
    id: str
    summary: str


class StoredCalendarResponse(BaseModel):
    """A subscription of the current user."""
    id: str
    type: str
    direction: Optional[str] = None
    is_active: bool = True
    last_looked: Optional[str] = None
    calendar_id: Optional[str] = None
    name: Optional[str] = None


class StoredCalendarsResponse(BaseModel):
    main: list[StoredCalendarResponse]
    monitored: list[StoredCalendarResponse]


@router.get("/provider", response_model=list[ProviderCalendarResponse])
async def list_provider_calendars(user: User = Depends(get_current_user)):
    """List owned calendars of the account behind the user's main subscription."""
    main = await get_user_main_subscription(user.id)
    if not main:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No main calendar subscription",
        )

    try:
        client = await build_client(main.account_handle)
    except SyncConfigurationError as e:
        logger.warning(f"Cannot list calendars for user {user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No provider credentials for the main calendar account",
        )

    calendars = list_all_calendars(client)
    return [
        ProviderCalendarResponse(id=calendar_id, summary=summary)
        for calendar_id, summary in calendars.items()
    ]


@router.get("/subscriptions", response_model=StoredCalendarsResponse)
async def list_subscriptions(user: User = Depends(get_current_user)):
    """List the current user's subscriptions grouped by kind."""
    grouped = await stored_user_calendars(user.id)
    return StoredCalendarsResponse(
        main=[StoredCalendarResponse(**entry) for entry in grouped.get("main", [])],
        monitored=[StoredCalendarResponse(**entry) for entry in grouped.get("monitored", [])],
    )
