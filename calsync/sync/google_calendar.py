"""Google Calendar API wrapper."""

import logging
from typing import Optional

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calsync.config import get_settings
from calsync.sync.provider import DELETE_EVENT, RESET_TOKEN

logger = logging.getLogger(__name__)


class GoogleCalendarClient:
    """Wrapper around Google Calendar API."""

    def __init__(self, access_token: str):
        """Initialize with access token."""
        self.settings = get_settings()
        self.credentials = Credentials(token=access_token)
        http = AuthorizedHttp(
            self.credentials,
            http=httplib2.Http(timeout=self.settings.provider_timeout_seconds),
        )
        self.service = build("calendar", "v3", http=http, cache_discovery=False)

    def list_calendars(self, page_token: Optional[str] = None) -> dict:
        """List one page of calendars the account owns."""
        params = {
            "maxResults": self.settings.provider_calendar_page_size,
            "minAccessRole": "owner",
        }
        if page_token:
            params["pageToken"] = page_token
        return self.service.calendarList().list(**params).execute()

    def get_calendar_metadata(self, calendar_id: str) -> Optional[dict]:
        """Get calendar metadata, None on provider error."""
        try:
            return self.service.calendars().get(calendarId=calendar_id).execute()
        except HttpError as e:
            logger.error(f"Failed to get calendar {calendar_id}: {e}")
            return None

    def list_events(
        self,
        calendar_id: str,
        time_min: Optional[str] = None,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> dict:
        """
        List one page of events.

        An expired or invalid sync/page token is reported as
        {"success": False, "action": "resetToken"} instead of raising.
        """
        params = {
            "calendarId": calendar_id,
            "maxResults": self.settings.provider_page_size,
            "alwaysIncludeEmail": True,
        }
        if time_min:
            params["timeMin"] = time_min
        if sync_token:
            params["syncToken"] = sync_token
        if page_token:
            params["pageToken"] = page_token

        try:
            return self.service.events().list(**params).execute()
        except HttpError as e:
            if e.resp.status in (400, 410):
                logger.info(f"Sync token rejected for calendar {calendar_id} ({e.resp.status})")
                return {"success": False, "action": RESET_TOKEN}
            logger.error(f"Failed to list events for calendar {calendar_id}: {e}")
            return {"success": False}

    def list_event_instances(
        self,
        calendar_id: str,
        event_id: str,
        page_token: Optional[str] = None,
    ) -> dict:
        """List one page of instances of a recurring event."""
        params = {
            "calendarId": calendar_id,
            "eventId": event_id,
            "maxResults": self.settings.provider_page_size,
            "alwaysIncludeEmail": True,
        }
        if page_token:
            params["pageToken"] = page_token

        try:
            return self.service.events().instances(**params).execute()
        except HttpError as e:
            if e.resp.status in (400, 410):
                logger.info(f"Page token rejected for recurring event {event_id}")
                return {"success": False, "action": RESET_TOKEN}
            if e.resp.status in (403, 404):
                logger.info(f"Recurring event {event_id} is no longer accessible")
                return {"success": False, "action": DELETE_EVENT}
            logger.error(f"Failed to list instances of event {event_id}: {e}")
            return {"success": False}

    def insert_event(self, calendar_id: str, event: dict) -> Optional[dict]:
        """Create an event, None on provider error."""
        try:
            return self.service.events().insert(
                calendarId=calendar_id,
                body=event,
            ).execute()
        except HttpError as e:
            logger.error(f"Failed to insert event into calendar {calendar_id}: {e}")
            return None

    def update_event(self, calendar_id: str, event_id: str, event: dict) -> bool:
        """Replace an event."""
        try:
            self.service.events().update(
                calendarId=calendar_id,
                eventId=event_id,
                body=event,
            ).execute()
            return True
        except HttpError as e:
            logger.error(f"Failed to update event {event_id}: {e}")
            return False

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event."""
        try:
            self.service.events().delete(
                calendarId=calendar_id,
                eventId=event_id,
            ).execute()
            return True
        except HttpError as e:
            if e.resp.status in (404, 410):
                # Already gone
                return True
            logger.error(f"Failed to delete event {event_id}: {e}")
            return False

    def get_event(self, calendar_id: str, event_id: str) -> Optional[dict]:
        """Get a single event."""
        try:
            return self.service.events().get(
                calendarId=calendar_id,
                eventId=event_id,
            ).execute()
        except HttpError as e:
            if e.resp.status != 404:
                logger.error(f"Failed to get event {event_id}: {e}")
            return None


def list_all_calendars(client) -> dict[str, str]:
    """Walk every calendar-list page and return {calendar_id: summary}."""
    calendars: dict[str, str] = {}
    page_token = None

    while True:
        result = client.list_calendars(page_token)
        for item in result.get("items", []):
            calendars[item["id"]] = item.get("summary", item["id"])

        page_token = result.get("nextPageToken")
        if not page_token:
            break

    return calendars
