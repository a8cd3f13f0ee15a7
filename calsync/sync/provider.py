"""Provider-neutral contract the sync engine talks to."""

from dataclasses import dataclass
from typing import Optional, Protocol

# Actions a list call may ask the caller to take instead of raising
RESET_TOKEN = "resetToken"
DELETE_EVENT = "deleteEvent"

# Provider event ID recorded when a push to an already linked event failed
FAIL_MARKER = "FAIL"


class CalendarProvider(Protocol):
    """
    Request/response adapter around a calendar provider's REST API.

    list_events and list_event_instances return either the provider page
    ({"items": [...], "nextPageToken"?, "nextSyncToken"?}) or
    {"success": False, "action": ...} for conditions the caller handles inline.
    """

    def list_calendars(self, page_token: Optional[str] = None) -> dict: ...

    def get_calendar_metadata(self, calendar_id: str) -> Optional[dict]: ...

    def list_events(
        self,
        calendar_id: str,
        time_min: Optional[str] = None,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> dict: ...

    def list_event_instances(
        self,
        calendar_id: str,
        event_id: str,
        page_token: Optional[str] = None,
    ) -> dict: ...

    def insert_event(self, calendar_id: str, event: dict) -> Optional[dict]: ...

    def update_event(self, calendar_id: str, event_id: str, event: dict) -> bool: ...

    def delete_event(self, calendar_id: str, event_id: str) -> bool: ...

    def get_event(self, calendar_id: str, event_id: str) -> Optional[dict]: ...


@dataclass(frozen=True)
class ProviderProfile:
    """Provider-specific configuration of the reconciliation algorithm."""

    name: str
    # (CalendarEvent field, local attribute) in application order
    field_pairs: tuple


GOOGLE_PROFILE = ProviderProfile(
    name="google",
    field_pairs=(
        ("summary", "name"),
        ("start", "date_start"),
        ("end", "date_end"),
        ("description", "description"),
        ("start_date", "date_start_date"),
        ("end_date", "date_end_date"),
        ("location", "location"),
        ("ical_uid", "uid"),
    ),
)


def is_failed_result(result) -> bool:
    """True for the {"success": False, ...} shape of a list call."""
    return not result or (isinstance(result, dict) and result.get("success") is False)
