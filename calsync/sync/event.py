"""In-memory representation of a single provider calendar event."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from dateutil import parser as date_parser
from dateutil import tz

from calsync.utils.dates import DB_DATE_FORMAT, DB_DATETIME_FORMAT, RFC3339_UTC_FORMAT

EVENT_TYPE_DEFAULT = "default"
JOIN_URL_SEPARATOR = "\n---\n"

# Provider response status -> local attendee status
STATUS_PAIRS = {
    "needsAction": "None",
    "accepted": "Accepted",
    "tentative": "Tentative",
    "declined": "Declined",
}
REVERSE_STATUS_PAIRS = {local: remote for remote, local in STATUS_PAIRS.items()}


def _zone(name: Optional[str]):
    return tz.gettz(name) if name else None


class CalendarEvent:
    """
    Wraps a raw provider event dict.

    Dates are exchanged with the local side as UTC "YYYY-MM-DD HH:MM:SS"
    strings (timed) or "YYYY-MM-DD" strings (all-day). The provider's
    exclusive all-day end date is shifted by one day in both directions.
    """

    def __init__(
        self,
        item: Optional[dict] = None,
        calendar_time_zone: Optional[str] = None,
        user_time_zone: Optional[str] = None,
    ):
        self.item: dict = copy.deepcopy(item) if item else {}
        self.calendar_time_zone = calendar_time_zone or "UTC"
        self.user_time_zone = user_time_zone or "UTC"

    def build(self) -> dict:
        """Wire representation."""
        return self.item

    # Identity and flags

    @property
    def id(self) -> Optional[str]:
        return self.item.get("id")

    @property
    def recurring_event_id(self) -> Optional[str]:
        return self.item.get("recurringEventId")

    @property
    def recurrence(self) -> Optional[list]:
        return self.item.get("recurrence")

    @property
    def event_type(self) -> Optional[str]:
        return self.item.get("eventType")

    def is_default_type(self, accepted_types: Optional[list] = None) -> bool:
        """True unless the provider synthesized this event (e.g. from an inbound message)."""
        accepted = accepted_types or [EVENT_TYPE_DEFAULT]
        return self.event_type is None or self.event_type in accepted

    def is_recurring_master(self) -> bool:
        return bool(self.recurrence) and not self.recurring_event_id

    @property
    def status(self) -> Optional[str]:
        return self.item.get("status")

    def set_status(self, value: str) -> None:
        self.item["status"] = value

    def is_deleted(self) -> bool:
        return self.status == "cancelled"

    def restore(self) -> None:
        self.set_status("confirmed")

    def is_private(self) -> bool:
        return self.item.get("visibility") in ("private", "confidential")

    def has_end(self) -> bool:
        return "endTimeUnspecified" not in self.item

    def updated(self) -> Optional[str]:
        """Last provider modification time in storage format."""
        value = self.item.get("updated")
        if not value:
            return None
        parsed = date_parser.isoparse(value)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed.strftime(DB_DATETIME_FORMAT)

    # Origin marker

    def get_source(self) -> Optional[str]:
        source = self.item.get("source") or {}
        return source.get("title")

    def set_source(self, title: str = "", url: str = "") -> None:
        """Stamp the origin marker; existing values are never overwritten."""
        source = self.item.setdefault("source", {})
        if title and not source.get("title"):
            source["title"] = title
        if url and not source.get("url"):
            source["url"] = url

    # Mapped fields

    def get_summary(self) -> Optional[str]:
        return self.item.get("summary")

    def set_summary(self, value: Optional[str]) -> None:
        self.item["summary"] = value

    def get_description(self) -> Optional[str]:
        return self.item.get("description")

    def set_description(self, value: Optional[str]) -> None:
        self.item["description"] = value

    def get_location(self) -> Optional[str]:
        return self.item.get("location")

    def set_location(self, value: Optional[str]) -> None:
        self.item["location"] = value

    def get_ical_uid(self) -> Optional[str]:
        return self.item.get("iCalUID")

    def set_ical_uid(self, value: Optional[str]) -> None:
        self.item["iCalUID"] = value

    def get_start(self) -> Optional[str]:
        if "start" in self.item:
            return self._decode_datetime(self.item["start"])
        return None

    def get_end(self) -> Optional[str]:
        if "end" in self.item:
            return self._decode_datetime(self.item["end"])
        return None

    def set_start(self, value: str) -> None:
        self.item["start"] = self._encode_datetime(value)

    def set_end(self, value: str) -> None:
        self.item["end"] = self._encode_datetime(value)

    def get_start_date(self) -> Optional[str]:
        if "start" in self.item:
            return self._decode_date(self.item["start"])
        return None

    def get_end_date(self) -> Optional[str]:
        if "end" in self.item:
            return self._decode_date(self.item["end"], shift_days=-1)
        return None

    def set_start_date(self, value: Optional[str]) -> None:
        if value:
            self.item["start"] = self._encode_date(value)

    def set_end_date(self, value: Optional[str]) -> None:
        if value:
            self.item["end"] = self._encode_date(value, shift_days=1)

    def get_field(self, name: str) -> Any:
        """Read a mapped field by its provider-side name."""
        return getattr(self, f"get_{name}")()

    def set_field(self, name: str, value: Any) -> None:
        getattr(self, f"set_{name}")(value)

    # Conferencing

    def get_join_url(self) -> Optional[str]:
        conference = self.item.get("conferenceData")
        if not isinstance(conference, dict):
            return None
        entry_points = conference.get("entryPoints")
        if not isinstance(entry_points, list):
            return None
        for point in entry_points:
            if not isinstance(point, dict):
                return None
            if point.get("uri"):
                return point["uri"]
        return None

    def append_join_url_to_description(self, join_url: str) -> None:
        description = self.get_description()
        if description and join_url in description:
            return
        description = description or ""
        if description:
            description += JOIN_URL_SEPARATOR
        self.set_description(description + join_url)

    # Attendees

    def get_attendees(self) -> list[dict]:
        return self.item.get("attendees") or []

    def _attendee_index(self, email: str) -> Optional[int]:
        for index, attendee in enumerate(self.item.get("attendees") or []):
            if (attendee.get("email") or "").lower() == email.lower():
                return index
        return None

    def add_attendee(self, email: str, status: str = "needsAction") -> bool:
        """Add an attendee or update its response status. Returns True on change."""
        index = self._attendee_index(email)
        if index is None:
            self.item.setdefault("attendees", []).append(
                {"email": email, "responseStatus": status}
            )
            return True

        attendee = self.item["attendees"][index]
        if attendee.get("responseStatus") != status:
            attendee["responseStatus"] = status
            return True
        return False

    # Date codecs

    def _decode_datetime(self, value: dict) -> Optional[str]:
        field = "dateTime" if "dateTime" in value else "date"
        raw = value.get(field)
        if not raw:
            return None

        zone_name = value.get("timeZone")
        if not zone_name:
            zone_name = self.user_time_zone if field == "date" else self.calendar_time_zone
        zone = _zone(zone_name) or timezone.utc

        parsed = date_parser.isoparse(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=zone)
        return parsed.astimezone(timezone.utc).strftime(DB_DATETIME_FORMAT)

    @staticmethod
    def _decode_date(value: dict, shift_days: int = 0) -> Optional[str]:
        if "dateTime" in value or not value.get("date"):
            return None
        parsed = datetime.strptime(value["date"], DB_DATE_FORMAT) + timedelta(days=shift_days)
        return parsed.strftime(DB_DATE_FORMAT)

    @staticmethod
    def _encode_datetime(value: str) -> dict:
        # Local timestamps are UTC; a malformed value raises ValueError
        parsed = date_parser.isoparse(str(value).replace(" ", "T"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return {"dateTime": parsed.strftime(RFC3339_UTC_FORMAT)}

    @staticmethod
    def _encode_date(value: str, shift_days: int = 0) -> dict:
        parsed = datetime.strptime(str(value)[:10], DB_DATE_FORMAT) + timedelta(days=shift_days)
        return {"date": parsed.strftime(DB_DATE_FORMAT)}
