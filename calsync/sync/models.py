"""Data structures shared by the sync engine, repository and orchestrator."""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

SUBSCRIPTION_MAIN = "main"
SUBSCRIPTION_MONITORED = "monitored"

DIRECTION_PUSH = "push-only"
DIRECTION_PULL = "pull-only"
DIRECTION_BOTH = "bidirectional"


def _json_value(raw, default):
    if raw is None or raw == "":
        return default
    if isinstance(raw, (list, dict)):
        return raw
    return json.loads(raw)


@dataclass
class CalendarSubscription:
    """One user's link to one provider calendar."""

    id: str
    user_id: str
    account_handle: str
    provider_calendar_id: Optional[str] = None
    remote_calendar_id: Optional[str] = None
    type: str = SUBSCRIPTION_MONITORED
    direction: Optional[str] = None
    start_date: Optional[str] = None
    entity_types: list = field(default_factory=list)
    entity_labels: dict = field(default_factory=dict)
    default_entity_type: Optional[str] = None
    sync_token: Optional[str] = None
    page_token: Optional[str] = None
    last_sync: Optional[str] = None
    last_looked: Optional[str] = None
    remove_remote_on_delete: bool = False
    skip_attendee_sync: bool = False
    assign_default_team: bool = False
    is_active: bool = True
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    version: int = 0

    @property
    def is_main(self) -> bool:
        return self.type == SUBSCRIPTION_MAIN

    @classmethod
    def from_row(cls, row) -> "CalendarSubscription":
        data = dict(row)
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            account_handle=data["account_handle"],
            provider_calendar_id=data.get("provider_calendar_id"),
            remote_calendar_id=data.get("remote_calendar_id"),
            type=data.get("type") or SUBSCRIPTION_MONITORED,
            direction=data.get("direction"),
            start_date=data.get("start_date"),
            entity_types=_json_value(data.get("entity_types"), []),
            entity_labels=_json_value(data.get("entity_labels"), {}),
            default_entity_type=data.get("default_entity_type"),
            sync_token=data.get("sync_token"),
            page_token=data.get("page_token"),
            last_sync=data.get("last_sync"),
            last_looked=data.get("last_looked"),
            remove_remote_on_delete=bool(data.get("remove_remote_on_delete")),
            skip_attendee_sync=bool(data.get("skip_attendee_sync")),
            assign_default_team=bool(data.get("assign_default_team")),
            is_active=bool(data.get("is_active", True)),
            consecutive_failures=data.get("consecutive_failures") or 0,
            last_error=data.get("last_error"),
            version=data.get("version") or 0,
        )


@dataclass
class Attendee:
    """A user, contact or lead attending a built-in event."""

    entity_type: str
    id: str
    status: Optional[str] = None
    emails: list = field(default_factory=list)


@dataclass
class LocalRecord:
    """A local event-like entity being reconciled."""

    entity_type: str
    values: dict = field(default_factory=dict)
    is_new: bool = False
    # {"User": {id: status}, "Contact": {...}, "Lead": {...}} for built-in types
    attendees: Optional[dict] = None
    teams: list = field(default_factory=list)

    @property
    def id(self) -> Optional[str]:
        return self.values.get("id")

    @property
    def deleted(self) -> bool:
        return bool(self.values.get("deleted"))

    def get(self, attribute: str, default: Any = None) -> Any:
        return self.values.get(attribute, default)

    def set(self, attribute: str, value: Any) -> None:
        self.values[attribute] = value


@dataclass
class SyncParams:
    """Resolved, per-run configuration of one subscription."""

    subscription: CalendarSubscription
    user_id: str
    entity_types: list
    # [(entity_type, label)], labeled types first, catch-all last
    labels: list
    default_entity_type: Optional[str]
    fetch_since: Optional[str]
    start_date: Optional[str]
    last_updated_id: str
    provider_calendar_id: str
    remote_calendar_id: str
    is_main: bool
    is_in_main: bool
    calendar_time_zone: str = "UTC"
    user_time_zone: str = "UTC"

    @property
    def skip_attendee_sync(self) -> bool:
        return self.subscription.skip_attendee_sync

    @property
    def remove_remote_on_delete(self) -> bool:
        return self.subscription.remove_remote_on_delete

    @property
    def assign_default_team(self) -> bool:
        return self.subscription.assign_default_team


@dataclass
class SyncCounters:
    """Work accumulated by one orchestrator run; each counter is capped."""

    ceiling: float = 20
    success_step: float = 1.0
    failure_step: float = 0.5
    pulled: float = 0
    recurring: float = 0
    pushed_new: float = 0
    pushed_modified: float = 0

    def add(self, name: str, applied: bool) -> None:
        step = self.success_step if applied else self.failure_step
        setattr(self, name, getattr(self, name) + step)

    def exhausted(self, name: str) -> bool:
        return getattr(self, name) >= self.ceiling

    def as_dict(self) -> dict:
        return {
            "pulled": self.pulled,
            "recurring": self.recurring,
            "pushed_new": self.pushed_new,
            "pushed_modified": self.pushed_modified,
        }
