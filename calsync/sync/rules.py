"""Per-event reconciliation rules between local records and provider events."""

import logging
import re
from typing import Optional

from calsync.auth.acl import AclChecker
from calsync.config import get_settings
from calsync.sync.event import REVERSE_STATUS_PAIRS, STATUS_PAIRS, CalendarEvent
from calsync.sync.models import LocalRecord, SyncParams
from calsync.sync.provider import GOOGLE_PROFILE, CalendarProvider, ProviderProfile
from calsync.sync.registry import ATTENDEE_LINKS
from calsync.sync.repository import LocalEventRepository
from calsync.sync.errors import SyncConfigurationError
from calsync.utils.dates import parse_db_datetime, utcnow

logger = logging.getLogger(__name__)


class EventSync:
    """Applies single events in either direction for one subscription run."""

    def __init__(
        self,
        params: SyncParams,
        client: CalendarProvider,
        repository: LocalEventRepository,
        acl: AclChecker,
        profile: ProviderProfile = GOOGLE_PROFILE,
    ):
        self.params = params
        self.client = client
        self.repository = repository
        self.acl = acl
        self.profile = profile
        self.settings = get_settings()

    @property
    def calendar_id(self) -> str:
        return self.params.remote_calendar_id

    def as_event(self, item: Optional[dict] = None) -> CalendarEvent:
        return CalendarEvent(
            item,
            calendar_time_zone=self.params.calendar_time_zone,
            user_time_zone=self.params.user_time_zone,
        )

    def source_url(self, entity_type: str, entity_id: str) -> str:
        return f"{self.settings.public_url.rstrip('/')}/#{entity_type}/view/{entity_id}"

    # Titles

    def parse_event_name(self, value: Optional[str]) -> tuple[Optional[str], str]:
        """
        Recover (entity_type, name) from a provider title.

        Labeled types are tried first; the first unlabeled type is the
        catch-all. Without a match the configured default type is used.
        """
        value = value or ""
        scope = self.params.default_entity_type
        name = value

        for entity_type, label in self.params.labels:
            if not label:
                scope = entity_type
                break

            pattern = re.compile(rf"^{re.escape(label)}[:\s,'-]+", re.IGNORECASE)
            if pattern.match(value):
                scope = entity_type
                name = pattern.sub("", value, count=1) or value
                break

        return scope, name

    def convert_to_remote_name(self, entity_type: str, name: Optional[str]) -> str:
        label = dict(self.params.labels).get(entity_type)
        name = name or ""
        if label:
            return f"{label}: {name}"
        return name

    # Local -> provider

    def _field_pairs(self, entity_type: str) -> list[tuple[str, str]]:
        definition = self.repository.registry.get(entity_type)
        return [
            (remote_field, local_attr)
            for remote_field, local_attr in self.profile.field_pairs
            if definition and definition.has_attribute(local_attr)
        ]

    def convert_local_to_remote(self, row: dict) -> CalendarEvent:
        """Build the provider representation of a never-pushed local row."""
        entity_type = row["scope"]
        values = dict(row)
        values["name"] = self.convert_to_remote_name(entity_type, values.get("name"))
        if not values.get("date_end"):
            values["date_end"] = values.get("date_start")

        event = self.as_event()
        for remote_field, local_attr in self._field_pairs(entity_type):
            if local_attr == "uid":
                continue
            if values.get(local_attr) is not None:
                event.set_field(remote_field, values[local_attr])

        uid = values.get("uid")
        if isinstance(uid, str) and uid and len(uid) <= 255:
            event.set_ical_uid(uid)

        join_url = values.get("join_url")
        if isinstance(join_url, str) and join_url:
            event.append_join_url_to_description(join_url)

        attendees = values.get("attendees") or []
        for attendee in attendees:
            if self.params.skip_attendee_sync and attendee.entity_type in ("Contact", "Lead"):
                continue
            if not attendee.emails:
                continue
            if attendee.id == self.params.user_id and len(attendees) <= 1:
                continue
            event.add_attendee(
                attendee.emails[0],
                REVERSE_STATUS_PAIRS.get(attendee.status, "needsAction"),
            )

        event.set_source(self.settings.event_source_title, self.source_url(entity_type, row["id"]))
        return event

    async def push_local_to_remote(self, row: dict) -> bool:
        """Insert a never-pushed local event and link it."""
        entity_type, entity_id = row["scope"], row["id"]

        existing = await self.repository.get_linkage(entity_type, entity_id)
        if existing and existing[1]:
            logger.info(f"{entity_type} {entity_id} is already linked, skipping insert")
            return False

        event = self.convert_local_to_remote(row)
        response = self.client.insert_event(self.calendar_id, event.build())

        if isinstance(response, dict) and response.get("id"):
            await self.repository.store_linkage(
                entity_type, entity_id, self.params.provider_calendar_id, response["id"]
            )
            return True

        await self.repository.reset_linkage(entity_type, entity_id)
        return False

    async def push_local_update_to_remote(self, row: dict, compare: bool = False) -> bool:
        """Push changes of a linked local event onto its provider event."""
        entity_type = row["scope"]
        raw = self.client.get_event(self.calendar_id, row["provider_event_id"])
        if not raw or not raw.get("id"):
            return False

        event = self.as_event(raw)
        remote_updated = event.updated()

        if (compare and remote_updated and (row.get("modified_at") or "") < remote_updated) or event.is_private():
            return False

        changed: list[str] = []
        local_deleted = bool(row.get("deleted"))

        if event.is_deleted() != local_deleted:
            if local_deleted:
                if self.params.remove_remote_on_delete or event.get_source() == self.settings.event_source_title:
                    return self.client.delete_event(self.calendar_id, event.id)
                return False
            event.restore()
            changed.append("status")

        scope, name = self.parse_event_name(event.get_summary())
        if name != (row.get("name") or "") or scope != entity_type:
            event.set_summary(self.convert_to_remote_name(entity_type, row.get("name")))
            changed.append("summary")

        for remote_field, local_attr in self._field_pairs(entity_type):
            if local_attr in ("name", "uid") or row.get(local_attr) is None:
                continue
            if event.get_field(remote_field) != row[local_attr]:
                event.set_field(remote_field, row[local_attr])
                changed.append(remote_field)

        if event.get_source() == self.settings.event_source_title:
            join_url = row.get("join_url")
            if isinstance(join_url, str) and join_url:
                event.append_join_url_to_description(join_url)
                changed.append("description")

        attendees = row.get("attendees")
        if not self.params.skip_attendee_sync and attendees is not None:
            if self._push_attendees(event, attendees):
                changed.append("attendees")

        if not changed or event.build() == raw:
            return False

        if self.client.update_event(self.calendar_id, event.id, event.build()):
            return True

        await self.repository.mark_linkage_failed(entity_type, row["id"])
        return False

    def _push_attendees(self, event: CalendarEvent, attendees: list) -> bool:
        remote_emails = [(a.get("email") or "").lower() for a in event.get_attendees()]
        modified = False

        for attendee in attendees:
            email = next((e for e in attendee.emails if e.lower() in remote_emails), None)
            if not email and attendee.emails:
                email = attendee.emails[0]
            if not email:
                continue

            status = REVERSE_STATUS_PAIRS.get(attendee.status, "needsAction")
            if attendee.id == self.params.user_id:
                if email.lower() in remote_emails or len(attendees) > 1:
                    modified |= event.add_attendee(email, status)
            else:
                modified |= event.add_attendee(email, status)

        return modified

    # Provider -> local

    async def reconcile_remote_to_local(self, item: dict, compare: bool = True) -> bool:
        """Apply one provider event to local records. Returns True when handled."""
        event = self.as_event(item)
        scope, name = self.parse_event_name(event.get_summary())

        if not scope or not await self.acl.check_scope(scope, "edit"):
            return False

        entity_types = self.params.entity_types
        subscription_id = self.params.subscription.id

        if event.is_deleted():
            await self.repository.delete_recurring_instances(
                subscription_id, self.params.provider_calendar_id, event.id, entity_types
            )

        if not event.is_default_type(self.settings.accepted_event_types):
            return False

        if event.is_recurring_master():
            await self.repository.delete_recurring_instances(
                subscription_id, self.params.provider_calendar_id, event.id, entity_types
            )
            if not event.is_private() and event.has_end():
                await self.repository.enqueue_recurring(subscription_id, event.id)
                # The master itself is replaced by its instances
                for record in await self.repository.find_local_entities_for_provider_event(
                    self.params.user_id, event, entity_types
                ):
                    await self.repository.reset_linkage(record.entity_type, record.id)
                    await self.repository.remove_record(record)
            return False

        start = event.get_start()
        if not event.is_deleted() and self.params.fetch_since and start and start < self.params.fetch_since:
            return False

        records = await self.repository.find_local_entities_for_provider_event(
            self.params.user_id, event, entity_types
        )
        if not records:
            if scope not in entity_types:
                return False
            records = [self.repository.new_record(scope)]

        for record in records:
            if record.deleted or record.entity_type not in entity_types:
                continue
            await self._apply_to_record(event, record, scope, name, compare)

        return True

    async def _apply_to_record(
        self,
        event: CalendarEvent,
        record: LocalRecord,
        scope: str,
        name: str,
        compare: bool,
    ) -> None:
        if event.is_deleted() or event.is_private() or not event.has_end():
            if not record.is_new and await self.acl.check_scope(record.entity_type, "delete"):
                await self.repository.reset_linkage(record.entity_type, record.id)
                await self.repository.remove_record(record)
            return

        previous = None
        if scope != record.entity_type:
            if scope not in self.params.entity_types:
                # Moving into a type this subscription may not sync is a no-op
                return
            if event.get_source() != self.settings.event_source_title:
                previous = record
                record = await self._move_record(record, scope)

        if not record.is_new and compare:
            updated = event.updated()
            if updated and (record.get("modified_at") or "") > updated:
                return

        modified = False

        if (
            not record.is_new
            and record.get("provider_calendar_id") != self.params.provider_calendar_id
        ):
            await self.repository.store_linkage(
                record.entity_type, record.id, self.params.provider_calendar_id, event.id
            )

        definition = self.repository.registry.get(record.entity_type)
        for remote_field, local_attr in self._field_pairs(record.entity_type):
            value = name if local_attr == "name" else event.get_field(remote_field)
            max_length = definition.max_length(local_attr)
            if isinstance(value, str) and max_length:
                value = value[:max_length]

            if record.is_new:
                record.set(local_attr, value)
            elif record.get(local_attr) != value:
                record.set(local_attr, value)
                modified = True

        join_url = event.get_join_url()
        if join_url and definition.has_join_url:
            if not record.is_new and join_url != record.get("join_url"):
                modified = True
            record.set("join_url", join_url)

        if record.is_new:
            await self._prepare_new_record(event, record)
        elif await self._merge_attendees(event, record):
            modified = True

        if record.is_new or modified:
            linkage = (self.params.provider_calendar_id, event.id) if record.is_new else None
            await self.repository.save_record(record, silent=True, linkage=linkage)

        if previous is not None:
            # The old record is retired only after its replacement is stored
            await self.repository.reset_linkage(previous.entity_type, previous.id)
            await self.repository.remove_record(previous)
            logger.info(f"Moved {previous.entity_type} {previous.id} to {record.entity_type} {record.id}")

    async def _move_record(self, record: LocalRecord, scope: str) -> LocalRecord:
        """Recreate a record under another entity type, carrying its values over."""
        attendees = None
        if self.repository.registry.is_core(record.entity_type):
            attendees = await self.repository.load_attendee_links(record)

        values = {
            key: value
            for key, value in record.values.items()
            if key not in ("id", "provider_calendar_id", "provider_event_id", "created_at", "modified_at", "deleted")
        }

        moved = self.repository.new_record(scope)
        moved.values.update(values)
        if attendees is not None and self.repository.registry.is_core(scope):
            moved.attendees = attendees
        return moved

    async def _prepare_new_record(self, event: CalendarEvent, record: LocalRecord) -> None:
        user_id = self.params.user_id
        record.set("assigned_user_id", user_id)

        if self.params.assign_default_team:
            user = await self.repository.get_user(user_id)
            if user and user.get("default_team_id"):
                record.teams.append(user["default_team_id"])

        try:
            date_end = parse_db_datetime(record.get("date_end"))
        except ValueError as e:
            raise SyncConfigurationError(f"Malformed end date on pulled event {event.id}: {e}")
        if date_end is not None and date_end < utcnow():
            record.set("status", "Held")

        if not self.repository.registry.is_core(record.entity_type):
            return

        links = record.attendees or {link: {} for link in ATTENDEE_LINKS}
        for remote in event.get_attendees():
            email = remote.get("email")
            if not email:
                continue
            owner = await self.repository.find_entity_by_email(email)
            if owner:
                links.setdefault(owner[0], {})[owner[1]] = STATUS_PAIRS.get(
                    remote.get("responseStatus"), "None"
                )

        if user_id not in links.setdefault("User", {}):
            links["User"][user_id] = "None"
        record.attendees = links

    async def _merge_attendees(self, event: CalendarEvent, record: LocalRecord) -> bool:
        """Add newly seen attendees and update response statuses of known ones."""
        local_attendees = await self.repository.get_event_attendees(record.entity_type, record.id)
        if local_attendees is None:
            return False

        links = await self.repository.load_attendee_links(record)
        modified = False

        for remote in event.get_attendees():
            email = (remote.get("email") or "").lower()
            if not email:
                continue
            status = STATUS_PAIRS.get(remote.get("responseStatus"), "None")

            owner = next(
                (a for a in local_attendees if email in [e.lower() for e in a.emails]),
                None,
            )
            if owner is None:
                found = await self.repository.find_entity_by_email(email)
                if found and found[0] in ATTENDEE_LINKS:
                    links.setdefault(found[0], {})[found[1]] = status
                    modified = True
            elif owner.status != status and status != "None":
                links.setdefault(owner.entity_type, {})[owner.id] = status
                modified = True

        if modified:
            record.attendees = links
        return modified
