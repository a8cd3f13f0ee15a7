"""Tests for per-event reconciliation in both directions."""

import sqlite3
from typing import Optional

import pytest

from calsync.auth.acl import AclChecker
from calsync.database import get_database
from calsync.sync.models import Attendee, SyncParams
from calsync.sync.repository import LocalEventRepository
from calsync.sync.rules import EventSync


def _params(subscription, **overrides) -> SyncParams:
    values = dict(
        subscription=subscription,
        user_id="u1",
        entity_types=["Meeting"],
        labels=[("Meeting", "")],
        default_entity_type="Meeting",
        fetch_since=None,
        start_date=None,
        last_updated_id="",
        provider_calendar_id="pc1",
        remote_calendar_id="cal-1",
        is_main=True,
        is_in_main=False,
    )
    values.update(overrides)
    return SyncParams(**values)


async def _engine(seed, provider, subscription_values: Optional[dict] = None, **overrides) -> EventSync:
    await seed.user("u1", email="me@example.com")
    await seed.provider_calendar()
    subscription = await seed.subscription("s1", **(subscription_values or {}))
    return EventSync(
        _params(subscription, **overrides),
        provider,
        LocalEventRepository(),
        AclChecker("u1"),
    )


@pytest.mark.asyncio
async def test_labels_route_titles_to_entity_types(test_db, seed, fake_provider):
    engine = await _engine(
        seed,
        fake_provider,
        entity_types=["Meeting", "Call", "Task"],
        labels=[("Meeting", "MTG"), ("Call", "CALL"), ("Task", "")],
        default_entity_type=None,
    )

    assert engine.parse_event_name("MTG: Budget Review") == ("Meeting", "Budget Review")
    assert engine.parse_event_name("call - Follow up") == ("Call", "Follow up")
    assert engine.parse_event_name("Standalone note") == ("Task", "Standalone note")
    assert engine.convert_to_remote_name("Meeting", "Budget Review") == "MTG: Budget Review"
    assert engine.convert_to_remote_name("Task", "Standalone note") == "Standalone note"

    meeting = fake_provider.add_event("e1", "MTG: Budget Review", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    note = fake_provider.add_event("e2", "Standalone note", "2030-01-02T10:00:00Z", "2030-01-02T11:00:00Z")

    assert await engine.reconcile_remote_to_local(meeting) is True
    assert await engine.reconcile_remote_to_local(note) is True

    meetings = await seed.rows("SELECT name, provider_event_id FROM meetings")
    assert meetings == [{"name": "Budget Review", "provider_event_id": "e1"}]
    tasks = await seed.rows("SELECT name, assigned_user_id FROM tasks")
    assert tasks == [{"name": "Standalone note", "assigned_user_id": "u1"}]
    linkages = await seed.rows("SELECT entity_type, provider_event_id FROM calendar_linkages")
    assert linkages == [{"entity_type": "Task", "provider_event_id": "e2"}]


@pytest.mark.asyncio
async def test_pull_is_idempotent_with_modification_compare(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider, fetch_since="2024-01-01")
    item = fake_provider.add_event("k1", "Kickoff", "2024-02-01T10:00:00Z", "2024-02-01T11:00:00Z")

    assert await engine.reconcile_remote_to_local(item, compare=True) is True
    first = await seed.rows("SELECT * FROM meetings")

    assert len(first) == 1
    assert first[0]["name"] == "Kickoff"
    assert first[0]["date_start"] == "2024-02-01 10:00:00"
    assert first[0]["provider_calendar_id"] == "pc1"
    assert first[0]["provider_event_id"] == "k1"
    assert first[0]["status"] == "Held"

    await engine.reconcile_remote_to_local(item, compare=True)
    second = await seed.rows("SELECT * FROM meetings")

    assert second == first


@pytest.mark.asyncio
async def test_remote_change_is_applied_silently(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    await seed.meeting("m1", name="Old", provider_calendar_id="pc1", provider_event_id="e1")
    item = fake_provider.add_event(
        "e1", "New", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z", location="Room 4"
    )

    assert await engine.reconcile_remote_to_local(item, compare=False) is True

    rows = await seed.rows("SELECT name, location, modified_at FROM meetings WHERE id = 'm1'")
    assert rows == [{"name": "New", "location": "Room 4", "modified_at": "2029-01-01 00:00:00"}]


@pytest.mark.asyncio
async def test_events_before_floor_date_are_ignored(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider, fetch_since="2024-01-01")
    item = fake_provider.add_event("old", "Retro", "2023-12-15T10:00:00Z", "2023-12-15T11:00:00Z")

    assert await engine.reconcile_remote_to_local(item) is False
    assert await seed.rows("SELECT id FROM meetings") == []


@pytest.mark.asyncio
async def test_recurring_master_without_end_is_not_expanded(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    item = fake_provider.add_event(
        "rec1",
        "Standup",
        "2030-01-01T09:00:00Z",
        recurrence=["RRULE:FREQ=DAILY"],
        endTimeUnspecified=True,
    )

    assert await engine.reconcile_remote_to_local(item) is False
    assert await seed.rows("SELECT id FROM meetings") == []
    assert await seed.rows("SELECT id FROM recurring_event_queue") == []


@pytest.mark.asyncio
async def test_recurring_master_is_queued_and_replaces_linked_copy(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    await seed.meeting("m1", provider_calendar_id="pc1", provider_event_id="rec1")
    item = fake_provider.add_event(
        "rec1",
        "Standup",
        "2030-01-01T09:00:00Z",
        "2030-01-01T09:15:00Z",
        recurrence=["RRULE:FREQ=DAILY;COUNT=5"],
    )

    assert await engine.reconcile_remote_to_local(item) is False

    queue = await seed.rows("SELECT subscription_id, event_id FROM recurring_event_queue")
    assert queue == [{"subscription_id": "s1", "event_id": "rec1"}]
    rows = await seed.rows("SELECT deleted, provider_event_id FROM meetings WHERE id = 'm1'")
    assert rows == [{"deleted": 1, "provider_event_id": None}]


@pytest.mark.asyncio
async def test_cancelled_remote_event_deletes_local_record(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    await seed.meeting("m1", provider_calendar_id="pc1", provider_event_id="e1")
    item = fake_provider.add_event("e1", "Meeting", "2030-01-01T10:00:00Z", status="cancelled")

    assert await engine.reconcile_remote_to_local(item) is True

    rows = await seed.rows("SELECT deleted, provider_event_id FROM meetings WHERE id = 'm1'")
    assert rows == [{"deleted": 1, "provider_event_id": None}]


@pytest.mark.asyncio
async def test_move_to_disallowed_type_leaves_record_untouched(test_db, seed, fake_provider):
    engine = await _engine(
        seed,
        fake_provider,
        entity_types=["Meeting"],
        labels=[("Meeting", "MTG"), ("Call", "CALL")],
        default_entity_type=None,
    )
    await seed.meeting("m1", name="Original", provider_calendar_id="pc1", provider_event_id="e1")
    item = fake_provider.add_event("e1", "CALL: Renamed", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")

    assert await engine.reconcile_remote_to_local(item, compare=False) is True

    rows = await seed.rows("SELECT name, deleted, provider_event_id FROM meetings")
    assert rows == [{"name": "Original", "deleted": 0, "provider_event_id": "e1"}]
    assert await seed.rows("SELECT id FROM calls") == []


@pytest.mark.asyncio
async def test_new_record_resolves_attendees_by_email(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    await seed.contact("c1", "client@example.com")
    item = fake_provider.add_event(
        "e1",
        "Demo",
        "2030-01-01T10:00:00Z",
        "2030-01-01T11:00:00Z",
        attendees=[
            {"email": "Client@Example.com", "responseStatus": "accepted"},
            {"email": "me@example.com", "responseStatus": "declined"},
            {"email": "stranger@example.org", "responseStatus": "accepted"},
        ],
    )

    await engine.reconcile_remote_to_local(item)

    rows = await seed.rows(
        "SELECT attendee_type, attendee_id, status FROM event_attendees ORDER BY attendee_type"
    )
    assert rows == [
        {"attendee_type": "Contact", "attendee_id": "c1", "status": "Accepted"},
        {"attendee_type": "User", "attendee_id": "u1", "status": "Declined"},
    ]


@pytest.mark.asyncio
async def test_push_new_links_once(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    await seed.meeting("m1", name="Planning", join_url="https://meet.example/x")
    repository = engine.repository

    [row] = await repository.find_new_local_events("u1", ["Meeting"], None, 10)

    assert await engine.push_local_to_remote(row) is True
    assert await engine.push_local_to_remote(row) is False
    assert fake_provider.inserted == 1

    remote = fake_provider.events["new-1"]
    assert remote["summary"] == "Planning"
    assert remote["start"] == {"dateTime": "2030-01-01T10:00:00Z"}
    assert remote["description"] == "https://meet.example/x"
    assert remote["source"] == {"title": "CalSync", "url": "http://crm.test/#Meeting/view/m1"}
    assert await repository.get_linkage("Meeting", "m1") == ("pc1", "new-1")


@pytest.mark.asyncio
async def test_push_new_failure_leaves_record_unlinked(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    await seed.meeting("m1")
    fake_provider.fail_insert = True

    [row] = await engine.repository.find_new_local_events("u1", ["Meeting"], None, 10)

    assert await engine.push_local_to_remote(row) is False
    assert await engine.repository.get_linkage("Meeting", "m1") is None


async def _modified_row(engine, seed, fake_provider, **meeting):
    await seed.meeting(
        "m1",
        name=meeting.pop("name", "New title"),
        modified_at="2030-01-02 00:00:00",
        provider_calendar_id="pc1",
        provider_event_id="e1",
        **meeting,
    )
    rows = await engine.repository.find_modified_local_events(
        "u1", ["Meeting"], "pc1", None, "2031-01-01 00:00:00", "", 10
    )
    return rows[0]


@pytest.mark.asyncio
async def test_push_update_sends_changed_fields(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    fake_provider.add_event("e1", "Old title", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    row = await _modified_row(engine, seed, fake_provider)

    assert await engine.push_local_update_to_remote(row) is True
    assert fake_provider.events["e1"]["summary"] == "New title"


@pytest.mark.asyncio
async def test_push_update_without_changes_skips_provider(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    fake_provider.add_event("e1", "New title", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    row = await _modified_row(engine, seed, fake_provider)

    assert await engine.push_local_update_to_remote(row) is False
    assert "update_event" not in fake_provider.call_names()


@pytest.mark.asyncio
async def test_push_update_failure_marks_linkage(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    fake_provider.add_event("e1", "Old title", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    fake_provider.fail_update = True
    row = await _modified_row(engine, seed, fake_provider)

    assert await engine.push_local_update_to_remote(row) is False

    rows = await seed.rows("SELECT provider_event_id FROM meetings WHERE id = 'm1'")
    assert rows == [{"provider_event_id": "FAIL"}]


@pytest.mark.asyncio
async def test_push_update_yields_to_newer_remote(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    fake_provider.add_event(
        "e1",
        "Old title",
        "2030-01-01T10:00:00Z",
        "2030-01-01T11:00:00Z",
        updated="2031-01-01T00:00:00Z",
    )
    row = await _modified_row(engine, seed, fake_provider)

    assert await engine.push_local_update_to_remote(row, compare=True) is False
    assert "update_event" not in fake_provider.call_names()


@pytest.mark.asyncio
async def test_local_delete_removes_engine_authored_remote(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    fake_provider.add_event(
        "e1", "New title", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z",
        source={"title": "CalSync", "url": "http://crm.test/#Meeting/view/m1"},
    )
    row = await _modified_row(engine, seed, fake_provider, deleted=True)

    assert await engine.push_local_update_to_remote(row) is True
    assert fake_provider.events["e1"]["status"] == "cancelled"


@pytest.mark.asyncio
async def test_local_delete_keeps_foreign_remote(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    fake_provider.add_event("e1", "New title", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    row = await _modified_row(engine, seed, fake_provider, deleted=True)

    assert await engine.push_local_update_to_remote(row) is False
    assert "delete_event" not in fake_provider.call_names()


@pytest.mark.asyncio
async def test_failed_save_leaves_no_partial_record(test_db, seed, fake_provider):
    engine = await _engine(
        seed,
        fake_provider,
        subscription_values={"assign_default_team": True},
        entity_types=["Task"],
        labels=[("Task", "")],
        default_entity_type="Task",
    )
    db = await get_database()
    await db.execute("UPDATE users SET default_team_id = 'team-gone' WHERE id = 'u1'")
    await db.commit()
    item = fake_provider.add_event("e1", "Demo", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")

    # Every retry fails the same way and must not pile up unlinked copies
    for _ in range(3):
        with pytest.raises(sqlite3.IntegrityError):
            await engine.reconcile_remote_to_local(item)

    assert await seed.rows("SELECT id FROM tasks") == []
    assert await seed.rows("SELECT entity_id FROM entity_teams") == []
    assert await seed.rows("SELECT entity_id FROM calendar_linkages") == []


@pytest.mark.asyncio
async def test_new_record_gets_default_team(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider, subscription_values={"assign_default_team": True})
    db = await get_database()
    await db.execute("INSERT INTO teams (id, name) VALUES ('team-1', 'Sales')")
    await db.execute("UPDATE users SET default_team_id = 'team-1' WHERE id = 'u1'")
    await db.commit()
    item = fake_provider.add_event("e1", "Demo", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")

    assert await engine.reconcile_remote_to_local(item) is True

    [meeting] = await seed.rows("SELECT id, provider_event_id FROM meetings")
    assert meeting["provider_event_id"] == "e1"
    teams = await seed.rows("SELECT entity_type, entity_id, team_id FROM entity_teams")
    assert teams == [{"entity_type": "Meeting", "entity_id": meeting["id"], "team_id": "team-1"}]


@pytest.mark.asyncio
async def test_move_to_allowed_type_replaces_record(test_db, seed, fake_provider):
    engine = await _engine(
        seed,
        fake_provider,
        entity_types=["Meeting", "Call"],
        labels=[("Meeting", "MTG"), ("Call", "CALL")],
        default_entity_type=None,
    )
    await seed.meeting("m1", name="Original", provider_calendar_id="pc1", provider_event_id="e1")
    item = fake_provider.add_event("e1", "CALL: Renamed", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")

    assert await engine.reconcile_remote_to_local(item, compare=False) is True

    meetings = await seed.rows("SELECT deleted, provider_event_id FROM meetings WHERE id = 'm1'")
    assert meetings == [{"deleted": 1, "provider_event_id": None}]
    [call] = await seed.rows("SELECT id, name, deleted, provider_calendar_id, provider_event_id FROM calls")
    assert call["id"] != "m1"
    assert (call["name"], call["deleted"], call["provider_calendar_id"], call["provider_event_id"]) == (
        "Renamed", 0, "pc1", "e1"
    )
    attendees = await seed.rows(
        "SELECT attendee_type, attendee_id FROM event_attendees WHERE event_type = 'Call' AND event_id = ?",
        (call["id"],),
    )
    assert attendees == [{"attendee_type": "User", "attendee_id": "u1"}]


@pytest.mark.asyncio
async def test_private_remote_event_deletes_local_record(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    await seed.meeting("m1", provider_calendar_id="pc1", provider_event_id="e1")
    item = fake_provider.add_event(
        "e1", "Meeting", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z", visibility="private"
    )

    assert await engine.reconcile_remote_to_local(item, compare=False) is True

    rows = await seed.rows("SELECT deleted, provider_event_id FROM meetings WHERE id = 'm1'")
    assert rows == [{"deleted": 1, "provider_event_id": None}]


@pytest.mark.asyncio
async def test_special_event_types_are_ignored(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    item = fake_provider.add_event(
        "ooo", "Vacation", "2030-01-01T00:00:00Z", "2030-01-02T00:00:00Z", eventType="outOfOffice"
    )

    assert await engine.reconcile_remote_to_local(item) is False
    assert await seed.rows("SELECT id FROM meetings") == []


@pytest.mark.asyncio
async def test_pulled_values_are_cut_to_column_length(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    item = fake_provider.add_event(
        "e1", "x" * 300, "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z", location="y" * 300
    )

    assert await engine.reconcile_remote_to_local(item) is True

    [row] = await seed.rows("SELECT name, location FROM meetings")
    assert row == {"name": "x" * 255, "location": "y" * 255}


@pytest.mark.asyncio
async def test_floor_date_blocks_update_of_linked_record(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider, fetch_since="2024-01-01")
    await seed.meeting(
        "m1",
        name="Old",
        date_start="2023-12-15 10:00:00",
        date_end="2023-12-15 11:00:00",
        provider_calendar_id="pc1",
        provider_event_id="e1",
    )
    item = fake_provider.add_event("e1", "New", "2023-12-15T10:00:00Z", "2023-12-15T11:00:00Z")

    assert await engine.reconcile_remote_to_local(item, compare=False) is False

    rows = await seed.rows("SELECT name, deleted FROM meetings WHERE id = 'm1'")
    assert rows == [{"name": "Old", "deleted": 0}]


def _local_row(*attendees: Attendee) -> dict:
    return {
        "scope": "Meeting",
        "id": "m1",
        "name": "Demo",
        "date_start": "2030-01-01 10:00:00",
        "date_end": "2030-01-01 11:00:00",
        "attendees": list(attendees),
    }


@pytest.mark.asyncio
async def test_push_can_skip_contact_and_lead_attendees(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider, subscription_values={"skip_attendee_sync": True})
    row = _local_row(
        Attendee("User", "u1", "Accepted", ["me@example.com"]),
        Attendee("Contact", "c1", "Accepted", ["client@example.com"]),
        Attendee("Lead", "l1", "None", ["lead@example.com"]),
        Attendee("User", "u2", "Declined", ["colleague@example.com"]),
    )

    event = engine.convert_local_to_remote(row)

    assert [attendee["email"] for attendee in event.get_attendees()] == [
        "me@example.com",
        "colleague@example.com",
    ]


@pytest.mark.asyncio
async def test_push_omits_syncing_user_as_sole_attendee(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)

    event = engine.convert_local_to_remote(_local_row(Attendee("User", "u1", "Accepted", ["me@example.com"])))

    assert event.get_attendees() == []


@pytest.mark.asyncio
async def test_push_update_skips_private_remote(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider)
    fake_provider.add_event(
        "e1", "Old title", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z", visibility="private"
    )
    row = await _modified_row(engine, seed, fake_provider)

    assert await engine.push_local_update_to_remote(row) is False
    assert "update_event" not in fake_provider.call_names()
    assert fake_provider.events["e1"]["summary"] == "Old title"


@pytest.mark.asyncio
async def test_local_delete_can_remove_foreign_remote(test_db, seed, fake_provider):
    engine = await _engine(seed, fake_provider, subscription_values={"remove_remote_on_delete": True})
    fake_provider.add_event("e1", "New title", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    row = await _modified_row(engine, seed, fake_provider, deleted=True)

    assert await engine.push_local_update_to_remote(row) is True
    assert fake_provider.events["e1"]["status"] == "cancelled"
