"""Pytest configuration and fixtures."""

import copy
import json
import os
import tempfile
from typing import Optional

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["ENCRYPTION_KEY_FILE"] = "/tmp/calsync_test_missing.key"
os.environ["PUBLIC_URL"] = "http://crm.test"
os.environ["GENERIC_ACTIVITY_TYPES"] = '["Task"]'


@pytest.fixture(scope="function")
def test_encryption_key():
    """Create a temporary encryption key and install it as the token cipher."""
    from calsync.auth.credentials import generate_encryption_key, init_cipher

    key = generate_encryption_key()

    with tempfile.NamedTemporaryFile(mode="wb", delete=False, suffix=".key") as f:
        f.write(key)
        key_path = f.name

    init_cipher(key)

    yield key

    if os.path.exists(key_path):
        os.remove(key_path)


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from calsync.database import get_database, close_database, init_schema
    import calsync.database as db_module

    # Reset the global connection
    db_module._db_connection = None

    db = await get_database()
    await init_schema(db)

    yield db

    await close_database()
    db_module._db_connection = None


class FakeCalendarProvider:
    """
    In-memory calendar provider.

    Every insert/update/delete bumps a change sequence; sync tokens are
    "sync-<seq>" and page tokens "<since>:<offset>", so incremental listing
    behaves like the real provider's.
    """

    def __init__(self, page_size: int = 10, time_zone: str = "UTC"):
        self.page_size = page_size
        self.time_zone = time_zone
        self.events: dict[str, dict] = {}
        self.event_seq: dict[str, int] = {}
        self.instances: dict[str, list[dict]] = {}
        self.gone_masters: set[str] = set()
        self.rejected_tokens: set[str] = set()
        self.calendars: list[dict] = [{"id": "cal-1", "summary": "Work"}]
        self.seq = 0
        self.inserted = 0
        self.fail_insert = False
        self.fail_update = False
        self.calls: list[tuple] = []

    def _store(self, item: dict) -> dict:
        self.seq += 1
        item.setdefault("status", "confirmed")
        item.setdefault("updated", "2024-01-15T00:00:00.000Z")
        self.events[item["id"]] = item
        self.event_seq[item["id"]] = self.seq
        return copy.deepcopy(item)

    def add_event(self, event_id: str, summary: str, start: str, end: Optional[str] = None, **extra) -> dict:
        item = {
            "id": event_id,
            "summary": summary,
            "start": {"dateTime": start},
            "end": {"dateTime": end or start},
        }
        item.update(extra)
        return self._store(item)

    def _feed(self, since: int) -> list[dict]:
        ordered = sorted(self.events, key=lambda event_id: self.event_seq[event_id])
        return [
            copy.deepcopy(self.events[event_id])
            for event_id in ordered
            if self.event_seq[event_id] > since
        ]

    def list_calendars(self, page_token: Optional[str] = None) -> dict:
        self.calls.append(("list_calendars", page_token))
        offset = int(page_token or 0)
        page = self.calendars[offset:offset + 1]
        result = {"items": page}
        if offset + 1 < len(self.calendars):
            result["nextPageToken"] = str(offset + 1)
        return result

    def get_calendar_metadata(self, calendar_id: str) -> Optional[dict]:
        self.calls.append(("get_calendar_metadata", calendar_id))
        return {"id": calendar_id, "timeZone": self.time_zone}

    def list_events(self, calendar_id, time_min=None, sync_token=None, page_token=None) -> dict:
        self.calls.append(("list_events", time_min, sync_token, page_token))
        if page_token in self.rejected_tokens or sync_token in self.rejected_tokens:
            return {"success": False, "action": "resetToken"}

        if page_token:
            since, offset = (int(part) for part in page_token.split(":"))
        else:
            since = int(sync_token.split("-")[1]) if sync_token else 0
            offset = 0

        items = self._feed(since)
        page = items[offset:offset + self.page_size]
        result = {"items": page}
        if offset + self.page_size < len(items):
            result["nextPageToken"] = f"{since}:{offset + self.page_size}"
        else:
            result["nextSyncToken"] = f"sync-{self.seq}"
        return result

    def list_event_instances(self, calendar_id, event_id, page_token=None) -> dict:
        self.calls.append(("list_event_instances", event_id, page_token))
        if event_id in self.gone_masters:
            return {"success": False, "action": "deleteEvent"}
        if page_token in self.rejected_tokens:
            return {"success": False, "action": "resetToken"}

        items = self.instances.get(event_id, [])
        offset = int(page_token or 0)
        result = {"items": copy.deepcopy(items[offset:offset + self.page_size])}
        if offset + self.page_size < len(items):
            result["nextPageToken"] = str(offset + self.page_size)
        return result

    def insert_event(self, calendar_id: str, event: dict) -> Optional[dict]:
        self.calls.append(("insert_event", calendar_id))
        if self.fail_insert:
            return None
        self.inserted += 1
        item = copy.deepcopy(event)
        item["id"] = f"new-{self.inserted}"
        return self._store(item)

    def update_event(self, calendar_id: str, event_id: str, event: dict) -> bool:
        self.calls.append(("update_event", event_id))
        if self.fail_update:
            return False
        item = copy.deepcopy(event)
        item["id"] = event_id
        self._store(item)
        return True

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        self.calls.append(("delete_event", event_id))
        if event_id in self.events:
            item = self.events[event_id]
            item["status"] = "cancelled"
            self._store(item)
        return True

    def get_event(self, calendar_id: str, event_id: str) -> Optional[dict]:
        self.calls.append(("get_event", event_id))
        item = self.events.get(event_id)
        return copy.deepcopy(item) if item else None

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_provider():
    """In-memory provider implementing the client contract."""
    return FakeCalendarProvider()


class Seeder:
    """Inserts CRM fixtures directly into the test database."""

    async def _execute(self, sql: str, params) -> None:
        from calsync.database import get_database

        db = await get_database()
        await db.execute(sql, params)
        await db.commit()

    async def email(self, entity_type: str, entity_id: str, address: str, primary: bool = True) -> None:
        from calsync.database import generate_id, get_database

        address_id = generate_id()
        await self._execute(
            "INSERT OR IGNORE INTO email_addresses (id, name, lower) VALUES (?, ?, ?)",
            (address_id, address, address.lower()),
        )
        db = await get_database()
        cursor = await db.execute("SELECT id FROM email_addresses WHERE lower = ?", (address.lower(),))
        row = await cursor.fetchone()
        await self._execute(
            """INSERT INTO entity_email_addresses (entity_type, entity_id, email_address_id, is_primary)
               VALUES (?, ?, ?, ?)""",
            (entity_type, entity_id, row["id"], primary),
        )

    async def user(
        self,
        user_id: str = "u1",
        is_admin: bool = True,
        time_zone: str = "UTC",
        email: Optional[str] = None,
        default_team_id: Optional[str] = None,
    ) -> str:
        await self._execute(
            """INSERT INTO users (id, user_name, time_zone, is_admin, default_team_id)
               VALUES (?, ?, ?, ?, ?)""",
            (user_id, user_id, time_zone, is_admin, default_team_id),
        )
        if email:
            await self.email("User", user_id, email)
        return user_id

    async def grant(self, user_id: str, scope: str, actions=("read", "edit", "delete")) -> None:
        from calsync.auth.acl import grant

        for action in actions:
            await grant(user_id, scope, action)

    async def contact(self, contact_id: str, email: str) -> str:
        await self._execute("INSERT INTO contacts (id, name) VALUES (?, ?)", (contact_id, contact_id))
        await self.email("Contact", contact_id, email)
        return contact_id

    async def provider_calendar(self, pc_id: str = "pc1", calendar_id: str = "cal-1") -> str:
        await self._execute(
            "INSERT INTO provider_calendars (id, calendar_id, name) VALUES (?, ?, ?)",
            (pc_id, calendar_id, calendar_id),
        )
        return pc_id

    async def subscription(
        self,
        sub_id: str = "s1",
        user_id: str = "u1",
        provider_calendar_id: str = "pc1",
        type: str = "main",
        direction: str = "bidirectional",
        entity_types=("Meeting",),
        entity_labels: Optional[dict] = None,
        default_entity_type: Optional[str] = "Meeting",
        start_date: Optional[str] = None,
        **extra,
    ):
        from calsync.sync.subscriptions import get_subscription

        values = {
            "id": sub_id,
            "user_id": user_id,
            "account_handle": f"{user_id}@example.com",
            "provider_calendar_id": provider_calendar_id,
            "type": type,
            "direction": direction,
            "entity_types": json.dumps(list(entity_types)),
            "entity_labels": json.dumps(entity_labels or {}),
            "default_entity_type": default_entity_type,
            "start_date": start_date,
        }
        values.update(extra)
        columns = ", ".join(values)
        placeholders = ", ".join("?" * len(values))
        await self._execute(
            f"INSERT INTO calendar_subscriptions ({columns}) VALUES ({placeholders})",
            list(values.values()),
        )
        return await get_subscription(sub_id)

    async def meeting(
        self,
        meeting_id: str,
        user_id: str = "u1",
        name: str = "Meeting",
        date_start: str = "2030-01-01 10:00:00",
        date_end: str = "2030-01-01 11:00:00",
        created_at: str = "2029-01-01 00:00:00",
        modified_at: Optional[str] = None,
        provider_calendar_id: Optional[str] = None,
        provider_event_id: Optional[str] = None,
        deleted: bool = False,
        table: str = "meetings",
        **extra,
    ) -> str:
        values = {
            "id": meeting_id,
            "name": name,
            "date_start": date_start,
            "date_end": date_end,
            "assigned_user_id": user_id,
            "created_at": created_at,
            "modified_at": modified_at or created_at,
            "provider_calendar_id": provider_calendar_id,
            "provider_event_id": provider_event_id,
            "deleted": deleted,
        }
        values.update(extra)
        columns = ", ".join(values)
        placeholders = ", ".join("?" * len(values))
        await self._execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            list(values.values()),
        )
        entity_type = "Meeting" if table == "meetings" else "Call"
        await self._execute(
            """INSERT INTO event_attendees (event_type, event_id, attendee_type, attendee_id, status)
               VALUES (?, ?, 'User', ?, 'Accepted')""",
            (entity_type, meeting_id, user_id),
        )
        return meeting_id

    async def task(
        self,
        task_id: str,
        user_id: str = "u1",
        name: str = "Task",
        date_start: str = "2030-01-01 10:00:00",
        date_end: str = "2030-01-01 11:00:00",
        created_at: str = "2029-01-01 00:00:00",
        modified_at: Optional[str] = None,
    ) -> str:
        await self._execute(
            """INSERT INTO tasks (id, name, date_start, date_end, assigned_user_id, created_at, modified_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (task_id, name, date_start, date_end, user_id, created_at, modified_at or created_at),
        )
        return task_id

    async def rows(self, sql: str, params=()) -> list[dict]:
        from calsync.database import get_database

        db = await get_database()
        cursor = await db.execute(sql, params)
        return [dict(row) for row in await cursor.fetchall()]


@pytest.fixture
def seed():
    """Helpers for inserting CRM fixtures."""
    return Seeder()
