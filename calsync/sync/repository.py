"""Queries and bookkeeping over local event-like entities."""

import logging
from typing import Optional

from calsync.database import generate_id, get_database
from calsync.sync.event import CalendarEvent
from calsync.sync.models import Attendee, LocalRecord
from calsync.sync.provider import FAIL_MARKER
from calsync.sync.registry import ATTENDEE_LINKS, EntityTypeDef, EntityTypeRegistry, get_registry
from calsync.utils.dates import now_db

logger = logging.getLogger(__name__)

# Columns every union branch yields, in order
ROW_COLUMNS = (
    "id",
    "name",
    "status",
    "date_start",
    "date_end",
    "date_start_date",
    "date_end_date",
    "is_all_day",
    "description",
    "location",
    "join_url",
    "uid",
    "assigned_user_id",
    "created_at",
    "modified_at",
    "deleted",
)

OPTIONAL_COLUMNS = {
    "date_start_date": "has_all_day",
    "date_end_date": "has_all_day",
    "is_all_day": "has_all_day",
    "location": "has_location",
    "join_url": "has_join_url",
    "uid": "has_uid",
}

PUSHING_USERS_SQL = """SELECT user_id FROM calendar_subscriptions
    WHERE type = 'main' AND is_active = TRUE
    AND direction IN ('push-only', 'bidirectional')"""


def _select_list(definition: EntityTypeDef, linkage_alias: str) -> str:
    columns = [f"'{definition.name}' AS scope"]
    for column in ROW_COLUMNS:
        flag = OPTIONAL_COLUMNS.get(column)
        if flag and not getattr(definition, flag):
            columns.append(f"NULL AS {column}")
        else:
            columns.append(f"e.{column} AS {column}")
    columns.append(f"{linkage_alias}.provider_calendar_id AS provider_calendar_id")
    columns.append(f"{linkage_alias}.provider_event_id AS provider_event_id")
    return ", ".join(columns)


def _like_prefix(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}\\_%"


class LocalEventRepository:
    """Reads and writes local events and their provider bookkeeping."""

    def __init__(self, registry: Optional[EntityTypeRegistry] = None):
        self.registry = registry or get_registry()

    def _definitions(self, entity_types: list) -> list[EntityTypeDef]:
        return [self.registry.get(t) for t in self.registry.known(entity_types)]

    # Union queries

    async def find_new_local_events(
        self,
        user_id: str,
        entity_types: list,
        since: Optional[str],
        limit: int,
    ) -> list[dict]:
        """Never-pushed events of the user starting at or after `since`, newest first."""
        branches = []
        params: list = []
        since = since or ""

        for definition in self._definitions(entity_types):
            if definition.is_core:
                branches.append(
                    f"""SELECT {_select_list(definition, 'e')}
                        FROM {definition.table} e
                        JOIN event_attendees a
                          ON a.event_type = '{definition.name}' AND a.event_id = e.id
                         AND a.attendee_type = 'User' AND a.attendee_id = ? AND a.deleted = FALSE
                        WHERE e.deleted = FALSE
                          AND e.date_start >= ?
                          AND (e.provider_event_id IS NULL OR e.provider_event_id = '')
                          AND (e.status IS NULL OR e.status != 'Not Held')
                          AND (e.assigned_user_id IS NULL OR e.assigned_user_id = ?
                               OR e.assigned_user_id NOT IN ({PUSHING_USERS_SQL}))"""
                )
                params += [user_id, since, user_id]
            else:
                branches.append(
                    f"""SELECT {_select_list(definition, 'l')}
                        FROM {definition.table} e
                        LEFT JOIN calendar_linkages l
                          ON l.entity_type = '{definition.name}' AND l.entity_id = e.id
                        WHERE e.deleted = FALSE
                          AND e.assigned_user_id = ?
                          AND e.date_start >= ?
                          AND (l.provider_event_id IS NULL OR l.provider_event_id = '')
                          AND (e.status IS NULL OR e.status != 'Not Held')"""
                )
                params += [user_id, since]

        if not branches:
            return []

        sql = " UNION ALL ".join(branches) + " ORDER BY date_start DESC LIMIT ?"
        params.append(limit)

        db = await get_database()
        cursor = await db.execute(sql, params)
        rows = [dict(row) for row in await cursor.fetchall()]

        for row in rows:
            row["attendees"] = await self.get_event_attendees(row["scope"], row["id"])
        return rows

    async def find_modified_local_events(
        self,
        user_id: str,
        entity_types: list,
        provider_calendar_id: str,
        since: Optional[str],
        to: str,
        last_id: str,
        limit: int,
    ) -> list[dict]:
        """
        Linked events modified after the (since, last_id) watermark and before `to`.

        Ordered by (modified_at, id) so a batch boundary inside one timestamp
        resumes exactly after the last processed ID. Deleted rows are included.
        """
        branches = []
        params: list = []
        since = since or ""
        last_id = last_id or ""

        window = """e.modified_at < ?
                    AND (e.modified_at != e.created_at OR e.deleted = TRUE)
                    AND (e.modified_at > ? OR (e.modified_at = ? AND e.id > ?))"""

        for definition in self._definitions(entity_types):
            if definition.is_core:
                branches.append(
                    f"""SELECT {_select_list(definition, 'e')}
                        FROM {definition.table} e
                        JOIN event_attendees a
                          ON a.event_type = '{definition.name}' AND a.event_id = e.id
                         AND a.attendee_type = 'User' AND a.attendee_id = ? AND a.deleted = FALSE
                        WHERE e.provider_calendar_id = ?
                          AND e.provider_event_id IS NOT NULL
                          AND e.provider_event_id NOT IN ('', '{FAIL_MARKER}')
                          AND {window}"""
                )
                params += [user_id, provider_calendar_id, to, since, since, last_id]
            else:
                branches.append(
                    f"""SELECT {_select_list(definition, 'l')}
                        FROM {definition.table} e
                        JOIN calendar_linkages l
                          ON l.entity_type = '{definition.name}' AND l.entity_id = e.id
                        WHERE e.assigned_user_id = ?
                          AND l.provider_calendar_id = ?
                          AND l.provider_event_id IS NOT NULL
                          AND l.provider_event_id NOT IN ('', '{FAIL_MARKER}')
                          AND {window}"""
                )
                params += [user_id, provider_calendar_id, to, since, since, last_id]

        if not branches:
            return []

        sql = " UNION ALL ".join(branches) + " ORDER BY modified_at, id LIMIT ?"
        params.append(limit)

        db = await get_database()
        cursor = await db.execute(sql, params)
        rows = [dict(row) for row in await cursor.fetchall()]

        for row in rows:
            row["attendees"] = None
            if not row["deleted"]:
                row["attendees"] = await self.get_event_attendees(row["scope"], row["id"])
        return rows

    async def find_local_entities_for_provider_event(
        self,
        user_id: str,
        event: CalendarEvent,
        entity_types: list,
    ) -> list[LocalRecord]:
        """
        Local records linked to a provider event.

        Built-in types also match on UID, but only records that were never
        linked. Deleted built-in records are returned so callers can skip them.
        """
        db = await get_database()
        records: list[LocalRecord] = []
        uid = event.get_ical_uid()

        for definition in self._definitions(entity_types):
            if definition.is_core:
                sql = f"SELECT * FROM {definition.table} WHERE provider_event_id = ?"
                params = [event.id]
                if uid and definition.has_uid:
                    sql += """ OR (uid = ? AND (provider_event_id IS NULL OR provider_event_id = ''))"""
                    params.append(uid)
                sql += " ORDER BY modified_at DESC"
            else:
                sql = f"""SELECT e.*, l.provider_calendar_id, l.provider_event_id
                          FROM {definition.table} e
                          JOIN calendar_linkages l
                            ON l.entity_type = '{definition.name}' AND l.entity_id = e.id
                          WHERE e.deleted = FALSE
                            AND e.assigned_user_id = ?
                            AND l.provider_event_id = ?
                          ORDER BY e.modified_at DESC"""
                params = [user_id, event.id]

            cursor = await db.execute(sql, params)
            for row in await cursor.fetchall():
                records.append(LocalRecord(entity_type=definition.name, values=dict(row)))

        return records

    # Records

    def new_record(self, entity_type: str) -> LocalRecord:
        return LocalRecord(entity_type=entity_type, values={}, is_new=True)

    async def get_record(self, entity_type: str, record_id: str) -> Optional[LocalRecord]:
        """Load a record including deleted ones."""
        definition = self.registry.get(entity_type)
        if not definition:
            return None

        db = await get_database()
        cursor = await db.execute(
            f"SELECT * FROM {definition.table} WHERE id = ?", (record_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None

        values = dict(row)
        if not definition.is_core:
            linkage = await self.get_linkage(entity_type, record_id)
            values["provider_calendar_id"] = linkage[0] if linkage else None
            values["provider_event_id"] = linkage[1] if linkage else None
        return LocalRecord(entity_type=entity_type, values=values)

    async def save_record(
        self,
        record: LocalRecord,
        silent: bool = True,
        linkage: Optional[tuple[str, str]] = None,
    ) -> LocalRecord:
        """
        Insert or update a record with its attendees, teams and linkage.

        Everything is written in one transaction; on failure nothing of the
        record is kept. Silent saves leave modified_at alone on updates so
        pulled changes are not picked up again as local modifications.

        CRM-side edits load the record with get_record and save it with
        silent=False, which also clears a FAIL marker so the next push retries.
        """
        definition = self.registry.get(record.entity_type)
        if not definition:
            raise ValueError(f"Unknown entity type: {record.entity_type}")

        db = await get_database()
        now = now_db()

        values = {
            attr: record.values.get(attr)
            for attr in definition.attributes
            if attr in record.values and attr != "is_all_day"
        }
        if definition.has_all_day:
            values["is_all_day"] = bool(record.values.get("date_start_date"))

        was_new = record.is_new
        try:
            if was_new:
                record_id = record.values.get("id") or generate_id()
                values["id"] = record_id
                values["created_at"] = now
                values["modified_at"] = now
                values["deleted"] = False
                columns = ", ".join(values)
                placeholders = ", ".join("?" * len(values))
                await db.execute(
                    f"INSERT INTO {definition.table} ({columns}) VALUES ({placeholders})",
                    list(values.values()),
                )
            else:
                record_id = record.id
                if not silent:
                    values["modified_at"] = now
                if values:
                    assignments = ", ".join(f"{column} = ?" for column in values)
                    await db.execute(
                        f"UPDATE {definition.table} SET {assignments} WHERE id = ?",
                        [*values.values(), record_id],
                    )

            if definition.is_core and record.attendees is not None:
                for attendee_type, statuses in record.attendees.items():
                    for attendee_id, status in statuses.items():
                        await db.execute(
                            """INSERT INTO event_attendees
                               (event_type, event_id, attendee_type, attendee_id, status, deleted)
                               VALUES (?, ?, ?, ?, ?, FALSE)
                               ON CONFLICT(event_type, event_id, attendee_type, attendee_id)
                               DO UPDATE SET status = excluded.status, deleted = FALSE""",
                            (record.entity_type, record_id, attendee_type, attendee_id, status or "None"),
                        )

            for team_id in record.teams:
                await db.execute(
                    """INSERT OR IGNORE INTO entity_teams (entity_type, entity_id, team_id)
                       VALUES (?, ?, ?)""",
                    (record.entity_type, record_id, team_id),
                )

            if linkage:
                await self._write_linkage(db, definition, record_id, *linkage)
            elif not silent:
                await self._write_failed_clear(db, definition, record_id)

            await db.commit()
        except Exception:
            await db.rollback()
            raise

        record.values.update(values)
        record.is_new = False
        if linkage:
            record.values["provider_calendar_id"] = linkage[0]
            record.values["provider_event_id"] = linkage[1]
        return record

    async def remove_record(self, record: LocalRecord) -> None:
        """Soft-delete a record."""
        definition = self.registry.get(record.entity_type)
        db = await get_database()
        await db.execute(
            f"UPDATE {definition.table} SET deleted = TRUE WHERE id = ?", (record.id,)
        )
        await db.commit()
        record.values["deleted"] = True

    async def load_attendee_links(self, record: LocalRecord) -> dict:
        """Attendee statuses of a built-in event, keyed by attendee type."""
        links: dict = {link: {} for link in ATTENDEE_LINKS}
        if not record.id or not self.registry.is_core(record.entity_type):
            return links

        db = await get_database()
        cursor = await db.execute(
            """SELECT attendee_type, attendee_id, status FROM event_attendees
               WHERE event_type = ? AND event_id = ? AND deleted = FALSE""",
            (record.entity_type, record.id),
        )
        for row in await cursor.fetchall():
            links.setdefault(row["attendee_type"], {})[row["attendee_id"]] = row["status"]
        return links

    async def get_event_attendees(self, entity_type: str, entity_id: str) -> Optional[list[Attendee]]:
        """Attendees with email addresses; None for types without attendees."""
        if not self.registry.is_core(entity_type):
            return None

        db = await get_database()
        cursor = await db.execute(
            """SELECT attendee_type, attendee_id, status FROM event_attendees
               WHERE event_type = ? AND event_id = ? AND deleted = FALSE
               ORDER BY attendee_type, attendee_id""",
            (entity_type, entity_id),
        )
        attendees = []
        for row in await cursor.fetchall():
            attendees.append(
                Attendee(
                    entity_type=row["attendee_type"],
                    id=row["attendee_id"],
                    status=row["status"],
                    emails=await self.get_email_addresses(row["attendee_type"], row["attendee_id"]),
                )
            )
        return attendees

    async def get_email_addresses(self, entity_type: str, entity_id: str) -> list[str]:
        """Email addresses of an entity, primary first."""
        db = await get_database()
        cursor = await db.execute(
            """SELECT ea.name FROM entity_email_addresses x
               JOIN email_addresses ea ON ea.id = x.email_address_id
               WHERE x.entity_type = ? AND x.entity_id = ?
               ORDER BY x.is_primary DESC, ea.name""",
            (entity_type, entity_id),
        )
        return [row["name"] for row in await cursor.fetchall()]

    async def find_entity_by_email(self, address: str) -> Optional[tuple[str, str]]:
        """(entity_type, id) of the user, contact or lead owning an address."""
        db = await get_database()
        cursor = await db.execute(
            """SELECT x.entity_type, x.entity_id FROM entity_email_addresses x
               JOIN email_addresses ea ON ea.id = x.email_address_id
               WHERE ea.lower = ? AND x.entity_type IN ('User', 'Contact', 'Lead')
               ORDER BY CASE x.entity_type WHEN 'User' THEN 1 WHEN 'Contact' THEN 2 ELSE 3 END,
                        x.is_primary DESC
               LIMIT 1""",
            (address.lower(),),
        )
        row = await cursor.fetchone()
        if row:
            return row["entity_type"], row["entity_id"]
        return None

    async def get_user(self, user_id: str) -> Optional[dict]:
        db = await get_database()
        cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    # Linkage

    async def get_linkage(self, entity_type: str, entity_id: str) -> Optional[tuple]:
        """(provider_calendar_id, provider_event_id) or None."""
        definition = self.registry.get(entity_type)
        db = await get_database()
        if definition.is_core:
            cursor = await db.execute(
                f"""SELECT provider_calendar_id, provider_event_id FROM {definition.table}
                    WHERE id = ? AND provider_event_id IS NOT NULL""",
                (entity_id,),
            )
        else:
            cursor = await db.execute(
                """SELECT provider_calendar_id, provider_event_id FROM calendar_linkages
                   WHERE entity_type = ? AND entity_id = ?""",
                (entity_type, entity_id),
            )
        row = await cursor.fetchone()
        if row:
            return row["provider_calendar_id"], row["provider_event_id"]
        return None

    async def store_linkage(
        self,
        entity_type: str,
        entity_id: str,
        provider_calendar_id: str,
        provider_event_id: Optional[str] = None,
    ) -> None:
        """Link a record to a provider event; an empty event ID keeps the current one."""
        definition = self.registry.get(entity_type)
        db = await get_database()
        await self._write_linkage(db, definition, entity_id, provider_calendar_id, provider_event_id)
        await db.commit()

    async def _write_linkage(
        self,
        db,
        definition: EntityTypeDef,
        entity_id: str,
        provider_calendar_id: str,
        provider_event_id: Optional[str],
    ) -> None:
        event_id = provider_event_id or None
        if definition.is_core:
            await db.execute(
                f"""UPDATE {definition.table}
                    SET provider_calendar_id = ?,
                        provider_event_id = COALESCE(?, provider_event_id)
                    WHERE id = ?""",
                (provider_calendar_id, event_id, entity_id),
            )
        else:
            await db.execute(
                """INSERT INTO calendar_linkages
                   (entity_type, entity_id, provider_calendar_id, provider_event_id, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                   provider_calendar_id = excluded.provider_calendar_id,
                   provider_event_id = COALESCE(excluded.provider_event_id, calendar_linkages.provider_event_id),
                   updated_at = excluded.updated_at""",
                (definition.name, entity_id, provider_calendar_id, event_id, now_db()),
            )

    async def mark_linkage_failed(self, entity_type: str, entity_id: str) -> None:
        """Record that pushing an update for a linked record failed."""
        definition = self.registry.get(entity_type)
        db = await get_database()
        if definition.is_core:
            await db.execute(
                f"UPDATE {definition.table} SET provider_event_id = ? WHERE id = ?",
                (FAIL_MARKER, entity_id),
            )
        else:
            await db.execute(
                """UPDATE calendar_linkages SET provider_event_id = ?, updated_at = ?
                   WHERE entity_type = ? AND entity_id = ?""",
                (FAIL_MARKER, now_db(), entity_type, entity_id),
            )
        await db.commit()
        logger.warning(f"Marked {entity_type} {entity_id} as failed to push")

    async def _write_failed_clear(self, db, definition: EntityTypeDef, entity_id: str) -> None:
        if definition.is_core:
            await db.execute(
                f"""UPDATE {definition.table} SET provider_event_id = ''
                    WHERE id = ? AND provider_event_id = ?""",
                (entity_id, FAIL_MARKER),
            )
        else:
            await db.execute(
                """UPDATE calendar_linkages SET provider_event_id = ''
                   WHERE entity_type = ? AND entity_id = ? AND provider_event_id = ?""",
                (definition.name, entity_id, FAIL_MARKER),
            )

    async def reset_linkage(self, entity_type: str, entity_id: str) -> None:
        """Remove any linkage of a record."""
        definition = self.registry.get(entity_type)
        db = await get_database()
        if definition.is_core:
            await db.execute(
                f"""UPDATE {definition.table}
                    SET provider_calendar_id = NULL, provider_event_id = NULL
                    WHERE id = ?""",
                (entity_id,),
            )
        else:
            await db.execute(
                "DELETE FROM calendar_linkages WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            )
        await db.commit()

    # Recurring event queue

    async def enqueue_recurring(self, subscription_id: str, event_id: str) -> None:
        """Queue a recurring master for instance expansion, replacing any earlier entry."""
        db = await get_database()
        await db.execute(
            "DELETE FROM recurring_event_queue WHERE subscription_id = ? AND event_id = ?",
            (subscription_id, event_id),
        )
        await db.execute(
            """INSERT INTO recurring_event_queue (subscription_id, event_id, page_token, created_at)
               VALUES (?, ?, '', ?)""",
            (subscription_id, event_id, now_db()),
        )
        await db.commit()

    async def next_recurring(self, subscription_id: str, horizon: str) -> Optional[dict]:
        """
        The queue entry to expand next.

        Entries whose instances are loaded up to `horizon` are left alone;
        the rest are served least-recently-advanced first (never-loaded first).
        """
        db = await get_database()
        cursor = await db.execute(
            """SELECT * FROM recurring_event_queue
               WHERE subscription_id = ?
                 AND (last_loaded_event_time IS NULL OR last_loaded_event_time < ?)
               ORDER BY last_loaded_event_time, id
               LIMIT 1""",
            (subscription_id, horizon),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def update_recurring(
        self,
        entry_id: int,
        page_token: str = "",
        last_event_time: Optional[str] = None,
    ) -> None:
        db = await get_database()
        await db.execute(
            """UPDATE recurring_event_queue
               SET page_token = ?, last_loaded_event_time = ?
               WHERE id = ?""",
            (page_token, last_event_time, entry_id),
        )
        await db.commit()

    async def remove_recurring(self, subscription_id: str, event_id: str) -> None:
        db = await get_database()
        await db.execute(
            "DELETE FROM recurring_event_queue WHERE subscription_id = ? AND event_id = ?",
            (subscription_id, event_id),
        )
        await db.commit()

    async def delete_recurring_instances(
        self,
        subscription_id: str,
        provider_calendar_id: str,
        master_event_id: str,
        entity_types: list,
    ) -> None:
        """Soft-delete local copies of a series' instances and drop its queue entry."""
        db = await get_database()
        pattern = _like_prefix(master_event_id)

        for definition in self._definitions(entity_types):
            if definition.is_core:
                await db.execute(
                    f"""UPDATE {definition.table}
                        SET deleted = TRUE, provider_calendar_id = NULL, provider_event_id = NULL
                        WHERE provider_calendar_id = ? AND provider_event_id LIKE ? ESCAPE '\\'""",
                    (provider_calendar_id, pattern),
                )
            else:
                cursor = await db.execute(
                    """SELECT entity_id FROM calendar_linkages
                       WHERE entity_type = ? AND provider_calendar_id = ?
                         AND provider_event_id LIKE ? ESCAPE '\\'""",
                    (definition.name, provider_calendar_id, pattern),
                )
                ids = [row["entity_id"] for row in await cursor.fetchall()]
                if ids:
                    placeholders = ",".join("?" * len(ids))
                    await db.execute(
                        f"UPDATE {definition.table} SET deleted = TRUE WHERE id IN ({placeholders})",
                        ids,
                    )
                    await db.execute(
                        f"""DELETE FROM calendar_linkages
                            WHERE entity_type = ? AND entity_id IN ({placeholders})""",
                        [definition.name, *ids],
                    )

        await db.execute(
            "DELETE FROM recurring_event_queue WHERE subscription_id = ? AND event_id = ?",
            (subscription_id, master_event_id),
        )
        await db.commit()
