"""Database connection and schema management."""

import asyncio
import logging
import re
import secrets
from typing import Optional

import aiosqlite

from calsync.config import get_settings
from calsync.utils.dates import now_db

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- System settings
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value_plain TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- CRM users
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    user_name TEXT NOT NULL UNIQUE,
    time_zone TEXT,
    default_team_id TEXT,
    is_admin BOOLEAN DEFAULT FALSE,
    is_active BOOLEAN DEFAULT TRUE,
    deleted BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entity_teams (
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    team_id TEXT NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
    PRIMARY KEY (entity_type, entity_id, team_id)
);

-- Access control grants (admins bypass)
CREATE TABLE IF NOT EXISTS acl_grants (
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    scope TEXT NOT NULL,
    action TEXT NOT NULL,
    PRIMARY KEY (user_id, scope, action)
);

-- People that can attend events
CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    name TEXT,
    deleted BOOLEAN DEFAULT FALSE
);

CREATE TABLE IF NOT EXISTS leads (
    id TEXT PRIMARY KEY,
    name TEXT,
    deleted BOOLEAN DEFAULT FALSE
);

CREATE TABLE IF NOT EXISTS email_addresses (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    lower TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS entity_email_addresses (
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    email_address_id TEXT NOT NULL REFERENCES email_addresses(id) ON DELETE CASCADE,
    is_primary BOOLEAN DEFAULT FALSE,
    PRIMARY KEY (entity_type, entity_id, email_address_id)
);

CREATE INDEX IF NOT EXISTS idx_entity_email_address ON entity_email_addresses(email_address_id);

-- Built-in event types, linkage embedded as two columns
CREATE TABLE IF NOT EXISTS meetings (
    id TEXT PRIMARY KEY,
    name TEXT,
    status TEXT DEFAULT 'Planned',
    date_start TEXT,
    date_end TEXT,
    date_start_date TEXT,
    date_end_date TEXT,
    is_all_day BOOLEAN DEFAULT FALSE,
    description TEXT,
    location TEXT,
    join_url TEXT,
    uid TEXT,
    assigned_user_id TEXT REFERENCES users(id),
    provider_calendar_id TEXT,
    provider_event_id TEXT,
    created_at TEXT,
    modified_at TEXT,
    deleted BOOLEAN DEFAULT FALSE
);

CREATE INDEX IF NOT EXISTS idx_meetings_provider_event ON meetings(provider_event_id);
CREATE INDEX IF NOT EXISTS idx_meetings_modified ON meetings(modified_at, id);

CREATE TABLE IF NOT EXISTS calls (
    id TEXT PRIMARY KEY,
    name TEXT,
    status TEXT DEFAULT 'Planned',
    date_start TEXT,
    date_end TEXT,
    description TEXT,
    uid TEXT,
    assigned_user_id TEXT REFERENCES users(id),
    provider_calendar_id TEXT,
    provider_event_id TEXT,
    created_at TEXT,
    modified_at TEXT,
    deleted BOOLEAN DEFAULT FALSE
);

CREATE INDEX IF NOT EXISTS idx_calls_provider_event ON calls(provider_event_id);
CREATE INDEX IF NOT EXISTS idx_calls_modified ON calls(modified_at, id);

-- Attendees of built-in event types
CREATE TABLE IF NOT EXISTS event_attendees (
    event_type TEXT NOT NULL,
    event_id TEXT NOT NULL,
    attendee_type TEXT NOT NULL,
    attendee_id TEXT NOT NULL,
    status TEXT DEFAULT 'None',
    deleted BOOLEAN DEFAULT FALSE,
    PRIMARY KEY (event_type, event_id, attendee_type, attendee_id)
);

CREATE INDEX IF NOT EXISTS idx_event_attendees_attendee ON event_attendees(attendee_type, attendee_id);

-- Provider calendars known locally
CREATE TABLE IF NOT EXISTS provider_calendars (
    id TEXT PRIMARY KEY,
    calendar_id TEXT NOT NULL UNIQUE,
    name TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- One row per user per synced provider calendar
CREATE TABLE IF NOT EXISTS calendar_subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    account_handle TEXT NOT NULL,
    provider_calendar_id TEXT REFERENCES provider_calendars(id),
    remote_calendar_id TEXT,
    type TEXT NOT NULL DEFAULT 'monitored',
    direction TEXT,
    start_date TEXT,
    entity_types TEXT DEFAULT '[]',
    entity_labels TEXT DEFAULT '{}',
    default_entity_type TEXT,
    sync_token TEXT,
    page_token TEXT,
    last_sync TEXT,
    last_looked TEXT,
    remove_remote_on_delete BOOLEAN DEFAULT FALSE,
    skip_attendee_sync BOOLEAN DEFAULT FALSE,
    assign_default_team BOOLEAN DEFAULT FALSE,
    is_active BOOLEAN DEFAULT TRUE,
    consecutive_failures INTEGER DEFAULT 0,
    last_error TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON calendar_subscriptions(user_id, type);

-- Linkage of generic activity entities
CREATE TABLE IF NOT EXISTS calendar_linkages (
    id INTEGER PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    provider_calendar_id TEXT,
    provider_event_id TEXT,
    updated_at TEXT,
    UNIQUE(entity_type, entity_id)
);

CREATE INDEX IF NOT EXISTS idx_calendar_linkages_event ON calendar_linkages(provider_event_id);

-- Recurring masters waiting for instance expansion
CREATE TABLE IF NOT EXISTS recurring_event_queue (
    id INTEGER PRIMARY KEY,
    subscription_id TEXT NOT NULL REFERENCES calendar_subscriptions(id) ON DELETE CASCADE,
    event_id TEXT NOT NULL,
    page_token TEXT,
    last_loaded_event_time TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_recurring_queue_sub ON recurring_event_queue(subscription_id, last_loaded_event_time);

-- Provider bearer tokens (encrypted at rest)
CREATE TABLE IF NOT EXISTS oauth_tokens (
    id INTEGER PRIMARY KEY,
    account_handle TEXT NOT NULL UNIQUE,
    user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
    access_token_encrypted BLOB NOT NULL,
    updated_at TIMESTAMP
);

-- Sync audit log
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    user_id TEXT,
    subscription_id TEXT,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_log_created ON sync_log(created_at);
CREATE INDEX IF NOT EXISTS idx_sync_log_subscription ON sync_log(subscription_id, created_at);

-- Job locks (prevent concurrent job runs)
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


ACTIVITY_TABLE_TEMPLATE = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    name TEXT,
    status TEXT DEFAULT 'Planned',
    date_start TEXT,
    date_end TEXT,
    date_start_date TEXT,
    date_end_date TEXT,
    is_all_day BOOLEAN DEFAULT FALSE,
    description TEXT,
    location TEXT,
    assigned_user_id TEXT REFERENCES users(id),
    created_at TEXT,
    modified_at TEXT,
    deleted BOOLEAN DEFAULT FALSE
);

CREATE INDEX IF NOT EXISTS idx_{table}_assigned ON {table}(assigned_user_id, date_start);
CREATE INDEX IF NOT EXISTS idx_{table}_modified ON {table}(modified_at, id);
"""


def generic_table_name(entity_type: str) -> str:
    """Table name for a generic activity entity type ("ProjectTask" -> "project_tasks")."""
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", entity_type).lower()
    if not re.fullmatch(r"[a-z][a-z0-9_]*", snake):
        raise ValueError(f"Invalid entity type name: {entity_type}")
    return f"{snake}s"


def generate_id() -> str:
    """Generate a record ID."""
    return secrets.token_hex(8)


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema, including configured generic activity tables."""
    await db.executescript(SCHEMA)
    for entity_type in get_settings().generic_activity_types:
        await db.executescript(
            ACTIVITY_TABLE_TEMPLATE.format(table=generic_table_name(entity_type))
        )
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")


async def get_setting(key: str) -> Optional[dict]:
    """Get a setting by key."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM settings WHERE key = ?", (key,)
    )
    row = await cursor.fetchone()
    if row:
        return dict(row)
    return None


async def set_setting(key: str, value: str) -> None:
    """Set a setting value."""
    db = await get_database()
    await db.execute(
        """INSERT INTO settings (key, value_plain, updated_at)
           VALUES (?, ?, ?)
           ON CONFLICT(key) DO UPDATE SET
           value_plain = excluded.value_plain,
           updated_at = excluded.updated_at""",
        (key, value, now_db())
    )
    await db.commit()


async def write_sync_log(
    action: str,
    status: str,
    details: Optional[str] = None,
    user_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
) -> None:
    """Append an entry to the sync audit log."""
    db = await get_database()
    await db.execute(
        """INSERT INTO sync_log (user_id, subscription_id, action, status, details, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, subscription_id, action, status, details, now_db())
    )
    await db.commit()
