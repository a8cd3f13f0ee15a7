"""Access control checks against the acl_grants table."""

import logging

from calsync.database import get_database

logger = logging.getLogger(__name__)

# Scope guarding the calendar sync feature as a whole
CALENDAR_SYNC_SCOPE = "CalendarSync"


class AclChecker:
    """Answers whether a user may perform an action on a scope."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self._cache: dict[tuple[str, str], bool] = {}
        self._is_admin = None

    async def _admin(self) -> bool:
        if self._is_admin is None:
            db = await get_database()
            cursor = await db.execute(
                "SELECT is_admin FROM users WHERE id = ? AND deleted = FALSE AND is_active = TRUE",
                (self.user_id,),
            )
            row = await cursor.fetchone()
            self._is_admin = bool(row and row["is_admin"])
        return self._is_admin

    async def check_scope(self, scope: str, action: str = "read") -> bool:
        """True for admins or when a matching grant exists."""
        key = (scope, action)
        if key in self._cache:
            return self._cache[key]

        if await self._admin():
            allowed = True
        else:
            db = await get_database()
            cursor = await db.execute(
                """SELECT 1 FROM acl_grants g
                   JOIN users u ON u.id = g.user_id
                   WHERE g.user_id = ? AND g.scope = ? AND g.action = ?
                     AND u.deleted = FALSE AND u.is_active = TRUE""",
                (self.user_id, scope, action),
            )
            allowed = await cursor.fetchone() is not None

        self._cache[key] = allowed
        return allowed


async def grant(user_id: str, scope: str, action: str = "read") -> None:
    """Grant an action on a scope to a user."""
    db = await get_database()
    await db.execute(
        "INSERT OR IGNORE INTO acl_grants (user_id, scope, action) VALUES (?, ?, ?)",
        (user_id, scope, action),
    )
    await db.commit()
    logger.info(f"Granted {action} on {scope} to user {user_id}")
