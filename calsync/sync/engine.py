"""Per-subscription sync orchestration."""

import asyncio
import logging
from typing import Optional

from dateutil import parser as date_parser
from dateutil import tz

from calsync.auth.acl import CALENDAR_SYNC_SCOPE, AclChecker
from calsync.auth.credentials import get_access_token
from calsync.config import get_settings
from calsync.database import get_setting
from calsync.sync.errors import SyncConfigurationError
from calsync.sync.google_calendar import GoogleCalendarClient
from calsync.sync.models import (
    DIRECTION_BOTH,
    DIRECTION_PULL,
    DIRECTION_PUSH,
    CalendarSubscription,
    SyncCounters,
    SyncParams,
)
from calsync.sync.provider import DELETE_EVENT, RESET_TOKEN, CalendarProvider, is_failed_result
from calsync.sync.repository import LocalEventRepository
from calsync.sync.rules import EventSync
from calsync.sync.subscriptions import (
    get_provider_calendar,
    get_subscription,
    get_user_main_subscription,
    record_sync_failure,
    record_sync_success,
    save_subscription,
)
from calsync.utils.dates import (
    RFC3339_UTC_FORMAT,
    add_months,
    now_db,
    to_db_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)

# Per-subscription locks to prevent overlapping runs (e.g. manual trigger + periodic)
_subscription_locks: dict[str, asyncio.Lock] = {}
_subscription_locks_guard = asyncio.Lock()


async def _get_subscription_lock(subscription_id: str) -> asyncio.Lock:
    """Get or create an asyncio lock for one subscription."""
    async with _subscription_locks_guard:
        if subscription_id not in _subscription_locks:
            _subscription_locks[subscription_id] = asyncio.Lock()
        return _subscription_locks[subscription_id]


async def is_sync_paused() -> bool:
    """Check if sync is globally paused."""
    setting = await get_setting("sync_paused")
    return bool(setting and setting.get("value_plain") == "true")


async def build_client(account_handle: str) -> GoogleCalendarClient:
    """Provider client authenticated for an account."""
    return GoogleCalendarClient(await get_access_token(account_handle))


async def trigger_sync_for_subscription(
    subscription_id: str,
    client: Optional[CalendarProvider] = None,
) -> bool:
    """Run one subscription unless paused or already running."""
    if await is_sync_paused():
        logger.info("Sync is paused, skipping subscription sync")
        return False

    lock = await _get_subscription_lock(subscription_id)
    if lock.locked():
        logger.info(f"Sync already in progress for subscription {subscription_id}, skipping")
        return False

    async with lock:
        subscription = await get_subscription(subscription_id)
        if not subscription or not subscription.is_active:
            logger.warning(f"Subscription {subscription_id} not found or inactive")
            return False

        if client is None:
            try:
                client = await build_client(subscription.account_handle)
            except Exception as e:
                logger.error(f"Cannot build provider client for subscription {subscription_id}: {e}")
                await record_sync_failure(subscription, str(e))
                return False

        return await CalendarSync(subscription, client).run()


def instance_time_from_id(instance_id: str) -> Optional[str]:
    """Start time encoded in the trailing segment of a recurring instance ID."""
    segment = instance_id.rsplit("_", 1)[-1] if "_" in instance_id else ""
    if not segment:
        return None
    try:
        return to_db_datetime(date_parser.isoparse(segment))
    except ValueError:
        logger.error(f"Cannot parse instance time from event ID {instance_id}")
        return None


class CalendarSync:
    """
    Drives one run of one subscription.

    Work is bounded by SyncCounters: every applied item adds the success
    step, every failed one the failure step, and each pass stops once its
    counter reaches the ceiling. Cursors are persisted after every page or
    batch so an interrupted run loses at most one of them.
    """

    def __init__(
        self,
        subscription: CalendarSubscription,
        client: CalendarProvider,
        repository: Optional[LocalEventRepository] = None,
        acl: Optional[AclChecker] = None,
    ):
        self.subscription = subscription
        self.client = client
        self.repository = repository or LocalEventRepository()
        self.acl = acl or AclChecker(subscription.user_id)
        self.settings = get_settings()
        self.counters = SyncCounters(
            ceiling=self.settings.sync_max_items_per_counter,
            success_step=self.settings.sync_success_increment,
            failure_step=self.settings.sync_failure_increment,
        )
        self.params: Optional[SyncParams] = None
        self.events: Optional[EventSync] = None
        self.start_sync_time = now_db()

    async def run(self) -> bool:
        """Sync the subscription once. Never raises."""
        subscription = self.subscription

        try:
            if not await self.acl.check_scope(CALENDAR_SYNC_SCOPE, "read"):
                logger.info(f"User {subscription.user_id} may not use calendar sync, skipping")
                return False

            self.params = await self.prepare()
            self.events = EventSync(self.params, self.client, self.repository, self.acl)

            subscription.last_looked = now_db()
            await save_subscription(subscription)

            await self.dispatch()
            await record_sync_success(subscription, self.counters.as_dict())
        except Exception as e:
            logger.exception(f"Sync failed for subscription {subscription.id}: {e}")
            try:
                await record_sync_failure(subscription, str(e))
            except Exception as log_error:
                logger.error(f"Could not record failure of subscription {subscription.id}: {log_error}")
            return False

        logger.info(f"Synced subscription {subscription.id}: {self.counters.as_dict()}")
        return True

    async def prepare(self) -> SyncParams:
        """Resolve the per-run configuration of the subscription."""
        subscription = self.subscription
        floor = subscription.start_date or None

        last_time, _, last_id = (subscription.last_sync or "").partition("_")
        start_date = last_time if last_time and (not floor or last_time > floor) else floor

        entity_types = []
        for entity_type in self.repository.registry.known(subscription.entity_types):
            if await self.acl.check_scope(entity_type, "read"):
                entity_types.append(entity_type)
        if not entity_types:
            raise SyncConfigurationError(f"No allowed entity types for subscription {subscription.id}")

        labeled = []
        unlabeled = []
        for entity_type in entity_types:
            label = (subscription.entity_labels or {}).get(entity_type)
            if label:
                labeled.append((entity_type, label))
            else:
                unlabeled.append((entity_type, ""))

        if not subscription.provider_calendar_id:
            raise SyncConfigurationError(f"Subscription {subscription.id} has no calendar")
        if not subscription.remote_calendar_id:
            calendar = await get_provider_calendar(subscription.provider_calendar_id)
            if not calendar:
                raise SyncConfigurationError(
                    f"Cannot load calendar for user {subscription.user_id}"
                )
            subscription.remote_calendar_id = calendar["calendar_id"]
            await save_subscription(subscription)

        is_main = subscription.is_main
        is_in_main = False
        if not is_main:
            main = await get_user_main_subscription(subscription.user_id)
            is_in_main = bool(main and main.provider_calendar_id == subscription.provider_calendar_id)

        calendar_time_zone = "UTC"
        try:
            metadata = self.client.get_calendar_metadata(subscription.remote_calendar_id)
            if metadata and metadata.get("timeZone"):
                calendar_time_zone = metadata["timeZone"]
        except Exception as e:
            logger.warning(f"Cannot read time zone of calendar {subscription.remote_calendar_id}: {e}")

        user = await self.repository.get_user(subscription.user_id)
        user_time_zone = (user or {}).get("time_zone") or "UTC"

        default_entity_type = subscription.default_entity_type
        if default_entity_type not in entity_types:
            default_entity_type = None

        return SyncParams(
            subscription=subscription,
            user_id=subscription.user_id,
            entity_types=entity_types,
            labels=labeled + unlabeled,
            default_entity_type=default_entity_type,
            fetch_since=floor,
            start_date=start_date,
            last_updated_id=last_id,
            provider_calendar_id=subscription.provider_calendar_id,
            remote_calendar_id=subscription.remote_calendar_id,
            is_main=is_main,
            is_in_main=is_in_main,
            calendar_time_zone=calendar_time_zone,
            user_time_zone=user_time_zone,
        )

    async def dispatch(self) -> None:
        direction = self.subscription.direction

        if direction == DIRECTION_PUSH:
            await self.push_modified_local_events()
            await self.push_new_local_events()
        elif direction == DIRECTION_PULL:
            await self.pull_remote_events()
            await self.pull_recurring_instances()
        elif direction == DIRECTION_BOTH:
            await self.two_way_sync()
        else:
            logger.debug(f"Subscription {self.subscription.id} has no sync direction")

    async def two_way_sync(self) -> None:
        params = self.params

        if params.is_main or not params.is_in_main:
            await self.pull_remote_events(compare=True)
            await self.pull_recurring_instances(compare=True)
            await self.push_modified_local_events(compare=True)
        else:
            # Same remote calendar as the primary: follow its cursor instead of pulling twice
            main = await get_user_main_subscription(params.user_id)
            if main:
                self.subscription.sync_token = main.sync_token
                self.subscription.page_token = main.page_token
                await save_subscription(self.subscription)

        if params.is_main:
            await self.push_new_local_events()

    def _time_min(self) -> Optional[str]:
        """Floor date at midnight in the user's time zone, as UTC."""
        if not self.params.fetch_since:
            return None
        zone = tz.gettz(self.params.user_time_zone) or tz.UTC
        midnight = date_parser.isoparse(self.params.fetch_since[:10]).replace(tzinfo=zone)
        return midnight.astimezone(tz.UTC).strftime(RFC3339_UTC_FORMAT)

    async def _apply_remote(self, item: dict, compare: bool) -> bool:
        try:
            return await self.events.reconcile_remote_to_local(item, compare)
        except Exception as e:
            logger.error(f"Failed to apply provider event {item.get('id')}: {e}")
            return False

    async def pull_remote_events(self, compare: bool = False) -> None:
        """Pull provider changes page by page, persisting the cursor after each page."""
        subscription = self.subscription

        while True:
            sync_token = subscription.sync_token or None
            page_token = subscription.page_token or None
            time_min = self._time_min() if not sync_token and not page_token else None

            try:
                result = self.client.list_events(
                    self.params.remote_calendar_id,
                    time_min=time_min,
                    sync_token=sync_token,
                    page_token=page_token,
                )
            except Exception as e:
                logger.error(f"Failed to list events for subscription {subscription.id}: {e}")
                return

            if is_failed_result(result):
                if result and result.get("action") == RESET_TOKEN:
                    if page_token:
                        subscription.page_token = ""
                    else:
                        subscription.sync_token = ""
                    await save_subscription(subscription)
                    logger.info(f"Reset provider cursor of subscription {subscription.id}")
                return

            for item in result.get("items", []):
                self.counters.add("pulled", await self._apply_remote(item, compare))

            if result.get("nextPageToken"):
                subscription.page_token = result["nextPageToken"]
                await save_subscription(subscription)
                if self.counters.exhausted("pulled"):
                    return
                continue

            if result.get("nextSyncToken"):
                subscription.page_token = ""
                subscription.sync_token = result["nextSyncToken"]
                await save_subscription(subscription)
            return

    async def pull_recurring_instances(self, compare: bool = False) -> None:
        """Expand queued recurring masters into local instances."""
        subscription = self.subscription

        while not self.counters.exhausted("recurring"):
            horizon = to_db_datetime(add_months(utcnow(), self.settings.recurring_horizon_months))
            entry = await self.repository.next_recurring(subscription.id, horizon)
            if not entry:
                return

            event_id = entry["event_id"]
            page_token = entry["page_token"] or None

            try:
                result = self.client.list_event_instances(
                    self.params.remote_calendar_id, event_id, page_token=page_token
                )
            except Exception as e:
                logger.error(f"Failed to list instances of {event_id}: {e}")
                result = {"success": False}

            if is_failed_result(result):
                action = result.get("action") if result else None
                if action == RESET_TOKEN:
                    if page_token:
                        await self.repository.update_recurring(entry["id"])
                    else:
                        await self.repository.remove_recurring(subscription.id, event_id)
                elif action == DELETE_EVENT:
                    await self.repository.remove_recurring(subscription.id, event_id)
                self.counters.add("recurring", False)
                continue

            items = result.get("items", [])
            for item in items:
                # Instances share the series UID, it must not be used for matching
                instance = dict(item)
                instance.pop("iCalUID", None)
                self.counters.add("recurring", await self._apply_remote(instance, compare))

            if result.get("nextPageToken"):
                last_time = entry["last_loaded_event_time"]
                if items:
                    last_time = instance_time_from_id(items[-1].get("id", "")) or last_time
                await self.repository.update_recurring(entry["id"], result["nextPageToken"], last_time)
            else:
                await self.repository.remove_recurring(subscription.id, event_id)

    async def push_new_local_events(self) -> None:
        """Insert never-pushed local events into the provider calendar."""
        batch_size = self.settings.sync_batch_size

        while not self.counters.exhausted("pushed_new"):
            rows = await self.repository.find_new_local_events(
                self.params.user_id,
                self.params.entity_types,
                self.params.fetch_since,
                batch_size,
            )
            if not rows:
                return

            for row in rows:
                try:
                    applied = await self.events.push_local_to_remote(row)
                except Exception as e:
                    logger.error(f"Failed to push {row['scope']} {row['id']}: {e}")
                    applied = False
                self.counters.add("pushed_new", applied)

            if len(rows) < batch_size:
                return

    async def push_modified_local_events(self, compare: bool = False) -> None:
        """Push local changes after the (time, id) watermark, advancing it per batch."""
        batch_size = self.settings.sync_batch_size
        subscription = self.subscription

        while not self.counters.exhausted("pushed_modified"):
            rows = await self.repository.find_modified_local_events(
                self.params.user_id,
                self.params.entity_types,
                self.params.provider_calendar_id,
                self.params.start_date,
                self.start_sync_time,
                self.params.last_updated_id,
                batch_size,
            )
            if not rows:
                return

            for row in rows:
                try:
                    applied = await self.events.push_local_update_to_remote(row, compare)
                except Exception as e:
                    logger.error(f"Failed to push update of {row['scope']} {row['id']}: {e}")
                    applied = False
                self.counters.add("pushed_modified", applied)

            last = rows[-1]
            last_time = last["modified_at"] or last["created_at"]
            subscription.last_sync = f"{last_time}_{last['id']}"
            self.params.start_date = last_time
            self.params.last_updated_id = last["id"]
            await save_subscription(subscription)

            if len(rows) < batch_size:
                return
