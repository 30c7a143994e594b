"""
Reconciliation orchestrator.

Owns every path that mutates calendar events: local API writes (followed by a
provider push), periodic pulls from the provider, webhook notifications and the
cron batch. Conflicts between local and remote copies are resolved by
last-write-wins on whole events.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytz

from config.settings import settings
from core import (
    AuthError,
    Clock,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    TTLCache,
    ValidationError,
    get_logger,
    system_clock,
    to_naive_utc,
)
from core.ids import new_event_id
from providers.base import CalendarProviderAdapter
from providers.factory import AdapterFactory, get_adapter
from providers.translate import payload_to_remote_event, remote_to_event_fields
from schemas import (
    AccountSchema,
    BatchResult,
    CalendarEventCreate,
    CalendarEventSchema,
    CalendarEventUpdate,
    CalendarSchema,
    CreateEventResponse,
    EventListResponse,
    Organizer,
    ProviderSyncStateSchema,
    ReconcileResult,
    RemoteChange,
    RemoteEvent,
)
from store.database import AsyncDatabase, db
from sync import state as sync_state
from sync.invitations import InvitationDispatcher, LoggingInvitationDispatcher
from sync.recurrence import expand

logger = get_logger(__name__)

WEBHOOK_EVENT_TYPES = (
    "calendar.event.created",
    "calendar.event.updated",
    "calendar.event.deleted",
)


def _validate_timezone(name: str) -> str:
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ValidationError("timezone", f"unknown timezone '{name}'")
    return name


class ReconciliationOrchestrator:
    """
    Keeps local events and their provider mirrors in agreement.

    Provider failures never undo a local write: they are recorded on the
    event's sync state and retried by the next reconciliation pass.
    """

    def __init__(
        self,
        database: AsyncDatabase,
        adapter_factory: AdapterFactory = get_adapter,
        dispatcher: Optional[InvitationDispatcher] = None,
        clock: Clock = system_clock,
    ):
        self.db = database
        self.adapter_factory = adapter_factory
        self.dispatcher = dispatcher or LoggingInvitationDispatcher()
        self.clock = clock
        self._accounts_by_grant: TTLCache[AccountSchema] = TTLCache(
            settings.ACCOUNT_CACHE_TTL_SECONDS, clock=clock
        )

    # ==================== Mirror Targets ====================

    async def _mirror_target(self, event: CalendarEventSchema) -> Optional[Tuple[AccountSchema, CalendarSchema]]:
        """Account and calendar an event is pushed to, None for local-only events."""
        if event.parent_event_id is not None:
            # Instances are materialized locally; the provider expands the master itself
            return None
        calendar = await self.db.get_calendar(event.owner_id, event.calendar_id)
        if calendar is None or not calendar.is_mirrored or not calendar.sync_enabled or calendar.is_read_only:
            return None
        account = await self.db.get_account(calendar.account_id, owner_id=event.owner_id)
        if account is None or not account.is_active:
            return None
        return account, calendar

    async def _owned_account(self, owner_id: str, account_id: str) -> AccountSchema:
        account = await self.db.get_account(account_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        if account.owner_id != owner_id:
            logger.warning("Account ownership mismatch", account_id=account_id, owner_id=owner_id)
            raise AuthError("Unauthorized access to account", forbidden=True)
        return account

    # ==================== Local Writes ====================

    async def create_event(self, owner_id: str, data: CalendarEventCreate) -> CreateEventResponse:
        """
        Create an event, expand it if recurring, then push it to the provider.

        The local row always survives a failed push; the response reports
        ``synced=False`` instead.

        Raises:
            ValidationError: Past start, end before start, unusable timezone
            NotFoundError: Calendar does not exist for this owner
        """
        now = self.clock.now()
        start = to_naive_utc(data.start_time)
        end = to_naive_utc(data.end_time)
        if start < now:
            raise ValidationError("startTime", "must not be in the past")
        if end < start:
            raise ValidationError("endTime", "must not be before startTime")
        if data.is_recurring and not data.recurrence_rule:
            raise ValidationError("recurrenceRule", "required when isRecurring is true")

        calendar = await self.db.get_calendar(owner_id, data.calendar_id)
        if calendar is None:
            raise NotFoundError("Calendar", data.calendar_id)
        if calendar.is_read_only:
            raise ValidationError("calendarId", "calendar is read-only")

        timezone = _validate_timezone(data.timezone or calendar.timezone or settings.TIMEZONE)
        organizer_email = data.organizer_email
        account = None
        if calendar.is_mirrored:
            account = await self.db.get_account(calendar.account_id, owner_id=owner_id)
            if account is not None and not organizer_email:
                organizer_email = account.email_address

        event = CalendarEventSchema(
            id=new_event_id(),
            owner_id=owner_id,
            calendar_id=calendar.id,
            title=data.title,
            description=data.description,
            location=data.location,
            start_time=start,
            end_time=end,
            is_all_day=data.is_all_day,
            timezone=timezone,
            is_recurring=data.is_recurring,
            recurrence_rule=data.recurrence_rule if data.is_recurring else None,
            recurrence_end_date=to_naive_utc(data.recurrence_end_date) if data.recurrence_end_date else None,
            calendar_type=data.calendar_type,
            color=data.color or calendar.color,
            status=data.status,
            busy=data.busy,
            is_private=data.is_private,
            organizer_email=organizer_email,
            attendees=data.attendees,
            reminders=data.reminders,
            metadata={"sendInvitations": data.send_invitations},
            created_at=now,
            updated_at=now,
        )
        event = await self.db.insert_event(event)
        logger.info("Event created", event_id=event.id, owner_id=owner_id, recurring=event.is_recurring)

        if account is not None and account.is_active:
            event = await self.db.set_sync_state(owner_id, event.id, account.provider, sync_state.UNSYNCED)

        instances_created = await self._materialize_instances(event, now)
        synced = await self.push_event(event)
        await self._maybe_send_invitations(owner_id, event.id)

        fresh = await self.db.get_event(owner_id, event.id)
        return CreateEventResponse(event=fresh, synced=synced, instances_created=instances_created)

    async def update_event(self, owner_id: str, event_id: str, data: CalendarEventUpdate) -> CreateEventResponse:
        """Apply a partial update, re-expand a recurring master and push unless ``skip_sync``."""
        existing = await self.db.get_event(owner_id, event_id)
        if existing is None:
            raise NotFoundError("CalendarEvent", event_id)

        fields: Dict[str, Any] = data.model_dump(exclude_unset=True, exclude={"skip_sync"})
        for key in ("start_time", "end_time", "recurrence_end_date"):
            if fields.get(key) is not None:
                fields[key] = to_naive_utc(fields[key])
        for key in ("title", "start_time", "end_time", "is_all_day", "is_recurring", "status", "busy", "is_private"):
            if key in fields and fields[key] is None:
                raise ValidationError(key, "must not be null")
        if fields.get("timezone") is not None:
            _validate_timezone(fields["timezone"])
        elif "timezone" in fields:
            del fields["timezone"]

        start = fields.get("start_time", existing.start_time)
        end = fields.get("end_time", existing.end_time)
        if end < start:
            raise ValidationError("endTime", "must not be before startTime")
        is_recurring = fields.get("is_recurring", existing.is_recurring)
        rule = fields.get("recurrence_rule", existing.recurrence_rule)
        if is_recurring and not rule:
            raise ValidationError("recurrenceRule", "required when isRecurring is true")
        if is_recurring and existing.parent_event_id is not None:
            raise ValidationError("isRecurring", "an occurrence cannot become a recurring master")

        now = self.clock.now()
        event = await self.db.update_event(owner_id, event_id, fields, updated_at=now)
        logger.info("Event updated", event_id=event_id, owner_id=owner_id, fields=sorted(fields))

        instances_created = 0
        if event.status == "cancelled" or (existing.is_recurring and not event.is_recurring):
            await self.db.cancel_future_instances(owner_id, event.id, now, updated_at=now)
        elif event.is_recurring:
            instances_created = await self._materialize_instances(event, now)

        synced = False
        if not data.skip_sync:
            synced = await self.push_event(event)
            await self._maybe_send_invitations(owner_id, event.id)

        fresh = await self.db.get_event(owner_id, event.id)
        return CreateEventResponse(event=fresh, synced=synced, instances_created=instances_created)

    async def cancel_event(self, owner_id: str, event_id: str) -> Tuple[CalendarEventSchema, bool]:
        """Soft-cancel an event (and a master's future occurrences), then retire the remote copy."""
        existing = await self.db.get_event(owner_id, event_id)
        if existing is None:
            raise NotFoundError("CalendarEvent", event_id)

        now = self.clock.now()
        await self.db.cancel_events(owner_id, [event_id], updated_at=now)
        if existing.is_recurring:
            count = await self.db.cancel_future_instances(owner_id, event_id, now, updated_at=now)
            logger.info("Cancelled future occurrences", master_id=event_id, count=count)

        event = await self.db.get_event(owner_id, event_id)
        synced = await self.push_event(event)
        logger.info("Event cancelled", event_id=event_id, owner_id=owner_id, synced=synced)
        return await self.db.get_event(owner_id, event_id), synced

    async def bulk_cancel(self, owner_id: str, event_ids: Sequence[str]) -> Dict[str, Any]:
        """
        Cancel up to BULK_DELETE_LIMIT events in one call.

        Returns:
            Dict with cancelled ids, ids not found for this owner and how many
            remote deletions succeeded
        """
        unique_ids = list(dict.fromkeys(event_ids))
        if not unique_ids:
            raise ValidationError("eventIds", "must not be empty")
        if len(unique_ids) > settings.BULK_DELETE_LIMIT:
            raise ValidationError("eventIds", f"at most {settings.BULK_DELETE_LIMIT} events per request")

        now = self.clock.now()
        cancelled = await self.db.cancel_events(owner_id, unique_ids, updated_at=now)
        for event in cancelled:
            if event.is_recurring:
                await self.db.cancel_future_instances(owner_id, event.id, now, updated_at=now)

        synced = 0
        for event in cancelled:
            if await self.push_event(event):
                synced += 1

        found = {e.id for e in cancelled}
        not_found = [event_id for event_id in unique_ids if event_id not in found]
        logger.info(
            "Bulk cancel finished",
            owner_id=owner_id,
            cancelled=len(found),
            not_found=len(not_found),
            remote_deleted=synced,
        )
        return {"cancelled": sorted(found), "notFound": not_found, "remoteDeleted": synced}

    async def get_event(self, owner_id: str, event_id: str) -> CalendarEventSchema:
        event = await self.db.get_event(owner_id, event_id)
        if event is None:
            raise NotFoundError("CalendarEvent", event_id)
        return event

    async def list_events(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        calendar_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> EventListResponse:
        limit = min(limit or settings.DEFAULT_PAGE_LIMIT, settings.MAX_PAGE_LIMIT)
        if limit < 1 or offset < 0:
            raise ValidationError("limit", "limit must be positive and offset non-negative")
        if status not in (None, "all", "confirmed", "tentative", "cancelled"):
            raise ValidationError("status", f"unknown status '{status}'")
        events, total = await self.db.list_events(
            owner_id,
            start=to_naive_utc(start) if start else None,
            end=to_naive_utc(end) if end else None,
            calendar_type=calendar_type,
            status=status,
            limit=limit,
            offset=offset,
        )
        return EventListResponse(events=events, total=total, limit=limit, offset=offset)

    async def record_rsvp(self, event_id: str, attendee_email: str, response: str) -> CalendarEventSchema:
        """Store an attendee's RSVP. Authorization happens through the signed token."""
        event = await self.db.set_attendee_status(event_id, attendee_email, response, self.clock.now())
        if event is None:
            raise NotFoundError("Attendee", attendee_email)
        logger.info("RSVP recorded", event_id=event_id, attendee=attendee_email, response=response)
        if event.parent_event_id is None:
            await self.push_event(event)
        return event

    # ==================== Recurrence ====================

    async def _materialize_instances(self, master: CalendarEventSchema, now: datetime) -> int:
        """
        Upsert occurrences from ``now`` through the recurrence window.

        Future occurrences the rule no longer produces are cancelled. A bad
        rule is logged and yields no instances.
        """
        if not master.is_recurring or master.status == "cancelled":
            return 0
        window_end = now + timedelta(days=settings.RECURRENCE_WINDOW_DAYS)
        try:
            instances = list(expand(master, now, window_end))
        except ValidationError as e:
            logger.warning(
                "Skipping recurrence expansion",
                master_id=master.id,
                rule=master.recurrence_rule,
                error=e.message,
            )
            return 0

        created, updated = await self.db.upsert_instances(instances)
        dropped = await self.db.cancel_future_instances(
            master.owner_id, master.id, now, keep_ids=[i.id for i in instances], updated_at=now
        )
        logger.info(
            "Recurrence instances materialized",
            master_id=master.id,
            created=created,
            updated=updated,
            dropped=dropped,
        )
        return created

    # ==================== Push ====================

    async def push_event(self, event: CalendarEventSchema) -> bool:
        """
        Mirror one local event to its provider.

        Returns:
            True when the provider now holds the local version
        """
        target = await self._mirror_target(event)
        if target is None:
            return False
        account, calendar = target
        try:
            async with self.adapter_factory(account) as adapter:
                return await self._push_with(adapter, account, calendar, event)
        except (ProviderError, AuthError) as e:
            logger.warning("Push deferred to next reconciliation", event_id=event.id, error=str(e))
            return False

    async def _push_with(
        self,
        adapter: CalendarProviderAdapter,
        account: AccountSchema,
        calendar: CalendarSchema,
        event: CalendarEventSchema,
    ) -> bool:
        """
        Push through an open adapter and persist the outcome.

        Raises:
            RateLimitedError: after recording the failure, so batch callers back off
        """
        provider = account.provider
        current_state = event.sync_state_for(provider)
        current = current_state.sync_status if current_state else sync_state.UNSYNCED
        remote_id = await self.db.get_last_known_remote_id(event.owner_id, event.id, provider)
        if event.status == "cancelled" and not remote_id:
            return False

        sync_state.transition(current, sync_state.PUSHING)
        remote_updated_at = None
        try:
            if event.status == "cancelled":
                await adapter.delete_remote(calendar.provider_calendar_id, remote_id)
            else:
                remote = await self._create_or_update(adapter, calendar.provider_calendar_id, remote_id, event)
                remote_id = remote.remote_id
                remote_updated_at = remote.updated_at
        except RateLimitedError as e:
            await self._record_push_failure(event, provider, e)
            raise
        except (ProviderError, AuthError) as e:
            await self._record_push_failure(event, provider, e)
            return False

        await self.db.set_sync_state(
            event.owner_id,
            event.id,
            provider,
            sync_state.transition(sync_state.PUSHING, sync_state.SYNCED),
            remote_event_id=remote_id,
            remote_calendar_id=calendar.provider_calendar_id,
            synced_at=self.clock.now(),
            remote_updated_at=remote_updated_at,
        )
        logger.info("Event pushed", event_id=event.id, provider=provider, remote_id=remote_id)
        return True

    async def _create_or_update(
        self,
        adapter: CalendarProviderAdapter,
        remote_calendar_id: str,
        remote_id: Optional[str],
        event: CalendarEventSchema,
    ) -> RemoteEvent:
        if remote_id is None:
            return await adapter.create_remote(remote_calendar_id, event)
        try:
            return await adapter.update_remote(remote_calendar_id, remote_id, event)
        except RateLimitedError:
            raise
        except ProviderError as e:
            if e.status_code != 404:
                raise
            # Remote copy vanished while the local one is newer: recreate it
            logger.info("Remote event missing, recreating", event_id=event.id, remote_id=remote_id)
            return await adapter.create_remote(remote_calendar_id, event)

    async def _record_push_failure(self, event: CalendarEventSchema, provider: str, error: Exception) -> None:
        message = error.message if hasattr(error, "message") else str(error)
        await self.db.set_sync_state(
            event.owner_id,
            event.id,
            provider,
            sync_state.transition(sync_state.PUSHING, sync_state.ERROR),
            error=message,
            count_attempt=True,
        )
        logger.warning("Event push failed", event_id=event.id, provider=provider, error=message)

    # ==================== Invitations ====================

    async def _maybe_send_invitations(self, owner_id: str, event_id: str) -> bool:
        """
        Send invitations once the event is final.

        Final means mirrored (``synced``), local-only, or still failing after
        INVITATION_MAX_PUSH_ATTEMPTS pushes (sent best-effort).
        """
        event = await self.db.get_event(owner_id, event_id)
        if event is None or event.invitations_sent_at is not None or event.status == "cancelled":
            return False
        if not (event.metadata or {}).get("sendInvitations"):
            return False
        pending = [a for a in event.attendees if a.status == "pending"]
        if not pending:
            return False

        for state in event.provider_sync:
            if state.sync_status == sync_state.SYNCED:
                continue
            if state.sync_status == sync_state.ERROR and state.push_attempts >= settings.INVITATION_MAX_PUSH_ATTEMPTS:
                logger.warning("Sending invitations best-effort", event_id=event.id, attempts=state.push_attempts)
                continue
            return False

        organizer = Organizer(email=event.organizer_email or settings.INVITATION_SENDER_EMAIL)
        try:
            receipts = await self.dispatcher.send(event, pending, organizer)
        except Exception as e:
            logger.error("Invitation dispatch failed", event_id=event.id, error=str(e))
            return False

        await self.db.mark_invitations_sent(owner_id, event.id, self.clock.now())
        logger.info(
            "Invitations sent",
            event_id=event.id,
            delivered=sum(1 for r in receipts if r.delivered),
            failed=sum(1 for r in receipts if not r.delivered),
        )
        return True

    # ==================== Reconciliation ====================

    async def reconcile(self, account_id: str, changes: Optional[List[RemoteChange]] = None) -> ReconcileResult:
        """
        Bring one account's local events and provider calendars into agreement.

        With ``changes=None`` this is a full pull (calendar list, then every
        calendar's events concurrently). With a list of changes, as delivered
        by a webhook, only those events are applied. Both paths then retry
        pushes that are unsynced or in error.

        Raises:
            NotFoundError: Unknown account
            ProviderAuthError: The grant was rejected
        """
        account = await self.db.get_account(account_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        result = ReconcileResult(account_id=account_id)
        if not account.is_active:
            logger.info("Skipping inactive account", account_id=account_id)
            return result

        async with self.adapter_factory(account) as adapter:
            try:
                if changes is None:
                    await self._full_pull(adapter, account, result)
                else:
                    await self._apply_changes(adapter, account, changes, result)
                await self._retry_pending_pushes(adapter, account, result)
            except RateLimitedError as e:
                result.rate_limited = True
                result.errors.append(e.message)
                await self.db.record_account_error(account.id, e.message)
                logger.warning(
                    "Reconciliation rate limited",
                    account_id=account.id,
                    retry_after=e.retry_after_seconds,
                )
                return result

        if changes is None:
            await self.db.mark_account_synced(account.id, self.clock.now())
        logger.info("Reconciliation finished", **result.model_dump(exclude={"errors"}), errors=len(result.errors))
        return result

    async def _full_pull(self, adapter: CalendarProviderAdapter, account: AccountSchema, result: ReconcileResult) -> None:
        now = self.clock.now()
        window_start = now - timedelta(days=settings.SYNC_PAST_DAYS)
        window_end = now + timedelta(days=settings.SYNC_FUTURE_DAYS)

        remote_calendars = await adapter.list_calendars()
        result.calendars_seen = len(remote_calendars)
        calendars = []
        for remote_calendar in remote_calendars:
            calendar, created = await self.db.upsert_remote_calendar(account, remote_calendar, now)
            if created:
                result.calendars_added += 1
            if calendar.sync_enabled:
                calendars.append(calendar)

        outcomes = await asyncio.gather(
            *(self._pull_calendar(adapter, account, calendar, window_start, window_end, result) for calendar in calendars),
            return_exceptions=True,
        )
        for calendar, outcome in zip(calendars, outcomes):
            if isinstance(outcome, RateLimitedError) or (
                isinstance(outcome, BaseException) and not isinstance(outcome, Exception)
            ):
                raise outcome
            if isinstance(outcome, Exception):
                message = getattr(outcome, "message", str(outcome))
                result.errors.append(f"{calendar.name}: {message}")
                await self.db.set_calendar_sync_status(account.owner_id, calendar.id, "error", error=message)
                logger.error("Calendar pull failed", calendar_id=calendar.id, error=message)

    async def _pull_calendar(
        self,
        adapter: CalendarProviderAdapter,
        account: AccountSchema,
        calendar: CalendarSchema,
        window_start: datetime,
        window_end: datetime,
        result: ReconcileResult,
    ) -> None:
        remote_events = await adapter.list_remote(calendar.provider_calendar_id, window_start, window_end)
        for remote in remote_events:
            await self._apply_remote(adapter, account, calendar, remote, result)
        await self.db.set_calendar_sync_status(account.owner_id, calendar.id, "idle")

    @staticmethod
    def _unchanged_since_sync(
        local: CalendarEventSchema,
        state: Optional[ProviderSyncStateSchema],
        remote: RemoteEvent,
    ) -> bool:
        """The remote version is the one we last saw and nothing changed locally since."""
        if state is None or state.sync_status != sync_state.SYNCED:
            return False
        if state.remote_updated_at != remote.updated_at:
            return False
        return state.last_synced_at is None or local.updated_at is None or local.updated_at <= state.last_synced_at

    async def _apply_remote(
        self,
        adapter: CalendarProviderAdapter,
        account: AccountSchema,
        calendar: CalendarSchema,
        remote: RemoteEvent,
        result: ReconcileResult,
    ) -> None:
        """Last-write-wins upsert of one remote event."""
        owner_id = account.owner_id
        provider = account.provider
        local = await self.db.get_event_by_remote_id(owner_id, provider, remote.remote_id)

        if remote.status == "cancelled":
            await self._apply_remote_delete(account, remote.remote_id, result, local=local)
            return

        state = local.sync_state_for(provider) if local is not None else None
        if local is not None and remote.updated_at is not None:
            if self._unchanged_since_sync(local, state, remote):
                result.skipped += 1
                return
            if local.updated_at is not None and local.updated_at > remote.updated_at:
                if state is not None and state.sync_status != sync_state.SYNCED:
                    # Already queued for the pending-push pass
                    return
                logger.info(
                    "Local copy is newer, re-pushing",
                    event_id=local.id,
                    local_updated_at=local.updated_at.isoformat(),
                    remote_updated_at=remote.updated_at.isoformat(),
                )
                if await self._push_with(adapter, account, calendar, local):
                    result.repushed += 1
                return

        sync_state.transition(state.sync_status if state else sync_state.UNSYNCED, sync_state.PULLING_UPDATE)
        now = self.clock.now()
        fields = remote_to_event_fields(remote)
        if local is not None:
            fields["metadata_"] = {**(local.metadata or {}), **fields["metadata_"]}
        event, created = await self.db.apply_remote_event(
            owner_id,
            provider,
            calendar.id,
            remote.remote_id,
            remote.remote_calendar_id or calendar.provider_calendar_id,
            fields,
            version_at=remote.updated_at or now,
            synced_at=now,
            remote_updated_at=remote.updated_at,
        )
        if created:
            result.imported += 1
        else:
            result.updated += 1
        if event.is_recurring:
            await self._materialize_instances(event, now)

    async def _apply_remote_delete(
        self,
        account: AccountSchema,
        remote_id: str,
        result: ReconcileResult,
        local: Optional[CalendarEventSchema] = None,
    ) -> None:
        """A provider-side delete soft-cancels the local copy."""
        if local is None:
            local = await self.db.get_event_by_remote_id(account.owner_id, account.provider, remote_id)
        if local is None or local.status == "cancelled":
            result.skipped += 1
            return
        now = self.clock.now()
        await self.db.cancel_events(account.owner_id, [local.id], updated_at=now)
        if local.is_recurring:
            await self.db.cancel_future_instances(account.owner_id, local.id, now, updated_at=now)
        result.cancelled += 1
        logger.info("Remote delete applied", event_id=local.id, remote_id=remote_id)

    async def _calendar_for_remote(
        self, adapter: CalendarProviderAdapter, account: AccountSchema, remote_calendar_id: Optional[str]
    ) -> Optional[CalendarSchema]:
        if not remote_calendar_id:
            return None
        calendar = await self.db.get_calendar_by_provider_id(account.owner_id, remote_calendar_id)
        if calendar is not None:
            return calendar
        # Calendar created on the provider since the last pull
        now = self.clock.now()
        for remote_calendar in await adapter.list_calendars():
            if remote_calendar.remote_id == remote_calendar_id:
                calendar, _ = await self.db.upsert_remote_calendar(account, remote_calendar, now)
                return calendar
        return None

    async def _apply_changes(
        self,
        adapter: CalendarProviderAdapter,
        account: AccountSchema,
        changes: List[RemoteChange],
        result: ReconcileResult,
    ) -> None:
        for change in changes:
            try:
                if change.kind == "delete":
                    await self._apply_remote_delete(account, change.remote_id, result)
                    continue
                remote = change.event
                if remote is None:
                    remote = await adapter.get_remote(change.remote_calendar_id or "", change.remote_id)
                    if remote is None:
                        await self._apply_remote_delete(account, change.remote_id, result)
                        continue
                calendar = await self._calendar_for_remote(
                    adapter, account, remote.remote_calendar_id or change.remote_calendar_id
                )
                if calendar is None or not calendar.sync_enabled:
                    logger.warning("Change for unknown calendar", remote_id=change.remote_id)
                    result.skipped += 1
                    continue
                await self._apply_remote(adapter, account, calendar, remote, result)
            except RateLimitedError:
                raise
            except ProviderError as e:
                result.errors.append(f"{change.remote_id}: {e.message}")
                logger.error("Failed to apply remote change", remote_id=change.remote_id, error=e.message)

    async def _retry_pending_pushes(
        self, adapter: CalendarProviderAdapter, account: AccountSchema, result: ReconcileResult
    ) -> None:
        pending = await self.db.list_pending_pushes(account.owner_id, account.provider)
        for event in pending:
            target = await self._mirror_target(event)
            if target is None or target[0].id != account.id:
                continue
            if await self._push_with(adapter, account, target[1], event):
                result.retried_pushes += 1
            await self._maybe_send_invitations(event.owner_id, event.id)

    # ==================== Cron ====================

    async def run_sync_batch(self) -> BatchResult:
        """
        Reconcile accounts that are due, one at a time, inside the time budget.

        One account's failure is recorded on that account and never stops the
        rest of the batch. Accounts left when the budget runs out wait for the
        next run.
        """
        started = self.clock.monotonic()
        stale_before = self.clock.now() - timedelta(minutes=settings.SYNC_STALE_MINUTES)
        accounts = await self.db.get_accounts_due_for_sync(stale_before, settings.SYNC_ACCOUNT_LIMIT)
        batch = BatchResult(accounts_selected=len(accounts))
        logger.info("Calendar sync batch started", accounts=len(accounts))

        for position, account in enumerate(accounts):
            remaining = settings.SYNC_TIME_BUDGET_SECONDS - (self.clock.monotonic() - started)
            if remaining <= 0:
                batch.budget_exhausted = True
                batch.skipped = len(accounts) - position
                logger.warning("Sync time budget exhausted", remaining=batch.skipped)
                break
            try:
                outcome = await asyncio.wait_for(self.reconcile(account.id), timeout=remaining)
            except asyncio.TimeoutError:
                message = "sync time budget exhausted"
                batch.failed += 1
                batch.budget_exhausted = True
                batch.skipped = len(accounts) - position - 1
                batch.errors.append({"accountId": account.id, "email": account.email_address, "error": message})
                await self.db.record_account_error(account.id, message)
                logger.warning(
                    "Sync time budget exhausted mid-account",
                    account_id=account.id,
                    remaining=batch.skipped,
                )
                break
            except Exception as e:
                message = getattr(e, "message", str(e))
                batch.failed += 1
                batch.errors.append({"accountId": account.id, "email": account.email_address, "error": message})
                await self.db.record_account_error(account.id, message)
                logger.error("Account sync failed", account_id=account.id, error=message)
                continue

            if outcome.rate_limited:
                batch.failed += 1
                batch.errors.append({"accountId": account.id, "email": account.email_address, "error": "rate limited"})
                continue
            batch.successful += 1
            batch.calendars_added += outcome.calendars_added
            batch.events_upserted += outcome.imported + outcome.updated

        batch.duration_ms = int((self.clock.monotonic() - started) * 1000)
        batch.success = batch.failed == 0
        batch.message = f"Synced {batch.successful} of {batch.accounts_selected} accounts"
        logger.info(
            "Calendar sync batch finished",
            successful=batch.successful,
            failed=batch.failed,
            skipped=batch.skipped,
            duration_ms=batch.duration_ms,
        )
        return batch

    # ==================== Webhooks ====================

    async def _account_for_grant(self, grant_id: str) -> Optional[AccountSchema]:
        account = self._accounts_by_grant.get(grant_id)
        if account is None:
            account = await self.db.get_account_by_grant(grant_id)
            if account is not None:
                self._accounts_by_grant.set(grant_id, account)
        return account

    async def handle_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply one Nylas calendar notification through ``reconcile``.

        Unknown types and grants are acknowledged and ignored so the sender
        does not retry them.
        """
        notification_type = payload.get("type")
        if notification_type not in WEBHOOK_EVENT_TYPES:
            logger.debug("Ignoring webhook", type=notification_type)
            return {"processed": False, "reason": "ignored type"}

        data = payload.get("data") or {}
        obj = data.get("object") or {}
        grant_id = data.get("grant_id") or obj.get("grant_id")
        if not grant_id or not obj.get("id"):
            logger.warning("Webhook missing grant_id or object", type=notification_type)
            return {"processed": False, "reason": "missing grant_id or object"}

        account = await self._account_for_grant(grant_id)
        if account is None:
            logger.warning("Webhook for unknown grant", grant_id=grant_id)
            return {"processed": False, "reason": "unknown grant"}

        if notification_type == "calendar.event.deleted":
            change = RemoteChange(kind="delete", remote_id=obj["id"], remote_calendar_id=obj.get("calendar_id"))
        else:
            try:
                remote = payload_to_remote_event(obj)
            except (KeyError, ValueError):
                # Truncated notification: fetch the full event
                remote = None
            change = RemoteChange(
                kind="upsert",
                remote_id=obj["id"],
                remote_calendar_id=obj.get("calendar_id"),
                event=remote,
            )

        result = await self.reconcile(account.id, [change])
        logger.info("Webhook processed", type=notification_type, remote_id=obj["id"], account_id=account.id)
        return {"processed": True, "accountId": account.id, "result": result.model_dump()}

    # ==================== Provider Proxy ====================

    async def proxy_list(
        self,
        owner_id: str,
        account_id: str,
        calendar_ids: Optional[List[str]],
        start: datetime,
        end: datetime,
    ) -> List[RemoteEvent]:
        """List provider events directly, across writable calendars when none are given."""
        account = await self._owned_account(owner_id, account_id)
        async with self.adapter_factory(account) as adapter:
            if not calendar_ids:
                calendar_ids = [c.remote_id for c in await adapter.list_calendars() if not c.is_read_only]
            batches = await asyncio.gather(
                *(adapter.list_remote(calendar_id, to_naive_utc(start), to_naive_utc(end)) for calendar_id in calendar_ids)
            )
        events = [event for batch in batches for event in batch]
        events.sort(key=lambda e: e.start_time)
        return events

    def _proxy_event(self, owner_id: str, remote_calendar_id: str, data: CalendarEventCreate) -> CalendarEventSchema:
        start = to_naive_utc(data.start_time)
        end = to_naive_utc(data.end_time)
        if end < start:
            raise ValidationError("endTime", "must not be before startTime")
        return CalendarEventSchema(
            id=new_event_id(),
            owner_id=owner_id,
            calendar_id=remote_calendar_id,
            title=data.title,
            description=data.description,
            location=data.location,
            start_time=start,
            end_time=end,
            is_all_day=data.is_all_day,
            timezone=_validate_timezone(data.timezone or settings.TIMEZONE),
            is_recurring=data.is_recurring,
            recurrence_rule=data.recurrence_rule,
            status=data.status,
            busy=data.busy,
            is_private=data.is_private,
            attendees=data.attendees,
            reminders=data.reminders,
        )

    async def proxy_create(self, owner_id: str, account_id: str, data: CalendarEventCreate) -> RemoteEvent:
        """Create directly on the provider; ``data.calendar_id`` is the provider calendar id."""
        account = await self._owned_account(owner_id, account_id)
        event = self._proxy_event(owner_id, data.calendar_id, data)
        async with self.adapter_factory(account) as adapter:
            return await adapter.create_remote(data.calendar_id, event)

    async def proxy_update(
        self, owner_id: str, account_id: str, remote_event_id: str, data: CalendarEventCreate
    ) -> RemoteEvent:
        account = await self._owned_account(owner_id, account_id)
        event = self._proxy_event(owner_id, data.calendar_id, data)
        async with self.adapter_factory(account) as adapter:
            return await adapter.update_remote(data.calendar_id, remote_event_id, event)

    async def proxy_delete(self, owner_id: str, account_id: str, calendar_id: str, remote_event_id: str) -> None:
        account = await self._owned_account(owner_id, account_id)
        async with self.adapter_factory(account) as adapter:
            await adapter.delete_remote(calendar_id, remote_event_id)


# Global orchestrator instance
orchestrator = ReconciliationOrchestrator(db)
