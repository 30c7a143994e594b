"""
Async database operations for the calendar mirror.
Async SQLAlchemy with retry on transient failures, owner-scoped queries and Pydantic results.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from core import DatabaseException, NotFoundError, get_logger, utcnow
from core.ids import remote_event_uuid
from schemas import (
    AccountCreateSchema,
    AccountSchema,
    CalendarEventSchema,
    CalendarSchema,
    RemoteCalendar,
)
from store.models import Account, Base, Calendar, CalendarEvent, EventSyncState

logger = get_logger(__name__)

_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type(SQLAlchemyError),
    reraise=True,
)

# Columns a caller may overwrite through update_event / apply_remote_event
EVENT_MUTABLE_FIELDS = frozenset({
    "title",
    "description",
    "location",
    "start_time",
    "end_time",
    "is_all_day",
    "timezone",
    "is_recurring",
    "recurrence_rule",
    "recurrence_end_date",
    "calendar_type",
    "color",
    "status",
    "busy",
    "is_private",
    "organizer_email",
    "attendees",
    "reminders",
    "metadata_",
    "calendar_id",
})


def _event_row_values(event: CalendarEventSchema) -> Dict[str, Any]:
    return {
        "id": event.id,
        "owner_id": event.owner_id,
        "calendar_id": event.calendar_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "is_all_day": event.is_all_day,
        "timezone": event.timezone,
        "is_recurring": event.is_recurring,
        "recurrence_rule": event.recurrence_rule,
        "recurrence_end_date": event.recurrence_end_date,
        "parent_event_id": event.parent_event_id,
        "occurrence_index": event.occurrence_index,
        "calendar_type": event.calendar_type,
        "color": event.color,
        "status": event.status,
        "busy": event.busy,
        "is_private": event.is_private,
        "organizer_email": event.organizer_email,
        "attendees": [a.model_dump() for a in event.attendees],
        "reminders": event.reminders,
        "metadata_": event.metadata,
    }


class AsyncDatabase:
    """
    Async store for accounts, calendars, events and sync state.

    Every event query carries an ``owner_id`` predicate so one tenant can
    never read or mutate another tenant's rows.
    """

    def __init__(self, db_url: Optional[str] = None):
        """Initialize async database engine and session factory."""
        db_url = db_url or settings.DATABASE_URL
        # Convert postgresql:// to postgresql+asyncpg://
        if db_url.startswith("postgresql://"):
            db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

        engine_kwargs: Dict[str, Any] = {
            "echo": settings.LOG_LEVEL == "DEBUG",
            "pool_pre_ping": True,  # Verify connections before use
        }
        if db_url.startswith("postgresql"):
            engine_kwargs.update(pool_size=10, max_overflow=20, pool_recycle=3600)

        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.async_session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        logger.info("Async database engine initialized", db_url=db_url.split("@")[-1])

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """
        Context manager for database sessions with automatic cleanup.

        Yields:
            AsyncSession instance
        """
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error("Session rolled back", error=str(e))
                raise
            finally:
                await session.close()

    async def create_tables(self) -> None:
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def dispose(self) -> None:
        await self.engine.dispose()

    # ==================== Accounts ====================

    async def add_account(self, data: AccountCreateSchema) -> AccountSchema:
        """Register a connected account."""
        try:
            async with self.get_session() as session:
                account = Account(id=str(uuid.uuid4()), created_at=utcnow(), **data.model_dump())
                session.add(account)
                await session.flush()
                logger.info("Added account", account_id=account.id, provider=account.provider)
                return AccountSchema.model_validate(account)
        except SQLAlchemyError as e:
            logger.error("Failed to add account", owner_id=data.owner_id, error=str(e))
            raise DatabaseException(f"Failed to add account: {e}")

    @_read_retry
    async def get_account(self, account_id: str, owner_id: Optional[str] = None) -> Optional[AccountSchema]:
        """Get an account, optionally restricted to one owner."""
        try:
            async with self.get_session() as session:
                query = select(Account).where(Account.id == account_id)
                if owner_id is not None:
                    query = query.where(Account.owner_id == owner_id)
                account = (await session.execute(query)).scalar_one_or_none()
                return AccountSchema.model_validate(account) if account else None
        except SQLAlchemyError as e:
            logger.error("Failed to get account", account_id=account_id, error=str(e))
            raise DatabaseException(f"Failed to get account: {e}")

    @_read_retry
    async def get_account_by_grant(self, grant_id: str) -> Optional[AccountSchema]:
        try:
            async with self.get_session() as session:
                result = await session.execute(select(Account).where(Account.grant_id == grant_id))
                account = result.scalar_one_or_none()
                return AccountSchema.model_validate(account) if account else None
        except SQLAlchemyError as e:
            logger.error("Failed to get account by grant", grant_id=grant_id, error=str(e))
            raise DatabaseException(f"Failed to get account by grant: {e}")

    @_read_retry
    async def get_accounts_due_for_sync(self, stale_before: datetime, limit: int) -> List[AccountSchema]:
        """
        Active accounts that never synced or last synced before ``stale_before``.

        Oldest first so a starved account is picked up ahead of fresher ones.
        """
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(Account)
                    .where(
                        Account.is_active.is_(True),
                        or_(
                            Account.last_calendar_sync_at.is_(None),
                            Account.last_calendar_sync_at < stale_before,
                        ),
                    )
                    .order_by(Account.last_calendar_sync_at.is_not(None), Account.last_calendar_sync_at)
                    .limit(limit)
                )
                return [AccountSchema.model_validate(a) for a in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("Failed to select accounts for sync", error=str(e))
            raise DatabaseException(f"Failed to select accounts for sync: {e}")

    async def mark_account_synced(self, account_id: str, synced_at: datetime) -> None:
        try:
            async with self.get_session() as session:
                account = await session.get(Account, account_id)
                if account is None:
                    raise NotFoundError("Account", account_id)
                account.last_calendar_sync_at = synced_at
                account.last_sync_error = None
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to mark account synced: {e}")

    async def record_account_error(self, account_id: str, error: str) -> None:
        """Store the last sync error without touching last_calendar_sync_at."""
        try:
            async with self.get_session() as session:
                account = await session.get(Account, account_id)
                if account is not None:
                    account.last_sync_error = error[:2000]
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to record account error: {e}")

    # ==================== Calendars ====================

    async def add_calendar(
        self,
        owner_id: str,
        name: str,
        timezone: str = "UTC",
        account_id: Optional[str] = None,
        provider: str = "local",
        provider_calendar_id: Optional[str] = None,
        **extra: Any,
    ) -> CalendarSchema:
        try:
            async with self.get_session() as session:
                calendar = Calendar(
                    id=str(uuid.uuid4()),
                    owner_id=owner_id,
                    name=name,
                    timezone=timezone,
                    account_id=account_id,
                    provider=provider,
                    provider_calendar_id=provider_calendar_id,
                    created_at=utcnow(),
                    updated_at=utcnow(),
                    **extra,
                )
                session.add(calendar)
                await session.flush()
                return CalendarSchema.model_validate(calendar)
        except SQLAlchemyError as e:
            logger.error("Failed to add calendar", owner_id=owner_id, error=str(e))
            raise DatabaseException(f"Failed to add calendar: {e}")

    @_read_retry
    async def get_calendar(self, owner_id: str, calendar_id: str) -> Optional[CalendarSchema]:
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(Calendar).where(Calendar.id == calendar_id, Calendar.owner_id == owner_id)
                )
                calendar = result.scalar_one_or_none()
                return CalendarSchema.model_validate(calendar) if calendar else None
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to get calendar: {e}")

    @_read_retry
    async def get_calendar_by_provider_id(
        self, owner_id: str, provider_calendar_id: str
    ) -> Optional[CalendarSchema]:
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(Calendar).where(
                        Calendar.owner_id == owner_id,
                        Calendar.provider_calendar_id == provider_calendar_id,
                    )
                )
                calendar = result.scalar_one_or_none()
                return CalendarSchema.model_validate(calendar) if calendar else None
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to get calendar: {e}")

    async def upsert_remote_calendar(
        self, account: AccountSchema, remote: RemoteCalendar, synced_at: datetime
    ) -> Tuple[CalendarSchema, bool]:
        """
        Insert or refresh calendar metadata pulled from the provider.

        Returns:
            (calendar, created)
        """
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(Calendar).where(
                        Calendar.owner_id == account.owner_id,
                        Calendar.provider_calendar_id == remote.remote_id,
                    )
                )
                calendar = result.scalar_one_or_none()
                created = calendar is None
                if created:
                    calendar = Calendar(
                        id=str(uuid.uuid4()),
                        owner_id=account.owner_id,
                        provider_calendar_id=remote.remote_id,
                        created_at=synced_at,
                    )
                    session.add(calendar)

                calendar.account_id = account.id
                calendar.provider = account.provider
                calendar.name = remote.name
                calendar.description = remote.description
                calendar.timezone = remote.timezone
                calendar.color = remote.color
                calendar.is_primary = remote.is_primary
                calendar.is_read_only = remote.is_read_only
                calendar.last_synced_at = synced_at
                calendar.sync_status = "idle"
                calendar.sync_error = None
                calendar.provider_data = remote.raw
                calendar.updated_at = synced_at
                await session.flush()
                return CalendarSchema.model_validate(calendar), created
        except SQLAlchemyError as e:
            logger.error("Failed to upsert calendar", remote_id=remote.remote_id, error=str(e))
            raise DatabaseException(f"Failed to upsert calendar: {e}")

    async def set_calendar_sync_status(
        self, owner_id: str, calendar_id: str, status: str, error: Optional[str] = None
    ) -> None:
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(Calendar).where(Calendar.id == calendar_id, Calendar.owner_id == owner_id)
                )
                calendar = result.scalar_one_or_none()
                if calendar is not None:
                    calendar.sync_status = status
                    calendar.sync_error = error
                    calendar.updated_at = utcnow()
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to set calendar sync status: {e}")

    # ==================== Events ====================

    async def _load_event(self, session: AsyncSession, owner_id: str, event_id: str) -> Optional[CalendarEvent]:
        result = await session.execute(
            select(CalendarEvent)
            .where(CalendarEvent.id == event_id, CalendarEvent.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def insert_event(self, event: CalendarEventSchema) -> CalendarEventSchema:
        """Insert a fully formed event (id already assigned)."""
        now = utcnow()
        try:
            async with self.get_session() as session:
                row = CalendarEvent(
                    **_event_row_values(event),
                    created_at=event.created_at or now,
                    updated_at=event.updated_at or now,
                    sync_states=[],
                )
                session.add(row)
                await session.flush()
                loaded = await self._load_event(session, event.owner_id, event.id)
                logger.debug("Inserted event", event_id=event.id, owner_id=event.owner_id)
                return CalendarEventSchema.model_validate(loaded)
        except SQLAlchemyError as e:
            logger.error("Failed to insert event", event_id=event.id, error=str(e))
            raise DatabaseException(f"Failed to insert event: {e}")

    @_read_retry
    async def get_event(self, owner_id: str, event_id: str) -> Optional[CalendarEventSchema]:
        try:
            async with self.get_session() as session:
                event = await self._load_event(session, owner_id, event_id)
                return CalendarEventSchema.model_validate(event) if event else None
        except SQLAlchemyError as e:
            logger.error("Failed to get event", event_id=event_id, error=str(e))
            raise DatabaseException(f"Failed to get event: {e}")

    @_read_retry
    async def list_events(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        calendar_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        include_masters: bool = False,
    ) -> Tuple[List[CalendarEventSchema], int]:
        """
        Paginated owner-scoped listing ordered by start time.

        ``status=None`` hides cancelled events, ``status="all"`` shows every status.
        Recurring masters are hidden unless ``include_masters`` since their
        instances are what the calendar renders.
        """
        conditions = [CalendarEvent.owner_id == owner_id]
        if start is not None:
            conditions.append(CalendarEvent.end_time >= start)
        if end is not None:
            conditions.append(CalendarEvent.start_time <= end)
        if calendar_type:
            conditions.append(CalendarEvent.calendar_type == calendar_type)
        if status is None:
            conditions.append(CalendarEvent.status != "cancelled")
        elif status != "all":
            conditions.append(CalendarEvent.status == status)
        if not include_masters:
            conditions.append(
                or_(CalendarEvent.is_recurring.is_(False), CalendarEvent.parent_event_id.is_not(None))
            )

        try:
            async with self.get_session() as session:
                total = (
                    await session.execute(select(func.count()).select_from(CalendarEvent).where(*conditions))
                ).scalar_one()
                result = await session.execute(
                    select(CalendarEvent)
                    .where(*conditions)
                    .order_by(CalendarEvent.start_time, CalendarEvent.id)
                    .limit(limit)
                    .offset(offset)
                )
                events = [CalendarEventSchema.model_validate(e) for e in result.scalars().all()]
                return events, total
        except SQLAlchemyError as e:
            logger.error("Failed to list events", owner_id=owner_id, error=str(e))
            raise DatabaseException(f"Failed to list events: {e}")

    async def update_event(
        self, owner_id: str, event_id: str, fields: Dict[str, Any], updated_at: datetime
    ) -> CalendarEventSchema:
        """Overwrite the given columns and bump updated_at."""
        unknown = set(fields) - EVENT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")
        try:
            async with self.get_session() as session:
                event = await self._load_event(session, owner_id, event_id)
                if event is None:
                    raise NotFoundError("CalendarEvent", event_id)
                for key, value in fields.items():
                    setattr(event, key, value)
                event.updated_at = updated_at
                await session.flush()
                return CalendarEventSchema.model_validate(event)
        except SQLAlchemyError as e:
            logger.error("Failed to update event", event_id=event_id, error=str(e))
            raise DatabaseException(f"Failed to update event: {e}")

    async def cancel_events(
        self, owner_id: str, event_ids: Sequence[str], updated_at: datetime
    ) -> List[CalendarEventSchema]:
        """Soft-retire events (status = cancelled). Unknown ids are ignored."""
        if not event_ids:
            return []
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CalendarEvent).where(
                        CalendarEvent.owner_id == owner_id,
                        CalendarEvent.id.in_(list(event_ids)),
                    )
                )
                events = result.scalars().all()
                for event in events:
                    if event.status != "cancelled":
                        event.status = "cancelled"
                        event.updated_at = updated_at
                await session.flush()
                return [CalendarEventSchema.model_validate(e) for e in events]
        except SQLAlchemyError as e:
            logger.error("Failed to cancel events", owner_id=owner_id, error=str(e))
            raise DatabaseException(f"Failed to cancel events: {e}")

    # ==================== Recurrence Instances ====================

    async def upsert_instances(self, instances: Iterable[CalendarEventSchema]) -> Tuple[int, int]:
        """
        Idempotently store expanded instances keyed by their deterministic ids.

        Returns:
            (created, updated)
        """
        instances = list(instances)
        if not instances:
            return 0, 0
        owner_id = instances[0].owner_id
        now = utcnow()
        created = updated = 0
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CalendarEvent).where(
                        CalendarEvent.owner_id == owner_id,
                        CalendarEvent.id.in_([i.id for i in instances]),
                    )
                )
                existing = {e.id: e for e in result.scalars().all()}
                for instance in instances:
                    values = _event_row_values(instance)
                    row = existing.get(instance.id)
                    if row is None:
                        session.add(CalendarEvent(**values, created_at=now, updated_at=now, sync_states=[]))
                        created += 1
                        continue
                    changed = False
                    for key, value in values.items():
                        if key in ("id", "owner_id"):
                            continue
                        # A cancelled occurrence stays cancelled when the master is re-expanded
                        if key == "status" and row.status == "cancelled":
                            continue
                        if getattr(row, key) != value:
                            setattr(row, key, value)
                            changed = True
                    if changed:
                        row.updated_at = now
                        updated += 1
                await session.flush()
                logger.debug(
                    "Upserted recurrence instances",
                    master_id=instances[0].parent_event_id,
                    created=created,
                    updated=updated,
                )
                return created, updated
        except SQLAlchemyError as e:
            logger.error("Failed to upsert instances", owner_id=owner_id, error=str(e))
            raise DatabaseException(f"Failed to upsert instances: {e}")

    async def cancel_future_instances(
        self,
        owner_id: str,
        master_id: str,
        from_time: datetime,
        keep_ids: Iterable[str] = (),
        updated_at: Optional[datetime] = None,
    ) -> int:
        """Cancel instances of ``master_id`` starting at or after ``from_time`` except ``keep_ids``."""
        keep = set(keep_ids)
        updated_at = updated_at or utcnow()
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CalendarEvent).where(
                        CalendarEvent.owner_id == owner_id,
                        CalendarEvent.parent_event_id == master_id,
                        CalendarEvent.start_time >= from_time,
                        CalendarEvent.status != "cancelled",
                    )
                )
                count = 0
                for event in result.scalars().all():
                    if event.id in keep:
                        continue
                    event.status = "cancelled"
                    event.updated_at = updated_at
                    count += 1
                return count
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to cancel instances: {e}")

    async def count_instances(self, owner_id: str, master_id: str) -> int:
        async with self.get_session() as session:
            return (
                await session.execute(
                    select(func.count())
                    .select_from(CalendarEvent)
                    .where(CalendarEvent.owner_id == owner_id, CalendarEvent.parent_event_id == master_id)
                )
            ).scalar_one()

    # ==================== Provider Sync State ====================

    @_read_retry
    async def get_event_by_remote_id(
        self, owner_id: str, provider: str, remote_event_id: str
    ) -> Optional[CalendarEventSchema]:
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CalendarEvent)
                    .join(EventSyncState, EventSyncState.event_id == CalendarEvent.id)
                    .where(
                        CalendarEvent.owner_id == owner_id,
                        EventSyncState.owner_id == owner_id,
                        EventSyncState.provider == provider,
                        EventSyncState.last_known_remote_id == remote_event_id,
                    )
                )
                event = result.scalar_one_or_none()
                return CalendarEventSchema.model_validate(event) if event else None
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to get event by remote id: {e}")

    async def set_sync_state(
        self,
        owner_id: str,
        event_id: str,
        provider: str,
        status: str,
        remote_event_id: Optional[str] = None,
        remote_calendar_id: Optional[str] = None,
        error: Optional[str] = None,
        synced_at: Optional[datetime] = None,
        remote_updated_at: Optional[datetime] = None,
        count_attempt: bool = False,
    ) -> CalendarEventSchema:
        """
        Record the persistent sync status of one (event, provider) pair.

        ``remote_event_id`` is exposed only while the status is ``synced``;
        the last id the provider gave us is kept separately for retries.
        """
        if status not in ("unsynced", "synced", "error"):
            raise ValueError(f"Unknown sync status: {status}")
        if status == "synced" and not remote_event_id:
            raise ValueError("A synced state requires a remote event id")
        try:
            async with self.get_session() as session:
                event = await self._load_event(session, owner_id, event_id)
                if event is None:
                    raise NotFoundError("CalendarEvent", event_id)
                state = next((s for s in event.sync_states if s.provider == provider), None)
                if state is None:
                    state = EventSyncState(owner_id=owner_id, provider=provider, push_attempts=0)
                    event.sync_states.append(state)

                state.sync_status = status
                if remote_event_id:
                    state.last_known_remote_id = remote_event_id
                state.remote_event_id = state.last_known_remote_id if status == "synced" else None
                if remote_calendar_id:
                    state.remote_calendar_id = remote_calendar_id
                if status == "synced":
                    state.last_error = None
                    state.push_attempts = 0
                    state.last_synced_at = synced_at or utcnow()
                    if remote_updated_at is not None:
                        state.remote_updated_at = remote_updated_at
                else:
                    state.last_error = error
                    if count_attempt:
                        state.push_attempts = (state.push_attempts or 0) + 1
                await session.flush()
                return CalendarEventSchema.model_validate(event)
        except SQLAlchemyError as e:
            logger.error("Failed to set sync state", event_id=event_id, error=str(e))
            raise DatabaseException(f"Failed to set sync state: {e}")

    async def get_last_known_remote_id(self, owner_id: str, event_id: str, provider: str) -> Optional[str]:
        async with self.get_session() as session:
            result = await session.execute(
                select(EventSyncState.last_known_remote_id).where(
                    EventSyncState.owner_id == owner_id,
                    EventSyncState.event_id == event_id,
                    EventSyncState.provider == provider,
                )
            )
            return result.scalar_one_or_none()

    async def apply_remote_event(
        self,
        owner_id: str,
        provider: str,
        calendar_id: str,
        remote_event_id: str,
        remote_calendar_id: str,
        fields: Dict[str, Any],
        version_at: datetime,
        synced_at: datetime,
        remote_updated_at: Optional[datetime] = None,
    ) -> Tuple[CalendarEventSchema, bool]:
        """
        Upsert a provider event keyed by its remote id, replacing the whole local copy.

        The local ``updated_at`` becomes ``version_at`` (the remote version's
        timestamp) so the next pull compares like with like.

        Returns:
            (event, created)
        """
        unknown = set(fields) - EVENT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CalendarEvent)
                    .join(EventSyncState, EventSyncState.event_id == CalendarEvent.id)
                    .where(
                        CalendarEvent.owner_id == owner_id,
                        EventSyncState.owner_id == owner_id,
                        EventSyncState.provider == provider,
                        EventSyncState.last_known_remote_id == remote_event_id,
                    )
                )
                event = result.scalar_one_or_none()
                created = False
                if event is None:
                    event_id = remote_event_uuid(provider, owner_id, remote_event_id)
                    event = await self._load_event(session, owner_id, event_id)
                    if event is None:
                        event = CalendarEvent(
                            id=event_id,
                            owner_id=owner_id,
                            created_at=synced_at,
                            sync_states=[],
                        )
                        session.add(event)
                        created = True

                event.calendar_id = calendar_id
                for key, value in fields.items():
                    setattr(event, key, value)
                event.updated_at = version_at

                state = next((s for s in event.sync_states if s.provider == provider), None)
                if state is None:
                    state = EventSyncState(owner_id=owner_id, provider=provider, push_attempts=0)
                    event.sync_states.append(state)
                state.sync_status = "synced"
                state.remote_event_id = remote_event_id
                state.last_known_remote_id = remote_event_id
                state.remote_calendar_id = remote_calendar_id
                state.last_error = None
                state.push_attempts = 0
                state.last_synced_at = synced_at
                state.remote_updated_at = remote_updated_at

                await session.flush()
                loaded = await self._load_event(session, owner_id, event.id)
                return CalendarEventSchema.model_validate(loaded), created
        except SQLAlchemyError as e:
            logger.error("Failed to apply remote event", remote_event_id=remote_event_id, error=str(e))
            raise DatabaseException(f"Failed to apply remote event: {e}")

    @_read_retry
    async def list_pending_pushes(
        self, owner_id: str, provider: str, limit: int = 100
    ) -> List[CalendarEventSchema]:
        """Events whose mirror against ``provider`` is unsynced or in error."""
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CalendarEvent)
                    .join(EventSyncState, EventSyncState.event_id == CalendarEvent.id)
                    .where(
                        CalendarEvent.owner_id == owner_id,
                        EventSyncState.owner_id == owner_id,
                        EventSyncState.provider == provider,
                        EventSyncState.sync_status.in_(("unsynced", "error")),
                        # Cancelled events only need a push while a remote copy may exist
                        or_(
                            CalendarEvent.status != "cancelled",
                            EventSyncState.last_known_remote_id.is_not(None),
                        ),
                    )
                    .order_by(CalendarEvent.updated_at)
                    .limit(limit)
                )
                return [CalendarEventSchema.model_validate(e) for e in result.scalars().all()]
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to list pending pushes: {e}")

    async def mark_invitations_sent(self, owner_id: str, event_id: str, sent_at: datetime) -> None:
        """Stamp invitations_sent_at without bumping updated_at (not a content change)."""
        try:
            async with self.get_session() as session:
                event = await self._load_event(session, owner_id, event_id)
                if event is None:
                    raise NotFoundError("CalendarEvent", event_id)
                event.invitations_sent_at = sent_at
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to mark invitations sent: {e}")

    async def set_attendee_status(
        self, event_id: str, attendee_email: str, status: str, updated_at: datetime
    ) -> Optional[CalendarEventSchema]:
        """Record an RSVP. Looked up by id only: the signed token is the authorization."""
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    select(CalendarEvent)
                    .where(CalendarEvent.id == event_id)
                    .execution_options(populate_existing=True)
                )
                event = result.scalar_one_or_none()
                if event is None:
                    return None
                attendees = [dict(a) for a in (event.attendees or [])]
                matched = False
                for attendee in attendees:
                    if attendee.get("email", "").lower() == attendee_email.lower():
                        attendee["status"] = status
                        matched = True
                if not matched:
                    return None
                event.attendees = attendees
                event.updated_at = updated_at
                await session.flush()
                return CalendarEventSchema.model_validate(event)
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to record RSVP: {e}")

    async def count_events(self, owner_id: str) -> int:
        async with self.get_session() as session:
            return (
                await session.execute(
                    select(func.count()).select_from(CalendarEvent).where(CalendarEvent.owner_id == owner_id)
                )
            ).scalar_one()


# Global database instance
db = AsyncDatabase()
