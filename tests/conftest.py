"""
Shared pytest fixtures for calendar mirror tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import httpx
import pytest

from core import ProviderError
from providers.base import CalendarProviderAdapter
from providers.translate import event_to_payload, payload_to_remote_event
from schemas import (
    AccountCreateSchema,
    CalendarEventCreate,
    CalendarEventSchema,
    RemoteCalendar,
    RemoteEvent,
)

OWNER_ID = "user-1"
OTHER_OWNER_ID = "user-2"
REMOTE_CALENDAR_ID = "cal-remote-1"


# --- Time fixtures ---

class FakeClock:
    """Clock whose wall time and monotonic time only move when told to."""

    def __init__(self, now: datetime):
        self._now = now
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds


@pytest.fixture
def clock():
    """Wednesday 2025-01-01 08:00 UTC."""
    return FakeClock(datetime(2025, 1, 1, 8, 0, 0))


# --- Fake provider ---

def _unix(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class FakeProvider:
    """
    In-memory provider shared by every adapter the factory hands out.

    Events go through the real Nylas payload translation so round trips look
    like the HTTP adapter's.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calendars: List[RemoteCalendar] = [RemoteCalendar(remote_id=REMOTE_CALENDAR_ID, name="Work")]
        self.events: Dict[str, RemoteEvent] = {}
        self.calls: List[Tuple[str, ...]] = []
        self.fail_with: Optional[Exception] = None
        self.fail_calendars: Dict[str, Exception] = {}
        self._counter = 0

    def adapter(self, account) -> "FakeProviderAdapter":
        return FakeProviderAdapter(self, account)

    def _store(self, remote_id: str, remote_calendar_id: str, payload: dict) -> RemoteEvent:
        data = {
            **payload,
            "id": remote_id,
            "calendar_id": remote_calendar_id,
            "updated_at": _unix(self.clock.now()),
        }
        remote = payload_to_remote_event(data, remote_calendar_id)
        self.events[remote_id] = remote
        return remote

    def put(
        self,
        remote_id: str,
        title: str,
        start: datetime,
        end: datetime,
        remote_calendar_id: str = REMOTE_CALENDAR_ID,
        **extra,
    ) -> RemoteEvent:
        """Seed or overwrite an event as if a user edited it on the provider side."""
        payload = {
            "title": title,
            "when": {"start_time": _unix(start), "end_time": _unix(end), "start_timezone": "UTC"},
            **extra,
        }
        return self._store(remote_id, remote_calendar_id, payload)

    def calls_named(self, name: str) -> List[Tuple[str, ...]]:
        return [c for c in self.calls if c[0] == name]


class FakeProviderAdapter(CalendarProviderAdapter):
    provider = "google"

    def __init__(self, backend: FakeProvider, account):
        super().__init__(account)
        self.backend = backend

    def _record(self, *call: str) -> None:
        self.backend.calls.append(call)
        if self.backend.fail_with is not None:
            raise self.backend.fail_with

    async def create_remote(self, remote_calendar_id: str, event: CalendarEventSchema) -> RemoteEvent:
        self._record("create", remote_calendar_id, event.id)
        self.backend._counter += 1
        return self.backend._store(f"remote-{self.backend._counter}", remote_calendar_id, event_to_payload(event))

    async def update_remote(self, remote_calendar_id: str, remote_event_id: str, event: CalendarEventSchema) -> RemoteEvent:
        self._record("update", remote_calendar_id, remote_event_id)
        if remote_event_id not in self.backend.events:
            raise ProviderError("google", status_code=404)
        return self.backend._store(remote_event_id, remote_calendar_id, event_to_payload(event))

    async def delete_remote(self, remote_calendar_id: str, remote_event_id: str) -> None:
        self._record("delete", remote_calendar_id, remote_event_id)
        self.backend.events.pop(remote_event_id, None)

    async def get_remote(self, remote_calendar_id: str, remote_event_id: str) -> Optional[RemoteEvent]:
        self._record("get", remote_calendar_id, remote_event_id)
        return self.backend.events.get(remote_event_id)

    async def list_remote(self, remote_calendar_id: str, window_start: datetime, window_end: datetime) -> List[RemoteEvent]:
        self._record("list", remote_calendar_id)
        if remote_calendar_id in self.backend.fail_calendars:
            raise self.backend.fail_calendars[remote_calendar_id]
        return [
            e
            for e in self.backend.events.values()
            if e.remote_calendar_id == remote_calendar_id
            and e.end_time >= window_start
            and e.start_time <= window_end
        ]

    async def list_calendars(self) -> List[RemoteCalendar]:
        self._record("calendars")
        return list(self.backend.calendars)


@pytest.fixture
def provider(clock):
    return FakeProvider(clock)


# --- Database fixtures ---

@pytest.fixture
async def database(tmp_path):
    """Fresh SQLite database per test."""
    from store.database import AsyncDatabase

    database = AsyncDatabase(f"sqlite+aiosqlite:///{tmp_path / 'calendar.db'}")
    await database.create_tables()
    yield database
    await database.dispose()


@pytest.fixture
async def account(database):
    return await database.add_account(
        AccountCreateSchema(
            owner_id=OWNER_ID,
            provider="google",
            email_address="owner@example.com",
            grant_id="grant-1",
        )
    )


@pytest.fixture
async def mirrored_calendar(database, account):
    return await database.add_calendar(
        OWNER_ID,
        "Work",
        account_id=account.id,
        provider="google",
        provider_calendar_id=REMOTE_CALENDAR_ID,
    )


@pytest.fixture
async def local_calendar(database):
    return await database.add_calendar(OWNER_ID, "Personal")


# --- Orchestrator ---

@pytest.fixture
def mock_dispatcher():
    """Invitation dispatcher that records calls without rendering mail."""
    dispatcher = AsyncMock()
    dispatcher.send = AsyncMock(return_value=[])
    return dispatcher


@pytest.fixture
def orchestrator(database, provider, clock, mock_dispatcher):
    from sync.orchestrator import ReconciliationOrchestrator

    return ReconciliationOrchestrator(
        database,
        adapter_factory=provider.adapter,
        dispatcher=mock_dispatcher,
        clock=clock,
    )


def make_event(calendar_id: str, start: datetime, duration_minutes: int = 30, **fields) -> CalendarEventCreate:
    """Create-request with sensible defaults."""
    values = {
        "title": "Planning",
        "start_time": start,
        "end_time": start + timedelta(minutes=duration_minutes),
        "calendar_id": calendar_id,
    }
    values.update(fields)
    return CalendarEventCreate(**values)


# --- HTTP client ---

@pytest.fixture
async def api_client(orchestrator):
    """Client against the ASGI app, authenticated as OWNER_ID."""
    from api.auth import sign_session_token
    from api.server import app, get_orchestrator

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = httpx.ASGITransport(app=app)
    headers = {"Authorization": f"Bearer {sign_session_token(OWNER_ID)}"}
    async with httpx.AsyncClient(transport=transport, base_url="http://test", headers=headers) as client:
        yield client
    app.dependency_overrides.clear()
