"""
Capability interface every calendar provider adapter implements.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from schemas import AccountSchema, CalendarEventSchema, RemoteCalendar, RemoteEvent


class CalendarProviderAdapter(ABC):
    """
    Create, update, delete and list events on a remote calendar.

    Implementations raise:
        RateLimitedError: the provider asked us to back off
        ProviderAuthError: the grant is expired or revoked
        ProviderError: anything else that went wrong remotely
    """

    provider: str = ""

    def __init__(self, account: AccountSchema):
        self.account = account

    @abstractmethod
    async def create_remote(self, remote_calendar_id: str, event: CalendarEventSchema) -> RemoteEvent:
        """Create the event remotely and return the provider's copy (with its id)."""

    @abstractmethod
    async def update_remote(
        self, remote_calendar_id: str, remote_event_id: str, event: CalendarEventSchema
    ) -> RemoteEvent:
        """Replace the remote event with the local version."""

    @abstractmethod
    async def delete_remote(self, remote_calendar_id: str, remote_event_id: str) -> None:
        """Delete the remote event. Already-deleted is success."""

    @abstractmethod
    async def get_remote(self, remote_calendar_id: str, remote_event_id: str) -> Optional[RemoteEvent]:
        """Fetch one event, None when it no longer exists."""

    @abstractmethod
    async def list_remote(
        self, remote_calendar_id: str, window_start: datetime, window_end: datetime
    ) -> List[RemoteEvent]:
        """All events of one calendar overlapping the window."""

    @abstractmethod
    async def list_calendars(self) -> List[RemoteCalendar]:
        """Calendars visible through the grant."""

    async def aclose(self) -> None:
        """Release network resources."""

    async def __aenter__(self) -> "CalendarProviderAdapter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
