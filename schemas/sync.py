"""Provider payload and reconciliation result schemas."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class RemoteParticipant(BaseModel):
    email: str
    name: Optional[str] = None
    status: str = "noreply"  # provider vocabulary: yes, no, maybe, noreply


class RemoteEvent(BaseModel):
    """Provider event normalized into local shapes (naive UTC instants)."""

    remote_id: str
    remote_calendar_id: str
    title: str = "(No title)"
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    timezone: str = "UTC"
    status: Literal["confirmed", "tentative", "cancelled"] = "confirmed"
    busy: bool = True
    participants: List[RemoteParticipant] = Field(default_factory=list)
    organizer_email: Optional[str] = None
    recurrence: List[str] = Field(default_factory=list)
    reminders: Optional[Any] = None
    updated_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class RemoteCalendar(BaseModel):
    remote_id: str
    name: str = "Untitled Calendar"
    description: Optional[str] = None
    timezone: str = "UTC"
    color: str = "blue"
    is_primary: bool = False
    is_read_only: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)


class RemoteChange(BaseModel):
    """One inbound change, e.g. from a webhook notification."""

    kind: Literal["upsert", "delete"]
    remote_id: str
    remote_calendar_id: Optional[str] = None
    event: Optional[RemoteEvent] = None


class ReconcileResult(BaseModel):
    account_id: str
    calendars_seen: int = 0
    calendars_added: int = 0
    imported: int = 0
    updated: int = 0
    cancelled: int = 0
    repushed: int = 0
    skipped: int = 0
    retried_pushes: int = 0
    errors: List[str] = Field(default_factory=list)
    rate_limited: bool = False


class BatchResult(BaseModel):
    success: bool = True
    message: str = ""
    accounts_selected: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    calendars_added: int = 0
    events_upserted: int = 0
    budget_exhausted: bool = False
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    duration_ms: int = 0
