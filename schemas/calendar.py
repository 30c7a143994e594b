"""Calendar event schemas."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

EventStatus = Literal["confirmed", "tentative", "cancelled"]
AttendeeStatus = Literal["pending", "accepted", "declined", "tentative"]
SyncStatus = Literal["unsynced", "synced", "error"]


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys to match the web client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Attendee(CamelModel):
    """Invitee snapshot stored on the event."""

    email: str = Field(..., min_length=3, max_length=255, description="Attendee email")
    name: Optional[str] = Field(None, max_length=255, description="Display name")
    status: AttendeeStatus = Field(default="pending", description="RSVP status")


class CalendarEventCreate(CamelModel):
    """Body of POST /calendar/events."""

    title: str = Field(..., min_length=1, max_length=255, description="Event title")
    start_time: datetime = Field(..., description="Event start (ISO 8601)")
    end_time: datetime = Field(..., description="Event end (ISO 8601)")
    calendar_id: str = Field(..., min_length=1, description="Local calendar id")
    description: Optional[str] = None
    location: Optional[str] = None
    is_all_day: bool = False
    timezone: Optional[str] = Field(None, description="IANA timezone, defaults to the calendar's")
    is_recurring: bool = False
    recurrence_rule: Optional[str] = Field(None, description="RRULE, e.g. FREQ=DAILY;COUNT=5")
    recurrence_end_date: Optional[datetime] = None
    calendar_type: str = Field(default="personal", max_length=50)
    color: Optional[str] = Field(None, max_length=20)
    status: EventStatus = "confirmed"
    busy: bool = True
    is_private: bool = False
    organizer_email: Optional[str] = None
    attendees: List[Attendee] = Field(default_factory=list)
    reminders: Optional[List[Dict[str, Any]]] = None
    send_invitations: bool = Field(default=True, description="Email attendees once the event is mirrored")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Reject titles that are only whitespace."""
        if not v.strip():
            raise ValueError("title must not be blank")
        return v


class CalendarEventUpdate(CamelModel):
    """Body of PATCH /calendar/events/{id}. Only supplied fields change."""

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_all_day: Optional[bool] = None
    timezone: Optional[str] = None
    is_recurring: Optional[bool] = None
    recurrence_rule: Optional[str] = None
    recurrence_end_date: Optional[datetime] = None
    calendar_type: Optional[str] = Field(None, max_length=50)
    color: Optional[str] = Field(None, max_length=20)
    status: Optional[EventStatus] = None
    busy: Optional[bool] = None
    is_private: Optional[bool] = None
    attendees: Optional[List[Attendee]] = None
    reminders: Optional[List[Dict[str, Any]]] = None
    skip_sync: bool = Field(default=False, description="Update locally without pushing to the provider")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("title must not be blank")
        return v


class ProviderSyncStateSchema(CamelModel):
    """Per-provider mirror state."""

    provider: str
    remote_event_id: Optional[str] = None
    sync_status: SyncStatus = "unsynced"
    push_attempts: int = 0
    last_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class CalendarEventSchema(CamelModel):
    """Complete calendar event schema, also used for unsaved recurrence instances."""

    id: str
    owner_id: str
    calendar_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    timezone: str = "UTC"
    is_recurring: bool = False
    recurrence_rule: Optional[str] = None
    recurrence_end_date: Optional[datetime] = None
    parent_event_id: Optional[str] = None
    occurrence_index: Optional[int] = None
    calendar_type: str = "personal"
    color: Optional[str] = None
    status: EventStatus = "confirmed"
    busy: bool = True
    is_private: bool = False
    organizer_email: Optional[str] = None
    attendees: List[Attendee] = Field(default_factory=list)
    reminders: Optional[List[Dict[str, Any]]] = None
    metadata: Optional[Dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("metadata_", "metadata"),
        serialization_alias="metadata",
    )
    provider_sync: List[ProviderSyncStateSchema] = Field(
        default_factory=list,
        validation_alias=AliasChoices("sync_states", "providerSync", "provider_sync"),
        serialization_alias="providerSync",
    )
    invitations_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    def sync_state_for(self, provider: str) -> Optional[ProviderSyncStateSchema]:
        for state in self.provider_sync:
            if state.provider == provider:
                return state
        return None


class CreateEventResponse(CamelModel):
    event: CalendarEventSchema
    synced: bool
    instances_created: int = 0


class EventListResponse(CamelModel):
    events: List[CalendarEventSchema]
    total: int
    limit: int
    offset: int


class BulkDeleteRequest(CamelModel):
    event_ids: List[str] = Field(..., min_length=1)
