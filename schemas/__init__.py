"""
Pydantic schemas for type-safe data transfer.
"""

from schemas.calendar import (
    Attendee,
    CalendarEventCreate,
    CalendarEventUpdate,
    CalendarEventSchema,
    ProviderSyncStateSchema,
    CreateEventResponse,
    EventListResponse,
    BulkDeleteRequest,
)
from schemas.account import AccountCreateSchema, AccountSchema, CalendarSchema
from schemas.sync import (
    RemoteParticipant,
    RemoteEvent,
    RemoteCalendar,
    RemoteChange,
    ReconcileResult,
    BatchResult,
)
from schemas.invitation import (
    Organizer,
    InvitationPreviewRequest,
    InvitationPreview,
    DeliveryReceipt,
)

__all__ = [
    "Attendee",
    "CalendarEventCreate",
    "CalendarEventUpdate",
    "CalendarEventSchema",
    "ProviderSyncStateSchema",
    "CreateEventResponse",
    "EventListResponse",
    "BulkDeleteRequest",
    "AccountCreateSchema",
    "AccountSchema",
    "CalendarSchema",
    "RemoteParticipant",
    "RemoteEvent",
    "RemoteCalendar",
    "RemoteChange",
    "ReconcileResult",
    "BatchResult",
    "Organizer",
    "InvitationPreviewRequest",
    "InvitationPreview",
    "DeliveryReceipt",
]
