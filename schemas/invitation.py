"""Invitation preview and delivery schemas."""

from datetime import datetime
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

from schemas.calendar import Attendee, CamelModel

RsvpResponse = Literal["accepted", "declined", "tentative"]


class Organizer(CamelModel):
    email: str
    name: Optional[str] = None


class InvitationPreviewRequest(CamelModel):
    """Body of POST /calendar/events/preview-invitation."""

    title: str = Field(..., min_length=1, max_length=255)
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    timezone: str = "UTC"
    description: Optional[str] = None
    location: Optional[str] = None
    attendee: Attendee
    organizer: Organizer
    custom_message: Optional[str] = None


class InvitationPreview(CamelModel):
    subject: str
    html: str
    text: str
    rsvp_links: Dict[str, str] = Field(default_factory=dict)


class DeliveryReceipt(CamelModel):
    attendee_email: str
    delivered: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
