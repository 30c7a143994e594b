"""
Invitation rendering and dispatch.

Rendering is a pure transform used by the preview route and by dispatchers.
Actual mail delivery belongs to an external collaborator behind
``InvitationDispatcher``.
"""

import html
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Protocol, Union

import pytz

from core import get_logger
from schemas import Attendee, CalendarEventSchema, DeliveryReceipt, InvitationPreview, Organizer
from sync.rsvp import rsvp_links
from templates.invitation import INVITATION_HTML, INVITATION_SUBJECT, INVITATION_TEXT

logger = get_logger(__name__)


class InvitationContent(Protocol):
    title: str
    start_time: datetime
    end_time: datetime
    is_all_day: bool
    timezone: str
    description: Optional[str]
    location: Optional[str]


def _localize(value: datetime, tz_name: str) -> datetime:
    try:
        tz = pytz.timezone(tz_name or "UTC")
    except pytz.UnknownTimeZoneError:
        tz = pytz.utc
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(tz)


def _format_day(value: Union[date, datetime]) -> str:
    return f"{value:%A}, {value:%B} {value.day}, {value.year}"


def _format_clock(value: datetime) -> str:
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{value.hour % 12 or 12}:{value:%M} {suffix}"


def format_when(content: InvitationContent) -> Dict[str, str]:
    """Date line and time range in the event's timezone."""
    if content.is_all_day:
        first = content.start_time.date()
        last = content.end_time.date()
        # An end at midnight is exclusive
        if content.end_time.time() == datetime.min.time() and last > first:
            last -= timedelta(days=1)
        when = _format_day(first)
        if last > first:
            when = f"{when} - {_format_day(last)}"
        return {"when": when, "time_range": "All Day"}

    start = _localize(content.start_time, content.timezone)
    end = _localize(content.end_time, content.timezone)
    return {
        "when": _format_day(start),
        "time_range": f"{_format_clock(start)} - {_format_clock(end)} ({start.tzinfo.zone})",
    }


def render_invitation(
    content: InvitationContent,
    attendee: Attendee,
    organizer: Organizer,
    links: Optional[Dict[str, str]] = None,
    custom_message: Optional[str] = None,
) -> InvitationPreview:
    """
    Render subject, HTML and text bodies for one attendee.

    Args:
        content: Event or preview request carrying the event fields
        attendee: Recipient
        organizer: Sender shown in the invitation
        links: RSVP URLs keyed accepted/declined/tentative ("#" when absent)
        custom_message: Optional note from the organizer
    """
    links = links or {}
    timing = format_when(content)
    esc = html.escape

    attendee_name = attendee.name or attendee.email.split("@")[0]
    organizer_name = organizer.name or organizer.email

    html_body = INVITATION_HTML.format(
        title=esc(content.title),
        attendee_name=esc(attendee_name),
        organizer_name=esc(organizer_name),
        organizer_email=esc(organizer.email),
        when=esc(timing["when"]),
        time_range=esc(timing["time_range"]),
        custom_message_block=(
            f'<blockquote style="border-left: 3px solid #ccc; padding-left: 12px;">'
            f'{esc(custom_message).replace(chr(10), "<br>")}</blockquote>'
            if custom_message
            else ""
        ),
        location_block=f'<p style="margin: 4px 0;">&#128205; {esc(content.location)}</p>' if content.location else "",
        description_block=(
            f'<p style="margin: 12px 0 0 0;">{esc(content.description).replace(chr(10), "<br>")}</p>'
            if content.description
            else ""
        ),
        accept_link=esc(links.get("accepted", "#")),
        tentative_link=esc(links.get("tentative", "#")),
        decline_link=esc(links.get("declined", "#")),
    )

    text_body = INVITATION_TEXT.format(
        title=content.title,
        attendee_name=attendee_name,
        organizer_name=organizer_name,
        organizer_email=organizer.email,
        when=timing["when"],
        time_range=timing["time_range"],
        custom_message_text=f"\n{custom_message}\n" if custom_message else "",
        location_text=f"Where: {content.location}\n" if content.location else "",
        description_text=f"\n{content.description}\n" if content.description else "",
        accept_link=links.get("accepted", "#"),
        tentative_link=links.get("tentative", "#"),
        decline_link=links.get("declined", "#"),
    )

    return InvitationPreview(
        subject=INVITATION_SUBJECT.format(title=content.title, when=timing["when"]),
        html=html_body,
        text=text_body,
        rsvp_links=links,
    )


class InvitationDispatcher(ABC):
    """Sends RSVP-bearing invitations for a finalized event."""

    @abstractmethod
    async def send(
        self,
        event: CalendarEventSchema,
        attendees: List[Attendee],
        organizer: Organizer,
    ) -> List[DeliveryReceipt]:
        """One receipt per attendee. Must not raise for a single failed recipient."""


class LoggingInvitationDispatcher(InvitationDispatcher):
    """Renders invitations and writes them to the log instead of sending mail."""

    async def send(
        self,
        event: CalendarEventSchema,
        attendees: List[Attendee],
        organizer: Organizer,
    ) -> List[DeliveryReceipt]:
        receipts = []
        for attendee in attendees:
            preview = render_invitation(event, attendee, organizer, links=rsvp_links(event.id, attendee.email))
            message_id = f"log-{uuid.uuid4()}"
            logger.info(
                "Invitation rendered",
                event_id=event.id,
                attendee=attendee.email,
                subject=preview.subject,
                message_id=message_id,
            )
            receipts.append(DeliveryReceipt(attendee_email=attendee.email, delivered=True, message_id=message_id))
        return receipts
