"""
Translation between local events and Nylas v3 event payloads.

Local instants are naive UTC; Nylas uses unix seconds for timed events and
ISO dates for all-day events.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core import get_logger
from schemas import Attendee, CalendarEventSchema, RemoteCalendar, RemoteEvent, RemoteParticipant

logger = get_logger(__name__)

# local attendee status -> provider participant status
ATTENDEE_TO_PARTICIPANT = {
    "pending": "noreply",
    "accepted": "yes",
    "declined": "no",
    "tentative": "maybe",
}
PARTICIPANT_TO_ATTENDEE = {v: k for k, v in ATTENDEE_TO_PARTICIPANT.items()}


def _to_unix(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def _from_unix(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _parse_date(value: str) -> datetime:
    return datetime.combine(date.fromisoformat(value), datetime.min.time())


def build_when(event: CalendarEventSchema, single_day_date: bool = True) -> Dict[str, Any]:
    """
    Nylas ``when`` object for a local event.

    All-day events become a ``date`` (single day, when the provider accepts it)
    or a ``datespan`` whose ``end_date`` is exclusive.
    """
    if event.is_all_day:
        start_day = event.start_time.date()
        # Local all-day events store [midnight, midnight of the last day] or
        # [midnight, next midnight]; both cover whole days through end_day
        end_day = event.end_time.date()
        if event.end_time.time() == datetime.min.time() and event.end_time > event.start_time:
            end_day = end_day - timedelta(days=1)
        end_day = max(end_day, start_day)
        if single_day_date and start_day == end_day:
            return {"date": start_day.isoformat()}
        return {
            "start_date": start_day.isoformat(),
            "end_date": (end_day + timedelta(days=1)).isoformat(),
        }
    return {
        "start_time": _to_unix(event.start_time),
        "end_time": _to_unix(event.end_time),
        "start_timezone": event.timezone or "UTC",
        "end_timezone": event.timezone or "UTC",
    }


def participants_from_attendees(attendees: List[Attendee]) -> List[Dict[str, Any]]:
    participants = []
    for attendee in attendees:
        participant = {
            "email": attendee.email,
            "status": ATTENDEE_TO_PARTICIPANT.get(attendee.status, "noreply"),
        }
        if attendee.name:
            participant["name"] = attendee.name
        participants.append(participant)
    return participants


def event_to_payload(
    event: CalendarEventSchema,
    single_day_date: bool = True,
    conferencing_provider: Optional[str] = None,
) -> Dict[str, Any]:
    """Request body for create/update event."""
    payload: Dict[str, Any] = {
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "when": build_when(event, single_day_date=single_day_date),
        "busy": event.busy,
        "visibility": "private" if event.is_private else "default",
        "participants": participants_from_attendees(event.attendees),
    }
    if event.status == "tentative":
        payload["status"] = "maybe"
    if event.is_recurring and event.recurrence_rule:
        rule = event.recurrence_rule
        payload["recurrence"] = [rule if rule.upper().startswith("RRULE:") else f"RRULE:{rule}"]
    if event.reminders:
        payload["reminders"] = {
            "use_default": False,
            "overrides": [
                {"reminder_minutes": r.get("minutes"), "reminder_method": r.get("method", "popup")}
                for r in event.reminders
                if r.get("minutes") is not None
            ],
        }
    metadata = event.metadata or {}
    if conferencing_provider and metadata.get("addConferencing"):
        payload["conferencing"] = {"provider": conferencing_provider, "autocreate": {}}
    return {k: v for k, v in payload.items() if v is not None}


def _parse_when(when: Dict[str, Any]) -> Dict[str, Any]:
    obj = when.get("object")
    if "start_time" in when or obj == "timespan":
        return {
            "start_time": _from_unix(when["start_time"]),
            "end_time": _from_unix(when.get("end_time", when["start_time"])),
            "is_all_day": False,
            "timezone": when.get("start_timezone") or "UTC",
        }
    if "time" in when or obj == "time":
        instant = _from_unix(when["time"])
        return {"start_time": instant, "end_time": instant, "is_all_day": False, "timezone": when.get("timezone") or "UTC"}
    if "date" in when or obj == "date":
        day = _parse_date(when["date"])
        return {"start_time": day, "end_time": day + timedelta(days=1), "is_all_day": True, "timezone": "UTC"}
    if "start_date" in when or obj == "datespan":
        return {
            "start_time": _parse_date(when["start_date"]),
            "end_time": _parse_date(when["end_date"]),
            "is_all_day": True,
            "timezone": "UTC",
        }
    raise ValueError(f"Unrecognized when object: {when}")


def payload_to_remote_event(data: Dict[str, Any], remote_calendar_id: Optional[str] = None) -> RemoteEvent:
    """Normalize a Nylas event object."""
    timing = _parse_when(data.get("when") or {})
    if timing["end_time"] < timing["start_time"]:
        timing["end_time"] = timing["start_time"]

    status = {"confirmed": "confirmed", "maybe": "tentative", "tentative": "tentative", "cancelled": "cancelled"}.get(
        (data.get("status") or "confirmed").lower(), "confirmed"
    )
    organizer = data.get("organizer") or {}
    updated_at = data.get("updated_at")

    return RemoteEvent(
        remote_id=data["id"],
        remote_calendar_id=data.get("calendar_id") or remote_calendar_id or "",
        title=data.get("title") or "(No title)",
        description=data.get("description"),
        location=data.get("location"),
        status=status,
        busy=data.get("busy", True),
        participants=[
            RemoteParticipant(email=p["email"], name=p.get("name"), status=p.get("status") or "noreply")
            for p in data.get("participants") or []
            if p.get("email")
        ],
        organizer_email=organizer.get("email"),
        recurrence=data.get("recurrence") or [],
        reminders=data.get("reminders"),
        updated_at=_from_unix(updated_at) if updated_at else None,
        raw=data,
        **timing,
    )


def payload_to_remote_calendar(data: Dict[str, Any]) -> RemoteCalendar:
    return RemoteCalendar(
        remote_id=data["id"],
        name=data.get("name") or "Untitled Calendar",
        description=data.get("description"),
        timezone=data.get("timezone") or "UTC",
        color=data.get("hex_color") or "blue",
        is_primary=bool(data.get("is_primary")),
        is_read_only=bool(data.get("read_only")),
        raw=data,
    )


def remote_rule(remote: RemoteEvent) -> Optional[str]:
    """First RRULE line of a remote event, without the prefix."""
    for line in remote.recurrence:
        if line.upper().startswith("RRULE:"):
            return line[len("RRULE:"):]
    return None


def remote_to_event_fields(remote: RemoteEvent) -> Dict[str, Any]:
    """
    Local column values for a remote event (whole-event replacement).

    Provider payload fragments are kept in metadata.
    """
    rule = remote_rule(remote)
    reminders = None
    if isinstance(remote.reminders, dict):
        reminders = [
            {"minutes": o.get("reminder_minutes"), "method": o.get("reminder_method", "popup")}
            for o in remote.reminders.get("overrides") or []
        ] or None
    return {
        "title": remote.title,
        "description": remote.description,
        "location": remote.location,
        "start_time": remote.start_time,
        "end_time": remote.end_time,
        "is_all_day": remote.is_all_day,
        "timezone": remote.timezone,
        "is_recurring": rule is not None,
        "recurrence_rule": rule,
        "status": remote.status,
        "busy": remote.busy,
        "organizer_email": remote.organizer_email,
        "attendees": [
            {
                "email": p.email,
                "name": p.name,
                "status": PARTICIPANT_TO_ATTENDEE.get(p.status, "pending"),
            }
            for p in remote.participants
        ],
        "reminders": reminders,
        "metadata_": {
            "providerEventId": remote.remote_id,
            "participants": [p.model_dump() for p in remote.participants],
            "conferencing": remote.raw.get("conferencing"),
            "masterEventId": remote.raw.get("master_event_id"),
        },
    }
