import html
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse

from api.auth import get_current_user_id, require_cron_secret, verified_webhook_body
from api.errors import register_error_handlers
from config.settings import settings
from core import ValidationError, configure_logging, get_logger, to_naive_utc
from schemas import (
    BulkDeleteRequest,
    CalendarEventCreate,
    CalendarEventUpdate,
    InvitationPreviewRequest,
)
from store.database import db
from sync.invitations import render_invitation
from sync.orchestrator import ReconciliationOrchestrator, orchestrator
from sync.rsvp import verify_rsvp_token
from templates.invitation import RSVP_CONFIRMATION_HTML, RSVP_RESPONSES

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager for the FastAPI app.
    Configures logging and makes sure the tables exist.
    """
    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info("Starting calendar API", environment=settings.ENVIRONMENT)
    await db.create_tables()

    yield

    logger.info("Shutting down...")
    await db.dispose()


app = FastAPI(title="Calendar Mirror API", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)


def get_orchestrator() -> ReconciliationOrchestrator:
    return orchestrator


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}


# ── Local Calendar Events ───────────────────────────────────────────

@app.get("/calendar/events")
async def list_calendar_events(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    calendar_type: Optional[str] = Query(None, alias="calendarType"),
    status: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    """List the caller's events. Cancelled events are hidden unless status=cancelled or status=all."""
    result = await service.list_events(
        user_id,
        start=start_date,
        end=end_date,
        calendar_type=calendar_type,
        status=status,
        limit=limit,
        offset=offset,
    )
    return _dump(result)


@app.post("/calendar/events", status_code=201)
async def create_calendar_event(
    payload: CalendarEventCreate,
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    """
    Create an event and push it to the connected provider.

    A provider failure still returns 201 with ``synced: false``; the next
    reconciliation retries the push.
    """
    result = await service.create_event(user_id, payload)
    return _dump(result)


@app.post("/calendar/events/preview-invitation")
async def preview_invitation(payload: InvitationPreviewRequest, user_id: str = Depends(get_current_user_id)):
    """Render an invitation without sending or storing anything."""
    preview = render_invitation(
        payload,
        payload.attendee,
        payload.organizer,
        custom_message=payload.custom_message,
    )
    return _dump(preview)


@app.post("/calendar/events/bulk-delete")
async def bulk_delete_events(
    payload: BulkDeleteRequest,
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    return await service.bulk_cancel(user_id, payload.event_ids)


@app.get("/calendar/events/{event_id}")
async def get_calendar_event(
    event_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    return _dump(await service.get_event(user_id, event_id))


@app.patch("/calendar/events/{event_id}")
async def update_calendar_event(
    event_id: str,
    payload: CalendarEventUpdate,
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    """Partial update; ``skipSync`` keeps the change local."""
    result = await service.update_event(user_id, event_id, payload)
    return _dump(result)


@app.delete("/calendar/events/{event_id}")
async def cancel_calendar_event(
    event_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    """Soft-cancel; the row stays with status=cancelled."""
    event, synced = await service.cancel_event(user_id, event_id)
    return {"event": _dump(event), "synced": synced}


@app.get("/calendar/events/{event_id}/rsvp", response_class=HTMLResponse)
async def rsvp(
    event_id: str,
    token: str = Query(...),
    rsvp_response: Literal["accepted", "declined", "tentative"] = Query(..., alias="response"),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    """Invitation link target. The signed token replaces a session."""
    attendee_email = verify_rsvp_token(token, event_id)
    event = await service.record_rsvp(event_id, attendee_email, rsvp_response)
    page = RSVP_RESPONSES[rsvp_response]
    return HTMLResponse(
        RSVP_CONFIRMATION_HTML.format(
            heading=page["heading"],
            message=page["message"],
            color=page["color"],
            title=html.escape(event.title),
            attendee_email=html.escape(attendee_email),
        )
    )


# ── Provider Proxy ──────────────────────────────────────────────────

@app.get("/calendars/events")
async def proxy_list_events(
    account_id: str = Query(..., alias="accountId"),
    start: datetime = Query(...),
    end: datetime = Query(...),
    calendar_id: Optional[List[str]] = Query(None, alias="calendarId"),
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    """Read events straight from the provider, without touching the local store."""
    if to_naive_utc(end) < to_naive_utc(start):
        raise ValidationError("end", "must not be before start")
    events = await service.proxy_list(user_id, account_id, calendar_id, start, end)
    return {"events": [e.model_dump(mode="json", exclude={"raw"}) for e in events]}


@app.post("/calendars/events", status_code=201)
async def proxy_create_event(
    payload: CalendarEventCreate,
    account_id: str = Query(..., alias="accountId"),
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    remote = await service.proxy_create(user_id, account_id, payload)
    return remote.model_dump(mode="json", exclude={"raw"})


@app.put("/calendars/events/{remote_event_id}")
async def proxy_update_event(
    remote_event_id: str,
    payload: CalendarEventCreate,
    account_id: str = Query(..., alias="accountId"),
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    remote = await service.proxy_update(user_id, account_id, remote_event_id, payload)
    return remote.model_dump(mode="json", exclude={"raw"})


@app.delete("/calendars/events/{remote_event_id}", status_code=204)
async def proxy_delete_event(
    remote_event_id: str,
    account_id: str = Query(..., alias="accountId"),
    calendar_id: str = Query(..., alias="calendarId"),
    user_id: str = Depends(get_current_user_id),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    await service.proxy_delete(user_id, account_id, calendar_id, remote_event_id)
    return Response(status_code=204)


# ── Cron & Webhooks ─────────────────────────────────────────────────

@app.get("/cron/sync-calendars", dependencies=[Depends(require_cron_secret)])
async def cron_sync_calendars(service: ReconciliationOrchestrator = Depends(get_orchestrator)):
    """Reconcile accounts that are due, within the cron time budget."""
    batch = await service.run_sync_batch()
    return batch.model_dump(mode="json")


@app.get("/webhooks/nylas/calendar", response_class=PlainTextResponse)
async def nylas_webhook_challenge(challenge: str = Query(...)):
    """Nylas verifies a new webhook by expecting the challenge echoed back."""
    return PlainTextResponse(challenge)


@app.post("/webhooks/nylas/calendar")
async def nylas_webhook(
    body: bytes = Depends(verified_webhook_body),
    service: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError("body", "not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("body", "expected a JSON object")
    return await service.handle_webhook(payload)
