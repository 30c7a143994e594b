"""
HTTP-level tests for the calendar API, driven through httpx's ASGI transport.
"""

import hashlib
import hmac
import json
from datetime import datetime

import pytest

from api.auth import sign_session_token
from config.settings import settings
from core import ProviderError
from sync.rsvp import sign_rsvp_token
from tests.conftest import OTHER_OWNER_ID, OWNER_ID


def _event_body(calendar_id: str, **fields) -> dict:
    body = {
        "title": "Planning",
        "startTime": "2025-01-02T10:00:00Z",
        "endTime": "2025-01-02T10:30:00Z",
        "calendarId": calendar_id,
    }
    body.update(fields)
    return body


class TestAuth:
    async def test_missing_token_is_401(self, api_client):
        response = await api_client.get("/calendar/events", headers={"Authorization": ""})

        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

    async def test_forged_token_is_401(self, api_client):
        response = await api_client.get("/calendar/events", headers={"Authorization": f"Bearer {OWNER_ID}.deadbeef"})

        assert response.status_code == 401

    async def test_health_needs_no_token(self, api_client):
        response = await api_client.get("/api/health", headers={"Authorization": ""})

        assert response.json() == {"status": "ok"}


class TestEvents:
    async def test_create_returns_camel_case_body(self, api_client, provider, mirrored_calendar):
        response = await api_client.post("/calendar/events", json=_event_body(mirrored_calendar.id))

        assert response.status_code == 201
        body = response.json()
        assert body["synced"] is True
        assert body["event"]["title"] == "Planning"
        assert body["event"]["startTime"] == "2025-01-02T10:00:00"
        assert body["event"]["providerSync"][0]["syncStatus"] == "synced"
        assert body["event"]["providerSync"][0]["remoteEventId"] in provider.events

    async def test_past_start_is_400_and_nothing_written(self, api_client, provider, database, mirrored_calendar):
        response = await api_client.post(
            "/calendar/events",
            json=_event_body(mirrored_calendar.id, startTime="2024-12-31T09:00:00Z", endTime="2024-12-31T10:00:00Z"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"
        assert await database.count_events(OWNER_ID) == 0
        assert provider.calls == []

    async def test_missing_fields_is_400(self, api_client, database):
        response = await api_client.post("/calendar/events", json={"title": "No times"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["context"]["errors"]
        assert await database.count_events(OWNER_ID) == 0

    @pytest.mark.parametrize("title", ["", "   "])
    async def test_blank_title_is_400(self, api_client, database, local_calendar, title):
        response = await api_client.post("/calendar/events", json=_event_body(local_calendar.id, title=title))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["context"]["errors"][0]["field"] == "title"
        assert await database.count_events(OWNER_ID) == 0

    async def test_provider_outage_still_creates(self, api_client, provider, mirrored_calendar):
        provider.fail_with = ProviderError("google", status_code=503)

        response = await api_client.post("/calendar/events", json=_event_body(mirrored_calendar.id))

        assert response.status_code == 201
        assert response.json()["synced"] is False
        assert response.json()["event"]["providerSync"][0]["syncStatus"] == "error"

    async def test_other_owner_gets_404(self, api_client, local_calendar):
        created = await api_client.post("/calendar/events", json=_event_body(local_calendar.id))
        event_id = created.json()["event"]["id"]

        response = await api_client.get(
            f"/calendar/events/{event_id}",
            headers={"Authorization": f"Bearer {sign_session_token(OTHER_OWNER_ID)}"},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    async def test_patch_and_delete(self, api_client, local_calendar):
        created = await api_client.post("/calendar/events", json=_event_body(local_calendar.id))
        event_id = created.json()["event"]["id"]

        patched = await api_client.patch(f"/calendar/events/{event_id}", json={"title": "Renamed"})
        deleted = await api_client.delete(f"/calendar/events/{event_id}")
        listed = await api_client.get("/calendar/events")
        with_cancelled = await api_client.get("/calendar/events", params={"status": "all"})

        assert patched.json()["event"]["title"] == "Renamed"
        assert deleted.json()["event"]["status"] == "cancelled"
        assert listed.json()["events"] == []
        assert listed.json()["total"] == 0
        assert [e["id"] for e in with_cancelled.json()["events"]] == [event_id]

    async def test_list_window(self, api_client, local_calendar):
        await api_client.post("/calendar/events", json=_event_body(local_calendar.id, title="Thursday"))
        await api_client.post(
            "/calendar/events",
            json=_event_body(
                local_calendar.id,
                title="Next week",
                startTime="2025-01-09T10:00:00Z",
                endTime="2025-01-09T11:00:00Z",
            ),
        )

        response = await api_client.get(
            "/calendar/events", params={"startDate": "2025-01-01T00:00:00Z", "endDate": "2025-01-03T00:00:00Z"}
        )

        assert [e["title"] for e in response.json()["events"]] == ["Thursday"]

    async def test_unknown_status_is_400(self, api_client):
        response = await api_client.get("/calendar/events", params={"status": "deleted"})

        assert response.status_code == 400

    async def test_bulk_delete(self, api_client, local_calendar):
        created = await api_client.post("/calendar/events", json=_event_body(local_calendar.id))
        event_id = created.json()["event"]["id"]

        response = await api_client.post("/calendar/events/bulk-delete", json={"eventIds": [event_id, "missing"]})

        assert response.json() == {"cancelled": [event_id], "notFound": ["missing"], "remoteDeleted": 0}

    async def test_bulk_delete_rejects_empty(self, api_client):
        response = await api_client.post("/calendar/events/bulk-delete", json={"eventIds": []})

        assert response.status_code == 400


class TestInvitationEndpoints:
    async def test_preview(self, api_client):
        response = await api_client.post(
            "/calendar/events/preview-invitation",
            json={
                "title": "Design sync",
                "startTime": "2025-01-06T14:00:00Z",
                "endTime": "2025-01-06T15:00:00Z",
                "attendee": {"email": "guest@example.com"},
                "organizer": {"email": "owner@example.com"},
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["subject"].startswith("Invitation: Design sync")
        assert "guest" in body["text"]

    async def test_rsvp_link_records_response(self, api_client, database, local_calendar):
        created = await api_client.post(
            "/calendar/events",
            json=_event_body(local_calendar.id, attendees=[{"email": "guest@example.com"}], sendInvitations=False),
        )
        event_id = created.json()["event"]["id"]
        token = sign_rsvp_token(event_id, "guest@example.com")

        response = await api_client.get(
            f"/calendar/events/{event_id}/rsvp",
            params={"token": token, "response": "accepted"},
            headers={"Authorization": ""},
        )

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "guest@example.com" in response.text
        event = await database.get_event(OWNER_ID, event_id)
        assert event.attendees[0].status == "accepted"

    async def test_rsvp_token_for_other_event_is_403(self, api_client, local_calendar):
        created = await api_client.post(
            "/calendar/events",
            json=_event_body(local_calendar.id, attendees=[{"email": "guest@example.com"}]),
        )
        event_id = created.json()["event"]["id"]

        response = await api_client.get(
            f"/calendar/events/{event_id}/rsvp",
            params={"token": sign_rsvp_token("another-event", "guest@example.com"), "response": "declined"},
        )

        assert response.status_code == 403


class TestCron:
    async def test_disabled_without_secret(self, api_client, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "")

        response = await api_client.get("/cron/sync-calendars", headers={"Authorization": "Bearer anything"})

        assert response.status_code == 401

    async def test_wrong_secret(self, api_client, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "s3cret")

        response = await api_client.get("/cron/sync-calendars", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    async def test_runs_batch(self, api_client, account, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "s3cret")

        response = await api_client.get("/cron/sync-calendars", headers={"Authorization": "Bearer s3cret"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["accounts_selected"] == 1
        assert body["successful"] == 1


class TestWebhooks:
    def _body(self) -> bytes:
        return json.dumps(
            {
                "type": "calendar.event.deleted",
                "data": {"grant_id": "grant-1", "object": {"id": "remote-404", "calendar_id": "cal-remote-1"}},
            }
        ).encode()

    async def test_challenge_is_echoed(self, api_client):
        response = await api_client.get("/webhooks/nylas/calendar", params={"challenge": "abc123"})

        assert response.text == "abc123"

    async def test_bad_signature_is_401(self, api_client, account, monkeypatch):
        monkeypatch.setattr(settings, "NYLAS_WEBHOOK_SECRET", "whsec")

        response = await api_client.post(
            "/webhooks/nylas/calendar",
            content=self._body(),
            headers={"x-nylas-signature": "0" * 64, "content-type": "application/json"},
        )

        assert response.status_code == 401

    async def test_signed_notification_is_processed(self, api_client, account, monkeypatch):
        monkeypatch.setattr(settings, "NYLAS_WEBHOOK_SECRET", "whsec")
        body = self._body()
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

        response = await api_client.post(
            "/webhooks/nylas/calendar",
            content=body,
            headers={"x-nylas-signature": signature, "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["processed"] is True
        assert response.json()["accountId"] == account.id

    async def test_malformed_json_is_400(self, api_client, monkeypatch):
        monkeypatch.setattr(settings, "NYLAS_WEBHOOK_SECRET", "whsec")
        body = b"{not json"
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

        response = await api_client.post(
            "/webhooks/nylas/calendar",
            content=body,
            headers={"x-nylas-signature": signature},
        )

        assert response.status_code == 400


class TestProviderProxy:
    async def test_forbidden_for_other_owner(self, api_client, account):
        response = await api_client.get(
            "/calendars/events",
            params={"accountId": account.id, "start": "2025-01-01T00:00:00Z", "end": "2025-01-31T00:00:00Z"},
            headers={"Authorization": f"Bearer {sign_session_token(OTHER_OWNER_ID)}"},
        )

        assert response.status_code == 403

    async def test_lists_provider_events(self, api_client, provider, account):
        provider.put("remote-p", "Remote only", datetime(2025, 1, 2, 10), datetime(2025, 1, 2, 11))

        response = await api_client.get(
            "/calendars/events",
            params={"accountId": account.id, "start": "2025-01-01T00:00:00Z", "end": "2025-01-31T00:00:00Z"},
        )

        assert response.status_code == 200
        events = response.json()["events"]
        assert [e["remote_id"] for e in events] == ["remote-p"]
        assert "raw" not in events[0]
