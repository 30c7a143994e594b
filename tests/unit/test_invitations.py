"""
Tests for invitation rendering and RSVP tokens.
"""

from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from core import AuthError
from schemas import Attendee, CalendarEventSchema, InvitationPreviewRequest, Organizer
from sync.invitations import LoggingInvitationDispatcher, format_when, render_invitation
from sync.rsvp import rsvp_links, sign_rsvp_token, verify_rsvp_token

NOW = datetime(2025, 1, 1, 8, 0)


def _event(**fields) -> CalendarEventSchema:
    values = {
        "id": "evt-1",
        "owner_id": "user-1",
        "calendar_id": "cal-1",
        "title": "Quarterly review",
        "start_time": datetime(2025, 1, 6, 14, 0),
        "end_time": datetime(2025, 1, 6, 14, 15),
        "timezone": "America/Toronto",
    }
    values.update(fields)
    return CalendarEventSchema(**values)


class TestFormatWhen:
    def test_timed_event_in_event_timezone(self):
        timing = format_when(_event())

        assert timing["when"] == "Monday, January 6, 2025"
        assert timing["time_range"] == "9:00 AM - 9:15 AM (America/Toronto)"

    def test_single_all_day(self):
        timing = format_when(_event(is_all_day=True, start_time=datetime(2025, 1, 6), end_time=datetime(2025, 1, 7)))

        assert timing == {"when": "Monday, January 6, 2025", "time_range": "All Day"}

    def test_multi_day_all_day(self):
        timing = format_when(_event(is_all_day=True, start_time=datetime(2025, 1, 6), end_time=datetime(2025, 1, 8)))

        assert timing["when"] == "Monday, January 6, 2025 - Tuesday, January 7, 2025"


class TestRender:
    def test_values_are_escaped_in_html(self):
        preview = render_invitation(
            _event(title="<script>alert(1)</script>", location="Room <B>"),
            Attendee(email="guest@example.com"),
            Organizer(email="owner@example.com", name="Owner"),
        )

        assert "<script>" not in preview.html
        assert "&lt;script&gt;" in preview.html
        assert "Room &lt;B&gt;" in preview.html
        assert "<script>alert(1)</script>" in preview.text
        assert preview.subject == "Invitation: <script>alert(1)</script> @ Monday, January 6, 2025"

    def test_missing_links_render_as_placeholder(self):
        preview = render_invitation(_event(), Attendee(email="guest@example.com"), Organizer(email="owner@example.com"))

        assert 'href="#"' in preview.html
        assert "Hi guest," in preview.text

    def test_preview_request_renders_like_an_event(self):
        request = InvitationPreviewRequest(
            title="Design sync",
            start_time=datetime(2025, 1, 6, 14, 0),
            end_time=datetime(2025, 1, 6, 15, 0),
            attendee=Attendee(email="guest@example.com", name="Sam"),
            organizer=Organizer(email="owner@example.com"),
            custom_message="Bring notes",
        )

        preview = render_invitation(request, request.attendee, request.organizer, custom_message=request.custom_message)

        assert "Hi Sam," in preview.html
        assert "Bring notes" in preview.text
        assert "2:00 PM - 3:00 PM (UTC)" in preview.text

    async def test_logging_dispatcher_returns_receipts(self):
        dispatcher = LoggingInvitationDispatcher()
        attendees = [Attendee(email="a@example.com"), Attendee(email="b@example.com")]

        receipts = await dispatcher.send(_event(), attendees, Organizer(email="owner@example.com"))

        assert [r.attendee_email for r in receipts] == ["a@example.com", "b@example.com"]
        assert all(r.delivered and r.message_id.startswith("log-") for r in receipts)


class TestRsvpTokens:
    def test_round_trip(self):
        token = sign_rsvp_token("evt-1", "Guest@Example.com", now=NOW)

        assert verify_rsvp_token(token, "evt-1", now=NOW + timedelta(days=1)) == "guest@example.com"

    def test_forged_signature(self):
        token = sign_rsvp_token("evt-1", "guest@example.com", now=NOW)
        payload, _, _ = token.partition(".")

        with pytest.raises(AuthError) as exc_info:
            verify_rsvp_token(f"{payload}.{'0' * 64}", "evt-1", now=NOW)

        assert not exc_info.value.forbidden

    def test_other_event_is_forbidden(self):
        token = sign_rsvp_token("evt-1", "guest@example.com", now=NOW)

        with pytest.raises(AuthError) as exc_info:
            verify_rsvp_token(token, "evt-2", now=NOW)

        assert exc_info.value.forbidden

    def test_expired(self):
        token = sign_rsvp_token("evt-1", "guest@example.com", now=NOW)

        with pytest.raises(AuthError):
            verify_rsvp_token(token, "evt-1", now=NOW + timedelta(days=61))

    @pytest.mark.parametrize("token", ["", "no-dot", ".sig"])
    def test_malformed(self, token):
        with pytest.raises(AuthError):
            verify_rsvp_token(token, "evt-1", now=NOW)

    def test_links_share_one_token(self):
        links = rsvp_links("evt-1", "guest@example.com", base_url="https://cal.example.com/", now=NOW)

        assert set(links) == {"accepted", "declined", "tentative"}
        tokens = set()
        for response, url in links.items():
            parsed = urlparse(url)
            query = parse_qs(parsed.query)
            assert parsed.path == "/calendar/events/evt-1/rsvp"
            assert query["response"] == [response]
            tokens.add(query["token"][0])
        assert len(tokens) == 1
        assert verify_rsvp_token(tokens.pop(), "evt-1", now=NOW) == "guest@example.com"
