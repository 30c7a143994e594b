"""
Signed RSVP tokens embedded in invitation links.

Token layout: ``base64url(event_id|email|expires_unix).hex_hmac_sha256``.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from urllib.parse import urlencode

from config.settings import settings
from core import AuthError

RSVP_TOKEN_TTL = timedelta(days=60)


def _sign(payload: str, secret: str) -> str:
    return hmac.new(key=secret.encode(), msg=payload.encode(), digestmod=hashlib.sha256).hexdigest()


def sign_rsvp_token(
    event_id: str,
    attendee_email: str,
    now: Optional[datetime] = None,
    secret: Optional[str] = None,
) -> str:
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    expires = int((now + RSVP_TOKEN_TTL).replace(tzinfo=timezone.utc).timestamp())
    raw = f"{event_id}|{attendee_email.lower()}|{expires}"
    payload = base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")
    return f"{payload}.{_sign(payload, secret or settings.RSVP_SECRET)}"


def verify_rsvp_token(
    token: str,
    event_id: str,
    now: Optional[datetime] = None,
    secret: Optional[str] = None,
) -> str:
    """
    Check an RSVP token for ``event_id``.

    Returns:
        Attendee email the token was issued to

    Raises:
        AuthError: Token is malformed, forged, expired or for another event
    """
    payload, sep, signature = (token or "").partition(".")
    if not sep or not payload:
        raise AuthError("Malformed RSVP token")
    if not hmac.compare_digest(_sign(payload, secret or settings.RSVP_SECRET), signature):
        raise AuthError("Invalid RSVP token")

    try:
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)).decode()
        token_event_id, email, expires = raw.rsplit("|", 2)
        expires_at = int(expires)
    except ValueError:
        raise AuthError("Malformed RSVP token")

    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    if token_event_id != event_id:
        raise AuthError("RSVP token does not match this event", forbidden=True)
    if now.replace(tzinfo=timezone.utc).timestamp() > expires_at:
        raise AuthError("RSVP token expired")
    return email


def rsvp_links(event_id: str, attendee_email: str, base_url: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, str]:
    """accept/decline/tentative URLs sharing one token."""
    token = sign_rsvp_token(event_id, attendee_email, now=now)
    base = (base_url or settings.APP_BASE_URL).rstrip("/")
    return {
        response: f"{base}/calendar/events/{event_id}/rsvp?{urlencode({'token': token, 'response': response})}"
        for response in ("accepted", "declined", "tentative")
    }
