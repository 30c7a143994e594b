"""
Request authentication for the HTTP API.

Three schemes:
- user routes: ``Authorization: Bearer <user_id>.<hmac>`` session tokens
- cron routes: static ``Authorization: Bearer $CRON_SECRET``
- webhooks: ``x-nylas-signature`` HMAC-SHA256 of the raw body
"""

import hashlib
import hmac
from typing import Optional

from fastapi import Header, Request

from config.settings import settings
from core import AuthError, get_logger

logger = get_logger(__name__)


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(key=secret.encode(), msg=message, digestmod=hashlib.sha256).hexdigest()


def _bearer(authorization: Optional[str]) -> str:
    scheme, _, credentials = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        raise AuthError("Missing bearer token")
    return credentials.strip()


def sign_session_token(user_id: str, secret: Optional[str] = None) -> str:
    """Issue a session token for ``user_id``."""
    return f"{user_id}.{_hmac_hex(secret or settings.SESSION_SECRET, user_id.encode())}"


def verify_session_token(token: str, secret: Optional[str] = None) -> str:
    """Return the user id a session token was issued to."""
    user_id, sep, signature = token.rpartition(".")
    if not sep or not user_id:
        raise AuthError("Malformed session token")
    expected = _hmac_hex(secret or settings.SESSION_SECRET, user_id.encode())
    if not hmac.compare_digest(expected, signature):
        raise AuthError("Invalid session token")
    return user_id


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency resolving the caller's user id."""
    return verify_session_token(_bearer(authorization))


async def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """
    Guard for cron endpoints.

    An empty CRON_SECRET disables the endpoints rather than leaving them open.
    """
    if not settings.CRON_SECRET:
        logger.warning("Cron request rejected, CRON_SECRET not configured")
        raise AuthError("Cron endpoints are not configured")
    if not hmac.compare_digest(_bearer(authorization), settings.CRON_SECRET):
        raise AuthError("Invalid cron secret")


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> None:
    """
    Check ``x-nylas-signature`` against the raw request body.

    Verification is skipped only in development with no secret configured.
    """
    secret = secret if secret is not None else settings.NYLAS_WEBHOOK_SECRET
    if not secret:
        if settings.is_development:
            logger.warning("Webhook signature not verified, NYLAS_WEBHOOK_SECRET is empty")
            return
        raise AuthError("Webhook secret not configured")
    if not signature or not hmac.compare_digest(_hmac_hex(secret, body), signature.strip().lower()):
        raise AuthError("Invalid webhook signature")


async def verified_webhook_body(request: Request, x_nylas_signature: Optional[str] = Header(None)) -> bytes:
    """FastAPI dependency returning the raw body once its signature checks out."""
    body = await request.body()
    verify_webhook_signature(body, x_nylas_signature)
    return body
