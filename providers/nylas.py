"""
Nylas v3 calendar adapter.

Google and Microsoft grants both go through the Nylas gateway; the subclasses
only differ in how they expect all-day events and conferencing to be shaped.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from core import ProviderAuthError, ProviderError, RateLimitedError, get_logger
from providers.base import CalendarProviderAdapter
from providers.translate import (
    event_to_payload,
    payload_to_remote_calendar,
    payload_to_remote_event,
)
from schemas import AccountSchema, CalendarEventSchema, RemoteCalendar, RemoteEvent

logger = get_logger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _unix(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class NylasCalendarAdapter(CalendarProviderAdapter):
    """
    Calendar adapter backed by the Nylas v3 REST API.

    Usage:
        async with GoogleCalendarAdapter(account) as adapter:
            remote = await adapter.create_remote("primary", event)
    """

    provider = "nylas"
    # Single-day all-day events as {"date"} instead of a datespan
    single_day_all_day_date = True
    conferencing_provider: Optional[str] = None

    def __init__(
        self,
        account: AccountSchema,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        api_uri: Optional[str] = None,
        page_size: Optional[int] = None,
    ):
        super().__init__(account)
        if not account.grant_id:
            raise ProviderAuthError(self.provider)
        self.api_uri = (api_uri or settings.NYLAS_API_URI).rstrip("/")
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self._headers = {
            "Authorization": f"Bearer {api_key or settings.NYLAS_API_KEY}",
            "Accept": "application/json",
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)

    @property
    def _grant_url(self) -> str:
        return f"{self.api_uri}/v3/grants/{self.account.grant_id}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        return await self._client.request(method, url, params=params, json=json, headers=self._headers)

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Send a request and map failures onto the provider error kinds.

        Returns:
            Decoded body, ``{}`` for empty bodies, None for a tolerated 404
        """
        try:
            response = await self._send(method, url, params=params, json=json)
        except httpx.TransportError as e:
            logger.error("Provider request failed", provider=self.provider, method=method, error=str(e))
            raise ProviderError(self.provider, details=str(e))

        status = response.status_code
        if status == 429:
            retry_after = _retry_after(response)
            logger.warning("Provider rate limited", provider=self.provider, retry_after=retry_after)
            raise RateLimitedError(self.provider, retry_after_seconds=retry_after)
        if status in (401, 403):
            logger.warning("Provider rejected credentials", provider=self.provider, status=status)
            raise ProviderAuthError(self.provider, status_code=status)
        if status == 404 and allow_missing:
            return None
        if status >= 400:
            logger.error(
                "Provider returned error",
                provider=self.provider,
                method=method,
                status=status,
                body=response.text[:500],
            )
            raise ProviderError(self.provider, status_code=status, details=response.text[:500])
        if status == 204 or not response.content:
            return {}
        return response.json()

    def _payload(self, event: CalendarEventSchema) -> Dict[str, Any]:
        return event_to_payload(
            event,
            single_day_date=self.single_day_all_day_date,
            conferencing_provider=self.conferencing_provider,
        )

    def _remote_from_body(self, body: Optional[Dict[str, Any]], remote_calendar_id: str) -> RemoteEvent:
        data = (body or {}).get("data") or {}
        if not data.get("id"):
            raise ProviderError(self.provider, details="response carried no event id")
        return payload_to_remote_event(data, remote_calendar_id)

    async def create_remote(self, remote_calendar_id: str, event: CalendarEventSchema) -> RemoteEvent:
        body = await self._request(
            "POST",
            f"{self._grant_url}/events",
            params={"calendar_id": remote_calendar_id, "notify_participants": "false"},
            json=self._payload(event),
        )
        remote = self._remote_from_body(body, remote_calendar_id)
        logger.info("Created remote event", provider=self.provider, event_id=event.id, remote_id=remote.remote_id)
        return remote

    async def update_remote(
        self, remote_calendar_id: str, remote_event_id: str, event: CalendarEventSchema
    ) -> RemoteEvent:
        body = await self._request(
            "PUT",
            f"{self._grant_url}/events/{remote_event_id}",
            params={"calendar_id": remote_calendar_id, "notify_participants": "false"},
            json=self._payload(event),
        )
        remote = self._remote_from_body(body, remote_calendar_id)
        logger.info("Updated remote event", provider=self.provider, event_id=event.id, remote_id=remote_event_id)
        return remote

    async def delete_remote(self, remote_calendar_id: str, remote_event_id: str) -> None:
        body = await self._request(
            "DELETE",
            f"{self._grant_url}/events/{remote_event_id}",
            params={"calendar_id": remote_calendar_id, "notify_participants": "false"},
            allow_missing=True,
        )
        if body is None:
            logger.info("Remote event already gone", provider=self.provider, remote_id=remote_event_id)
        else:
            logger.info("Deleted remote event", provider=self.provider, remote_id=remote_event_id)

    async def get_remote(self, remote_calendar_id: str, remote_event_id: str) -> Optional[RemoteEvent]:
        body = await self._request(
            "GET",
            f"{self._grant_url}/events/{remote_event_id}",
            params={"calendar_id": remote_calendar_id},
            allow_missing=True,
        )
        if body is None:
            return None
        return self._remote_from_body(body, remote_calendar_id)

    async def list_remote(
        self, remote_calendar_id: str, window_start: datetime, window_end: datetime
    ) -> List[RemoteEvent]:
        params: Dict[str, Any] = {
            "calendar_id": remote_calendar_id,
            "start": _unix(window_start),
            "end": _unix(window_end),
            "limit": self.page_size,
            "expand_recurring": "false",
        }
        events: List[RemoteEvent] = []
        while True:
            body = await self._request("GET", f"{self._grant_url}/events", params=params) or {}
            for item in body.get("data") or []:
                try:
                    events.append(payload_to_remote_event(item, remote_calendar_id))
                except (KeyError, ValueError) as e:
                    logger.warning(
                        "Skipping untranslatable remote event",
                        provider=self.provider,
                        remote_id=item.get("id"),
                        error=str(e),
                    )
            cursor = body.get("next_cursor")
            if not cursor:
                break
            params["page_token"] = cursor

        logger.debug(
            "Listed remote events",
            provider=self.provider,
            calendar_id=remote_calendar_id,
            count=len(events),
        )
        return events

    async def list_calendars(self) -> List[RemoteCalendar]:
        params: Dict[str, Any] = {"limit": self.page_size}
        calendars: List[RemoteCalendar] = []
        while True:
            body = await self._request("GET", f"{self._grant_url}/calendars", params=params) or {}
            calendars.extend(payload_to_remote_calendar(item) for item in body.get("data") or [] if item.get("id"))
            cursor = body.get("next_cursor")
            if not cursor:
                break
            params["page_token"] = cursor
        return calendars


class GoogleCalendarAdapter(NylasCalendarAdapter):
    provider = "google"
    single_day_all_day_date = True
    conferencing_provider = "Google Meet"


class MicrosoftCalendarAdapter(NylasCalendarAdapter):
    # Outlook rejects {"date"}; every all-day event is a datespan
    provider = "microsoft"
    single_day_all_day_date = False
    conferencing_provider = "Microsoft Teams"
