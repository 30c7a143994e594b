"""Adapter selection keyed on the account's provider."""

from typing import Callable, Dict, Optional, Type

import httpx

from core import ValidationError
from providers.base import CalendarProviderAdapter
from providers.nylas import GoogleCalendarAdapter, MicrosoftCalendarAdapter
from schemas import AccountSchema

ADAPTERS: Dict[str, Type[CalendarProviderAdapter]] = {
    "google": GoogleCalendarAdapter,
    "microsoft": MicrosoftCalendarAdapter,
}

AdapterFactory = Callable[[AccountSchema], CalendarProviderAdapter]


def get_adapter(account: AccountSchema, client: Optional[httpx.AsyncClient] = None) -> CalendarProviderAdapter:
    """
    Build the adapter for ``account``.

    Raises:
        ValidationError: no adapter exists for the account's provider
    """
    adapter_cls = ADAPTERS.get(account.provider)
    if adapter_cls is None:
        raise ValidationError("provider", f"unsupported calendar provider '{account.provider}'")
    return adapter_cls(account, client=client)
