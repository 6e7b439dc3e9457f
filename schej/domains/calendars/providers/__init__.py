"""Calendar provider registry."""

from __future__ import annotations

from typing import Dict, Optional, Type

import httpx

from schej.core.config import Settings
from schej.domains.calendars.providers.apple import AppleCalendarProvider
from schej.domains.calendars.providers.base import CalendarProvider
from schej.domains.calendars.providers.google import GoogleCalendarProvider
from schej.domains.calendars.schemas import CalendarAccount, CalendarType
from schej.utils.errors import UnknownProviderTypeError

PROVIDERS: Dict[CalendarType, Type[CalendarProvider]] = {
    CalendarType.GOOGLE: GoogleCalendarProvider,
    CalendarType.APPLE: AppleCalendarProvider,
}


def get_calendar_provider(
    account: CalendarAccount,
    http_client: httpx.AsyncClient,
    settings: Optional[Settings] = None,
) -> CalendarProvider:
    """Return the adapter bound to ``account``'s credential bundle.

    Raises:
        UnknownProviderTypeError: No adapter is registered for the account's
            calendar type, or the account carries no matching bundle.
    """
    provider_cls = PROVIDERS.get(account.calendar_type)
    credential = account.credential
    if provider_cls is None or credential is None:
        raise UnknownProviderTypeError(account.calendar_type)
    return provider_cls(credential, http_client, settings=settings)


def get_all_providers() -> Dict[CalendarType, Type[CalendarProvider]]:
    """Get all registered providers."""
    return dict(PROVIDERS)


__all__ = [
    "AppleCalendarProvider",
    "CalendarProvider",
    "GoogleCalendarProvider",
    "PROVIDERS",
    "get_all_providers",
    "get_calendar_provider",
]
