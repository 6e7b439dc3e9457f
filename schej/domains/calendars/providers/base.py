"""Base calendar provider interface."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import httpx

from schej.core.config import Settings, get_settings
from schej.core.timing_logger import log_start, log_step
from schej.domains.calendars.normalizer import normalize_events
from schej.domains.calendars.schemas import (
    CalendarEvent,
    CalendarType,
    CredentialBundle,
    EventListing,
    SubCalendar,
)
from schej.utils.errors import ProviderRequestError, ProviderUnavailableError

logger = logging.getLogger(__name__)

# Responses worth one more attempt; auth failures never are.
TRANSIENT_STATUS_CODES = {500, 502, 503, 504}


class ProviderHttpClient:
    """Thin wrapper around an injected httpx.AsyncClient for provider requests.

    Applies the request timeout and retries once on transport errors or 5xx
    responses. Other error statuses raise ProviderRequestError so callers can
    tell an expired token (401) from everything else.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        provider: str,
        timeout: float,
        max_retries: int = 1,
    ) -> None:
        self._client = client
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max_retries

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        content: Optional[str | bytes] = None,
        data: Optional[Mapping[str, Any]] = None,
        auth: Optional[httpx.Auth] = None,
        follow_redirects: bool = False,
    ) -> httpx.Response:
        attempt = 0
        while True:
            request_start = time.time()
            log_start(f"{self.provider}.request", details=f"method={method} url={url} attempt={attempt}")
            try:
                response = await self._client.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    content=content,
                    data=data,
                    auth=auth,
                    follow_redirects=follow_redirects,
                    timeout=self.timeout,
                )
            except httpx.TransportError as exc:
                if attempt < self.max_retries:
                    attempt += 1
                    logger.info(
                        "Retrying %s %s after transport error: %s", method, url, type(exc).__name__
                    )
                    continue
                raise ProviderUnavailableError(
                    f"{self.provider} request {method} {url} failed: {type(exc).__name__}"
                ) from exc

            log_step(
                f"{self.provider}.request",
                time.time() - request_start,
                details=f"status={response.status_code}",
            )

            if response.status_code in TRANSIENT_STATUS_CODES:
                if attempt < self.max_retries:
                    attempt += 1
                    logger.info(
                        "Retrying %s %s after status %d", method, url, response.status_code
                    )
                    continue
                raise ProviderUnavailableError(
                    f"{self.provider} request {method} {url} failed with status {response.status_code}"
                )

            if response.status_code >= 400:
                raise ProviderRequestError(
                    f"{self.provider} request failed with status {response.status_code}",
                    status_code=response.status_code,
                    payload=safe_json(response),
                )
            return response


def safe_json(response: httpx.Response) -> Any:
    """Safely parse JSON from response."""
    try:
        return response.json()
    except ValueError:
        return response.text


class CalendarProvider(ABC):
    """Abstract base class for calendar providers.

    Adapters receive their credential bundle and an HTTP client at
    construction; they never reach for ambient sessions or globals.
    """

    calendar_type: CalendarType

    def __init__(
        self,
        credentials: CredentialBundle,
        http_client: httpx.AsyncClient,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.credentials = credentials
        self.http = ProviderHttpClient(
            http_client,
            provider=self.calendar_type.value,
            timeout=self.settings.request_timeout_seconds,
        )

    @abstractmethod
    async def list_calendars(self) -> Dict[str, SubCalendar]:
        """List all calendars available to the account, keyed by provider id."""
        ...

    @abstractmethod
    async def fetch_event_items(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> List[Any]:
        """Fetch provider-native event items for a calendar and time range."""
        ...

    @abstractmethod
    def decode_event_item(self, item: Any) -> List[CalendarEvent]:
        """Decode one provider-native item; raise MalformedResponseError if it is invalid."""
        ...

    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> EventListing:
        """List canonical events strictly inside ``(time_min, time_max)``."""
        method_start = time.time()
        items = await self.fetch_event_items(calendar_id, time_min, time_max)
        listing = normalize_events(
            items,
            self.decode_event_item,
            time_min,
            time_max,
            include_all_day=not self.settings.ignore_all_day_events,
        )
        log_step(
            f"{self.calendar_type.value}.list_events",
            time.time() - method_start,
            details=f"calendar_id={calendar_id} items={len(items)} events={len(listing)} malformed={len(listing.malformed)}",
        )
        return listing
