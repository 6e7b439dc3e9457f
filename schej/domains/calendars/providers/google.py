"""Google Calendar provider implementation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from schej.core.config import Settings, get_settings
from schej.core.timing_logger import log_step
from schej.domains.calendars.providers.base import CalendarProvider, ProviderHttpClient
from schej.domains.calendars.schemas import (
    CalendarEvent,
    CalendarType,
    GoogleCalendarAuth,
    SubCalendar,
)
from schej.utils.errors import (
    AuthExpiredError,
    MalformedResponseError,
    ProviderRequestError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

# Token endpoint statuses that mean the refresh token itself was rejected.
REJECTED_REFRESH_STATUSES = {400, 401, 403}


@dataclass(frozen=True)
class GoogleTokens:
    """Google OAuth tokens."""

    access_token: str
    refresh_token: str | None
    expires_in: int | None
    scope: str
    token_type: str

    def expires_at(self, issued_at: datetime | None = None) -> datetime | None:
        """Calculate expiration time."""
        if self.expires_in is None:
            return None
        base = issued_at or datetime.now(timezone.utc)
        return base + timedelta(seconds=self.expires_in)


async def refresh_access_token(
    http_client: httpx.AsyncClient,
    refresh_token: str,
    *,
    settings: Optional[Settings] = None,
) -> GoogleTokens:
    """Exchange a refresh token for a new access token.

    Raises:
        AuthExpiredError: The token endpoint rejected the refresh token
            (``invalid_grant`` and friends).
        ProviderUnavailableError: The endpoint was unreachable or kept
            failing after one retry.
        MalformedResponseError: The endpoint answered without an access token.
    """
    settings = settings or get_settings()
    http = ProviderHttpClient(
        http_client,
        provider="google.oauth",
        timeout=settings.request_timeout_seconds,
    )
    data = {
        "client_id": settings.google_client_id or "",
        "client_secret": settings.google_client_secret or "",
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    try:
        response = await http.request(
            "POST",
            settings.google_token_endpoint,
            data=data,
            headers={"Accept": "application/json"},
        )
    except ProviderRequestError as exc:
        if exc.response_status in REJECTED_REFRESH_STATUSES:
            reason = exc.payload.get("error") if isinstance(exc.payload, dict) else None
            raise AuthExpiredError(
                f"Google rejected the refresh token ({reason or exc.response_status})"
            ) from exc
        raise ProviderUnavailableError(
            f"Google token endpoint failed with status {exc.response_status}"
        ) from exc

    try:
        payload = response.json()
    except ValueError as exc:
        raise MalformedResponseError("Google token endpoint returned invalid JSON") from exc
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise MalformedResponseError("Google token response did not include an access token")

    expires_in = payload.get("expires_in")
    return GoogleTokens(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token"),
        expires_in=int(expires_in) if expires_in is not None else None,
        scope=payload.get("scope", ""),
        token_type=payload.get("token_type", "Bearer"),
    )


# Versioned decoding types for the Calendar API v3 wire format
class GoogleEventTimeV3(BaseModel):
    """``start`` / ``end`` object of a v3 event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: Optional[datetime] = Field(default=None, alias="dateTime")
    day: Optional[date] = Field(default=None, alias="date")
    time_zone: Optional[str] = Field(default=None, alias="timeZone")

    def to_utc(self) -> datetime:
        if self.date_time is not None:
            value = self.date_time
            if value.tzinfo is None:
                # Floating times are interpreted in the event's own zone.
                zone = ZoneInfo(self.time_zone) if self.time_zone else timezone.utc
                value = value.replace(tzinfo=zone)
            return value.astimezone(timezone.utc)
        if self.day is not None:
            return datetime(self.day.year, self.day.month, self.day.day, tzinfo=timezone.utc)
        raise ValueError("event time has neither dateTime nor date")


class GoogleEventV3(BaseModel):
    """An item of ``events.list`` as returned by Calendar API v3."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    summary: str = ""
    status: Optional[str] = None
    start: GoogleEventTimeV3
    end: GoogleEventTimeV3

    @property
    def all_day(self) -> bool:
        return self.start.date_time is None and self.start.day is not None

    def to_canonical(self) -> List[CalendarEvent]:
        if self.status == "cancelled":
            return []
        start = self.start.to_utc()
        end = self.end.to_utc()
        # Zero-length events occupy no time.
        if start == end:
            return []
        return [
            CalendarEvent(
                summary=self.summary,
                start_date=start,
                end_date=end,
                all_day=self.all_day,
            )
        ]

    @classmethod
    def from_canonical(cls, event: CalendarEvent) -> "GoogleEventV3":
        if event.all_day:
            start = GoogleEventTimeV3(day=event.start_date.date())
            end = GoogleEventTimeV3(day=event.end_date.date())
        else:
            start = GoogleEventTimeV3(date_time=event.start_date, time_zone="UTC")
            end = GoogleEventTimeV3(date_time=event.end_date, time_zone="UTC")
        return cls(summary=event.summary, start=start, end=end)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class GoogleCalendarListEntryV3(BaseModel):
    """An item of ``calendarList.list``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    summary: Optional[str] = None
    summary_override: Optional[str] = Field(default=None, alias="summaryOverride")
    primary: bool = False
    access_role: Optional[str] = Field(default=None, alias="accessRole")

    def to_sub_calendar(self) -> SubCalendar:
        return SubCalendar(
            id=self.id,
            name=self.summary_override or self.summary or self.id,
            calendar_type=CalendarType.GOOGLE,
            primary=self.primary,
        )


def _encode_path_segment(segment: str) -> str:
    """Encode a URL path segment."""
    return quote(segment, safe="")


def format_rfc3339(value: datetime) -> str:
    """Format a datetime as an RFC 3339 UTC timestamp."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar provider backed by the v3 REST API."""

    calendar_type = CalendarType.GOOGLE
    page_size = 250

    def __init__(
        self,
        credentials: GoogleCalendarAuth,
        http_client: httpx.AsyncClient,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        if not isinstance(credentials, GoogleCalendarAuth):
            raise TypeError("GoogleCalendarProvider requires GoogleCalendarAuth credentials")
        super().__init__(credentials, http_client, settings=settings)

    async def _request(
        self,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.credentials.access_token:
            raise AuthExpiredError("Google account has no access token")
        headers = {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Accept": "application/json",
        }
        response = await self.http.request(
            "GET",
            f"{self.settings.google_api_base_url}{path}",
            headers=headers,
            params=params,
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"Google returned invalid JSON for {path}") from exc
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Google returned a non-object payload for {path}")
        return data

    async def _paginate(self, path: str, params: Dict[str, Any]) -> List[Any]:
        items: List[Any] = []
        page_token: Optional[str] = None
        page_num = 0
        while True:
            if page_token:
                params["pageToken"] = page_token
            page_start = time.time()
            data = await self._request(path, params=params)
            page_items = data.get("items") or []
            if not isinstance(page_items, list):
                raise MalformedResponseError(f"Google returned non-list items for {path}")
            items.extend(page_items)
            log_step(
                f"google.paginate.page_{page_num}",
                time.time() - page_start,
                details=f"items={len(page_items)} total={len(items)}",
            )
            page_num += 1
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return items

    async def list_calendars(self) -> Dict[str, SubCalendar]:
        entries = await self._paginate("/users/me/calendarList", {"minAccessRole": "reader"})
        calendars: Dict[str, SubCalendar] = {}
        for entry in entries:
            try:
                sub_calendar = GoogleCalendarListEntryV3.model_validate(entry).to_sub_calendar()
            except ValidationError as exc:
                logger.warning("Skipping malformed Google calendar list entry: %s", exc.errors()[:1])
                continue
            calendars[sub_calendar.id] = sub_calendar
        return calendars

    async def fetch_event_items(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> List[Any]:
        path = f"/calendars/{_encode_path_segment(calendar_id)}/events"
        params: Dict[str, Any] = {
            "timeMin": format_rfc3339(time_min),
            "timeMax": format_rfc3339(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": self.page_size,
        }
        return await self._paginate(path, params)

    def decode_event_item(self, item: Any) -> List[CalendarEvent]:
        try:
            return GoogleEventV3.model_validate(item).to_canonical()
        except ValidationError as exc:
            raise MalformedResponseError(f"invalid Google event: {exc.errors()[:1]}") from exc
        except (ValueError, ZoneInfoNotFoundError) as exc:
            raise MalformedResponseError(f"invalid Google event: {exc}") from exc
