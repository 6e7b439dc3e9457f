"""Pytest fixtures for availability engine tests."""

import asyncio
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

import httpx
import pytest

# Set required env vars for tests
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

from schej.core.config import Settings
from schej.domains.calendars.normalizer import event_within_window
from schej.domains.calendars.repository import InMemoryCredentialStore
from schej.domains.calendars.schemas import (
    AppleCalendarAuth,
    CalendarAccount,
    CalendarEvent,
    CalendarType,
    EventListing,
    GoogleCalendarAuth,
    MalformedItem,
    SubCalendar,
)
from schej.utils.errors import ProviderRequestError

FAR_FUTURE = datetime(2099, 1, 1, tzinfo=timezone.utc)


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_google_account(
    account_id: str = "google-account-123",
    email: str = "test@example.com",
    *,
    access_token: Optional[str] = "ya29.test-access-token",
    refresh_token: Optional[str] = "test-refresh-token",
    expires_at: Optional[datetime] = FAR_FUTURE,
    revoked: bool = False,
) -> CalendarAccount:
    return CalendarAccount(
        id=account_id,
        email=email,
        calendar_type=CalendarType.GOOGLE,
        google_calendar_auth=GoogleCalendarAuth(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            revoked=revoked,
        ),
    )


def make_apple_account(
    account_id: str = "apple-account-123",
    email: str = "test@icloud.com",
    *,
    revoked: bool = False,
) -> CalendarAccount:
    return CalendarAccount(
        id=account_id,
        email=email,
        calendar_type=CalendarType.APPLE,
        apple_calendar_auth=AppleCalendarAuth(
            email=email,
            password="abcd-efgh-ijkl-mnop",
            revoked=revoked,
        ),
    )


def token_response(access_token: str = "ya29.refreshed", expires_in: int = 3600) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "access_token": access_token,
            "expires_in": expires_in,
            "scope": "https://www.googleapis.com/auth/calendar",
            "token_type": "Bearer",
        },
    )


class FakeCalendarBackend:
    """Scripted calendar data shared by every FakeProvider it creates."""

    def __init__(self) -> None:
        self.events: Dict[str, List[CalendarEvent]] = {}
        self.malformed: Dict[str, int] = {}
        # Exceptions raised, in order, by the next calls for a calendar
        self.failures: Dict[str, List[BaseException]] = {}
        # When set, access tokens outside this set get a 401
        self.valid_tokens: Optional[Set[str]] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancelled = 0
        self.calendars: Dict[str, SubCalendar] = {}

    def factory(self, account: CalendarAccount, http_client: httpx.AsyncClient, settings=None):
        return FakeProvider(self, account)


class FakeProvider:
    def __init__(self, backend: FakeCalendarBackend, account: CalendarAccount) -> None:
        self.backend = backend
        self.account = account

    @property
    def token(self) -> Optional[str]:
        return getattr(self.account.credential, "access_token", None)

    def _check_token(self) -> None:
        valid = self.backend.valid_tokens
        if valid is not None and self.token not in valid:
            raise ProviderRequestError("unauthorized", status_code=401)

    async def list_calendars(self) -> Dict[str, SubCalendar]:
        self._check_token()
        return dict(self.backend.calendars)

    async def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> EventListing:
        backend = self.backend
        backend.calls.append((calendar_id, self.token))
        backend.in_flight += 1
        backend.max_in_flight = max(backend.max_in_flight, backend.in_flight)
        try:
            await asyncio.sleep(0.01)
            if backend.gate is not None:
                await backend.gate.wait()
            failures = backend.failures.get(calendar_id)
            if failures:
                raise failures.pop(0)
            self._check_token()
            events = [
                event
                for event in backend.events.get(calendar_id, [])
                if event_within_window(event, time_min, time_max)
            ]
            listing = EventListing(events=events)
            listing.malformed.extend(
                MalformedItem(index=index, reason="bad item")
                for index in range(backend.malformed.get(calendar_id, 0))
            )
            return listing
        except asyncio.CancelledError:
            backend.cancelled += 1
            raise
        finally:
            backend.in_flight -= 1


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment's .env file."""
    return Settings(
        _env_file=None,
        google_client_id="test-client-id",
        google_client_secret="test-client-secret",
        request_timeout_seconds=5.0,
    )


@pytest.fixture
def google_account() -> CalendarAccount:
    return make_google_account()


@pytest.fixture
def apple_account() -> CalendarAccount:
    return make_apple_account()


@pytest.fixture
def backend() -> FakeCalendarBackend:
    return FakeCalendarBackend()


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()
