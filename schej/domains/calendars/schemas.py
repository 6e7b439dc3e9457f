"""Calendar domain schemas."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CalendarType(str, Enum):
    """Calendar providers an account can be linked to."""

    GOOGLE = "google"
    APPLE = "apple"


def as_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Credential bundles
class GoogleCalendarAuth(BaseModel):
    """OAuth tokens for a linked Google account."""

    model_config = ConfigDict(frozen=True)

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    revoked: bool = False

    @field_validator("expires_at")
    @classmethod
    def _expires_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def needs_refresh(self, now: datetime, leeway: timedelta) -> bool:
        """Return True when the access token is missing or expires within ``leeway``."""
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        return self.expires_at <= now + leeway


class AppleCalendarAuth(BaseModel):
    """iCloud credentials (Apple ID plus app-specific password)."""

    model_config = ConfigDict(frozen=True)

    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)
    revoked: bool = False

    def needs_refresh(self, now: datetime, leeway: timedelta) -> bool:
        # App-specific passwords do not expire; they can only be revoked.
        return False


CredentialBundle = Union[GoogleCalendarAuth, AppleCalendarAuth]


# Calendar schemas
class SubCalendar(BaseModel):
    """A single calendar inside a linked account."""

    id: str = Field(..., min_length=1)
    name: str
    calendar_type: CalendarType
    primary: bool = False
    enabled: bool = True


class CalendarAccount(BaseModel):
    """A linked external calendar identity and its credential bundle."""

    id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    calendar_type: CalendarType
    google_calendar_auth: Optional[GoogleCalendarAuth] = None
    apple_calendar_auth: Optional[AppleCalendarAuth] = None
    enabled: bool = True
    sub_calendars: Optional[Dict[str, SubCalendar]] = None

    @model_validator(mode="after")
    def validate_credential_bundle(self) -> "CalendarAccount":
        """Exactly one credential bundle, matching the calendar type, must be present."""
        bundles = {
            CalendarType.GOOGLE: self.google_calendar_auth,
            CalendarType.APPLE: self.apple_calendar_auth,
        }
        if self.calendar_type not in bundles:
            raise ValueError(f"unsupported calendar type {self.calendar_type!r}")
        if bundles[self.calendar_type] is None:
            raise ValueError(
                f"{self.calendar_type.value} accounts require {self.calendar_type.value}_calendar_auth"
            )
        extra = [
            calendar_type.value
            for calendar_type, bundle in bundles.items()
            if calendar_type != self.calendar_type and bundle is not None
        ]
        if extra:
            raise ValueError(
                f"{self.calendar_type.value} accounts must not carry credentials for: {', '.join(extra)}"
            )
        return self

    @property
    def credential(self) -> Optional[CredentialBundle]:
        """The credential bundle selected by the calendar type."""
        if self.calendar_type == CalendarType.GOOGLE:
            return self.google_calendar_auth
        if self.calendar_type == CalendarType.APPLE:
            return self.apple_calendar_auth
        return None

    def with_credential(self, bundle: CredentialBundle) -> "CalendarAccount":
        """Return a copy of the account bound to ``bundle``."""
        if isinstance(bundle, GoogleCalendarAuth):
            return self.model_copy(update={"google_calendar_auth": bundle})
        return self.model_copy(update={"apple_calendar_auth": bundle})


# Canonical event
class CalendarEvent(BaseModel):
    """Provider-agnostic calendar event with UTC bounds."""

    model_config = ConfigDict(frozen=True)

    summary: str = ""
    start_date: datetime
    end_date: datetime
    all_day: bool = False

    @field_validator("start_date", "end_date")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def validate_bounds(self) -> "CalendarEvent":
        if not self.start_date < self.end_date:
            raise ValueError("start_date must precede end_date")
        return self


@dataclass(frozen=True)
class MalformedItem:
    """A provider item that could not be decoded."""

    index: int
    reason: str


@dataclass
class EventListing:
    """Decoded events for one calendar plus per-item decode diagnostics."""

    events: List[CalendarEvent] = field(default_factory=list)
    malformed: List[MalformedItem] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.malformed)

    def __iter__(self) -> Iterator[CalendarEvent]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self.events)

    def __getitem__(self, index: int) -> CalendarEvent:
        return self.events[index]
