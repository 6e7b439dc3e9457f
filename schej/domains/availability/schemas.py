"""Availability domain schemas."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schej.core.config import Settings, get_settings
from schej.domains.calendars.schemas import CalendarAccount, as_utc
from schej.utils.errors import InvalidWindowError


class TimeInterval(BaseModel):
    """Half-open ``[start, end)`` interval in UTC."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def validate_bounds(self) -> "TimeInterval":
        if not self.start < self.end:
            raise ValueError("start must precede end")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class AvailabilityTier(str, Enum):
    AVAILABLE = "available"
    IF_NEEDED = "if_needed"


class TaggedInterval(TimeInterval):
    """An interval of the aggregated result and the tier it belongs to."""

    tier: AvailabilityTier = AvailabilityTier.AVAILABLE


class DayAvailability(BaseModel):
    """Aggregated availability for one day span."""

    day_start: datetime
    day_end: datetime
    intervals: List[TaggedInterval] = Field(default_factory=list)

    @property
    def available(self) -> List[TimeInterval]:
        return [
            TimeInterval(start=interval.start, end=interval.end)
            for interval in self.intervals
            if interval.tier == AvailabilityTier.AVAILABLE
        ]

    @property
    def if_needed(self) -> List[TimeInterval]:
        return [
            TimeInterval(start=interval.start, end=interval.end)
            for interval in self.intervals
            if interval.tier == AvailabilityTier.IF_NEEDED
        ]


class CalendarDiagnostic(BaseModel):
    """Why a sub-calendar was degraded."""

    calendar_id: str
    account_email: str
    reason: str
    malformed_items: int = 0


class AvailabilityResult(BaseModel):
    """Per-day availability for one respondent."""

    days: Dict[datetime, DayAvailability] = Field(default_factory=dict)
    partial: bool = False
    degraded_calendars: Set[str] = Field(default_factory=set)
    diagnostics: List[CalendarDiagnostic] = Field(default_factory=list)


# Calendar options
class WorkingHours(BaseModel):
    """Local working hours; ``end_time <= start_time`` spans midnight."""

    enabled: bool = False
    start_time: float = Field(default=9, ge=0, le=24)
    end_time: float = Field(default=17, ge=0, le=24)


class BufferTime(BaseModel):
    """Minutes of padding added around every busy event."""

    enabled: bool = False
    time: int = Field(default=15, ge=0)


class CalendarOptions(BaseModel):
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    buffer_time: BufferTime = Field(default_factory=BufferTime)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class Response(BaseModel):
    """A poll respondent's submitted availability and calendar settings."""

    name: str = ""
    email: Optional[str] = None
    user_id: Optional[str] = None

    availability: List[datetime] = Field(default_factory=list)
    if_needed: List[datetime] = Field(default_factory=list)
    manual_availability: Optional[Dict[datetime, List[TimeInterval]]] = None

    use_calendar_availability: bool = False
    enabled_calendars: Optional[Dict[str, List[str]]] = None
    calendar_options: Optional[CalendarOptions] = None
    # Linked accounts by identity email, supplied by the account-linking flow
    calendar_accounts: Dict[str, CalendarAccount] = Field(default_factory=dict)

    @field_validator("availability", "if_needed")
    @classmethod
    def _slots_to_utc(cls, value: List[datetime]) -> List[datetime]:
        return sorted({as_utc(slot) for slot in value})

    @field_validator("manual_availability")
    @classmethod
    def _manual_keys_to_utc(
        cls, value: Optional[Dict[datetime, List[TimeInterval]]]
    ) -> Optional[Dict[datetime, List[TimeInterval]]]:
        if value is None:
            return None
        return {as_utc(day): intervals for day, intervals in value.items()}

    @model_validator(mode="after")
    def drop_calendar_settings(self) -> "Response":
        """Calendar settings only mean something when calendar availability is on."""
        if not self.use_calendar_availability:
            self.enabled_calendars = None
            self.calendar_options = None
        return self

    @property
    def key(self) -> str:
        return self.user_id or self.email or self.name


class TimeWindow(BaseModel):
    """The aggregation window; ``time_min < time_max`` is required."""

    model_config = ConfigDict(frozen=True)

    time_min: datetime
    time_max: datetime

    @field_validator("time_min", "time_max")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def validate_window(self) -> "TimeWindow":
        if not self.time_min < self.time_max:
            raise InvalidWindowError(
                f"time_min ({self.time_min.isoformat()}) must precede time_max ({self.time_max.isoformat()})"
            )
        return self

    def day_spans(self) -> List[TimeInterval]:
        """Consecutive 24-hour spans from ``time_min``, the last clipped to ``time_max``."""
        spans: List[TimeInterval] = []
        cursor = self.time_min
        while cursor < self.time_max:
            end = min(cursor + timedelta(days=1), self.time_max)
            spans.append(TimeInterval(start=cursor, end=end))
            cursor = end
        return spans


class AggregationOptions(BaseModel):
    """Per-request aggregation knobs; defaults come from settings."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    days: Optional[List[TimeInterval]] = None
    slot_minutes: int = Field(default=15, ge=1)
    max_concurrency: int = Field(default=8, ge=1)
    manual_overrides_calendar: bool = True
    cancel_event: Optional[asyncio.Event] = Field(default=None, exclude=True)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "AggregationOptions":
        settings = settings or get_settings()
        values = {
            "slot_minutes": settings.slot_minutes,
            "max_concurrency": settings.max_concurrency,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def slot(self) -> timedelta:
        return timedelta(minutes=self.slot_minutes)


# Poll
class PollType(str, Enum):
    SPECIFIC_DATES = "specific_dates"
    DOW = "dow"
    GROUP = "group"


class Poll(BaseModel):
    """The owner object whose candidate days bound an aggregation."""

    type: PollType = PollType.SPECIFIC_DATES
    dates: List[datetime] = Field(default_factory=list)
    # Length of each candidate day span, in hours
    duration: float = Field(default=24, gt=0, le=24 * 7)
    responses: Dict[str, Response] = Field(default_factory=dict)

    @field_validator("dates")
    @classmethod
    def _dates_to_utc(cls, value: List[datetime]) -> List[datetime]:
        return sorted(as_utc(day) for day in value)

    def days(self, week_start: Optional[datetime] = None) -> List[TimeInterval]:
        """Candidate day spans.

        ``dow`` and ``group`` polls store representative weekdays; with
        ``week_start`` (a Sunday) they are projected onto that concrete week.
        """
        span = timedelta(hours=self.duration)
        starts = list(self.dates)
        if week_start is not None and self.type in (PollType.DOW, PollType.GROUP):
            week_start = as_utc(week_start).replace(hour=0, minute=0, second=0, microsecond=0)
            projected = []
            for day in starts:
                # Sunday-based weekday offset
                offset = (day.weekday() + 1) % 7
                time_of_day = timedelta(
                    hours=day.hour, minutes=day.minute, seconds=day.second
                )
                projected.append(week_start + timedelta(days=offset) + time_of_day)
            starts = sorted(projected)
        return [TimeInterval(start=start, end=start + span) for start in starts]

    def window(self, week_start: Optional[datetime] = None) -> TimeWindow:
        days = self.days(week_start)
        if not days:
            raise InvalidWindowError("poll has no candidate dates")
        return TimeWindow(
            time_min=min(day.start for day in days),
            time_max=max(day.end for day in days),
        )
