"""Apple iCloud calendar provider implementation (CalDAV)."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urljoin

import httpx
from icalendar import Calendar, Event
from pydantic import BaseModel, ValidationError

from schej.core.config import Settings
from schej.domains.calendars.providers.base import CalendarProvider
from schej.domains.calendars.schemas import (
    AppleCalendarAuth,
    CalendarEvent,
    CalendarType,
    SubCalendar,
)
from schej.utils.errors import MalformedResponseError

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
NAMESPACES = {"d": DAV_NS, "c": CALDAV_NS}

PRINCIPAL_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:current-user-principal/></d:prop>
</d:propfind>"""

HOME_SET_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop><c:calendar-home-set/></d:prop>
</d:propfind>"""

CALENDARS_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:displayname/>
    <d:resourcetype/>
    <c:supported-calendar-component-set/>
  </d:prop>
</d:propfind>"""

EVENTS_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <c:calendar-data>
      <c:expand start="{start}" end="{end}"/>
    </c:calendar-data>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""


def format_caldav_time(value: datetime) -> str:
    """Format a datetime as a CalDAV UTC timestamp (``YYYYMMDDTHHMMSSZ``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def parse_multistatus(content: bytes) -> List[ET.Element]:
    """Parse a WebDAV multistatus body and return its ``response`` elements."""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise MalformedResponseError(f"CalDAV server returned invalid XML: {exc}") from exc
    if root.tag != f"{{{DAV_NS}}}multistatus":
        raise MalformedResponseError(f"CalDAV server returned unexpected root element {root.tag}")
    return root.findall("d:response", NAMESPACES)


def _first_href(response: ET.Element, path: str) -> Optional[str]:
    element = response.find(path, NAMESPACES)
    if element is None or not (element.text or "").strip():
        return None
    return element.text.strip()


def _as_utc_datetime(value: Union[datetime, date]) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


# Versioned decoding type for iCalendar VEVENT components
class CalDavEventV1(BaseModel):
    """A VEVENT as served by an iCloud CalDAV ``calendar-data`` property."""

    uid: Optional[str] = None
    summary: str = ""
    status: Optional[str] = None
    dtstart: Union[datetime, date]
    dtend: Optional[Union[datetime, date]] = None
    duration: Optional[timedelta] = None

    @classmethod
    def from_component(cls, component: Event) -> "CalDavEventV1":
        def text(name: str) -> Optional[str]:
            prop = component.get(name)
            return str(prop) if prop is not None else None

        def temporal(name: str) -> Any:
            prop = component.get(name)
            # Unparseable values are kept as raw text without a .dt attribute.
            return getattr(prop, "dt", None)

        return cls(
            uid=text("UID"),
            summary=text("SUMMARY") or "",
            status=text("STATUS"),
            dtstart=temporal("DTSTART"),
            dtend=temporal("DTEND"),
            duration=temporal("DURATION"),
        )

    @property
    def all_day(self) -> bool:
        return not isinstance(self.dtstart, datetime)

    def to_canonical(self) -> List[CalendarEvent]:
        if (self.status or "").upper() == "CANCELLED":
            return []

        start = _as_utc_datetime(self.dtstart)
        if self.dtend is not None:
            if isinstance(self.dtend, datetime) != isinstance(self.dtstart, datetime):
                raise ValueError("DTSTART and DTEND must both be dates or both be date-times")
            end = _as_utc_datetime(self.dtend)
        elif self.duration is not None:
            end = start + self.duration
        elif self.all_day:
            end = start + timedelta(days=1)
        else:
            end = start

        # Zero-length events occupy no time.
        if end == start:
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
    def from_canonical(cls, event: CalendarEvent, uid: Optional[str] = None) -> "CalDavEventV1":
        if event.all_day:
            return cls(
                uid=uid,
                summary=event.summary,
                dtstart=event.start_date.date(),
                dtend=event.end_date.date(),
            )
        return cls(uid=uid, summary=event.summary, dtstart=event.start_date, dtend=event.end_date)

    def to_ics(self) -> str:
        calendar = Calendar()
        calendar.add("prodid", "-//schej//availability//EN")
        calendar.add("version", "2.0")
        component = Event()
        if self.uid:
            component.add("uid", self.uid)
        component.add("summary", self.summary)
        component.add("dtstart", _for_ics(self.dtstart))
        if self.dtend is not None:
            component.add("dtend", _for_ics(self.dtend))
        elif self.duration is not None:
            component.add("duration", self.duration)
        calendar.add_component(component)
        return calendar.to_ical().decode("utf-8")


def _for_ics(value: Union[datetime, date]) -> Union[datetime, date]:
    if isinstance(value, datetime):
        return _as_utc_datetime(value)
    return value


def decode_calendar_data(payload: str) -> List[CalendarEvent]:
    """Decode one ``calendar-data`` body into canonical events.

    An expanded recurrence arrives as several VEVENTs in one VCALENDAR, so one
    item may yield several events.
    """
    try:
        calendar = Calendar.from_ical(payload)
    except ValueError as exc:
        raise MalformedResponseError(f"invalid iCalendar data: {exc}") from exc

    events: List[CalendarEvent] = []
    for component in calendar.walk("VEVENT"):
        try:
            events.extend(CalDavEventV1.from_component(component).to_canonical())
        except ValidationError as exc:
            raise MalformedResponseError(f"invalid VEVENT: {exc.errors()[:1]}") from exc
        except ValueError as exc:
            raise MalformedResponseError(f"invalid VEVENT: {exc}") from exc
    return events


class AppleCalendarProvider(CalendarProvider):
    """iCloud calendar provider speaking CalDAV with an app-specific password."""

    calendar_type = CalendarType.APPLE

    def __init__(
        self,
        credentials: AppleCalendarAuth,
        http_client: httpx.AsyncClient,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        if not isinstance(credentials, AppleCalendarAuth):
            raise TypeError("AppleCalendarProvider requires AppleCalendarAuth credentials")
        super().__init__(credentials, http_client, settings=settings)
        self._auth = httpx.BasicAuth(credentials.email, credentials.password)
        self._calendar_home: Optional[str] = None

    async def _dav(self, method: str, url: str, body: str, *, depth: str) -> List[ET.Element]:
        response = await self.http.request(
            method,
            url,
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
            content=body,
            auth=self._auth,
            follow_redirects=True,
        )
        return parse_multistatus(response.content)

    async def _discover_calendar_home(self) -> str:
        if self._calendar_home is not None:
            return self._calendar_home

        root_url = self.settings.apple_caldav_url.rstrip("/") + "/"
        responses = await self._dav("PROPFIND", root_url, PRINCIPAL_QUERY, depth="0")
        principal = next(
            (
                href
                for response in responses
                if (href := _first_href(response, "d:propstat/d:prop/d:current-user-principal/d:href"))
            ),
            None,
        )
        if principal is None:
            raise MalformedResponseError("CalDAV server did not report a current-user-principal")
        principal_url = urljoin(root_url, principal)

        responses = await self._dav("PROPFIND", principal_url, HOME_SET_QUERY, depth="0")
        home = next(
            (
                href
                for response in responses
                if (href := _first_href(response, "d:propstat/d:prop/c:calendar-home-set/d:href"))
            ),
            None,
        )
        if home is None:
            raise MalformedResponseError("CalDAV server did not report a calendar-home-set")
        self._calendar_home = urljoin(principal_url, home)
        return self._calendar_home

    async def list_calendars(self) -> Dict[str, SubCalendar]:
        home = await self._discover_calendar_home()
        responses = await self._dav("PROPFIND", home, CALENDARS_QUERY, depth="1")

        calendars: Dict[str, SubCalendar] = {}
        for response in responses:
            href = _first_href(response, "d:href")
            if href is None:
                continue
            prop = response.find("d:propstat/d:prop", NAMESPACES)
            if prop is None or prop.find("d:resourcetype/c:calendar", NAMESPACES) is None:
                continue
            components = prop.findall("c:supported-calendar-component-set/c:comp", NAMESPACES)
            if components and not any(comp.get("name") == "VEVENT" for comp in components):
                # Reminders lists are calendars without events.
                continue
            calendar_url = urljoin(home, href)
            name = (prop.findtext("d:displayname", default="", namespaces=NAMESPACES) or "").strip()
            calendars[calendar_url] = SubCalendar(
                id=calendar_url,
                name=name or calendar_url,
                calendar_type=CalendarType.APPLE,
            )
        return calendars

    async def fetch_event_items(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> List[Any]:
        body = EVENTS_QUERY.format(
            start=format_caldav_time(time_min),
            end=format_caldav_time(time_max),
        )
        responses = await self._dav("REPORT", calendar_id, body, depth="1")
        items: List[str] = []
        for response in responses:
            data = response.findtext("d:propstat/d:prop/c:calendar-data", default=None, namespaces=NAMESPACES)
            if data and data.strip():
                items.append(data)
        logger.debug("Fetched %d CalDAV items from %s", len(items), calendar_id)
        return items

    def decode_event_item(self, item: Any) -> List[CalendarEvent]:
        if not isinstance(item, str):
            raise MalformedResponseError(f"expected iCalendar text, got {type(item).__name__}")
        return decode_calendar_data(item)
