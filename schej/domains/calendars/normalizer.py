"""Decode provider-native event items and apply the time-window filter."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List

from schej.domains.calendars.schemas import CalendarEvent, EventListing, MalformedItem
from schej.utils.errors import MalformedResponseError

logger = logging.getLogger(__name__)

EventDecoder = Callable[[Any], List[CalendarEvent]]


def event_within_window(
    event: CalendarEvent,
    time_min: datetime,
    time_max: datetime,
) -> bool:
    """Check if an event lies strictly inside ``(time_min, time_max)``.

    Events that touch or cross either boundary are excluded, never clipped.
    """
    return time_min < event.start_date and time_max > event.end_date


def normalize_events(
    items: Iterable[Any],
    decode: EventDecoder,
    time_min: datetime,
    time_max: datetime,
    *,
    include_all_day: bool = False,
) -> EventListing:
    """
    Convert raw provider items into canonical events inside the window.

    Args:
        items: Provider-native items as returned by the adapter
        decode: Adapter decoder; raises MalformedResponseError for bad items
        time_min: Exclusive lower bound for event starts
        time_max: Exclusive upper bound for event ends
        include_all_day: Keep all-day events instead of dropping them

    Returns:
        EventListing with the retained events sorted by start, plus one
        MalformedItem per item that failed to decode
    """
    listing = EventListing()
    for index, item in enumerate(items):
        try:
            decoded = decode(item)
        except MalformedResponseError as exc:
            logger.debug("Skipping malformed calendar item %d: %s", index, exc)
            listing.malformed.append(MalformedItem(index=index, reason=str(exc)))
            continue

        for event in decoded:
            if event.all_day and not include_all_day:
                continue
            if not event_within_window(event, time_min, time_max):
                continue
            listing.events.append(event)

    listing.events.sort(key=lambda event: (event.start_date, event.end_date, event.summary))
    return listing
