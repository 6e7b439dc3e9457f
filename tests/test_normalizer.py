"""Tests for event decoding and the time-window filter."""

from typing import Any, List

from conftest import utc

from schej.domains.calendars.normalizer import event_within_window, normalize_events
from schej.domains.calendars.schemas import CalendarEvent
from schej.utils.errors import MalformedResponseError

TIME_MIN = utc(2024, 5, 6, 9)
TIME_MAX = utc(2024, 5, 6, 17)


def decode(item: Any) -> List[CalendarEvent]:
    """Minimal decoder: (summary, start_hour, end_hour[, all_day]) tuples."""
    if not isinstance(item, tuple):
        raise MalformedResponseError(f"not a tuple: {item!r}")
    summary, start_hour, end_hour, *rest = item
    return [
        CalendarEvent(
            summary=summary,
            start_date=utc(2024, 5, 6, start_hour),
            end_date=utc(2024, 5, 6, end_hour),
            all_day=bool(rest and rest[0]),
        )
    ]


class TestWindowFilter:
    """The filter keeps only events strictly inside the window."""

    def test_event_inside_window_is_kept(self):
        event = CalendarEvent(start_date=utc(2024, 5, 6, 10), end_date=utc(2024, 5, 6, 11))
        assert event_within_window(event, TIME_MIN, TIME_MAX)

    def test_event_touching_time_min_is_excluded(self):
        event = CalendarEvent(start_date=TIME_MIN, end_date=utc(2024, 5, 6, 10))
        assert not event_within_window(event, TIME_MIN, TIME_MAX)

    def test_event_touching_time_max_is_excluded(self):
        event = CalendarEvent(start_date=utc(2024, 5, 6, 16), end_date=TIME_MAX)
        assert not event_within_window(event, TIME_MIN, TIME_MAX)

    def test_event_crossing_boundary_is_excluded_not_clipped(self):
        items = [("early", 8, 10), ("late", 16, 18), ("spanning", 8, 18), ("inside", 12, 13)]

        listing = normalize_events(items, decode, TIME_MIN, TIME_MAX)

        assert [event.summary for event in listing] == ["inside"]
        assert listing[0].start_date == utc(2024, 5, 6, 12)
        assert listing[0].end_date == utc(2024, 5, 6, 13)


class TestNormalizeEvents:
    """Tests for normalize_events."""

    def test_malformed_item_is_recorded_and_others_survive(self):
        items = [("standup", 10, 11), {"broken": True}, ("lunch", 12, 13)]

        listing = normalize_events(items, decode, TIME_MIN, TIME_MAX)

        assert [event.summary for event in listing] == ["standup", "lunch"]
        assert listing.degraded
        assert len(listing.malformed) == 1
        assert listing.malformed[0].index == 1
        assert "not a tuple" in listing.malformed[0].reason

    def test_all_day_events_are_dropped_by_default(self):
        items = [("holiday", 10, 11, True), ("meeting", 12, 13)]

        assert [event.summary for event in normalize_events(items, decode, TIME_MIN, TIME_MAX)] == ["meeting"]

        included = normalize_events(items, decode, TIME_MIN, TIME_MAX, include_all_day=True)
        assert [event.summary for event in included] == ["holiday", "meeting"]

    def test_output_is_sorted_by_start_then_end(self):
        items = [("c", 14, 15), ("b", 10, 12), ("a", 10, 11)]

        listing = normalize_events(items, decode, TIME_MIN, TIME_MAX)

        assert [event.summary for event in listing] == ["a", "b", "c"]

    def test_normalizing_twice_gives_the_same_result(self):
        items = [("a", 10, 11), "junk", ("b", 12, 13)]

        first = normalize_events(items, decode, TIME_MIN, TIME_MAX)
        second = normalize_events(items, decode, TIME_MIN, TIME_MAX)

        assert first == second

    def test_empty_input_gives_empty_listing(self):
        listing = normalize_events([], decode, TIME_MIN, TIME_MAX)

        assert len(listing) == 0
        assert not listing.degraded
