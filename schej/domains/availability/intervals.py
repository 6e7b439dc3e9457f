"""Interval algebra over half-open UTC intervals."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List

from schej.domains.availability.schemas import TimeInterval


def merge_intervals(intervals: Iterable[TimeInterval]) -> List[TimeInterval]:
    """Union of ``intervals`` as a sorted list; touching intervals are joined."""
    merged: List[TimeInterval] = []
    for interval in sorted(intervals, key=lambda item: (item.start, item.end)):
        if merged and interval.start <= merged[-1].end:
            if interval.end > merged[-1].end:
                merged[-1] = TimeInterval(start=merged[-1].start, end=interval.end)
            continue
        merged.append(TimeInterval(start=interval.start, end=interval.end))
    return merged


def subtract_intervals(
    base: Iterable[TimeInterval],
    remove: Iterable[TimeInterval],
) -> List[TimeInterval]:
    """Parts of ``base`` not covered by any interval in ``remove``."""
    holes = merge_intervals(remove)
    result: List[TimeInterval] = []
    for interval in merge_intervals(base):
        cursor = interval.start
        for hole in holes:
            if hole.end <= cursor:
                continue
            if hole.start >= interval.end:
                break
            if hole.start > cursor:
                result.append(TimeInterval(start=cursor, end=hole.start))
            cursor = max(cursor, hole.end)
            if cursor >= interval.end:
                break
        if cursor < interval.end:
            result.append(TimeInterval(start=cursor, end=interval.end))
    return result


def clip_intervals(intervals: Iterable[TimeInterval], span: TimeInterval) -> List[TimeInterval]:
    """Intersect ``intervals`` with ``span``, dropping what falls outside."""
    clipped: List[TimeInterval] = []
    for interval in merge_intervals(intervals):
        start = max(interval.start, span.start)
        end = min(interval.end, span.end)
        if start < end:
            clipped.append(TimeInterval(start=start, end=end))
    return clipped


def slots_to_intervals(slots: Iterable[datetime], slot: timedelta) -> List[TimeInterval]:
    """Turn slot-start instants into merged intervals, each slot lasting ``slot``."""
    return merge_intervals(TimeInterval(start=start, end=start + slot) for start in slots)


def pad_intervals(intervals: Iterable[TimeInterval], padding: timedelta) -> List[TimeInterval]:
    """Widen every interval by ``padding`` on both sides and merge the result."""
    if padding <= timedelta(0):
        return merge_intervals(intervals)
    return merge_intervals(
        TimeInterval(start=interval.start - padding, end=interval.end + padding)
        for interval in intervals
    )
