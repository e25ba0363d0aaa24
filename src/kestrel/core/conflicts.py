"""
Calendar conflict detection over cached events.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, List, Optional, Tuple

from ..data.models.cache import CachedEvent, EventStatus

ONE_DAY = timedelta(days=1)


@dataclass
class EventConflict:
    """Two events whose time ranges overlap."""
    first: CachedEvent
    second: CachedEvent


def _local_midnight(instant: datetime, tz: tzinfo) -> datetime:
    # All-day dates are stored as UTC midnight; keep the date, not the instant
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    day = instant.astimezone(timezone.utc).date()
    return datetime.combine(day, time.min, tzinfo=tz)


def event_interval(event: CachedEvent, tz: tzinfo = timezone.utc) -> Optional[Tuple[datetime, datetime]]:
    """
    Half-open [start, end) interval an event occupies.
    
    All-day events cover whole local calendar days in tz: from midnight of
    their start day to midnight of their end day, and at least one day.
    
    Returns:
        (start, end), or None if the event has no start time
    """
    start, end = event.start_time, event.end_time
    if start is None:
        return None
    
    # Whole local days
    if event.all_day:
        day_start = _local_midnight(start, tz)
        day_end = day_start + ONE_DAY
        if end is not None:
            day_end = max(day_end, _local_midnight(end, tz))
        return day_start, day_end
    
    # Timed events; naive times are UTC
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end is None:
        end = start
    elif end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return start, end


def _can_conflict(event: CachedEvent) -> bool:
    return event.status != EventStatus.CANCELLED and event.busy is not False


def find_conflicts(events: Iterable[CachedEvent], tz: tzinfo = timezone.utc) -> List[EventConflict]:
    """
    Report every pair of busy, non-cancelled events that overlap.
    
    Intervals are half-open, so back-to-back events do not conflict. Pairs
    come out in input order: (events[i], events[j]) with i < j.
    
    Args:
        events: Events to check, in any order
        tz: Time zone whose calendar days all-day events occupy
    
    Returns:
        List[EventConflict]: Overlapping pairs
    """
    candidates = []
    for event in events:
        if not _can_conflict(event):
            continue
        interval = event_interval(event, tz)
        if interval is not None:
            candidates.append((event, interval))
    
    conflicts = []
    # Half-open overlap test on every pair
    for i, (first, (s1, e1)) in enumerate(candidates):
        for second, (s2, e2) in candidates[i + 1:]:
            if s1 < e2 and s2 < e1:
                conflicts.append(EventConflict(first, second))
    return conflicts
