"""
Turns raw extractor output into the reminder candidates offered to the user.

The extractor uses midnight when it cannot infer a time of day, and it cannot
always tell AM from PM. Both cases are expanded into an extra candidate, then
duplicates and past instants are removed.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, List

from app.domain.reminder import RawCandidate, ReminderCandidate
from app.utils.time import minute_key, to_timezone


def expand_candidates(
    raw: Iterable[RawCandidate],
    default_hour: int,
    tz: tzinfo,
) -> List[ReminderCandidate]:
    """
    Keep every raw pair and append at most one synthetic twin right after it.

    Args:
        raw: Extractor output, in order
        default_hour: Hour used when the extractor fell back to midnight
        tz: Timezone the times of day are read in

    Returns:
        Originals and synthetic twins in expansion order
    """
    expanded = []

    for item in raw:
        when = to_timezone(item.when, tz)
        expanded.append(ReminderCandidate(message=item.message, when=when))

        # midnight is checked first: its hour is also < 12
        if when.hour == 0 and when.minute == 0:
            expanded.append(ReminderCandidate(
                message=item.message,
                when=when.replace(hour=default_hour, minute=0),
                synthetic=True,
            ))
        elif when.hour < 12:
            expanded.append(ReminderCandidate(
                message=item.message,
                when=(when.astimezone(timezone.utc) + timedelta(hours=12)).astimezone(tz),
                synthetic=True,
            ))

    return expanded


def deduplicate_candidates(
    candidates: Iterable[ReminderCandidate],
    tz: tzinfo,
) -> List[ReminderCandidate]:
    """Keep the first candidate for each minute-resolution local datetime."""
    seen = set()
    unique = []

    for candidate in candidates:
        key = minute_key(candidate.when, tz)
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)

    return unique


def filter_future(
    candidates: Iterable[ReminderCandidate],
    now: datetime,
) -> List[ReminderCandidate]:
    """Drop candidates that are not strictly after `now`."""
    return [c for c in candidates if c.when > now]


def resolve_candidates(
    raw: Iterable[RawCandidate],
    default_hour: int,
    tz: tzinfo,
    now: datetime,
) -> List[ReminderCandidate]:
    """
    Expand, deduplicate and filter extractor output.

    An empty result means there is nothing worth reminding about, whether the
    extractor returned nothing or everything it returned is in the past.
    """
    expanded = expand_candidates(raw, default_hour, tz)
    unique = deduplicate_candidates(expanded, tz)
    return filter_future(unique, now)
