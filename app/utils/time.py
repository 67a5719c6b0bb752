"""
Time utilities. Every function takes the timezone explicitly.
"""

from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo

from dateutil import parser as dateutil_parser

# yyyy.mm.dd hh:MM
DATETIME_FORMAT = "%Y.%m.%d %H:%M"


def get_timezone(name: str) -> ZoneInfo:
    """Load the configured timezone by IANA name."""
    return ZoneInfo(name)


def now_in(tz: tzinfo) -> datetime:
    """Get the current time in the given timezone."""
    return datetime.now(tz)


def to_timezone(dt: datetime, tz: tzinfo) -> datetime:
    """
    Convert a datetime to the given timezone.

    Args:
        dt: Datetime to convert (can be naive or aware)
        tz: Target timezone

    Returns:
        Aware datetime in `tz`
    """
    if dt.tzinfo is None:
        # Assume naive datetime is already local to tz
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def minute_key(dt: datetime, tz: tzinfo) -> str:
    """Minute-resolution representation used to compare instants."""
    return to_timezone(dt, tz).strftime(DATETIME_FORMAT)


def datetime_to_str(dt: datetime, tz: tzinfo, with_zone: bool = True) -> str:
    """
    Format a datetime as 'yyyy.mm.dd hh:MM TZ' in the given timezone.

    Args:
        dt: Datetime to format
        tz: Display timezone
        with_zone: Whether to append the zone abbreviation

    Returns:
        Formatted string
    """
    local = to_timezone(dt, tz)
    if with_zone:
        return local.strftime(f"{DATETIME_FORMAT} %Z").strip()
    return local.strftime(DATETIME_FORMAT)


def str_to_datetime(value: str, tz: tzinfo) -> datetime:
    """
    Parse 'yyyy.mm.dd hh:MM' with an optional trailing zone abbreviation.

    Zone abbreviations are ambiguous, so the wall time is always interpreted
    in `tz`.

    Raises:
        ValueError: if the string does not match the pattern
    """
    parts = value.strip().split()
    if len(parts) not in (2, 3):
        raise ValueError(f"unexpected datetime format: {value!r}")
    naive = datetime.strptime(" ".join(parts[:2]), DATETIME_FORMAT)
    return naive.replace(tzinfo=tz)


def parse_inferred_datetime(value: str, tz: tzinfo) -> datetime:
    """
    Parse a datetime string returned by the model.

    The fixed pattern is tried first; ISO 8601 and other shapes fall back to
    dateutil. Naive results are interpreted in `tz`.

    Raises:
        ValueError: if nothing could be parsed
    """
    try:
        return str_to_datetime(value, tz)
    except ValueError:
        pass

    try:
        parsed = dateutil_parser.parse(value)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"unparsable datetime: {value!r}") from e
    return to_timezone(parsed, tz).replace(second=0, microsecond=0)


def get_relative_time_description(dt: datetime, now: datetime) -> str:
    """
    Get a human-readable relative time description.

    Args:
        dt: Target datetime
        now: Reference time, aware

    Returns:
        Relative description like "in 2 hours" or "in 3 days"
    """
    diff = dt - now
    seconds = diff.total_seconds()

    if seconds < 0:
        return "in the past"

    if seconds < 3600:  # Less than an hour
        minutes = int(seconds / 60)
        return f"in {minutes} minute{'s' if minutes != 1 else ''}"

    if seconds < 86400:  # Less than a day
        hours = int(seconds / 3600)
        return f"in {hours} hour{'s' if hours != 1 else ''}"

    days = diff.days
    return f"in {days} day{'s' if days != 1 else ''}"


def shorten(text: str, max_length: int) -> str:
    """Truncate `text` to `max_length` characters, marking the cut."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."
