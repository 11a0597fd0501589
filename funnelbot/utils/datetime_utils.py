from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """
    Get current UTC datetime as a timezone-aware datetime.

    Returns:
        datetime: Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to UTC timezone-aware datetime.

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: UTC timezone-aware datetime
    """
    if dt.tzinfo is None:
        # Assume naive datetime is in UTC
        return dt.replace(tzinfo=timezone.utc)
    else:
        return dt.astimezone(timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    return int(to_utc(dt).timestamp() * 1000)


def from_epoch_ms(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)


def next_time_of_day(
    candidate: datetime, hour: int, minute: int, zone: ZoneInfo
) -> datetime:
    """
    Align an instant to the next occurrence of a local wall-clock time.

    The local calendar date is taken in `zone` (not UTC). The zone offset is
    resolved for the target local time itself, so days on which the offset
    changes are handled correctly.

    Args:
        candidate: Earliest acceptable instant (aware)
        hour: Local hour, 0-23
        minute: Local minute, 0-59
        zone: Reference time zone

    Returns:
        datetime: UTC instant >= candidate at hour:minute local time
    """
    candidate = to_utc(candidate)
    local_date = candidate.astimezone(zone).date()

    aligned = datetime(
        local_date.year, local_date.month, local_date.day, hour, minute, tzinfo=zone
    ).astimezone(timezone.utc)

    if aligned < candidate:
        next_date = local_date + timedelta(days=1)
        aligned = datetime(
            next_date.year, next_date.month, next_date.day, hour, minute, tzinfo=zone
        ).astimezone(timezone.utc)

    return aligned
