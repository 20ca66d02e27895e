"""Timestamp helpers.

All coordination timestamps are timezone-aware UTC datetimes. Some backends
(SQLite) drop the zone on storage, so values read back are normalized here.
"""
import datetime


def utcnow() -> datetime.datetime:
    """Default clock for coordination storage.
    """
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_timezone_aware(dt: datetime.datetime, name: str = 'datetime') -> datetime.datetime:
    """Ensure datetime is timezone-aware.

    Args:
        dt: Datetime to check
        name: Name for error message

    Returns
        The datetime (unchanged if already aware)

    Raises
        ValueError: If datetime is naive
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError(f'{name} must be timezone-aware (has tzinfo), got naive datetime: {dt}')
    return dt


def as_utc(dt: datetime.datetime | None) -> datetime.datetime | None:
    """Return dt as an aware UTC datetime, treating naive values as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def utc_clock(clock: callable) -> callable:
    """Wrap clock so that every reading is converted to UTC.

    SQLite keeps the wall-clock digits and drops the offset, so values
    written from a non-UTC clock would read back shifted.
    """
    return lambda: as_utc(clock())
