from datetime import datetime, timezone, timedelta

# Fixed width keeps lexical order equal to time order in SQLite
DB_TIME_FORMAT = '%Y-%m-%d %H:%M:%S.%f'


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalise a datetime to aware UTC.
    Naive values are taken to already be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime) -> str:
    return as_utc(value).strftime(DB_TIME_FORMAT)


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def bucket_start(value: datetime, width_seconds: int) -> datetime:
    """
    Start of the fixed-width UTC bucket containing `value`.

    Epoch seconds are truncated to a multiple of the bucket width, so
    buckets never shift with the host's local time or DST.

    Example: width 60 maps 12:34:56.7 to 12:34:00
    """
    if width_seconds <= 0:
        raise ValueError("width_seconds must be positive")
    epoch = int(as_utc(value).timestamp())
    return datetime.fromtimestamp((epoch // width_seconds) * width_seconds, tz=timezone.utc)


def bucket_end(start: datetime, width_seconds: int) -> datetime:
    return start + timedelta(seconds=width_seconds)
