from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def with_timezone(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
