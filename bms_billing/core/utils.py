from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def ts_to_dt(ts: int | float | None) -> datetime | None:
    if ts:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    return None


def dt_to_ts(value: datetime | None) -> int | None:
    value = as_utc(value)
    return int(value.timestamp()) if value else None
