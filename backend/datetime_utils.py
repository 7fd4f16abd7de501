from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return a timezone-aware datetime in UTC."""
    return datetime.now(timezone.utc)


def now_utc_iso() -> str:
    """Return current UTC time as ISO-8601 string including offset."""
    return now_utc().isoformat()


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes coming from clients or old documents as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
