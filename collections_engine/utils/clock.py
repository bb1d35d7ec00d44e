"""Time helpers. All engine timestamps are naive UTC."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
