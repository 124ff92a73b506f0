from datetime import datetime, timezone


def get_current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes coming from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_milliseconds(value: datetime) -> int:
    return int(ensure_aware(value).timestamp() * 1000)


def format_relative_date(value: datetime, now: datetime | None = None) -> str:
    """
    Format a conversation timestamp for the conversation list.

    Within 24 hours: 'HH:MM'. One day ago: 'Yesterday'. Less than a week ago: short
    weekday ('Tue'). Older: short month and day ('Mar 5').
    """
    value = ensure_aware(value)
    now = ensure_aware(now) if now else get_current_timestamp()
    days = (now - value).days
    if days <= 0:
        return value.strftime("%H:%M")
    if days == 1:
        return "Yesterday"
    if days < 7:
        return value.strftime("%a")
    return f"{value:%b} {value.day}"
