import re
from datetime import datetime, timedelta, timezone

NON_DIGIT_REGEX = re.compile(r"\D")
EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def extract_digits(value: str | None) -> str:
    """Strips everything but digits, e.g. '+55 11 99999-0000' -> '5511999990000'."""
    if not value:
        return ""
    return NON_DIGIT_REGEX.sub("", value)


def is_valid_email(email: str | None) -> bool:
    if not email:
        return False
    return bool(EMAIL_REGEX.match(email.strip()))


def truncate(value: str, max_length: int, suffix: str = "...") -> str:
    if len(value) <= max_length:
        return value
    return value[: max(max_length - len(suffix), 0)] + suffix


def to_rfc3339(value: datetime) -> str:
    """Formats a datetime the way the Google APIs expect it (UTC, 'Z' suffix)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def add_days(value: datetime, days: int) -> datetime:
    return value + timedelta(days=days)
