from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def add_minutes(base: datetime, minutes: float) -> datetime:
    """Shift ``base`` forward by ``minutes`` (negative values clamp to zero)."""
    return base + timedelta(minutes=max(0.0, minutes))


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: object) -> Optional[datetime]:
    """Best-effort parse of a stored timestamp; ``None`` when unusable."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)
