"""Time helpers.

All DateTime columns hold naive UTC; TikTok event times are Unix seconds.
"""

from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_seconds(value: datetime) -> int:
    """Naive UTC datetime -> Unix seconds."""
    return int((value - EPOCH).total_seconds())


def from_epoch_seconds(seconds: int) -> datetime:
    """Unix seconds -> naive UTC datetime."""
    return EPOCH + timedelta(seconds=seconds)
