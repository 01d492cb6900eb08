"""Wall-clock expiry checks for lock records."""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are stored as UTC by every persister
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(
    created: datetime,
    lock_expire_seconds: Optional[int],
    now: Optional[datetime] = None
) -> bool:
    """
    Whether a lock created at ``created`` has outlived ``lock_expire_seconds``.

    Expiry is disabled when ``lock_expire_seconds`` is None or 0. A lock is
    expired only when ``now`` is strictly after ``created + lock_expire_seconds``,
    so a record stamped in the future is never expired.
    """
    if not lock_expire_seconds:
        return False

    now = _as_utc(now or utcnow())
    deadline = _as_utc(created) + timedelta(seconds=lock_expire_seconds)
    return now > deadline

