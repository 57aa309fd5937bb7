from datetime import date, datetime, timedelta, timezone
from typing import Optional


EXTENSION_PERIOD = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps from storage are taken to be UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def extend(current_expiry: Optional[datetime], now: datetime) -> datetime:
    """Return the subscription expiry after one more paid period.

    Unexpired time is preserved: the new period starts at the later of ``now``
    and ``current_expiry``. Lapsed or missing subscriptions restart from ``now``.
    """
    now = _as_utc(now)
    start = now
    if current_expiry is not None:
        start = max(now, _as_utc(current_expiry))
    return start + EXTENSION_PERIOD


def settlement_period(now: datetime) -> date:
    return _as_utc(now).date()
