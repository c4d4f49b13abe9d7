"""T+2 settlement date resolution.

A trade placed at any instant settles two business days later at 10:00
market-local time.  Saturdays and Sundays are skipped; exchange holidays are
not modelled.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

DEFAULT_SETTLEMENT_DAYS = 2
DEFAULT_SETTLEMENT_HOUR = 10
DEFAULT_MARKET_TIMEZONE = "Asia/Taipei"


def resolve_settlement_time(
    created_at: datetime,
    business_days: int = DEFAULT_SETTLEMENT_DAYS,
    hour: int = DEFAULT_SETTLEMENT_HOUR,
) -> datetime:
    """Return the settlement instant for an order created at *created_at*.

    Walks forward one calendar day at a time, counting only Mon-Fri, and
    pins the time of day once *business_days* have been counted.  The
    result keeps the tzinfo of *created_at*, so pass a market-local aware
    datetime.
    """
    current = created_at
    counted = 0
    while counted < business_days:
        current = current + timedelta(days=1)
        if current.weekday() < 5:
            counted += 1
    return current.replace(hour=hour, minute=0, second=0, microsecond=0)


def settlement_timestamp_ms(
    timestamp_ms: int,
    tz_name: str = DEFAULT_MARKET_TIMEZONE,
    business_days: int = DEFAULT_SETTLEMENT_DAYS,
    hour: int = DEFAULT_SETTLEMENT_HOUR,
) -> int:
    """Epoch-millisecond wrapper around :func:`resolve_settlement_time`."""
    local = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).astimezone(ZoneInfo(tz_name))
    settled = resolve_settlement_time(local, business_days=business_days, hour=hour)
    # settled is pinned to a whole second
    return int(settled.timestamp()) * 1000
