from datetime import datetime, timezone, tzinfo
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError
from .models import EVENING, MORNING, NIGHT, MeterReading

# hour (local) after which a missing reading for the period counts as missed
MISSED_AFTER_HOUR = ((MORNING, 8), (EVENING, 18), (NIGHT, 22))


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """
    name: IANA zone such as 'Africa/Johannesburg'. Empty or 'UTC' gives UTC.
    """
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {name}") from e


def to_local(ts: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """
    Express ts in the app's timezone basis. Naive timestamps are wall-clock
    time in tz. With tz=None the timestamp's own offset is the basis.
    """
    if tz is None:
        return ts
    if ts.tzinfo is None:
        return ts.replace(tzinfo=tz)
    return ts.astimezone(tz)


def period_from_hour(hour: int) -> str:
    hour = hour % 24
    if 5 <= hour < 12:
        return MORNING
    if 12 <= hour < 20:
        return EVENING
    return NIGHT


def period_for(ts: datetime, tz: Optional[tzinfo] = None) -> str:
    return period_from_hour(to_local(ts, tz).hour)


def local_date(ts: datetime, tz: Optional[tzinfo] = None) -> str:
    """Calendar day as 'YYYY-MM-DD' in the timezone basis."""
    return to_local(ts, tz).strftime("%Y-%m-%d")


def missed_readings(readings: Iterable[MeterReading], now: datetime,
                    tz: Optional[tzinfo] = None) -> List[str]:
    """
    Periods of the current local day that should have a reading by now but don't.
    Token-synthesised readings count, since they also record the meter value.
    """
    local_now = to_local(now, tz)
    today = local_now.strftime("%Y-%m-%d")
    seen = {r.period for r in readings if local_date(r.timestamp, tz) == today}
    return [
        period for period, hour in MISSED_AFTER_HOUR
        if local_now.hour >= hour and period not in seen
    ]
