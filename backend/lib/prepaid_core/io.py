import csv
import math
from datetime import datetime, tzinfo
from io import StringIO
from typing import List, Optional

from .errors import ValidationError
from .models import ORGANIC, PERIODS, MeterReading, TokenPurchase
from .periods import period_for, to_local


def parse_number(raw, field: str, allow_zero: bool = True) -> float:
    """
    Convert form/JSON input to a float. Rejects text, NaN/inf, negatives,
    and zero when allow_zero is False.
    """
    if raw is None or raw == "" or isinstance(raw, bool):
        raise ValidationError(f"{field} is required")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if math.isnan(value) or math.isinf(value):
        raise ValidationError(f"{field} must be a number")
    if value < 0 or (value == 0 and not allow_zero):
        qualifier = "greater than 0" if not allow_zero else "0 or more"
        raise ValidationError(f"{field} must be {qualifier}")
    return value


def parse_timestamp(raw, tz: Optional[tzinfo] = None) -> datetime:
    """
    Accepts a datetime or an ISO8601 string, e.g. 2025-11-01T07:00:00Z.
    The result is expressed in tz (naive input is wall-clock time in tz).
    """
    if isinstance(raw, datetime):
        return to_local(raw, tz)
    if not raw or not isinstance(raw, str):
        raise ValidationError("timestamp is required")
    try:
        # Convert timestamp with Z to +00:00 for fromisoformat
        ts = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {raw}")
    return to_local(ts, tz)


def check_period(period: Optional[str], timestamp: datetime, tz: Optional[tzinfo] = None) -> str:
    """
    The period always follows the timestamp's hour. A caller-supplied period
    is only accepted when it agrees.
    """
    canonical = period_for(timestamp, tz)
    if period:
        period = period.strip().lower()
        if period not in PERIODS:
            raise ValidationError(f"period must be one of {', '.join(PERIODS)}")
        if period != canonical:
            raise ValidationError(
                f"{timestamp.strftime('%H:%M')} falls in the {canonical} period, not {period}")
    return canonical


def _rows(csv_text: str, required: List[str]):
    reader = csv.DictReader(StringIO(csv_text.strip()))
    missing = [c for c in required if c not in (reader.fieldnames or [])]
    if missing:
        raise ValidationError(f"CSV header missing: {', '.join(missing)}")
    for line_no, row in enumerate(reader, start=2):
        if any(not (row.get(c) or "").strip() for c in required):
            raise ValidationError(f"Missing field on line {line_no}: {row}")
        yield line_no, row


def parse_readings_csv(csv_text: str, tz: Optional[tzinfo] = None) -> List[MeterReading]:
    """
    Parse CSV text with header: timestamp,reading[,period]
    Ids are left blank; the store assigns them on insert.
    """
    readings = []
    for line_no, row in _rows(csv_text, ["timestamp", "reading"]):
        try:
            timestamp = parse_timestamp(row["timestamp"], tz)
            value = parse_number(row["reading"], "reading")
            period = check_period(row.get("period"), timestamp, tz)
        except ValidationError as e:
            raise ValidationError(f"Line {line_no}: {e}")
        readings.append(MeterReading(id="", timestamp=timestamp, value=value,
                                     period=period, kind=ORGANIC))
    return readings


def parse_tokens_csv(csv_text: str, tz: Optional[tzinfo] = None) -> List[TokenPurchase]:
    """
    Parse CSV text with header: timestamp,units,resulting_reading[,cost]
    """
    tokens = []
    for line_no, row in _rows(csv_text, ["timestamp", "units", "resulting_reading"]):
        try:
            cost = row.get("cost")
            tokens.append(TokenPurchase(
                id="",
                timestamp=parse_timestamp(row["timestamp"], tz),
                units=parse_number(row["units"], "units", allow_zero=False),
                resulting_reading=parse_number(row["resulting_reading"], "resulting_reading"),
                cost=parse_number(cost, "cost") if cost and cost.strip() else None,
            ))
        except ValidationError as e:
            raise ValidationError(f"Line {line_no}: {e}")
    return tokens
