from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

MORNING = "morning"
EVENING = "evening"
NIGHT = "night"
PERIODS = (MORNING, EVENING, NIGHT)

ORGANIC = "organic"
TOKEN = "token"


@dataclass
class MeterReading:
    """
    A point-in-time meter value. The meter counts down as electricity is used
    and only jumps up when a token purchase is applied.
    """
    id: str
    timestamp: datetime
    value: float
    period: str
    kind: str = ORGANIC

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "period": self.period,
            "kind": self.kind,
        }


@dataclass
class TokenPurchase:
    id: str
    timestamp: datetime
    units: float
    resulting_reading: float
    cost: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "units": self.units,
            "resultingReading": self.resulting_reading,
            "cost": self.cost,
        }


@dataclass
class DailyUsage:
    date: str
    total: float = 0.0
    morning: Optional[float] = None
    evening: Optional[float] = None
    night: Optional[float] = None
    reading_count: int = 0

    def to_dict(self) -> Dict:
        out = {"date": self.date, "total": self.total}
        # period values are display-only and omitted when absent
        for name in PERIODS:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


@dataclass
class UsageSummary:
    average_usage: float = 0.0
    peak_usage_date: str = ""
    peak_usage: float = 0.0
    total_tokens_purchased: float = 0.0
    daily_usage: List[DailyUsage] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "averageUsage": self.average_usage,
            "peakUsageDay": {"date": self.peak_usage_date, "usage": self.peak_usage},
            "totalTokensPurchased": self.total_tokens_purchased,
            "dailyUsage": [d.to_dict() for d in self.daily_usage],
        }


@dataclass
class DataAnomaly:
    """Meter value went up on a day with no token purchase to explain it."""
    date: str
    starting_reading: float
    ending_reading: float
    tokens_added: float

    @property
    def unexplained_increase(self) -> float:
        return round(self.ending_reading - self.starting_reading - self.tokens_added, 4)

    def to_dict(self) -> Dict:
        return {
            "date": self.date,
            "startingReading": self.starting_reading,
            "endingReading": self.ending_reading,
            "tokensAdded": self.tokens_added,
            "unexplainedIncrease": self.unexplained_increase,
        }


def slot_id(day: str, period: str) -> str:
    """Row key of the single organic reading allowed per (day, period)."""
    return f"slot#{day}#{period}"


def reading_to_record(user_id: str, reading: MeterReading) -> Dict:
    return {
        "user_id": user_id,
        "reading_id": reading.id,
        "timestamp": reading.timestamp.isoformat(),
        "value": reading.value,
        "period": reading.period,
        "kind": reading.kind,
    }


def reading_from_record(item: Dict) -> MeterReading:
    return MeterReading(
        id=item["reading_id"],
        timestamp=datetime.fromisoformat(item["timestamp"]),
        value=float(item["value"]),
        period=item["period"],
        kind=item.get("kind", ORGANIC),
    )


def token_to_record(user_id: str, token: TokenPurchase) -> Dict:
    return {
        "user_id": user_id,
        "token_id": token.id,
        "timestamp": token.timestamp.isoformat(),
        "units": token.units,
        "resulting_reading": token.resulting_reading,
        "cost": token.cost,
    }


def token_from_record(item: Dict) -> TokenPurchase:
    cost = item.get("cost")
    return TokenPurchase(
        id=item["token_id"],
        timestamp=datetime.fromisoformat(item["timestamp"]),
        units=float(item["units"]),
        resulting_reading=float(item["resulting_reading"]),
        cost=float(cost) if cost is not None else None,
    )
