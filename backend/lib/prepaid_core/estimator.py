from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Optional

from .models import TokenPurchase

# (level, balance below which it applies), most severe first
LOW_BALANCE_LEVELS = (("critical", 20.0), ("warning", 30.0), ("notice", 50.0))


def low_balance_level(balance: float) -> str:
    for level, limit in LOW_BALANCE_LEVELS:
        if balance < limit:
            return level
    return "ok"


def _round_money(value: float) -> float:
    # ROUND_HALF_UP rather than banker's rounding
    return float(Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))


class BalanceEstimator:
    def __init__(self, tokens: Iterable[TokenPurchase]):
        self.tokens = list(tokens)

    def cost_per_unit(self) -> Optional[float]:
        """
        Average price paid per unit over purchases that recorded a cost.
        None when no purchase carries a cost.
        """
        priced = [t for t in self.tokens if t.cost is not None]
        units = sum(float(t.units) for t in priced)
        if not units:
            return None
        return round(sum(float(t.cost) for t in priced) / units, 4)

    def estimate_cost(self, usage_by_period: Dict[str, float]) -> Optional[float]:
        """
        usage_by_period: dict like {'2025-11-01': 3.4, ...}
        returns spend at the average purchase price, rounded to 2 decimals
        """
        rate = self.cost_per_unit()
        if rate is None:
            return None
        total_units = sum(float(v) for v in usage_by_period.values())
        return _round_money(total_units * rate)

    @staticmethod
    def days_remaining(balance: float, average_daily_usage: float) -> Optional[float]:
        if average_daily_usage <= 0:
            return None
        return round(max(0.0, balance) / average_daily_usage, 1)


def daily_summary(reconciler, date: str) -> Optional[Dict]:
    """
    Figures for the daily summary notification of one day ('YYYY-MM-DD'):
    reconciled usage, latest meter value and estimated spend.
    None when the day has no readings.
    """
    totals = reconciler.daily_totals()
    if date not in totals:
        return None
    latest = reconciler.latest_reading()
    return {
        "date": date,
        "total_usage": totals[date],
        "balance": latest.value if latest else 0.0,
        "cost": BalanceEstimator(reconciler.tokens).estimate_cost({date: totals[date]}),
    }
