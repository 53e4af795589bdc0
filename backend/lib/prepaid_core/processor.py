import logging
from collections import defaultdict
from datetime import tzinfo
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    ORGANIC, PERIODS, DailyUsage, DataAnomaly, MeterReading, TokenPurchase, UsageSummary,
)
from .periods import local_date, to_local

logger = logging.getLogger("prepaid.usage")


class UsageReconciler:
    """
    Turns a user's meter readings and token purchases into daily usage.

    The meter counts down, and a token purchase pushes it back up without any
    electricity being used, so a day's usage is

        max(0, start_of_day + tokens_bought_that_day - last_reading_of_day)

    where start_of_day is the previous day's last reading (or, on the first day,
    the day's own first reading).
    """

    def __init__(self, readings: Iterable[MeterReading],
                 tokens: Iterable[TokenPurchase] = (),
                 tz: Optional[tzinfo] = None):
        self.tz = tz
        # Store order is not trusted; reconcile in timestamp order
        self.readings = sorted(readings, key=lambda r: to_local(r.timestamp, tz))
        self.tokens = sorted(tokens, key=lambda t: to_local(t.timestamp, tz))
        self._days: Optional[List[DailyUsage]] = None
        self._anomalies: List[DataAnomaly] = []

    def _reconcile(self) -> Tuple[List[DailyUsage], List[DataAnomaly]]:
        readings_by_day: Dict[str, List[MeterReading]] = defaultdict(list)
        for r in self.readings:
            readings_by_day[local_date(r.timestamp, self.tz)].append(r)

        tokens_by_day: Dict[str, float] = defaultdict(float)
        for t in self.tokens:
            tokens_by_day[local_date(t.timestamp, self.tz)] += float(t.units)

        days = []
        anomalies = []
        carried = None
        for day in sorted(readings_by_day):
            day_readings = readings_by_day[day]
            first, last = day_readings[0], day_readings[-1]
            start = first.value if carried is None else carried
            added = tokens_by_day.get(day, 0.0)
            net = start + added - last.value

            if net < 0:
                anomaly = DataAnomaly(day, start, last.value, added)
                anomalies.append(anomaly)
                logger.warning(
                    "Meter rose by %.2f on %s with no token purchase to explain it; usage clamped to 0",
                    anomaly.unexplained_increase, day,
                )

            usage = DailyUsage(date=day, reading_count=len(day_readings))
            # A lone reading gives no delta for the day
            if len(day_readings) > 1:
                usage.total = round(max(0.0, net), 4)

            for period in PERIODS:
                candidates = [r for r in day_readings if r.period == period]
                organic = [r for r in candidates if r.kind == ORGANIC]
                chosen = (organic or candidates or [None])[0]
                if chosen is not None:
                    setattr(usage, period, chosen.value)

            days.append(usage)
            carried = last.value

        return days, anomalies

    def daily_usage(self) -> List[DailyUsage]:
        """Per-day breakdown in ascending date order."""
        if self._days is None:
            self._days, self._anomalies = self._reconcile()
        return self._days

    def daily_totals(self) -> Dict[str, float]:
        """
        Returns a dict keyed by 'YYYY-MM-DD' -> reconciled usage.
        """
        return {d.date: d.total for d in self.daily_usage()}

    def monthly_usage(self) -> Dict[str, float]:
        """
        Aggregates the reconciled daily totals into monthly totals (YYYY-MM),
        so month figures always add up to the dashboard's day figures.
        """
        monthly = defaultdict(float)
        for day_str, total in self.daily_totals().items():
            monthly[day_str[:7]] += total
        return {month: round(total, 4) for month, total in monthly.items()}

    def anomalies(self) -> List[DataAnomaly]:
        self.daily_usage()
        return list(self._anomalies)

    def total_units_used(self) -> float:
        return round(sum(d.total for d in self.daily_usage()), 4)

    def total_tokens_purchased(self) -> float:
        return round(sum(float(t.units) for t in self.tokens), 4)

    def latest_reading(self) -> Optional[MeterReading]:
        return self.readings[-1] if self.readings else None

    def summary(self) -> UsageSummary:
        days = self.daily_usage()
        summary = UsageSummary(
            total_tokens_purchased=self.total_tokens_purchased(),
            daily_usage=days,
        )

        # Days with nothing measurable stay out of the average
        used = [d.total for d in days if d.total > 0]
        if used:
            summary.average_usage = round(sum(used) / len(used), 4)

        peak = None
        for d in days:
            # strict '>' keeps the earliest date on ties
            if d.total > 0 and (peak is None or d.total > peak.total):
                peak = d
        if peak is not None:
            summary.peak_usage_date = peak.date
            summary.peak_usage = peak.total
        return summary

    def detect_spikes(self, threshold_pct: float = 50.0) -> List[Tuple[str, float, float]]:
        """
        Detects spikes where day N used more than threshold_pct over day N-1.
        Returns list of tuples: (date_str, prev_total, curr_total)
        """
        items = sorted(self.daily_totals().items())
        spikes = []
        for i in range(1, len(items)):
            prev_date, prev_val = items[i - 1]
            curr_date, curr_val = items[i]
            if prev_val == 0:
                continue
            change_pct = (curr_val - prev_val) / prev_val * 100
            if change_pct > threshold_pct:
                spikes.append((curr_date, round(prev_val, 4), round(curr_val, 4)))
        return spikes
