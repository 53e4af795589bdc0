# backend/run_local.py
"""
Print the usage summary for CSV files without starting the server.

    python -m backend.run_local readings.csv [tokens.csv] [--tz Africa/Johannesburg]
"""
import argparse
from pathlib import Path

from backend.lib.prepaid_core.io import parse_readings_csv, parse_tokens_csv
from backend.lib.prepaid_core.periods import resolve_timezone
from backend.lib.prepaid_core.processor import UsageReconciler


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reconcile meter readings against token purchases")
    parser.add_argument("readings_csv")
    parser.add_argument("tokens_csv", nargs="?")
    parser.add_argument("--tz", default="UTC", help="timezone used for days and periods")
    args = parser.parse_args(argv)

    tz = resolve_timezone(args.tz)
    readings = parse_readings_csv(Path(args.readings_csv).read_text(), tz)
    tokens = parse_tokens_csv(Path(args.tokens_csv).read_text(), tz) if args.tokens_csv else []

    summary = UsageReconciler(readings, tokens, tz=tz).summary()
    print(f"Parsed {len(readings)} readings and {len(tokens)} token purchases")
    for day in summary.daily_usage:
        periods = "  ".join(
            f"{name}={getattr(day, name)}" for name in ("morning", "evening", "night")
            if getattr(day, name) is not None
        )
        print(f" - {day.date}: {day.total:.2f} units  {periods}")
    print(f"Average daily usage: {summary.average_usage:.2f}")
    if summary.peak_usage_date:
        print(f"Peak day: {summary.peak_usage_date} ({summary.peak_usage:.2f})")
    print(f"Total tokens purchased: {summary.total_tokens_purchased:.2f}")


if __name__ == "__main__":
    main()
