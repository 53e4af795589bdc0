import pathlib
from datetime import timedelta, timezone

import pytest

from backend.lib.prepaid_core.errors import ValidationError
from backend.lib.prepaid_core.io import (
    check_period, parse_number, parse_readings_csv, parse_timestamp, parse_tokens_csv,
)


def test_parse_sample_readings_csv():
    p = pathlib.Path(__file__).parent / "sample_readings.csv"
    readings = parse_readings_csv(p.read_text(), timezone.utc)
    assert len(readings) == 5
    assert readings[0].value == 100
    assert readings[0].period == "morning"
    # blank period column falls back to the timestamp's period
    assert readings[4].period == "evening"
    assert all(r.kind == "organic" for r in readings)


def test_parse_sample_tokens_csv():
    p = pathlib.Path(__file__).parent / "sample_tokens.csv"
    tokens = parse_tokens_csv(p.read_text(), timezone.utc)
    assert len(tokens) == 1
    assert tokens[0].units == 50
    assert tokens[0].resulting_reading == 130
    assert tokens[0].cost == 100.0


def test_token_cost_is_optional():
    tokens = parse_tokens_csv("timestamp,units,resulting_reading\n2025-11-01T10:00:00Z,20,120\n")
    assert tokens[0].cost is None


def test_csv_errors_name_the_line():
    text = "timestamp,reading\n2025-11-01T07:00:00Z,100\n2025-11-01T17:00:00Z,-3\n"
    with pytest.raises(ValidationError, match="Line 3"):
        parse_readings_csv(text)


def test_csv_missing_column():
    with pytest.raises(ValidationError, match="reading"):
        parse_readings_csv("timestamp,kwh\n2025-11-01T07:00:00Z,1\n")


def test_csv_period_must_match_timestamp():
    with pytest.raises(ValidationError, match="morning"):
        parse_readings_csv("timestamp,reading,period\n2025-11-01T07:00:00Z,100,night\n")


@pytest.mark.parametrize("raw", [None, "", "abc", "nan", "inf", "-1", True])
def test_parse_number_rejects(raw):
    with pytest.raises(ValidationError):
        parse_number(raw, "reading")


def test_parse_number_zero():
    assert parse_number("0", "reading") == 0
    with pytest.raises(ValidationError, match="greater than 0"):
        parse_number(0, "units", allow_zero=False)
    assert parse_number("12.5", "units", allow_zero=False) == 12.5


def test_parse_timestamp():
    plus_two = timezone(timedelta(hours=2))
    ts = parse_timestamp("2025-11-01T05:00:00Z", plus_two)
    assert ts.hour == 7
    assert parse_timestamp("2025-11-01T07:00:00", plus_two).utcoffset() == timedelta(hours=2)
    with pytest.raises(ValidationError):
        parse_timestamp("yesterday")


def test_check_period():
    ts = parse_timestamp("2025-11-01T21:00:00Z", timezone.utc)
    assert check_period(None, ts) == "night"
    assert check_period("Night", ts) == "night"
    with pytest.raises(ValidationError):
        check_period("afternoon", ts)
