import json
from datetime import datetime, timezone

import pytest

from backend.lambda_handlers import get_usage, send_alert
from backend.lib.local_store import LocalReadingStore
from backend.lib.prepaid_core.models import MeterReading

USER = "user-1"


class UserListingStore(LocalReadingStore):
    """Local store standing in for DynamoDB, including the user scan."""

    def get_all_users(self):
        return sorted({r["user_id"] for r in self._load(self.readings_file)})


@pytest.fixture
def store(tmp_path):
    db = UserListingStore(tmp_path, tz=timezone.utc)
    for hour, value in ((7, 60), (21, 25)):
        when = datetime(2025, 11, 1, hour, tzinfo=timezone.utc)
        db.insert_reading(USER, MeterReading("", when, value, "morning" if hour == 7 else "night"))
    return db


class FakeNotifier:
    def __init__(self):
        self.low = []
        self.missed = []
        self.summaries = []

    def send_low_balance_alert(self, user_id, balance, level, days_remaining=None):
        self.low.append((user_id, balance, level, days_remaining))
        return True

    def send_missed_readings_reminder(self, user_id, date, periods):
        self.missed.append((user_id, date, periods))
        return True

    def send_daily_summary(self, user_id, date, total_usage, balance, cost=None):
        self.summaries.append((user_id, date, total_usage, balance, cost))
        return True


def test_get_usage_summary(store, monkeypatch):
    monkeypatch.setattr(get_usage, "store", store)
    result = get_usage.lambda_handler({"queryStringParameters": {"user_id": USER}}, None)
    assert result["statusCode"] == 200
    body = json.loads(result["body"])
    assert body["averageUsage"] == 35
    assert body["dailyUsage"][0]["date"] == "2025-11-01"


def test_get_usage_by_month(store, monkeypatch):
    monkeypatch.setattr(get_usage, "store", store)
    event = {"queryStringParameters": {"user_id": USER, "period": "month"}}
    body = json.loads(get_usage.lambda_handler(event, None)["body"])
    assert body["data"] == [{"period": "2025-11", "total": 35}]


@pytest.mark.parametrize("params", [None, {"period": "day"}, {"user_id": USER, "period": "year"}])
def test_get_usage_bad_request(store, monkeypatch, params):
    monkeypatch.setattr(get_usage, "store", store)
    assert get_usage.lambda_handler({"queryStringParameters": params}, None)["statusCode"] == 400


def test_check_user_sends_low_balance_and_missed(store):
    notifier = FakeNotifier()
    now = datetime(2025, 11, 2, 23, 0, tzinfo=timezone.utc)

    result = send_alert.check_user(store, notifier, USER, now)

    assert result["level"] == "warning"
    assert result["low_balance_alert"] is True
    assert notifier.low == [(USER, 25, "warning", 0.7)]
    assert result["missed"] == ["morning", "evening", "night"]
    assert notifier.missed == [(USER, "2025-11-02", ["morning", "evening", "night"])]


def test_check_user_without_readings(store):
    notifier = FakeNotifier()
    result = send_alert.check_user(store, notifier, "nobody", datetime.now(timezone.utc))
    assert result == {"user_id": "nobody", "low_balance_alert": False, "missed_alert": False,
                      "summary_sent": False}
    assert notifier.low == []


def test_scheduled_run_checks_every_user(store, monkeypatch):
    store.insert_reading("user-2", MeterReading(
        "", datetime(2025, 11, 1, 7, tzinfo=timezone.utc), 400, "morning"))
    notifier = FakeNotifier()
    monkeypatch.setattr(send_alert, "store", store)
    monkeypatch.setattr(send_alert, "sns", notifier)

    result = send_alert.lambda_handler({"source": "aws.events"}, None)

    body = json.loads(result["body"])
    assert body["checked"] == 2
    levels = {r["user_id"]: r.get("level") for r in body["results"]}
    assert levels == {USER: "warning", "user-2": "ok"}
    assert [call[0] for call in notifier.low] == [USER]


def test_api_call_needs_user_id(store, monkeypatch):
    monkeypatch.setattr(send_alert, "store", store)
    monkeypatch.setattr(send_alert, "sns", FakeNotifier())
    result = send_alert.lambda_handler({"queryStringParameters": {}}, None)
    assert result["statusCode"] == 400


def test_check_user_sends_yesterdays_summary(store):
    notifier = FakeNotifier()
    now = datetime(2025, 11, 2, 9, 0, tzinfo=timezone.utc)

    result = send_alert.check_user(store, notifier, USER, now)

    assert result["summary_sent"] is True
    assert notifier.summaries == [(USER, "2025-11-01", 35, 25, None)]


def test_no_summary_for_a_day_without_readings(store):
    notifier = FakeNotifier()
    result = send_alert.check_user(store, notifier, USER, datetime(2025, 11, 5, 9, 0, tzinfo=timezone.utc))
    assert result["summary_sent"] is False
    assert notifier.summaries == []
