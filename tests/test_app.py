import io
import pathlib

import pytest

import backend.app as app_module
from backend.lib.local_store import LocalReadingStore
from backend.lib.prepaid_core.errors import UpstreamUnavailable

USER = "user-1"


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(app_module, "store", LocalReadingStore(tmp_path, tz=app_module.APP_TZ))
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c


def post_reading(client, value, timestamp, **extra):
    body = {"user_id": USER, "reading": value, "timestamp": timestamp, **extra}
    return client.post("/readings", json=body)


def test_status(client):
    body = client.get("/").get_json()
    assert body["storage"] == "local"
    assert body["timezone"] == "UTC"


def test_add_reading(client):
    resp = post_reading(client, 812.5, "2025-11-01T07:00:00Z")
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["updated"] is False
    assert body["reading"]["period"] == "morning"
    assert body["reading"]["value"] == 812.5


def test_duplicate_reading_returns_409_then_override(client):
    post_reading(client, 812.5, "2025-11-01T07:00:00Z")

    resp = post_reading(client, 800, "2025-11-01T10:00:00Z")
    assert resp.status_code == 409
    assert resp.get_json()["existing"]["value"] == 812.5

    resp = post_reading(client, 800, "2025-11-01T10:00:00Z", override=True)
    assert resp.status_code == 200
    assert resp.get_json()["updated"] is True

    readings = client.get(f"/readings?user_id={USER}").get_json()["readings"]
    assert [r["value"] for r in readings] == [800]


@pytest.mark.parametrize("body", [
    {"reading": 100},
    {"user_id": USER},
    {"user_id": USER, "reading": "lots"},
    {"user_id": USER, "reading": -1},
    {"user_id": USER, "reading": 10, "timestamp": "not a date"},
    {"user_id": USER, "reading": 10, "timestamp": "2025-11-01T07:00:00Z", "period": "night"},
])
def test_bad_reading_input_is_400(client, body):
    resp = client.post("/readings", json=body)
    assert resp.status_code == 400
    assert "error" in resp.get_json()


def test_token_purchase_and_summary(client):
    post_reading(client, 100, "2025-11-01T07:00:00Z")
    post_reading(client, 90, "2025-11-01T17:00:00Z")
    post_reading(client, 80, "2025-11-01T21:00:00Z")

    resp = client.post("/tokens", json={"user_id": USER, "units": 50, "cost": 100})
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["token"]["resultingReading"] == 130
    assert body["reading"]["kind"] == "token"

    tokens = client.get(f"/tokens?user_id={USER}").get_json()["tokens"]
    assert len(tokens) == 1

    summary = client.get(f"/summary?user_id={USER}").get_json()
    assert summary["totalTokensPurchased"] == 50
    assert summary["dailyUsage"][0] == {
        "date": "2025-11-01", "total": 20, "morning": 100, "evening": 90, "night": 80,
    }
    assert summary["peakUsageDay"] == {"date": "2025-11-01", "usage": 20}


def test_token_purchase_requires_units(client):
    resp = client.post("/tokens", json={"user_id": USER, "units": 0})
    assert resp.status_code == 400


def test_upload_and_usage_by_month(client):
    here = pathlib.Path(__file__).parent
    for kind, name in (("readings", "sample_readings.csv"), ("tokens", "sample_tokens.csv")):
        resp = client.post("/upload", data={
            "user_id": USER,
            "kind": kind,
            "file": (io.BytesIO((here / name).read_bytes()), name),
        }, content_type="multipart/form-data")
        assert resp.status_code == 202

    daily = client.get(f"/usage?user_id={USER}&period=day").get_json()
    assert daily["data"] == [
        {"period": "2025-11-01", "total": 20},
        {"period": "2025-11-02", "total": 38},
    ]
    monthly = client.get(f"/usage?user_id={USER}&period=month").get_json()
    assert monthly["data"] == [{"period": "2025-11", "total": 58}]
    assert monthly["total_units_used"] == 58

    estimate = client.get(f"/estimate?user_id={USER}").get_json()
    assert estimate["cost_per_unit"] == 2
    assert estimate["estimated_cost"] == 116


def test_upload_skips_occupied_slots(client):
    post_reading(client, 101, "2025-11-01T06:00:00Z")
    csv_bytes = b"timestamp,reading\n2025-11-01T07:00:00Z,100\n2025-11-01T21:00:00Z,80\n"
    resp = client.post("/upload", data={
        "user_id": USER, "file": (io.BytesIO(csv_bytes), "old.csv"),
    }, content_type="multipart/form-data")
    body = resp.get_json()
    assert body["readings"] == 1
    assert body["skipped"] == 1


def test_upload_without_file(client):
    resp = client.post("/upload", data={"user_id": USER}, content_type="multipart/form-data")
    assert resp.status_code == 400


def test_usage_rejects_unknown_period(client):
    assert client.get(f"/usage?user_id={USER}&period=week").status_code == 400


def test_anomalies(client):
    post_reading(client, 100, "2025-11-01T07:00:00Z")
    post_reading(client, 95, "2025-11-01T21:00:00Z")
    post_reading(client, 93, "2025-11-02T07:00:00Z")
    post_reading(client, 80, "2025-11-02T21:00:00Z")
    post_reading(client, 120, "2025-11-03T07:00:00Z")
    post_reading(client, 119, "2025-11-03T21:00:00Z")

    body = client.get(f"/anomalies?user_id={USER}&threshold_pct=50").get_json()
    assert body["spikes"] == [{"date": "2025-11-02", "prev_usage": 5, "curr_usage": 15}]
    assert [a["date"] for a in body["data_anomalies"]] == ["2025-11-03"]


def test_balance(client):
    post_reading(client, 60, "2025-11-01T07:00:00Z")
    post_reading(client, 25, "2025-11-01T21:00:00Z")
    body = client.get(f"/balance?user_id={USER}").get_json()
    assert body["balance"] == 25
    assert body["level"] == "warning"
    assert body["average_usage"] == 35
    assert body["days_remaining"] == 0.7


def test_balance_without_readings(client):
    body = client.get(f"/balance?user_id={USER}").get_json()
    assert body["latest_reading"] is None
    assert body["level"] is None


def test_missed(client):
    body = client.get(f"/missed?user_id={USER}").get_json()
    assert isinstance(body["missed"], list)


def test_sns_routes_disabled(client):
    assert client.get("/sns/status").get_json()["sns_enabled"] is False
    assert client.post("/sns/alert/low-balance", json={"user_id": USER}).status_code == 400
    assert client.get("/sns/subscriptions").status_code == 400
    assert client.post("/sns/alert/daily-summary", json={"user_id": USER}).status_code == 400
    assert client.get(f"/uploads?user_id={USER}").status_code == 400


class BrokenStore:
    def list_readings(self, user_id):
        raise UpstreamUnavailable("table unreachable")

    list_token_purchases = list_readings


def test_storage_outage_is_503(client, monkeypatch):
    monkeypatch.setattr(app_module, "store", BrokenStore())
    resp = client.get(f"/summary?user_id={USER}")
    assert resp.status_code == 503
    assert resp.get_json()["retryable"] is True


class FakeNotifier:
    topic_arn = "arn:aws:sns:us-east-1:123456789012:ElectricityAlerts"

    def __init__(self):
        self.sent = []

    def send_low_balance_alert(self, user_id, balance, level, days_remaining=None):
        self.sent.append(("low", user_id, balance, level))
        return True

    def send_spike_alert(self, user_id, date, prev_usage, curr_usage, change_pct):
        self.sent.append(("spike", date, change_pct))
        return True

    def send_daily_summary(self, user_id, date, total_usage, balance, cost=None):
        self.sent.append(("summary", date, total_usage, balance, cost))
        return True

    def list_subscriptions(self):
        return [{"Endpoint": "user@example.com", "SubscriptionArn": "PendingConfirmation"}]


def test_low_balance_alert(client, monkeypatch):
    notifier = FakeNotifier()
    monkeypatch.setattr(app_module, "USE_SNS", True)
    monkeypatch.setattr(app_module, "sns_service", notifier)

    post_reading(client, 30, "2025-11-01T07:00:00Z")
    post_reading(client, 15, "2025-11-01T21:00:00Z")
    body = client.post("/sns/alert/low-balance", json={"user_id": USER}).get_json()
    assert body == {"level": "critical", "balance": 15, "alert_sent": True}
    assert notifier.sent == [("low", USER, 15, "critical")]


def test_spike_alert(client, monkeypatch):
    notifier = FakeNotifier()
    monkeypatch.setattr(app_module, "USE_SNS", True)
    monkeypatch.setattr(app_module, "sns_service", notifier)

    post_reading(client, 100, "2025-11-01T07:00:00Z")
    post_reading(client, 95, "2025-11-01T21:00:00Z")
    post_reading(client, 93, "2025-11-02T07:00:00Z")
    post_reading(client, 80, "2025-11-02T21:00:00Z")
    body = client.post("/sns/alert/spikes", json={"user_id": USER}).get_json()
    assert body == {"spikes_found": 1, "alerts_sent": 1}
    assert notifier.sent == [("spike", "2025-11-02", 200.0)]


@pytest.mark.parametrize("threshold", ["nan", "inf", "-5", "lots"])
def test_anomalies_rejects_bad_threshold(client, threshold):
    resp = client.get(f"/anomalies?user_id={USER}&threshold_pct={threshold}")
    assert resp.status_code == 400


def test_subscriptions(client, monkeypatch):
    monkeypatch.setattr(app_module, "USE_SNS", True)
    monkeypatch.setattr(app_module, "sns_service", FakeNotifier())
    body = client.get("/sns/subscriptions").get_json()
    assert body["subscriptions"][0]["Endpoint"] == "user@example.com"


def test_daily_summary_alert(client, monkeypatch):
    notifier = FakeNotifier()
    monkeypatch.setattr(app_module, "USE_SNS", True)
    monkeypatch.setattr(app_module, "sns_service", notifier)

    post_reading(client, 100, "2025-11-01T07:00:00Z")
    post_reading(client, 88, "2025-11-01T21:00:00Z")
    body = client.post("/sns/alert/daily-summary",
                       json={"user_id": USER, "date": "2025-11-01"}).get_json()
    assert body["alert_sent"] is True
    assert body["total_usage"] == 12
    assert notifier.sent == [("summary", "2025-11-01", 12, 88, None)]

    body = client.post("/sns/alert/daily-summary",
                       json={"user_id": USER, "date": "2025-10-01"}).get_json()
    assert body["alert_sent"] is False
    assert len(notifier.sent) == 1


class FakeArchive:
    bucket_name = "electricity-tracker-uploads"

    def __init__(self):
        self.files = {}

    def upload_file(self, content, filename, user_id, content_type="text/csv"):
        key = f"imports/{user_id}/20251101T070000Z_{filename}"
        self.files.setdefault(user_id, []).append({"key": key, "size": len(content)})
        return key

    def list_files(self, user_id):
        return self.files.get(user_id, [])


def test_uploads_are_archived_and_listed(client, monkeypatch):
    archive = FakeArchive()
    monkeypatch.setattr(app_module, "USE_S3", True)
    monkeypatch.setattr(app_module, "s3_service", archive)

    csv_bytes = b"timestamp,reading\n2025-11-01T07:00:00Z,100\n"
    resp = client.post("/upload", data={
        "user_id": USER, "file": (io.BytesIO(csv_bytes), "old.csv"),
    }, content_type="multipart/form-data")
    assert resp.get_json()["s3_key"] == "imports/user-1/20251101T070000Z_old.csv"

    body = client.get(f"/uploads?user_id={USER}").get_json()
    assert body["bucket"] == "electricity-tracker-uploads"
    assert body["files"] == [{"key": "imports/user-1/20251101T070000Z_old.csv", "size": len(csv_bytes)}]
