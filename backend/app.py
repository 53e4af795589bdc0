"""
=============================================================================
ELECTRICITY TRACKER - MAIN FLASK APPLICATION
=============================================================================
REST API for a prepaid electricity meter tracker:
- Recording meter readings (live or backdated, one per morning/evening/night)
- Recording token purchases (prepaid top-ups)
- Daily / monthly usage reconciled against top-ups
- Balance, spending estimate, missed readings and spike detection
- CSV import of offline history
- Email alerts via SNS

Storage is DynamoDB when USE_DYNAMODB=true, otherwise JSON Lines files in
DATA_DIR.

How to run:
    python -m backend.app

Then visit: http://127.0.0.1:5000/summary?user_id=<id>
=============================================================================
"""
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from backend.lib.local_store import LocalReadingStore
from backend.lib.prepaid_core.errors import ConflictError, UpstreamUnavailable, ValidationError
from backend.lib.prepaid_core.estimator import BalanceEstimator, daily_summary, low_balance_level
from backend.lib.prepaid_core.io import parse_number, parse_readings_csv, parse_tokens_csv
from backend.lib.prepaid_core.periods import missed_readings, resolve_timezone
from backend.lib.prepaid_core.processor import UsageReconciler
from backend.lib.prepaid_core.submission import (
    ReadingSubmission, import_history, record_token_purchase,
)

# Must run before any environment variable is read
load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("prepaid.api")

# =============================================================================
# CONFIGURATION
# =============================================================================

# Single timezone basis for calendar days and morning/evening/night periods
APP_TZ = resolve_timezone(os.getenv('APP_TIMEZONE', 'UTC'))

DATA_DIR = Path(os.getenv('DATA_DIR', 'backend/data'))

# =============================================================================
# STORAGE - DynamoDB or local JSON Lines files
# =============================================================================

USE_DYNAMODB = os.getenv('USE_DYNAMODB', 'false').lower() == 'true'
store = None

if USE_DYNAMODB:
    try:
        from backend.lib.dynamodb_service import DynamoDBService
        store = DynamoDBService(tz=APP_TZ)
        if not store.create_table_if_not_exists():
            raise RuntimeError("tables unavailable")
        logger.info("DynamoDB storage enabled")
    except Exception as e:
        logger.warning("DynamoDB initialization failed: %s. Using local storage.", e)
        USE_DYNAMODB = False
        store = None

if store is None:
    store = LocalReadingStore(DATA_DIR, tz=APP_TZ)

# =============================================================================
# SNS - email alerts
# =============================================================================

USE_SNS = os.getenv('USE_SNS', 'false').lower() == 'true'
sns_service = None

if USE_SNS:
    try:
        from backend.lib.sns_service import SNSService
        sns_service = SNSService()
        sns_service.create_topic_if_not_exists()
        logger.info("SNS notifications enabled")
    except Exception as e:
        logger.warning("SNS initialization failed: %s. Notifications disabled.", e)
        USE_SNS = False
        sns_service = None

# =============================================================================
# S3 - archive of imported CSV files
# =============================================================================

USE_S3 = os.getenv('USE_S3_STORAGE', 'false').lower() == 'true'
s3_service = None

if USE_S3:
    try:
        from backend.lib.s3_service import S3Service
        s3_service = S3Service()
        s3_service.create_bucket_if_not_exists()
        logger.info("S3 archive enabled")
    except Exception as e:
        logger.warning("S3 initialization failed: %s. Imports will not be archived.", e)
        USE_S3 = False
        s3_service = None

app = Flask(__name__)

# =============================================================================
# ERROR HANDLERS
# =============================================================================


@app.errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(ConflictError)
def handle_conflict(e):
    return jsonify({
        "error": str(e),
        "existing": e.existing.to_dict(),
        "hint": "resubmit with override=true to replace the existing reading",
    }), 409


@app.errorhandler(UpstreamUnavailable)
def handle_upstream(e):
    logger.error("Upstream failure: %s", e)
    return jsonify({"error": "Storage temporarily unavailable, please retry", "retryable": True}), 503


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def _user_id(data=None) -> str:
    user_id = (data or {}).get("user_id") or request.args.get("user_id")
    if not user_id:
        raise ValidationError("user_id required")
    return user_id


def _reconciler(user_id: str) -> UsageReconciler:
    return UsageReconciler(store.list_readings(user_id), store.list_token_purchases(user_id), tz=APP_TZ)


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes")


def _balance_report(user_id: str) -> dict:
    reconciler = _reconciler(user_id)
    latest = reconciler.latest_reading()
    summary = reconciler.summary()
    balance = latest.value if latest else 0.0
    return {
        "user_id": user_id,
        "latest_reading": latest.to_dict() if latest else None,
        "balance": balance,
        "level": low_balance_level(balance) if latest else None,
        "average_usage": summary.average_usage,
        "days_remaining": BalanceEstimator.days_remaining(balance, summary.average_usage),
    }


# =============================================================================
# API ROUTES - READINGS AND TOKENS
# =============================================================================


@app.route("/", methods=["GET"])
def status():
    return jsonify({
        "service": "electricity-tracker",
        "storage": "dynamodb" if USE_DYNAMODB else "local",
        "timezone": str(APP_TZ),
        "sns_enabled": USE_SNS,
        "s3_enabled": USE_S3,
    })


@app.route("/readings", methods=["POST"])
def add_reading():
    """
    Record a meter reading.

    Request Body (JSON):
        {"user_id": "user-1", "reading": 812.5}
        {"user_id": "user-1", "reading": 790, "timestamp": "2025-11-01T21:00:00+02:00"}

    A second reading for the same day and period is rejected with 409 and the
    stored reading, unless "override": true is sent, which replaces it.

    HTTP Status Codes:
        201: reading added
        200: existing reading overwritten
        409: slot already has a reading
    """
    data = request.get_json(silent=True) or {}
    user_id = _user_id(data)

    flow = ReadingSubmission(store, user_id, tz=APP_TZ)
    reading = flow.submit(
        data.get("reading"),
        timestamp=data.get("timestamp"),
        period=data.get("period"),
        override=_flag(data.get("override", False)),
    )
    return jsonify({"reading": reading.to_dict(), "updated": flow.updated}), 200 if flow.updated else 201


@app.route("/readings", methods=["GET"])
def get_readings():
    """Raw readings for a user, oldest first."""
    user_id = _user_id()
    readings = sorted(store.list_readings(user_id), key=lambda r: r.timestamp)
    return jsonify({"user_id": user_id, "readings": [r.to_dict() for r in readings]})


@app.route("/tokens", methods=["POST"])
def add_token():
    """
    Record a token purchase.

    Request Body (JSON):
        {"user_id": "user-1", "units": 150, "cost": 300.0}

    The meter reading after the purchase (latest reading + units) is stored
    as a reading too.
    """
    data = request.get_json(silent=True) or {}
    user_id = _user_id(data)
    token, reading = record_token_purchase(
        store, user_id, data.get("units"), data.get("cost"), tz=APP_TZ)
    return jsonify({"token": token.to_dict(), "reading": reading.to_dict()}), 201


@app.route("/tokens", methods=["GET"])
def get_tokens():
    user_id = _user_id()
    tokens = sorted(store.list_token_purchases(user_id), key=lambda t: t.timestamp)
    return jsonify({"user_id": user_id, "tokens": [t.to_dict() for t in tokens]})


# =============================================================================
# API ROUTES - USAGE
# =============================================================================


@app.route("/summary", methods=["GET"])
def summary():
    """
    Usage summary: average daily usage, peak day, total tokens purchased and
    the per-day breakdown.
    """
    user_id = _user_id()
    return jsonify(_reconciler(user_id).summary().to_dict())


@app.route("/usage", methods=["GET"])
def usage():
    """
    Query Parameters:
        user_id (required)
        period (optional): 'day' or 'month' (default: 'day')

    Example Response:
        {"user_id": "user-1", "period": "month",
         "data": [{"period": "2025-11", "total": 212.4}]}
    """
    user_id = _user_id()
    period = request.args.get("period", "day").lower()
    if period not in ("day", "month"):
        raise ValidationError("period must be 'day' or 'month'")

    reconciler = _reconciler(user_id)
    data = reconciler.daily_totals() if period == "day" else reconciler.monthly_usage()
    return jsonify({
        "user_id": user_id,
        "period": period,
        "data": [{"period": k, "total": v} for k, v in sorted(data.items())],
        "total_units_used": reconciler.total_units_used(),
    })


@app.route("/anomalies", methods=["GET"])
def anomalies():
    """
    Usage spikes (day over day increase above threshold_pct, default 50) and
    days where the meter went up with no token purchase to explain it.
    """
    user_id = _user_id()
    threshold = parse_number(request.args.get("threshold_pct", 50.0), "threshold_pct")

    reconciler = _reconciler(user_id)
    spikes = reconciler.detect_spikes(threshold_pct=threshold)
    return jsonify({
        "user_id": user_id,
        "threshold_pct": threshold,
        "spikes": [{"date": d, "prev_usage": p, "curr_usage": c} for d, p, c in spikes],
        "data_anomalies": [a.to_dict() for a in reconciler.anomalies()],
    })


@app.route("/balance", methods=["GET"])
def balance():
    """Latest meter value, low balance level and estimated days remaining."""
    return jsonify(_balance_report(_user_id()))


@app.route("/estimate", methods=["GET"])
def estimate():
    """
    Average price paid per unit (from token purchases with a cost) and what
    the reconciled usage cost at that price.
    """
    user_id = _user_id()
    reconciler = _reconciler(user_id)
    estimator = BalanceEstimator(reconciler.tokens)
    return jsonify({
        "user_id": user_id,
        "cost_per_unit": estimator.cost_per_unit(),
        "total_units_used": reconciler.total_units_used(),
        "estimated_cost": estimator.estimate_cost(reconciler.daily_totals()),
        "monthly_cost": {
            month: estimator.estimate_cost({month: units})
            for month, units in sorted(reconciler.monthly_usage().items())
        },
    })


@app.route("/missed", methods=["GET"])
def missed():
    """Periods of today that are overdue for a reading."""
    user_id = _user_id()
    now = datetime.now(APP_TZ)
    return jsonify({
        "user_id": user_id,
        "date": now.strftime("%Y-%m-%d"),
        "missed": missed_readings(store.list_readings(user_id), now, APP_TZ),
    })


@app.route("/upload", methods=["POST"])
def upload():
    """
    Import offline history from a CSV file.

    Form fields: user_id, kind ('readings' or 'tokens'), file

    readings CSV:  timestamp,reading[,period]
    tokens CSV:    timestamp,units,resulting_reading[,cost]

    Readings whose (day, period) slot is already filled are skipped.
    """
    user_id = _user_id(request.form)
    if "file" not in request.files:
        raise ValidationError("No file uploaded")
    kind = (request.form.get("kind") or request.args.get("kind") or "readings").lower()
    if kind not in ("readings", "tokens"):
        raise ValidationError("kind must be 'readings' or 'tokens'")

    file = request.files["file"]
    content_bytes = file.read()
    try:
        content = content_bytes.decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError("File must be UTF-8 text")

    if kind == "readings":
        counts = import_history(store, user_id, readings=parse_readings_csv(content, APP_TZ), tz=APP_TZ)
    else:
        counts = import_history(store, user_id, tokens=parse_tokens_csv(content, APP_TZ), tz=APP_TZ)

    response = {"user_id": user_id, "upload_id": file.filename, "kind": kind, **counts}
    if USE_S3 and s3_service:
        s3_key = s3_service.upload_file(content_bytes, file.filename, user_id)
        if s3_key:
            response["s3_key"] = s3_key
    return jsonify(response), 202


@app.route("/uploads", methods=["GET"])
def list_uploads():
    """
    CSV files a user has imported, as archived in S3.

    Returns:
        JSON with the user's files (key, size, last_modified) and bucket name
    """
    if not USE_S3 or not s3_service:
        return jsonify({"error": "S3 storage not enabled"}), 400
    user_id = _user_id()
    return jsonify({"user_id": user_id, "files": s3_service.list_files(user_id),
                    "bucket": s3_service.bucket_name})


# =============================================================================
# API ROUTES - SNS (Email Notifications)
# =============================================================================


@app.route("/sns/status", methods=["GET"])
def sns_status():
    return jsonify({
        "sns_enabled": USE_SNS,
        "topic_arn": sns_service.topic_arn if sns_service else None
    })


@app.route("/sns/subscribe", methods=["POST"])
def sns_subscribe():
    """
    Request Body (JSON):
        {"email": "user@example.com"}
    """
    if not USE_SNS or not sns_service:
        return jsonify({"error": "SNS not enabled"}), 400
    data = request.get_json(silent=True) or {}
    if not data.get("email"):
        raise ValidationError("email required")

    subscription_arn = sns_service.subscribe_email(data["email"])
    if not subscription_arn:
        return jsonify({"error": "Failed to subscribe"}), 500
    return jsonify({
        "message": f"Subscription pending. Check {data['email']} for confirmation link.",
        "subscription_arn": subscription_arn
    })


@app.route("/sns/subscriptions", methods=["GET"])
def sns_subscriptions():
    """Subscribers to the alert topic and their status."""
    if not USE_SNS or not sns_service:
        return jsonify({"error": "SNS not enabled"}), 400
    return jsonify({"subscriptions": sns_service.list_subscriptions()})


@app.route("/sns/alert/low-balance", methods=["POST"])
def sns_low_balance_alert():
    """
    Request Body (JSON):
        {"user_id": "user-1"}

    Sends an alert when the latest reading is in the notice/warning/critical band.
    """
    if not USE_SNS or not sns_service:
        return jsonify({"error": "SNS not enabled"}), 400
    data = request.get_json(silent=True) or {}
    report = _balance_report(_user_id(data))

    sent = False
    if report["level"] not in (None, "ok"):
        sent = sns_service.send_low_balance_alert(
            report["user_id"], report["balance"], report["level"], report["days_remaining"])
    return jsonify({"level": report["level"], "balance": report["balance"], "alert_sent": sent})


@app.route("/sns/alert/spikes", methods=["POST"])
def sns_spike_alert():
    """
    Request Body (JSON):
        {"user_id": "user-1", "threshold_pct": 50.0}
    """
    if not USE_SNS or not sns_service:
        return jsonify({"error": "SNS not enabled"}), 400
    data = request.get_json(silent=True) or {}
    user_id = _user_id(data)
    threshold_pct = parse_number(data.get("threshold_pct", 50.0), "threshold_pct")

    spikes = _reconciler(user_id).detect_spikes(threshold_pct=threshold_pct)
    alerts_sent = 0
    for date, prev_usage, curr_usage in spikes:
        change_pct = (curr_usage - prev_usage) / prev_usage * 100
        if sns_service.send_spike_alert(user_id, date, prev_usage, curr_usage, change_pct):
            alerts_sent += 1

    return jsonify({"spikes_found": len(spikes), "alerts_sent": alerts_sent})



@app.route("/sns/alert/daily-summary", methods=["POST"])
def sns_daily_summary():
    """
    Request Body (JSON):
        {"user_id": "user-1", "date": "2025-11-01"}

    Emails the reconciled usage of one day (default: yesterday), the current
    meter balance and, when purchases carry a cost, the estimated spend.
    """
    if not USE_SNS or not sns_service:
        return jsonify({"error": "SNS not enabled"}), 400
    data = request.get_json(silent=True) or {}
    user_id = _user_id(data)
    date = data.get("date") or (datetime.now(APP_TZ) - timedelta(days=1)).strftime("%Y-%m-%d")

    summary = daily_summary(_reconciler(user_id), date)
    if summary is None:
        return jsonify({"user_id": user_id, "date": date, "alert_sent": False})
    sent = sns_service.send_daily_summary(user_id, **summary)
    return jsonify({"user_id": user_id, **summary, "alert_sent": sent})


if __name__ == "__main__":
    # Development server only; never enable debug in production
    app.run(debug=True)
