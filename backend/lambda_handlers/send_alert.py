# backend/lambda_handlers/send_alert.py
"""
Lambda function for the scheduled balance check
Triggered by CloudWatch Events (e.g. every evening) or API Gateway
"""
import json
import logging
import os
from datetime import datetime, timedelta

from backend.lib.dynamodb_service import DynamoDBService
from backend.lib.prepaid_core.estimator import BalanceEstimator, daily_summary, low_balance_level
from backend.lib.prepaid_core.periods import missed_readings, resolve_timezone
from backend.lib.prepaid_core.processor import UsageReconciler
from backend.lib.sns_service import SNSService

logger = logging.getLogger("prepaid.lambda.alert")
logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())

APP_TZ = resolve_timezone(os.getenv('APP_TIMEZONE', 'UTC'))
store = None
sns = None


def get_services():
    global store, sns
    if store is None:
        store = DynamoDBService(tz=APP_TZ)
    if sns is None:
        sns = SNSService()
    return store, sns


def lambda_handler(event, context):
    """
    API Gateway: checks the user in ?user_id=
    Scheduled:   checks every user in the readings table
    """
    logger.info("Received event: %s", json.dumps(event))

    try:
        db, notifier = get_services()
        if 'queryStringParameters' in event:
            params = event.get('queryStringParameters') or {}
            user_id = params.get('user_id')
            if not user_id:
                return response(400, {'error': 'user_id required'})
            users = [user_id]
        else:
            users = db.get_all_users()

        now = datetime.now(APP_TZ)
        results = [check_user(db, notifier, user_id, now) for user_id in users]
        return response(200, {'checked': len(results), 'results': results})

    except Exception as e:
        logger.exception("Balance check failed")
        return response(500, {'error': str(e)})


def check_user(db, notifier, user_id: str, now: datetime) -> dict:
    """Send low balance, missed reading and yesterday's summary alerts for one user."""
    readings = db.list_readings(user_id)
    reconciler = UsageReconciler(readings, db.list_token_purchases(user_id), tz=APP_TZ)
    latest = reconciler.latest_reading()
    result = {'user_id': user_id, 'low_balance_alert': False, 'missed_alert': False,
              'summary_sent': False}
    if latest is None:
        return result

    level = low_balance_level(latest.value)
    result['level'] = level
    if level != 'ok':
        days_left = BalanceEstimator.days_remaining(latest.value, reconciler.summary().average_usage)
        result['low_balance_alert'] = notifier.send_low_balance_alert(
            user_id, latest.value, level, days_left)

    missed = missed_readings(readings, now, APP_TZ)
    if missed:
        result['missed'] = missed
        result['missed_alert'] = notifier.send_missed_readings_reminder(
            user_id, now.strftime('%Y-%m-%d'), missed)

    yesterday = (now - timedelta(days=1)).strftime('%Y-%m-%d')
    summary = daily_summary(reconciler, yesterday)
    if summary is not None:
        result['summary_sent'] = notifier.send_daily_summary(user_id, **summary)
    return result


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*'
        },
        'body': json.dumps(body)
    }
