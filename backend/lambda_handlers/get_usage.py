# backend/lambda_handlers/get_usage.py
"""
Lambda function returning a user's usage summary
Triggered by API Gateway
"""
import json
import logging
import os

from backend.lib.dynamodb_service import DynamoDBService
from backend.lib.prepaid_core.periods import resolve_timezone
from backend.lib.prepaid_core.processor import UsageReconciler

logger = logging.getLogger("prepaid.lambda.usage")
logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())

APP_TZ = resolve_timezone(os.getenv('APP_TIMEZONE', 'UTC'))
store = None


def get_store():
    global store
    if store is None:
        store = DynamoDBService(tz=APP_TZ)
    return store


def lambda_handler(event, context):
    """
    Query parameters:
    - user_id: Required
    - period: 'summary' (default), 'day' or 'month'
    """
    logger.info("Received event: %s", json.dumps(event))

    try:
        params = event.get('queryStringParameters') or {}
        user_id = params.get('user_id')
        period = params.get('period', 'summary')

        if not user_id:
            return response(400, {'error': 'user_id is required'})
        if period not in ('summary', 'day', 'month'):
            return response(400, {'error': "period must be 'summary', 'day' or 'month'"})

        db = get_store()
        reconciler = UsageReconciler(
            db.list_readings(user_id), db.list_token_purchases(user_id), tz=APP_TZ)

        if period == 'summary':
            return response(200, reconciler.summary().to_dict())

        usage = reconciler.daily_totals() if period == 'day' else reconciler.monthly_usage()
        return response(200, {
            'user_id': user_id,
            'period': period,
            'data': [{'period': k, 'total': v} for k, v in sorted(usage.items())]
        })

    except Exception as e:
        logger.exception("Usage lookup failed")
        return response(500, {'error': str(e)})


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'GET,POST,OPTIONS',
            'Access-Control-Allow-Headers': 'Content-Type'
        },
        'body': json.dumps(body)
    }
