"""
=============================================================================
DYNAMODB SERVICE - Amazon DynamoDB storage for readings and token purchases
=============================================================================

Tables:
-------
MeterReadings
- user_id (String)    - Partition Key - all of a user's readings together
- reading_id (String) - Sort Key
    organic readings: "slot#<YYYY-MM-DD>#<period>"
    token readings:   "token-reading-<uuid>"
- timestamp (String)  - ISO8601 with offset
- value (Number), period (String), kind (String), created_at (String)

TokenPurchases
- user_id (String)    - Partition Key
- token_id (String)   - Sort Key
- timestamp, units, resulting_reading, cost, created_at

Because an organic reading's sort key is its (day, period) slot, a put with
attribute_not_exists(reading_id) is the uniqueness constraint: two concurrent
submissions for the same slot cannot both succeed. The loser gets a
ConditionalCheckFailedException, surfaced as ConflictError.

Example Item:
{
    "user_id": "user-1",
    "reading_id": "slot#2025-11-01#morning",
    "timestamp": "2025-11-01T07:02:00+02:00",
    "value": 812.5,
    "period": "morning",
    "kind": "organic",
    "created_at": "2025-11-01T05:02:01+00:00"
}
=============================================================================
"""
import logging
import os
import uuid
from datetime import datetime, timezone, tzinfo
from decimal import Decimal
from typing import Dict, List, Optional

# boto3 - AWS SDK for Python
import boto3
from boto3.dynamodb.conditions import Attr, Key

# ClientError - Exception class for AWS API errors
from botocore.exceptions import BotoCoreError, ClientError

from backend.lib.prepaid_core.errors import ConflictError, UpstreamUnavailable, ValidationError
from backend.lib.prepaid_core.models import (
    ORGANIC, MeterReading, TokenPurchase,
    reading_from_record, reading_to_record, slot_id, token_from_record, token_to_record,
)
from backend.lib.prepaid_core.periods import local_date, period_for

logger = logging.getLogger("prepaid.store")

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def _to_dynamo(record: Dict) -> Dict:
    # DynamoDB requires Decimal for numbers, not float; None values are dropped
    item = {}
    for k, v in record.items():
        if v is None:
            continue
        item[k] = Decimal(str(v)) if isinstance(v, float) else v
    return item


class DynamoDBService:
    """
    Storage backend on Amazon DynamoDB. Same interface as LocalReadingStore.

    Usage:
        db = DynamoDBService(tz=tz)
        db.create_table_if_not_exists()
        db.insert_reading("user-1", reading)
    """

    def __init__(self, readings_table: str = None, tokens_table: str = None,
                 tz: Optional[tzinfo] = None):
        """
        Table names come from the arguments, READINGS_TABLE_NAME /
        TOKENS_TABLE_NAME, or the defaults.
        """
        self.readings_table_name = readings_table or os.getenv('READINGS_TABLE_NAME', 'MeterReadings')
        self.tokens_table_name = tokens_table or os.getenv('TOKENS_TABLE_NAME', 'TokenPurchases')
        self.tz = tz
        self.region = os.getenv('AWS_REGION', 'us-east-1')

        # Session token is only set for temporary credentials
        session_token = os.getenv('AWS_SESSION_TOKEN')
        credentials = dict(
            region_name=self.region,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            aws_session_token=session_token if session_token else None,
        )

        # Resource for Table objects, client for describe_table
        self.dynamodb = boto3.resource('dynamodb', **credentials)
        self.client = boto3.client('dynamodb', **credentials)

        self.readings_table = self.dynamodb.Table(self.readings_table_name)
        self.tokens_table = self.dynamodb.Table(self.tokens_table_name)

    # -------------------------------------------------------------------------
    # table setup
    # -------------------------------------------------------------------------

    def _ensure_table(self, name: str, sort_key: str) -> bool:
        try:
            self.client.describe_table(TableName=name)
            logger.info("DynamoDB table '%s' exists", name)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceNotFoundException':
                logger.error("Error checking table %s: %s", name, e)
                return False

        try:
            table = self.dynamodb.create_table(
                TableName=name,
                KeySchema=[
                    {'AttributeName': 'user_id', 'KeyType': 'HASH'},
                    {'AttributeName': sort_key, 'KeyType': 'RANGE'},
                ],
                AttributeDefinitions=[
                    {'AttributeName': 'user_id', 'AttributeType': 'S'},
                    {'AttributeName': sort_key, 'AttributeType': 'S'},
                ],
                # On-demand pricing, no capacity planning needed
                BillingMode='PAY_PER_REQUEST',
            )
            table.wait_until_exists()
            logger.info("Created DynamoDB table '%s'", name)
            return True
        except ClientError as e:
            logger.error("Failed to create table %s: %s", name, e)
            return False

    def create_table_if_not_exists(self) -> bool:
        """Create both tables when missing. True when both are usable."""
        readings_ok = self._ensure_table(self.readings_table_name, 'reading_id')
        tokens_ok = self._ensure_table(self.tokens_table_name, 'token_id')
        return readings_ok and tokens_ok

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    def _query_all(self, table, user_id: str) -> List[Dict]:
        """Query every item in the user's partition, following pagination."""
        try:
            response = table.query(KeyConditionExpression=Key('user_id').eq(user_id))
            items = list(response.get('Items', []))
            # DynamoDB returns max 1MB of data per query
            while 'LastEvaluatedKey' in response:
                response = table.query(
                    KeyConditionExpression=Key('user_id').eq(user_id),
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                )
                items.extend(response.get('Items', []))
            return items
        except (ClientError, BotoCoreError) as e:
            logger.error("Query on %s failed for %s: %s", table.name, user_id, e)
            raise UpstreamUnavailable(f"DynamoDB query failed: {e}") from e

    @staticmethod
    def _created_at() -> str:
        return datetime.now(timezone.utc).isoformat()

    # -------------------------------------------------------------------------
    # readings
    # -------------------------------------------------------------------------

    def list_readings(self, user_id: str) -> List[MeterReading]:
        return [reading_from_record(item) for item in self._query_all(self.readings_table, user_id)]

    def find_slot_reading(self, user_id: str, day: str, period: str) -> Optional[MeterReading]:
        try:
            response = self.readings_table.get_item(
                Key={'user_id': user_id, 'reading_id': slot_id(day, period)})
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"DynamoDB get_item failed: {e}") from e
        item = response.get('Item')
        return reading_from_record(item) if item else None

    def latest_reading(self, user_id: str) -> Optional[MeterReading]:
        readings = self.list_readings(user_id)
        if not readings:
            return None
        return max(readings, key=lambda r: r.timestamp)

    def insert_reading(self, user_id: str, reading: MeterReading) -> MeterReading:
        """
        Organic readings are written with a condition on the slot key, so an
        occupied slot raises ConflictError carrying the stored reading.
        """
        if reading.kind == ORGANIC:
            reading_id = slot_id(local_date(reading.timestamp, self.tz), reading.period)
        else:
            reading_id = f"token-reading-{uuid.uuid4().hex}"
        stored = MeterReading(id=reading_id, timestamp=reading.timestamp, value=reading.value,
                              period=reading.period, kind=reading.kind)

        item = _to_dynamo(reading_to_record(user_id, stored))
        item['created_at'] = self._created_at()
        kwargs = {'Item': item}
        if reading.kind == ORGANIC:
            kwargs['ConditionExpression'] = Attr('reading_id').not_exists()

        try:
            self.readings_table.put_item(**kwargs)
        except ClientError as e:
            if e.response['Error']['Code'] == CONDITIONAL_CHECK_FAILED:
                existing = self.find_slot_reading(
                    user_id, local_date(reading.timestamp, self.tz), reading.period)
                logger.info("Slot %s already taken for %s", reading_id, user_id)
                raise ConflictError(existing or stored) from e
            raise UpstreamUnavailable(f"DynamoDB put_item failed: {e}") from e
        except BotoCoreError as e:
            raise UpstreamUnavailable(f"DynamoDB put_item failed: {e}") from e
        return stored

    def update_reading(self, user_id: str, reading_id: str, value: float,
                       timestamp: datetime) -> MeterReading:
        """Overwrite value/timestamp in place; the row key never changes."""
        period = period_for(timestamp, self.tz)
        if reading_id.startswith("slot#") and slot_id(local_date(timestamp, self.tz), period) != reading_id:
            raise ValidationError("New timestamp falls outside the reading's day and period")
        try:
            response = self.readings_table.update_item(
                Key={'user_id': user_id, 'reading_id': reading_id},
                UpdateExpression='SET #v = :v, #ts = :ts, #p = :p',
                ConditionExpression=Attr('reading_id').exists(),
                ExpressionAttributeNames={'#v': 'value', '#ts': 'timestamp', '#p': 'period'},
                ExpressionAttributeValues={
                    ':v': Decimal(str(value)),
                    ':ts': timestamp.isoformat(),
                    ':p': period,
                },
                ReturnValues='ALL_NEW',
            )
        except ClientError as e:
            if e.response['Error']['Code'] == CONDITIONAL_CHECK_FAILED:
                raise ValidationError(f"No reading {reading_id} for user {user_id}") from e
            raise UpstreamUnavailable(f"DynamoDB update_item failed: {e}") from e
        except BotoCoreError as e:
            raise UpstreamUnavailable(f"DynamoDB update_item failed: {e}") from e
        return reading_from_record(response['Attributes'])

    # -------------------------------------------------------------------------
    # token purchases
    # -------------------------------------------------------------------------

    def list_token_purchases(self, user_id: str) -> List[TokenPurchase]:
        return [token_from_record(item) for item in self._query_all(self.tokens_table, user_id)]

    def insert_token_purchase(self, user_id: str, token: TokenPurchase) -> TokenPurchase:
        stored = TokenPurchase(id=f"token-{uuid.uuid4().hex}", timestamp=token.timestamp,
                               units=token.units, resulting_reading=token.resulting_reading,
                               cost=token.cost)
        item = _to_dynamo(token_to_record(user_id, stored))
        item['created_at'] = self._created_at()
        try:
            self.tokens_table.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"DynamoDB put_item failed: {e}") from e
        return stored

    def delete_token_purchase(self, user_id: str, token_id: str):
        """Remove a purchase whose companion reading could not be stored."""
        try:
            self.tokens_table.delete_item(Key={'user_id': user_id, 'token_id': token_id})
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"DynamoDB delete_item failed: {e}") from e

    def get_all_users(self) -> List[str]:
        """
        Unique user ids in the readings table. Scans the whole table, so it is
        only meant for the scheduled alert job.
        """
        try:
            response = self.readings_table.scan(ProjectionExpression='user_id')
            users = {item['user_id'] for item in response.get('Items', [])}
            while 'LastEvaluatedKey' in response:
                response = self.readings_table.scan(
                    ProjectionExpression='user_id',
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                )
                users.update(item['user_id'] for item in response.get('Items', []))
            return sorted(users)
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"DynamoDB scan failed: {e}") from e
