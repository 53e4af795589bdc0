"""
=============================================================================
SNS SERVICE - Amazon Simple Notification Service Integration
=============================================================================
Sends email/SMS notifications to subscribers of one topic:
- low balance warnings (meter running out of units)
- reminders for missed morning/evening/night readings
- usage spike notifications
- daily usage summaries

Flow:
-----
[Tracker] --> [SNS Topic] --> [Email Subscriber 1]
                          --> [SMS Subscriber]

Notifications are best effort: a failed publish is logged and reported as
False, it never fails the request that triggered it.
=============================================================================
"""
import logging
import os
from typing import Dict, List, Optional

# boto3 - AWS SDK for Python
import boto3

# ClientError - Exception class for AWS API errors
from botocore.exceptions import ClientError

logger = logging.getLogger("prepaid.sns")

LOW_BALANCE_MESSAGES = {
    "critical": "Your electricity balance is critically low. Purchase tokens immediately to avoid power interruption.",
    "warning": "Your electricity balance is running low. Consider purchasing tokens soon.",
    "notice": "Your electricity balance is below 50 units. You may want to purchase tokens.",
}


class SNSService:
    """
    Usage:
        sns = SNSService()
        sns.create_topic_if_not_exists()
        sns.subscribe_email("user@example.com")
        sns.send_low_balance_alert("user-1", 18.5, "critical", 2.1)
    """

    def __init__(self, topic_arn: str = None, client=None):
        """
        Environment Variables Used:
        - SNS_TOPIC_ARN: The ARN of an existing topic
        - SNS_TOPIC_NAME: Name for creating new topic
        - AWS credentials (ACCESS_KEY, SECRET_KEY, SESSION_TOKEN)
        """
        self.topic_arn = topic_arn or os.getenv('SNS_TOPIC_ARN')
        self.topic_name = os.getenv('SNS_TOPIC_NAME', 'ElectricityAlerts')
        self.region = os.getenv('AWS_REGION', 'us-east-1')

        if client is not None:
            self.sns_client = client
        else:
            session_token = os.getenv('AWS_SESSION_TOKEN')
            self.sns_client = boto3.client(
                'sns',
                region_name=self.region,
                aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
                aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
                aws_session_token=session_token if session_token else None
            )

    def create_topic_if_not_exists(self) -> Optional[str]:
        """
        create_topic is idempotent: an existing topic's ARN is returned as is.
        """
        try:
            response = self.sns_client.create_topic(Name=self.topic_name)
            self.topic_arn = response['TopicArn']
            logger.info("SNS topic ready: %s", self.topic_arn)
            return self.topic_arn
        except ClientError as e:
            logger.error("Failed to create SNS topic: %s", e)
            return None

    def subscribe_email(self, email: str) -> Optional[str]:
        """
        The subscriber has to click the confirmation link AWS emails them;
        until then the subscription is 'pending confirmation'.
        """
        if not self.topic_arn:
            logger.warning("No topic ARN configured")
            return None
        try:
            response = self.sns_client.subscribe(
                TopicArn=self.topic_arn,
                Protocol='email',
                Endpoint=email
            )
            return response['SubscriptionArn']
        except ClientError as e:
            logger.error("Failed to subscribe email: %s", e)
            return None

    def list_subscriptions(self) -> List[Dict]:
        if not self.topic_arn:
            return []
        try:
            response = self.sns_client.list_subscriptions_by_topic(TopicArn=self.topic_arn)
            return response.get('Subscriptions', [])
        except ClientError as e:
            logger.error("Failed to list subscriptions: %s", e)
            return []

    def send_alert(self, subject: str, message: str) -> bool:
        """
        Publish to every topic subscriber.

        subject: email subject line (SNS caps it at 100 characters)
        """
        if not self.topic_arn:
            logger.warning("No topic ARN configured")
            return False
        try:
            self.sns_client.publish(
                TopicArn=self.topic_arn,
                Subject=subject[:100],
                Message=message
            )
            return True
        except ClientError as e:
            logger.error("Failed to send alert: %s", e)
            return False

    def send_low_balance_alert(self, user_id: str, balance: float, level: str,
                               days_remaining: Optional[float] = None) -> bool:
        subject = f"Low Electricity Balance ({level}) - {user_id}"
        lines = [
            "Low Electricity Balance",
            "",
            f"Account: {user_id}",
            f"Meter Reading: {balance:.2f} units",
        ]
        if days_remaining is not None:
            lines.append(f"Estimated Days Remaining: {days_remaining:.1f}")
        lines += [
            "",
            LOW_BALANCE_MESSAGES.get(level, "Your electricity balance is low."),
            "",
            "---",
            "Electricity Tracker App",
        ]
        return self.send_alert(subject, "\n".join(lines))

    def send_missed_readings_reminder(self, user_id: str, date: str, periods: List[str]) -> bool:
        if not periods:
            return False
        subject = f"Missed Meter Readings - {date}"
        message = f"""
Meter Reading Reminder

Account: {user_id}
Date: {date}
Missing: {', '.join(periods)}

Record the missing readings (backdated if needed) to keep your usage accurate.

---
Electricity Tracker App
        """.strip()
        return self.send_alert(subject, message)

    def send_spike_alert(self, user_id: str, date: str, prev_usage: float,
                         curr_usage: float, change_pct: float) -> bool:
        """
        A spike is a day whose usage jumped well above the previous day's.
        """
        subject = f"Electricity Spike Detected - {user_id}"
        message = f"""
Electricity Usage Spike Detected

Account: {user_id}
Date: {date}

Previous Day: {prev_usage:.2f} units
Current Day: {curr_usage:.2f} units
Increase: {change_pct:.1f}%

A significant increase in electricity usage was detected!

---
Electricity Tracker App
        """.strip()
        return self.send_alert(subject, message)

    def send_daily_summary(self, user_id: str, date: str, total_usage: float,
                           balance: float, cost: Optional[float] = None) -> bool:
        subject = f"Daily Electricity Summary - {date}"
        cost_line = f"\nEstimated Spend: {cost:.2f}" if cost is not None else ""
        message = f"""
Daily Electricity Summary

Account: {user_id}
Date: {date}

Units Used: {total_usage:.2f}
Meter Reading: {balance:.2f}{cost_line}

---
Electricity Tracker App
        """.strip()
        return self.send_alert(subject, message)
