"""
=============================================================================
S3 SERVICE - Amazon S3 archive for imported CSV files
=============================================================================
Every CSV a user imports (offline readings, token history) is kept in S3 so
an import can be inspected or replayed later.

    Bucket: electricity-tracker-uploads
    Key:    imports/<user_id>/<YYYYMMDDTHHMMSSZ>_<filename>
=============================================================================
"""
import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

# boto3 - AWS SDK for Python
import boto3

# ClientError - Exception class for AWS API errors
from botocore.exceptions import ClientError

logger = logging.getLogger("prepaid.s3")


class S3Service:
    """
    Usage:
        s3 = S3Service()
        s3.create_bucket_if_not_exists()
        key = s3.upload_file(b"timestamp,reading\\n...", "readings.csv", "user-1")
    """

    def __init__(self, bucket_name: str = None, client=None):
        self.bucket_name = bucket_name or os.getenv('S3_BUCKET_NAME', 'electricity-tracker-uploads')
        self.region = os.getenv('AWS_REGION', 'us-east-1')

        if client is not None:
            self.s3_client = client
        else:
            session_token = os.getenv('AWS_SESSION_TOKEN')
            self.s3_client = boto3.client(
                's3',
                region_name=self.region,
                aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
                aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
                aws_session_token=session_token if session_token else None
            )

    def create_bucket_if_not_exists(self) -> bool:
        """
        Note: us-east-1 must not be given a LocationConstraint.
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] != '404':
                logger.error("Error checking bucket: %s", e)
                return False

        try:
            if self.region == 'us-east-1':
                self.s3_client.create_bucket(Bucket=self.bucket_name)
            else:
                self.s3_client.create_bucket(
                    Bucket=self.bucket_name,
                    CreateBucketConfiguration={'LocationConstraint': self.region}
                )
            logger.info("Created bucket: %s", self.bucket_name)
            return True
        except ClientError as e:
            logger.error("Failed to create bucket: %s", e)
            return False

    @staticmethod
    def import_key(user_id: str, filename: str, now: datetime = None) -> str:
        stamp = (now or datetime.now(timezone.utc)).strftime('%Y%m%dT%H%M%SZ')
        return f"imports/{user_id}/{stamp}_{filename}"

    def upload_file(self, file_content: bytes, filename: str, user_id: str,
                    content_type: str = 'text/csv') -> Optional[str]:
        """
        Returns the S3 key of the archived file, or None if the upload failed.
        """
        s3_key = self.import_key(user_id, filename)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=file_content,
                ContentType=content_type
            )
            return s3_key
        except ClientError as e:
            logger.error("Failed to upload to S3: %s", e)
            return None

    def list_files(self, user_id: str) -> List[Dict]:
        """Archived imports for one user: key, size, last_modified."""
        try:
            response = self.s3_client.list_objects_v2(
                Bucket=self.bucket_name,
                Prefix=f"imports/{user_id}/"
            )
            return [
                {
                    'key': obj['Key'],
                    'size': obj['Size'],
                    'last_modified': obj['LastModified'].isoformat()
                }
                for obj in response.get('Contents', [])
            ]
        except ClientError as e:
            logger.error("Failed to list files: %s", e)
            return []
