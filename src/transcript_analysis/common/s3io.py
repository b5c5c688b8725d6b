"""
S3 I/O for analysis requests and artifacts.

Requests can be staged in S3 and finished Analysis documents are written back
as JSON, keyed by transcript id.
"""

import json
import os
from typing import Any, Dict, Optional
import boto3
from botocore.exceptions import ClientError
import logging

from transcript_analysis.common.errors import ConfigurationError
from transcript_analysis.models.types import Analysis

logger = logging.getLogger(__name__)


class S3Client:
    """JSON object access for one bucket."""

    def __init__(self, bucket_name: Optional[str] = None, region: Optional[str] = None, client: Any = None):
        """
        Initialize S3 client.

        Args:
            bucket_name: S3 bucket name (defaults to environment variable)
            region: AWS region (defaults to environment variable)
            client: Pre-built boto3 S3 client (tests inject a stub here)
        """
        self.bucket_name = bucket_name or os.getenv('BUCKET')
        self.region = region or os.getenv('REGION', 'us-east-1')

        if not self.bucket_name:
            raise ConfigurationError("BUCKET environment variable is required")

        self.client = client or boto3.client('s3', region_name=self.region)

    def read_json_file(self, key: str) -> Dict[str, Any]:
        """
        Read and parse a JSON file from S3.

        Args:
            key: S3 object key/path

        Returns:
            Parsed JSON data

        Raises:
            FileNotFoundError: If the object does not exist
            ValueError: If the object is not valid JSON
        """
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if e.response['Error']['Code'] == 'NoSuchKey':
                raise FileNotFoundError(f"File not found: s3://{self.bucket_name}/{key}") from e
            logger.error(f"S3 error reading {key}: {e}")
            raise

        content = response['Body'].read().decode('utf-8')
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse JSON from {key}: {e}")
            raise ValueError(f"Invalid JSON in file {key}: {e}") from e

    def write_json_file(self, key: str, data: Dict[str, Any], indent: int = 2) -> None:
        """
        Write data as a JSON file to S3.

        Args:
            key: S3 object key/path
            data: Data to serialize as JSON
            indent: JSON indentation for readability
        """
        content = json.dumps(data, indent=indent, ensure_ascii=False)
        try:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=content.encode('utf-8'),
                ContentType='application/json'
            )
        except ClientError as e:
            logger.error(f"S3 error writing {key}: {e}")
            raise
        logger.info(f"Successfully wrote file: s3://{self.bucket_name}/{key}")


class AnalysisStore:
    """Persists Analysis artifacts as JSON documents."""

    def __init__(self, s3_client: S3Client, prefix: str = "analyses"):
        self.s3 = s3_client
        self.prefix = prefix.strip("/")

    def key_for(self, transcript_id: str, analysis_id: str) -> str:
        return f"{self.prefix}/{transcript_id}/{analysis_id}.json"

    def save(self, analysis: Analysis, key: Optional[str] = None) -> str:
        target = key or self.key_for(analysis.transcript_id, analysis.id)
        self.s3.write_json_file(target, analysis.to_payload())
        return target
