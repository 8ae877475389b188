"""
S3Client - S3/MinIO storage backend with one bucket per tier.
"""

import logging
from typing import Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .blob_ref import Tier
from .errors import NotFoundError, StorageQuotaError, TransientProcessingError
from .s3_config import S3Config


class S3Client:
    """
    Wrapper for S3/MinIO operations.

    Translates botocore failures into the pipeline error taxonomy so callers
    never see ClientError.
    """

    NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound'}
    QUOTA_CODES = {
        'QuotaExceeded',
        'XMinioStorageFull',
        'XMinioAdminBucketQuotaExceeded',
        'InsufficientStorage',
        'ServiceQuotaExceededException',
    }

    def __init__(self, config: S3Config, logger: Optional[logging.Logger] = None):
        """
        Initialize S3 client.

        Args:
            config: S3 configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        self._client = boto3.client(
            's3',
            endpoint_url=config.endpoint,
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            region_name=config.region,
            config=Config(
                signature_version='s3v4',
                s3={'addressing_style': 'path'},
                retries={'max_attempts': 2, 'mode': 'standard'},
            ),
            verify=config.verify_ssl
        )

    @property
    def client(self):
        """Return the underlying boto3 client."""
        return self._client

    def full_key(self, tier: Tier, key: str) -> str:
        """Object key for a storage key: <prefix>/<tier>/<key>."""
        return f"{self.config.prefix}/{tier.value}/{key}".lstrip('/')

    def _translate(self, error: Exception, action: str, key: str) -> Exception:
        """Map a botocore exception onto the pipeline taxonomy."""
        if isinstance(error, ClientError):
            code = str(error.response.get('Error', {}).get('Code', ''))
            if code in self.NOT_FOUND_CODES:
                return NotFoundError(f"Object not found: {key}")
            if code in self.QUOTA_CODES:
                self.logger.error(f"Storage quota exceeded during {action} of {key}: {error}")
                return StorageQuotaError(f"Storage quota exceeded: {code}")
        return TransientProcessingError(f"S3 {action} failed for {key}: {error}")

    def put_object(
        self,
        tier: Tier,
        key: str,
        data: bytes,
        content_type: str = 'application/octet-stream'
    ) -> None:
        """Upload an object, overwriting any existing one at the key."""
        params = {
            'Bucket': self.config.bucket_for(tier),
            'Key': self.full_key(tier, key),
            'Body': data,
            'ContentType': content_type,
        }
        storage_class = self.config.storage_classes.get(tier)
        if storage_class:
            params['StorageClass'] = storage_class
        try:
            self._client.put_object(**params)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, 'put', key) from e

    def get_object(self, tier: Tier, key: str) -> bytes:
        """Download an object."""
        try:
            response = self._client.get_object(
                Bucket=self.config.bucket_for(tier), Key=self.full_key(tier, key)
            )
            return response['Body'].read()
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, 'get', key) from e

    def object_exists(self, tier: Tier, key: str) -> bool:
        """Check if an object exists."""
        try:
            self._client.head_object(Bucket=self.config.bucket_for(tier), Key=self.full_key(tier, key))
            return True
        except (ClientError, BotoCoreError) as e:
            error = self._translate(e, 'head', key)
            if isinstance(error, NotFoundError):
                return False
            raise error from e

    def delete_object(self, tier: Tier, key: str) -> None:
        """
        Delete an object.

        S3 deletes are silent for missing keys, so existence is checked first.

        Raises:
            NotFoundError: If the object does not exist
        """
        if not self.object_exists(tier, key):
            raise NotFoundError(f"Object not found: {key}")
        try:
            self._client.delete_object(Bucket=self.config.bucket_for(tier), Key=self.full_key(tier, key))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, 'delete', key) from e

    def generate_url(self, tier: Tier, key: str, ttl: int) -> str:
        """Generate a pre-signed GET URL valid for ``ttl`` seconds."""
        return self._client.generate_presigned_url(
            'get_object',
            Params={'Bucket': self.config.bucket_for(tier), 'Key': self.full_key(tier, key)},
            ExpiresIn=ttl
        )

    def list_keys(self, tier: Tier, prefix: str = '') -> Iterator[str]:
        """
        List keys in a tier, relative to the prefix and tier segment.

        Yields:
            Storage keys under ``prefix``
        """
        paginator = self._client.get_paginator('list_objects_v2')
        page_iterator = paginator.paginate(
            Bucket=self.config.bucket_for(tier),
            Prefix=self.full_key(tier, prefix),
        )

        strip = len(self.full_key(tier, ''))
        count = 0
        for page in page_iterator:
            for obj in page.get('Contents', []):
                count += 1
                if count % 1000 == 0:
                    self.logger.info(f"  Listed {count:,} objects in {tier.value} tier...")
                yield obj['Key'][strip:]
