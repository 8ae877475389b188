"""
S3Config - Connection settings for S3/MinIO storage.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .blob_ref import Tier


def _env_flag(name: str, default: str = 'true') -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes', 'y', 't')


@dataclass
class S3Config:
    """
    S3 configuration.

    Attributes:
        endpoint: S3 endpoint URL (None for AWS default)
        bucket: Default bucket, used for any tier without its own bucket
        prefix: Key prefix inside each bucket
        access_key: Access key id
        secret_key: Secret access key
        region: Region name
        verify_ssl: Verify TLS certificates
        tier_buckets: Optional bucket per tier
        storage_classes: Optional S3 storage class per tier
    """
    endpoint: Optional[str] = None
    bucket: Optional[str] = None
    prefix: str = ''
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: Optional[str] = None
    verify_ssl: bool = True
    tier_buckets: Dict[Tier, str] = field(default_factory=dict)
    storage_classes: Dict[Tier, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> 'S3Config':
        """Build configuration from S3_* environment variables."""
        tier_buckets = {}
        storage_classes = {}
        for tier in Tier:
            bucket = os.getenv(f"S3_BUCKET_{tier.name}")
            if bucket:
                tier_buckets[tier] = bucket
            storage_class = os.getenv(f"S3_STORAGE_CLASS_{tier.name}")
            if storage_class:
                storage_classes[tier] = storage_class

        return cls(
            endpoint=os.getenv('S3_ENDPOINT'),
            bucket=os.getenv('S3_BUCKET'),
            prefix=os.getenv('S3_PREFIX', ''),
            access_key=os.getenv('S3_ACCESS_KEY'),
            secret_key=os.getenv('S3_SECRET_KEY'),
            region=os.getenv('S3_REGION', 'us-east-1'),
            verify_ssl=_env_flag('S3_VERIFY_SSL'),
            tier_buckets=tier_buckets,
            storage_classes=storage_classes,
        )

    def bucket_for(self, tier: Tier) -> str:
        """Bucket holding blobs of the given tier."""
        return self.tier_buckets.get(tier) or self.bucket

    def validate(self) -> List[str]:
        """Return a list of configuration errors (empty if valid)."""
        errors = []
        for tier in Tier:
            if not self.bucket_for(tier):
                errors.append(f"No bucket configured for {tier.value} tier (set S3_BUCKET or S3_BUCKET_{tier.name})")
        if bool(self.access_key) != bool(self.secret_key):
            errors.append("S3_ACCESS_KEY and S3_SECRET_KEY must be set together")
        return errors
