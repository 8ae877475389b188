"""
PipelineConfig - Runtime settings read from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from .ingestion import DEFAULT_MAX_UPLOAD_BYTES
from .local_client import LocalConfig
from .s3_config import S3Config

STORAGE_BACKENDS = ('s3', 'local')


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, '') else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, '') else default


@dataclass
class SqlConfig:
    """MySQL connection settings."""
    host: str = 'localhost'
    port: int = 3306
    user: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None
    pool_size: int = 8

    @classmethod
    def from_env(cls) -> 'SqlConfig':
        return cls(
            host=os.getenv('SQL_HOST', 'localhost'),
            port=_env_int('SQL_PORT', 3306),
            user=os.getenv('SQL_USER'),
            password=os.getenv('SQL_PASSWORD'),
            database=os.getenv('SQL_DATABASE'),
            pool_size=_env_int('SQL_POOL_SIZE', 8),
        )

    def validate(self) -> List[str]:
        errors = []
        if not self.user:
            errors.append("SQL_USER is required")
        if not self.database:
            errors.append("SQL_DATABASE is required")
        if not 1 <= self.pool_size <= 32:
            errors.append("SQL_POOL_SIZE must be between 1 and 32")
        return errors


@dataclass
class PipelineConfig:
    """
    Pipeline configuration.

    Attributes:
        storage_backend: 's3' or 'local'
        local_root: Root directory of the local backend
        local_prefix: Subdirectory within local_root
        blob_base_url: Public URL of server.py, used in local signed URLs
        signing_key: HMAC key for local signed URLs
        max_attempts: Retry budget per task
        backoff_base: First requeue delay in seconds
        backoff_max: Upper bound on the requeue delay
        task_timeout: Lease and per-task deadline in seconds
        worker_count: Worker threads per pool
        max_parallel_variants: Variants generated concurrently per task
        signed_url_ttl: Lifetime of URLs handed to polling clients
        max_upload_bytes: Largest accepted upload
        log_level: Logging level name
        s3: S3 settings
        sql: MySQL settings
    """
    storage_backend: str = 's3'
    local_root: Optional[str] = None
    local_prefix: str = 'imagepipe'
    blob_base_url: str = 'http://localhost:8080'
    signing_key: Optional[str] = None
    max_attempts: int = 3
    backoff_base: float = 5
    backoff_max: float = 300
    task_timeout: float = 300
    worker_count: int = 4
    max_parallel_variants: int = 2
    signed_url_ttl: int = 3600
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    log_level: str = 'INFO'
    s3: S3Config = field(default_factory=S3Config)
    sql: SqlConfig = field(default_factory=SqlConfig)

    @classmethod
    def from_env(cls) -> 'PipelineConfig':
        """Build configuration from environment variables."""
        return cls(
            storage_backend=os.getenv('STORAGE_BACKEND', 's3').lower(),
            local_root=os.getenv('LOCAL_ROOT'),
            local_prefix=os.getenv('LOCAL_PREFIX', 'imagepipe'),
            blob_base_url=os.getenv('BLOB_BASE_URL', 'http://localhost:8080'),
            signing_key=os.getenv('SIGNING_KEY'),
            max_attempts=_env_int('MAX_ATTEMPTS', 3),
            backoff_base=_env_float('BACKOFF_BASE_SECONDS', 5),
            backoff_max=_env_float('BACKOFF_MAX_SECONDS', 300),
            task_timeout=_env_float('TASK_TIMEOUT_SECONDS', 300),
            worker_count=_env_int('WORKER_COUNT', 4),
            max_parallel_variants=_env_int('MAX_PARALLEL_VARIANTS', 2),
            signed_url_ttl=_env_int('SIGNED_URL_TTL', 3600),
            max_upload_bytes=_env_int('MAX_UPLOAD_BYTES', DEFAULT_MAX_UPLOAD_BYTES),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            s3=S3Config.from_env(),
            sql=SqlConfig.from_env(),
        )

    def local_config(self) -> LocalConfig:
        return LocalConfig(
            root_path=self.local_root,
            prefix=self.local_prefix,
            base_url=self.blob_base_url,
            signing_key=self.signing_key,
        )

    def validate(self, require_sql: bool = True) -> List[str]:
        """Return a list of configuration errors (empty if valid)."""
        errors = []
        if self.storage_backend not in STORAGE_BACKENDS:
            errors.append(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, "
                f"got {self.storage_backend!r}"
            )
        elif self.storage_backend == 'local':
            errors.extend(self.local_config().validate())
        else:
            errors.extend(self.s3.validate())

        if self.max_attempts < 1:
            errors.append("MAX_ATTEMPTS must be at least 1")
        if self.backoff_base < 0 or self.backoff_max < self.backoff_base:
            errors.append("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS >= 0")
        if self.task_timeout <= 0:
            errors.append("TASK_TIMEOUT_SECONDS must be positive")
        if self.worker_count < 1:
            errors.append("WORKER_COUNT must be at least 1")
        if self.max_parallel_variants < 1:
            errors.append("MAX_PARALLEL_VARIANTS must be at least 1")
        if self.signed_url_ttl < 1:
            errors.append("SIGNED_URL_TTL must be positive")
        if self.max_upload_bytes < 1:
            errors.append("MAX_UPLOAD_BYTES must be positive")

        if require_sql:
            errors.extend(self.sql.validate())
        return errors
