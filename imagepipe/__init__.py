"""
Image variant processing pipeline for photographer galleries.

Uploads are accepted synchronously; workers derive resized variants in the
background, place them in hot, warm or cold storage, and record progress
that clients poll for.

Supports both S3 and local filesystem storage.
"""

__version__ = "1.0.0"

from .blob_ref import BlobRef, Tier
from .errors import (
    InvalidTransitionError,
    NotFoundError,
    PermanentProcessingError,
    PipelineError,
    ProcessingError,
    RecordGoneError,
    StorageQuotaError,
    TaskTimeoutError,
    TransientProcessingError,
    ValidationError,
    VersionConflictError,
)
from .variant_spec import VariantSpec, DEFAULT_VARIANT_SPECS
from .image_record import ImageRecord, VariantRecord, ProcessingStatus, VariantStatus
from .s3_config import S3Config
from .s3_client import S3Client
from .local_client import LocalConfig, LocalClient
from .metadata_extractor import MetadataExtractor, ImageMetadata
from .variant_generator import VariantGenerator, GeneratedVariant
from .storage_router import StorageRouter
from .state_store import StateStore, MemoryStateStore
from .job_queue import JobQueue, MemoryJobQueue, Task
from .worker import ImageProcessor, TaskOutcome, TaskResult
from .processing_stats import ProcessingStats
from .worker_pool import WorkerPool
from .ingestion import Ingestor
from .status_api import StatusService
from .reconciler import Reconciler
from .config import PipelineConfig, SqlConfig
from .pipeline import Pipeline

__all__ = [
    "BlobRef",
    "Tier",
    "PipelineError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "ProcessingError",
    "TransientProcessingError",
    "TaskTimeoutError",
    "PermanentProcessingError",
    "StorageQuotaError",
    "RecordGoneError",
    "VersionConflictError",
    "VariantSpec",
    "DEFAULT_VARIANT_SPECS",
    "ImageRecord",
    "VariantRecord",
    "ProcessingStatus",
    "VariantStatus",
    "S3Config",
    "S3Client",
    "LocalConfig",
    "LocalClient",
    "MetadataExtractor",
    "ImageMetadata",
    "VariantGenerator",
    "GeneratedVariant",
    "StorageRouter",
    "StateStore",
    "MemoryStateStore",
    "JobQueue",
    "MemoryJobQueue",
    "Task",
    "ImageProcessor",
    "TaskOutcome",
    "TaskResult",
    "ProcessingStats",
    "WorkerPool",
    "Ingestor",
    "StatusService",
    "Reconciler",
    "PipelineConfig",
    "SqlConfig",
    "Pipeline",
]
