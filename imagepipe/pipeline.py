"""
Pipeline - Wires configuration, storage, state and services together.
"""

import logging
from typing import Iterable, Optional

from .config import PipelineConfig
from .image_db import ImageDb
from .ingestion import Ingestor
from .job_queue import JobQueue, MemoryJobQueue
from .local_client import LocalClient
from .reconciler import Reconciler
from .s3_client import S3Client
from .state_store import MemoryStateStore, StateStore
from .status_api import StatusService
from .storage_router import StorageClient, StorageRouter
from .variant_spec import DEFAULT_VARIANT_SPECS, VariantSpec, variant_map
from .worker import ImageProcessor
from .worker_pool import WorkerPool


class Pipeline:
    """
    One assembled pipeline.

    Attributes:
        config: Settings the pipeline was built from
        storage: Storage backend
        store: Processing state store
        queue: Job queue
        router: Storage tier router
        ingestor: Upload, delete and re-trigger entry points
        status: Status polling service
        processor: Per-task processing algorithm
    """

    def __init__(
        self,
        config: PipelineConfig,
        storage: StorageClient,
        store: StateStore,
        queue: JobQueue,
        variant_specs: Iterable[VariantSpec] = DEFAULT_VARIANT_SPECS,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.storage = storage
        self.store = store
        self.queue = queue
        self.logger = logger or logging.getLogger(__name__)

        self.router = StorageRouter(storage, variant_map(variant_specs), self.logger)
        self.ingestor = Ingestor(
            store, queue, self.router,
            max_upload_bytes=config.max_upload_bytes,
            logger=self.logger
        )
        self.status = StatusService(store, self.router, config.signed_url_ttl, self.logger)
        self.processor = ImageProcessor(
            store, queue, self.router,
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            task_timeout=config.task_timeout,
            max_parallel_variants=config.max_parallel_variants,
            logger=self.logger
        )

    @staticmethod
    def storage_client(config: PipelineConfig, logger: Optional[logging.Logger] = None) -> StorageClient:
        """Build the configured storage backend."""
        if config.storage_backend == 'local':
            return LocalClient(config.local_config(), logger)
        return S3Client(config.s3, logger)

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        logger: Optional[logging.Logger] = None
    ) -> 'Pipeline':
        """
        Build a pipeline backed by MySQL and the configured storage.

        Raises:
            ValueError: If the configuration is invalid
        """
        logger = logger or logging.getLogger(__name__)
        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(error)
            raise ValueError("Pipeline configuration invalid")

        db = ImageDb(config.sql, visibility_timeout=config.task_timeout, logger=logger)
        return cls(config, cls.storage_client(config, logger), db, db, logger=logger)

    @classmethod
    def in_memory(
        cls,
        config: PipelineConfig,
        storage: Optional[StorageClient] = None,
        variant_specs: Iterable[VariantSpec] = DEFAULT_VARIANT_SPECS,
        logger: Optional[logging.Logger] = None
    ) -> 'Pipeline':
        """Build a single-process pipeline with in-memory state and queue."""
        storage = storage or cls.storage_client(config, logger)
        return cls(
            config,
            storage,
            MemoryStateStore(logger),
            MemoryJobQueue(visibility_timeout=config.task_timeout, logger=logger),
            variant_specs=variant_specs,
            logger=logger
        )

    def worker_pool(
        self,
        worker_count: Optional[int] = None,
        limit: Optional[int] = None,
        poll_interval: float = 1.0
    ) -> WorkerPool:
        return WorkerPool(
            self.queue,
            self.processor,
            worker_count=worker_count or self.config.worker_count,
            poll_interval=poll_interval,
            limit=limit,
            logger=self.logger
        )

    def reconciler(self, dry_run: bool = False) -> Reconciler:
        return Reconciler(self.store, self.router, dry_run=dry_run, logger=self.logger)
