"""
ImageProcessor - Processes one queued task for one image.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .errors import (
    NotFoundError,
    PermanentProcessingError,
    RecordGoneError,
    StorageQuotaError,
    TaskTimeoutError,
    TransientProcessingError,
    VersionConflictError,
)
from .image_record import ImageRecord, ProcessingStatus, VariantStatus
from .job_queue import JobQueue, Task
from .metadata_extractor import MetadataExtractor
from .state_machine import transition
from .state_store import StateStore
from .storage_router import StorageRouter
from .variant_generator import VariantGenerator

P = ProcessingStatus


class TaskOutcome(str, Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'
    RETRYING = 'retrying'
    ABORTED = 'aborted'
    DUPLICATE = 'duplicate'


@dataclass
class TaskResult:
    """What happened to one delivered task."""
    image_id: str
    outcome: TaskOutcome
    bytes_generated: int = 0
    error: Optional[str] = None


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Requeue delay after a transient failure of ``attempt`` (1-based)."""
    return min(base * 2 ** (attempt - 1), maximum)


@dataclass
class _TaskContext:
    task: Task
    record: ImageRecord
    deadline: float
    lock: threading.Lock = field(default_factory=threading.Lock)
    gone: Optional[RecordGoneError] = None
    quota_exceeded: bool = False
    bytes_generated: int = 0


class ImageProcessor:
    """
    Runs the processing algorithm for a task.

    The processor is stateless between tasks and safe to share between
    worker threads. State is written to the store as each variant lands,
    so a crashed attempt resumes with the variants it already finished.
    """

    INTERRUPTED = "previous attempt did not finish"

    def __init__(
        self,
        store: StateStore,
        queue: JobQueue,
        router: StorageRouter,
        extractor: Optional[MetadataExtractor] = None,
        generator: Optional[VariantGenerator] = None,
        max_attempts: int = 3,
        backoff_base: float = 5,
        backoff_max: float = 300,
        task_timeout: float = 300,
        max_parallel_variants: int = 2,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize processor.

        Args:
            store: Processing state store
            queue: Job queue the tasks come from
            router: Storage tier router
            extractor: Metadata extractor (default instance if None)
            generator: Variant generator (default instance if None)
            max_attempts: Retry budget per task
            backoff_base: First requeue delay in seconds
            backoff_max: Upper bound on the requeue delay
            task_timeout: Seconds a task may run before it is stopped
            max_parallel_variants: Variants generated concurrently per task
            clock: Monotonic time source
            logger: Optional logger instance
        """
        self.store = store
        self.queue = queue
        self.router = router
        self.logger = logger or logging.getLogger(__name__)
        self.extractor = extractor or MetadataExtractor(self.logger)
        self.generator = generator or VariantGenerator(self.logger)
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.task_timeout = task_timeout
        self.max_parallel_variants = max(1, max_parallel_variants)
        self.clock = clock

    def process(self, task: Task) -> TaskResult:
        """
        Process one delivered task and ack or requeue it.

        Unexpected exceptions propagate without an ack; the lease then
        expires and the task is delivered again.
        """
        self.logger.info(
            f"Processing image {task.image_id} (attempt {task.attempt}/{self.max_attempts})"
        )
        try:
            return self._process(task)
        except VersionConflictError as e:
            # The other writer may hold a stale lease; the task must outlive it
            delay = backoff_delay(task.attempt, self.backoff_base, self.backoff_max)
            if self.queue.requeue(task, delay):
                self.logger.warning(
                    f"Image {task.image_id} changed during attempt {task.attempt}, requeued: {e}"
                )
            else:
                self.logger.warning(
                    f"Image {task.image_id} changed during attempt {task.attempt} "
                    f"and its lease was lost: {e}"
                )
            return TaskResult(task.image_id, TaskOutcome.ABORTED, error=str(e))
        except RecordGoneError as e:
            self.logger.info(f"Image {task.image_id} went away during processing, aborting: {e}")
            self._ack(task)
            return TaskResult(task.image_id, TaskOutcome.ABORTED)

    def _process(self, task: Task) -> TaskResult:
        record = self.store.get(task.image_id)
        if record is None:
            self.logger.info(f"Image {task.image_id} no longer exists; dropping task")
            self._ack(task)
            return TaskResult(task.image_id, TaskOutcome.ABORTED)

        if record.processing_status.is_terminal:
            self.logger.info(
                f"Image {task.image_id} already {record.processing_status.value}; "
                f"ignoring duplicate delivery"
            )
            self._ack(task)
            return TaskResult(task.image_id, TaskOutcome.DUPLICATE)

        if record.processing_status == P.PROCESSING:
            record = self._recover_interrupted(task, record)
            if record.processing_status.is_terminal:
                self._ack(task)
                return TaskResult(task.image_id, TaskOutcome(record.processing_status.value))

        transition(record, P.PROCESSING)
        self._save(record)

        ctx = _TaskContext(task=task, record=record, deadline=self.clock() + self.task_timeout)
        todo = self._variants_to_generate(record)

        data = None
        if todo or not record.has_metadata:
            try:
                data = self.router.get(record.original)
            except StorageQuotaError as e:
                ctx.quota_exceeded = True
                self._note_errors(record, todo, str(e))
                return self._conclude(ctx)
            except TransientProcessingError as e:
                self._note_errors(record, todo, f"could not read original: {e}")
                return self._conclude(ctx)
            except NotFoundError as e:
                if not self.store.exists(task.image_id):
                    raise RecordGoneError(f"Image {task.image_id} deleted") from e
                return self._fail_permanently(ctx, "original blob is missing")

        if not record.has_metadata:
            try:
                metadata = self.extractor.extract(data, record.content_type)
            except PermanentProcessingError as e:
                return self._fail_permanently(ctx, str(e))
            record.format = metadata.format
            record.content_type = metadata.content_type
            record.width = metadata.width
            record.height = metadata.height
            record.byte_size = metadata.byte_size
            self._save(record)

        if todo:
            self._generate_variants(ctx, data, todo)

        if ctx.gone:
            raise ctx.gone
        return self._conclude(ctx)

    # --- Steps -------------------------------------------------------------

    def _recover_interrupted(self, task: Task, record: ImageRecord) -> ImageRecord:
        """A delivery finding 'processing' means the previous attempt died."""
        self.logger.warning(
            f"Image {record.image_id} was left processing by an earlier attempt "
            f"(delivery {task.attempt})"
        )
        if record.variants_complete:
            transition(record, P.COMPLETED)
        elif task.attempt <= self.max_attempts:
            self._note_errors(record, record.pending_variants, self.INTERRUPTED)
            transition(record, P.RETRYING)
        else:
            for name in record.pending_variants:
                variant = record.variants[name]
                variant.mark_failed(variant.error or self.INTERRUPTED)
            transition(record, P.FAILED)
            self.logger.error(
                f"Image {record.image_id} failed: retry budget exhausted ({record.processing_errors})"
            )
        self._save(record)
        return record

    def _variants_to_generate(self, record: ImageRecord) -> List[str]:
        todo = []
        for name, variant in record.variants.items():
            if variant.status == VariantStatus.FAILED:
                continue
            if variant.status == VariantStatus.COMPLETED:
                try:
                    if variant.blob_ref and self.router.exists(variant.blob_ref):
                        continue
                except TransientProcessingError as e:
                    self.logger.warning(f"Cannot verify {name} of {record.image_id}, regenerating: {e}")
                self.logger.info(f"Variant {name} of {record.image_id} lost its blob; regenerating")
                variant.reset()
            todo.append(name)
        return todo

    def _generate_variants(self, ctx: _TaskContext, data: bytes, names: List[str]) -> None:
        workers = min(self.max_parallel_variants, len(names))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='variant') as executor:
            futures = {name: executor.submit(self._generate_variant, ctx, data, name) for name in names}

        for name, future in futures.items():
            error = future.exception()
            if error is None:
                continue
            variant = ctx.record.variants[name]
            if isinstance(error, RecordGoneError):
                ctx.gone = ctx.gone or error
            elif isinstance(error, (PermanentProcessingError, StorageQuotaError)):
                if isinstance(error, StorageQuotaError):
                    ctx.quota_exceeded = True
                variant.mark_failed(str(error))
            elif isinstance(error, TransientProcessingError):
                variant.error = str(error)
                self.logger.warning(f"Variant {name} of {ctx.record.image_id}: {error}")
            else:
                self.logger.error(
                    f"Unexpected error generating {name} of {ctx.record.image_id}",
                    exc_info=error
                )
                variant.error = f"{error.__class__.__name__}: {error}"

    def _generate_variant(self, ctx: _TaskContext, data: bytes, name: str) -> None:
        if ctx.gone:
            raise ctx.gone
        if self.clock() > ctx.deadline:
            raise TaskTimeoutError(f"task exceeded {self.task_timeout}s before {name} started")

        record = ctx.record
        spec = self.router.variant_specs[name]
        variant = self.generator.generate(data, spec)
        ref = self.router.variant_ref(record.gallery_id, record.image_id, name)

        if not self.store.exists(record.image_id):
            ctx.gone = RecordGoneError(f"Image {record.image_id} deleted")
            raise ctx.gone
        self.router.put(ref.tier, ref.key, variant.data, variant.content_type)

        with ctx.lock:
            record.variants[name].mark_completed(ref)
            ctx.bytes_generated += len(variant.data)
            try:
                self._save(record)
            except RecordGoneError as e:
                ctx.gone = e
                raise
        self.logger.info(
            f"Stored {name} of {record.image_id} in {ref.tier.value} tier "
            f"({variant.width}x{variant.height}, {len(variant.data)} bytes)"
        )

    def _conclude(self, ctx: _TaskContext) -> TaskResult:
        record, task = ctx.record, ctx.task

        if record.variants_complete:
            transition(record, P.COMPLETED)
            self._save(record)
            self._ack(task)
            self.logger.info(f"Image {record.image_id} completed")
            return TaskResult(record.image_id, TaskOutcome.COMPLETED, ctx.bytes_generated)

        if ctx.quota_exceeded:
            self._fail_pending(record, "not generated: storage quota exceeded")
            transition(record, P.FAILED)
            self._save(record)
            self._ack(task)
            self.logger.error(
                f"Image {record.image_id} failed: storage quota exceeded ({record.processing_errors})"
            )
            return TaskResult(record.image_id, TaskOutcome.FAILED, ctx.bytes_generated,
                              record.processing_errors)

        if record.pending_variants and task.attempt < self.max_attempts:
            delay = backoff_delay(task.attempt, self.backoff_base, self.backoff_max)
            transition(record, P.RETRYING)
            self._save(record)
            if self.queue.requeue(task, delay):
                self.logger.warning(
                    f"Image {record.image_id} will retry in {delay:.0f}s "
                    f"(attempt {task.attempt}/{self.max_attempts}): {record.processing_errors}"
                )
            else:
                self.logger.warning(
                    f"Image {record.image_id} is retrying but attempt {task.attempt} lost its lease; "
                    f"the current delivery carries the retry: {record.processing_errors}"
                )
            return TaskResult(record.image_id, TaskOutcome.RETRYING, ctx.bytes_generated,
                              record.processing_errors)

        if record.pending_variants:
            self._fail_pending(record, "retry budget exhausted")
        transition(record, P.FAILED)
        self._save(record)
        self._ack(task)
        self.logger.error(f"Image {record.image_id} failed: {record.processing_errors}")
        return TaskResult(record.image_id, TaskOutcome.FAILED, ctx.bytes_generated,
                          record.processing_errors)

    def _fail_permanently(self, ctx: _TaskContext, error: str) -> TaskResult:
        """Undecodable input: every unfinished variant fails, no retry."""
        record = ctx.record
        for variant in record.variants.values():
            if variant.status != VariantStatus.COMPLETED:
                variant.mark_failed(error)
        if record.variants_complete:
            return self._conclude(ctx)
        transition(record, P.FAILED)
        self._save(record)
        self._ack(ctx.task)
        self.logger.error(f"Image {record.image_id} failed permanently: {error}")
        return TaskResult(record.image_id, TaskOutcome.FAILED, error=record.processing_errors)

    # --- Helpers -----------------------------------------------------------

    @staticmethod
    def _note_errors(record: ImageRecord, names: List[str], error: str) -> None:
        for name in names:
            record.variants[name].error = error

    @staticmethod
    def _fail_pending(record: ImageRecord, fallback: str) -> None:
        for name in record.pending_variants:
            variant = record.variants[name]
            variant.mark_failed(variant.error or fallback)

    def _save(self, record: ImageRecord) -> ImageRecord:
        if record.processing_status.is_terminal:
            for problem in record.validate(self.router.variant_specs):
                self.logger.error(f"Image {record.image_id} is inconsistent: {problem}")
        return self.store.update(record)

    def _ack(self, task: Task) -> None:
        if not self.queue.ack(task):
            self.logger.warning(
                f"Attempt {task.attempt} of image {task.image_id} finished after losing its lease"
            )

