"""
WorkerPool - Fixed set of threads draining the job queue.
"""

import logging
import threading
from typing import List, Optional

from .job_queue import JobQueue
from .processing_stats import ProcessingStats
from .worker import ImageProcessor


class WorkerPool:
    """
    Runs ``worker_count`` threads, each looping dequeue -> process.

    A crash while processing one task is logged and the loop carries on;
    the task's lease expires and it is delivered again.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: ImageProcessor,
        worker_count: int = 4,
        poll_interval: float = 1.0,
        limit: Optional[int] = None,
        log_interval: int = 100,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize worker pool.

        Args:
            queue: Job queue to drain
            processor: Processor shared by all workers
            worker_count: Number of worker threads
            poll_interval: Seconds a worker waits on an empty queue
            limit: Optional number of tasks after which the pool stops
            log_interval: Log a progress summary every N tasks
            logger: Optional logger instance
        """
        self.queue = queue
        self.processor = processor
        self.worker_count = max(1, worker_count)
        self.poll_interval = poll_interval
        self.limit = limit
        self.log_interval = log_interval
        self.logger = logger or logging.getLogger(__name__)
        self.stats = ProcessingStats()
        self._stop_event = threading.Event()
        self._claim_lock = threading.Lock()
        self._claimed = 0
        self._threads: List[threading.Thread] = []
        self._drain = False

    def start(self, drain: bool = False) -> None:
        """
        Start the worker threads.

        Args:
            drain: Stop once the queue holds no tasks at all
        """
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._drain = drain
        self.stats = ProcessingStats()
        self.logger.info(f"Starting {self.worker_count} workers")
        for n in range(self.worker_count):
            thread = threading.Thread(target=self._run, name=f"worker-{n + 1}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Request the workers to stop after their current task."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the workers to exit; returns True if all have."""
        for thread in self._threads:
            thread.join(timeout)
        alive = any(t.is_alive() for t in self._threads)
        if not alive:
            self.logger.info(
                f"Workers finished: {self.stats.completed} completed, {self.stats.failed} failed, "
                f"{self.stats.retried} retried, {self.stats.aborted} aborted, "
                f"{self.stats.errors} errors ({self.stats.elapsed_seconds:.1f}s)"
            )
        return not alive

    def run(self, drain: bool = False) -> ProcessingStats:
        """Start the pool and block until it stops."""
        self.start(drain=drain)
        try:
            while not self.join(timeout=self.poll_interval):
                pass
        except KeyboardInterrupt:
            self.logger.info("Interrupted, stopping workers after current tasks")
            self.stop()
            self.join()
        return self.stats

    def _claim(self) -> bool:
        with self._claim_lock:
            if self.limit is not None and self._claimed >= self.limit:
                return False
            self._claimed += 1
            return True

    def _release(self) -> None:
        with self._claim_lock:
            self._claimed -= 1

    def _run(self) -> None:
        while not self._stop_event.is_set():
            if not self._claim():
                self.logger.info(f"Reached task limit ({self.limit})")
                self.stop()
                break

            task = self.queue.dequeue(timeout=self.poll_interval)
            if task is None:
                self._release()
                if self._drain and self.queue.pending_count() == 0:
                    break
                continue

            try:
                result = self.processor.process(task)
            except Exception as e:
                self.logger.exception(f"Unexpected error processing image {task.image_id}")
                self.stats.record_error(f"{task.image_id}: {e}")
                continue

            self.stats.record(result.outcome.value, result.bytes_generated)
            if self.log_interval and self.stats.processed % self.log_interval == 0:
                self.logger.info(
                    f"Progress: {self.stats.processed} tasks, {self.stats.completed} completed, "
                    f"{self.stats.failed} failed ({self.stats.rate_per_minute:.1f}/min)"
                )
