"""
JobQueue - At-least-once delivery of image processing tasks.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class Task:
    """
    One delivery of a processing task.

    Attributes:
        task_id: Stable id across redeliveries
        image_id: Image to process
        attempt: 1-based delivery attempt
        receipt: Lease token of this delivery (None before dequeue)
    """
    task_id: str
    image_id: str
    attempt: int = 1
    receipt: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'task_id': self.task_id,
            'image_id': self.image_id,
            'attempt': self.attempt,
            'receipt': self.receipt,
        }


class JobQueue:
    """
    Interface shared by :class:`MemoryJobQueue` and :class:`imagepipe.image_db.ImageDb`.

    ``dequeue`` leases a task for the visibility timeout. A lease that is
    neither acked nor requeued expires and the task is delivered again with
    ``attempt + 1``. Acks and requeues holding an outdated receipt are
    ignored and return False.
    """

    def enqueue(self, image_id: str, delay: float = 0) -> Task:
        raise NotImplementedError

    def dequeue(self, timeout: float = 0) -> Optional[Task]:
        raise NotImplementedError

    def ack(self, task: Task) -> bool:
        raise NotImplementedError

    def requeue(self, task: Task, delay: float = 0) -> bool:
        raise NotImplementedError

    def pending_count(self) -> int:
        """Tasks not yet acked, whether waiting, delayed or leased."""
        raise NotImplementedError


@dataclass
class _Entry:
    task_id: str
    image_id: str
    attempt: int
    available_at: float
    sequence: int
    receipt: Optional[str] = None
    leased_until: Optional[float] = None


class MemoryJobQueue(JobQueue):
    """In-process queue with leases, delays and redelivery."""

    def __init__(
        self,
        visibility_timeout: float = 300,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize queue.

        Args:
            visibility_timeout: Seconds a dequeued task stays leased
            clock: Monotonic time source
            logger: Optional logger instance
        """
        self.visibility_timeout = visibility_timeout
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._cond = threading.Condition()
        self._entries: Dict[str, _Entry] = {}
        self._sequence = 0

    def enqueue(self, image_id: str, delay: float = 0) -> Task:
        with self._cond:
            self._sequence += 1
            entry = _Entry(
                task_id=uuid.uuid4().hex,
                image_id=image_id,
                attempt=1,
                available_at=self.clock() + delay,
                sequence=self._sequence,
            )
            self._entries[entry.task_id] = entry
            self._cond.notify()
        self.logger.debug(f"Enqueued task {entry.task_id} for image {image_id}")
        return Task(entry.task_id, image_id, entry.attempt)

    def _next_ready(self, now: float) -> Optional[_Entry]:
        ready = None
        for entry in self._entries.values():
            if entry.leased_until is not None and entry.leased_until > now:
                continue
            if entry.available_at > now:
                continue
            if ready is None or (entry.available_at, entry.sequence) < (ready.available_at, ready.sequence):
                ready = entry
        return ready

    def dequeue(self, timeout: float = 0) -> Optional[Task]:
        """Lease the next available task, waiting up to ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                now = self.clock()
                entry = self._next_ready(now)
                if entry is not None:
                    if entry.leased_until is not None:
                        # Lease expired without ack: redeliver
                        entry.attempt += 1
                        self.logger.warning(
                            f"Lease on task {entry.task_id} expired; redelivering "
                            f"image {entry.image_id} (attempt {entry.attempt})"
                        )
                    entry.receipt = uuid.uuid4().hex
                    entry.leased_until = now + self.visibility_timeout
                    return Task(entry.task_id, entry.image_id, entry.attempt, entry.receipt)

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, 0.05))

    def _leased_entry(self, task: Task) -> Optional[_Entry]:
        entry = self._entries.get(task.task_id)
        if entry is None or entry.receipt is None or entry.receipt != task.receipt:
            self.logger.warning(f"Ignoring stale receipt for task {task.task_id}")
            return None
        return entry

    def ack(self, task: Task) -> bool:
        with self._cond:
            entry = self._leased_entry(task)
            if entry is None:
                return False
            del self._entries[task.task_id]
        return True

    def requeue(self, task: Task, delay: float = 0) -> bool:
        with self._cond:
            entry = self._leased_entry(task)
            if entry is None:
                return False
            entry.attempt += 1
            entry.receipt = None
            entry.leased_until = None
            entry.available_at = self.clock() + delay
            self._cond.notify()
        self.logger.debug(f"Requeued task {task.task_id} with {delay:.1f}s delay")
        return True

    def pending_count(self) -> int:
        with self._cond:
            return len(self._entries)

    def __len__(self) -> int:
        return self.pending_count()
