"""
ProcessingStats - Statistics for a worker pool run.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import List


@dataclass
class ProcessingStats:
    """
    Statistics for a worker pool run.

    Attributes:
        processed: Tasks handled (any outcome)
        completed: Images that reached completed
        failed: Images that reached failed
        retried: Tasks requeued for another attempt
        aborted: Tasks dropped because the image went away
        duplicates: Deliveries for images already terminal
        errors: Unexpected exceptions in the worker loop
        bytes_generated: Total bytes of variants stored
        start_time: Start timestamp
        error_details: List of error messages
    """
    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    aborted: int = 0
    duplicates: int = 0
    errors: int = 0
    bytes_generated: int = 0
    start_time: float = field(default_factory=time.time)
    error_details: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    OUTCOME_FIELDS = {
        'completed': 'completed',
        'failed': 'failed',
        'retrying': 'retried',
        'aborted': 'aborted',
        'duplicate': 'duplicates',
    }

    def record(self, outcome: str, bytes_generated: int = 0) -> None:
        """Count one processed task by its outcome."""
        with self._lock:
            self.processed += 1
            self.bytes_generated += bytes_generated
            name = self.OUTCOME_FIELDS.get(outcome)
            if name:
                setattr(self, name, getattr(self, name) + 1)

    def record_error(self, message: str) -> None:
        with self._lock:
            self.errors += 1
            self.error_details.append(message)

    @property
    def elapsed_seconds(self) -> float:
        """Elapsed time in seconds."""
        return time.time() - self.start_time

    @property
    def rate_per_second(self) -> float:
        """Processing rate in tasks per second."""
        if self.elapsed_seconds > 0:
            return self.processed / self.elapsed_seconds
        return 0.0

    @property
    def rate_per_minute(self) -> float:
        return self.rate_per_second * 60

    @property
    def terminal_count(self) -> int:
        """Tasks that left their image in a terminal status."""
        return self.completed + self.failed

    def to_dict(self) -> dict:
        return {
            'processed': self.processed,
            'completed': self.completed,
            'failed': self.failed,
            'retried': self.retried,
            'aborted': self.aborted,
            'duplicates': self.duplicates,
            'errors': self.errors,
            'bytes_generated': self.bytes_generated,
            'elapsed_seconds': round(self.elapsed_seconds, 3),
        }
