"""
Error taxonomy for the image processing pipeline.

Processing errors never propagate to the uploader. The worker records them
on the affected variant and aggregates them into ``processing_errors``.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    """Rejected at ingestion, before a task is ever created."""


class NotFoundError(PipelineError):
    """A stored blob or image record does not exist."""


class InvalidTransitionError(PipelineError):
    """A status change that the processing state machine does not allow."""


class ProcessingError(PipelineError):
    """Base class for failures while processing a task."""


class TransientProcessingError(ProcessingError):
    """Storage or network blip; the task is retried with backoff."""


class TaskTimeoutError(TransientProcessingError):
    """The task ran past its deadline; retried under the same budget."""


class PermanentProcessingError(ProcessingError):
    """Undecodable or unsupported input; never retried."""


class StorageQuotaError(ProcessingError):
    """Storage is full; permanent for the current attempt."""


class RecordGoneError(PipelineError):
    """The image record was deleted while its task was in flight."""


class VersionConflictError(RecordGoneError):
    """The record changed since it was read; the current writer aborts."""
