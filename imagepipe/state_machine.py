"""
Processing state machine.

``transition`` is the only place an image's ``processing_status`` changes.

    pending    -> processing
    processing -> completed | retrying | failed
    retrying   -> processing
    failed     -> retrying      (explicit re-trigger only)
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .errors import InvalidTransitionError
from .image_record import ImageRecord, ProcessingStatus, utcnow

P = ProcessingStatus

TRANSITIONS: Dict[ProcessingStatus, FrozenSet[ProcessingStatus]] = {
    P.PENDING: frozenset({P.PROCESSING}),
    P.PROCESSING: frozenset({P.COMPLETED, P.RETRYING, P.FAILED}),
    P.RETRYING: frozenset({P.PROCESSING}),
    P.COMPLETED: frozenset(),
    P.FAILED: frozenset(),
}

# Edges only an operator or the CRUD layer may take.
EXTERNAL_TRANSITIONS: Dict[ProcessingStatus, FrozenSet[ProcessingStatus]] = {
    P.FAILED: frozenset({P.RETRYING}),
}


def can_transition(
    current: ProcessingStatus,
    target: ProcessingStatus,
    external: bool = False
) -> bool:
    """Check whether ``current -> target`` is an edge of the state machine."""
    if target in TRANSITIONS[current]:
        return True
    return external and target in EXTERNAL_TRANSITIONS.get(current, frozenset())


def transition(
    record: ImageRecord,
    target: ProcessingStatus,
    external: bool = False,
    now: Optional[datetime] = None
) -> ImageRecord:
    """
    Move a record to ``target``, stamping processing timestamps.

    Args:
        record: Record to mutate in place
        target: Desired status
        external: Allow edges reserved for explicit re-triggers
        now: Timestamp to record (defaults to the current UTC time)

    Returns:
        The same record, for chaining

    Raises:
        InvalidTransitionError: If the edge does not exist or the record
            would violate its invariants in the target status
    """
    current = record.processing_status
    if not can_transition(current, target, external):
        raise InvalidTransitionError(
            f"Image {record.image_id}: {current.value} -> {target.value} is not allowed"
        )

    if target == P.COMPLETED and not record.variants_complete:
        raise InvalidTransitionError(
            f"Image {record.image_id}: cannot complete with unfinished variants"
        )
    if target == P.FAILED and (record.pending_variants or not record.failed_variants):
        raise InvalidTransitionError(
            f"Image {record.image_id}: failed requires a failed variant and none pending"
        )

    now = now or utcnow()
    record.processing_status = target

    if target == P.PROCESSING:
        record.processing_started_at = now
        record.processing_completed_at = None
    elif target.is_terminal:
        record.processing_completed_at = now

    if target == P.COMPLETED:
        record.processing_errors = None
    elif target in (P.FAILED, P.RETRYING):
        record.processing_errors = record.collect_errors() or record.processing_errors

    return record
