"""
Ingestor - Accepts uploads and handles the delete and re-trigger hooks.
"""

import logging
import re
import uuid
from typing import Iterable, Optional

from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .image_record import ImageRecord, ProcessingStatus
from .job_queue import JobQueue
from .state_machine import transition
from .state_store import StateStore
from .storage_router import StorageRouter

DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024

ACCEPTED_CONTENT_TYPES = frozenset({
    'image/jpeg',
    'image/jpg',
    'image/png',
    'image/gif',
    'image/webp',
    'image/tiff',
})

GALLERY_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')


class Ingestor:
    """
    Ingestion boundary of the pipeline.

    The record is created before the original is stored so a blob never
    exists without a record; if the upload fails, the record is removed
    again.
    """

    def __init__(
        self,
        store: StateStore,
        queue: JobQueue,
        router: StorageRouter,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        accepted_types: Iterable[str] = ACCEPTED_CONTENT_TYPES,
        logger: Optional[logging.Logger] = None
    ):
        self.store = store
        self.queue = queue
        self.router = router
        self.max_upload_bytes = max_upload_bytes
        self.accepted_types = frozenset(accepted_types)
        self.logger = logger or logging.getLogger(__name__)

    def validate(self, gallery_id: str, data: bytes, content_type: Optional[str]) -> str:
        """
        Check an upload before anything is written.

        Returns:
            The normalised content type

        Raises:
            ValidationError: If the upload is rejected
        """
        if not gallery_id or not GALLERY_ID_PATTERN.match(gallery_id):
            raise ValidationError(f"Invalid gallery id: {gallery_id!r}")
        if not data:
            raise ValidationError("Upload is empty")
        if len(data) > self.max_upload_bytes:
            raise ValidationError(
                f"Upload is {len(data)} bytes; the limit is {self.max_upload_bytes}"
            )
        content_type = (content_type or '').split(';')[0].strip().lower()
        if content_type not in self.accepted_types:
            raise ValidationError(f"Unsupported content type: {content_type or 'none'}")
        return content_type

    def ingest(
        self,
        gallery_id: str,
        data: bytes,
        content_type: Optional[str],
        filename: Optional[str] = None
    ) -> dict:
        """
        Accept an upload and schedule its processing.

        Returns:
            dict with image_id, processing_status ('pending') and position

        Raises:
            ValidationError: If the upload is rejected
            ProcessingError: If the original could not be stored
        """
        content_type = self.validate(gallery_id, data, content_type)
        image_id = uuid.uuid4().hex
        original = self.router.original_ref(gallery_id, image_id, content_type)

        record = ImageRecord.new(
            image_id=image_id,
            gallery_id=gallery_id,
            original=original,
            content_type=content_type,
            byte_size=len(data),
            variant_names=self.router.variant_specs,
            filename=filename,
        )
        record = self.store.create(record)

        try:
            self.router.put(original.tier, original.key, data, content_type)
            self.queue.enqueue(image_id)
        except Exception:
            self.logger.error(f"Ingestion of {image_id} into gallery {gallery_id} failed; rolling back")
            self.store.delete(image_id)
            self.router.delete_quietly(original)
            raise

        self.logger.info(
            f"Accepted image {image_id} into gallery {gallery_id} at position {record.position} "
            f"({len(data)} bytes, {content_type})"
        )
        return {
            'image_id': image_id,
            'processing_status': record.processing_status.value,
            'position': record.position,
        }

    def delete_image(self, image_id: str) -> int:
        """
        Delete an image record and every blob it may own.

        Variant keys are deterministic, so blobs an in-flight worker wrote
        but never recorded are removed too.

        Returns:
            Number of blobs deleted

        Raises:
            NotFoundError: If the image does not exist
        """
        record = self.store.delete(image_id)
        if record is None:
            raise NotFoundError(f"Image {image_id} not found")

        refs = set(record.blob_refs())
        for name in self.router.variant_specs:
            refs.add(self.router.variant_ref(record.gallery_id, record.image_id, name))

        deleted = sum(1 for ref in refs if self.router.delete_quietly(ref))
        self.logger.info(f"Deleted image {image_id} ({deleted} blobs)")
        return deleted

    def delete_gallery(self, gallery_id: str) -> int:
        """Delete every image of a gallery; returns the number of images."""
        records = self.store.list_by_gallery(gallery_id)
        count = 0
        for record in records:
            try:
                self.delete_image(record.image_id)
                count += 1
            except NotFoundError:
                # Deleted concurrently
                continue
        self.logger.info(f"Deleted gallery {gallery_id} ({count} images)")
        return count

    def reprocess(self, image_id: str) -> dict:
        """
        Re-trigger processing of a failed image with a fresh retry budget.

        Raises:
            NotFoundError: If the image does not exist
            InvalidTransitionError: If the image is not failed
        """
        record = self.store.get(image_id)
        if record is None:
            raise NotFoundError(f"Image {image_id} not found")
        if record.processing_status != ProcessingStatus.FAILED:
            raise InvalidTransitionError(
                f"Image {image_id} is {record.processing_status.value}; only failed images can be reprocessed"
            )

        previous = ImageRecord.from_dict(record.to_dict())
        for name in record.failed_variants:
            record.variants[name].reset()
        transition(record, ProcessingStatus.RETRYING, external=True)
        self.store.update(record)

        try:
            self.queue.enqueue(image_id)
        except Exception:
            self.logger.error(f"Re-triggering image {image_id} failed; restoring failed status")
            previous.version = record.version
            self.store.update(previous)
            raise

        self.logger.info(f"Re-triggered processing of image {image_id}")
        return {
            'image_id': image_id,
            'processing_status': record.processing_status.value,
            'position': record.position,
        }
