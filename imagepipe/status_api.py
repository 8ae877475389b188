"""
StatusService - Read-only view of processing state for polling clients.
"""

import logging
from typing import Iterable, Optional

from .errors import NotFoundError
from .image_record import ImageRecord, ProcessingStatus, VariantStatus
from .state_store import StateStore
from .storage_router import StorageRouter


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class StatusService:
    """
    Builds status payloads from the state store.

    Signed URLs are issued only for completed variants. Nothing here
    enqueues work or changes a record.
    """

    def __init__(
        self,
        store: StateStore,
        router: StorageRouter,
        signed_url_ttl: int = 3600,
        logger: Optional[logging.Logger] = None
    ):
        self.store = store
        self.router = router
        self.signed_url_ttl = signed_url_ttl
        self.logger = logger or logging.getLogger(__name__)

    def describe(self, record: ImageRecord) -> dict:
        """Status payload for one record."""
        variants = {}
        for name, variant in record.variants.items():
            url = None
            if variant.status == VariantStatus.COMPLETED and variant.blob_ref:
                url = self.router.signed_url(variant.blob_ref, self.signed_url_ttl)
            variants[name] = {
                'status': variant.status.value,
                'url': url,
                'error': variant.error if variant.status != VariantStatus.COMPLETED else None,
            }

        return {
            'image_id': record.image_id,
            'gallery_id': record.gallery_id,
            'position': record.position,
            'filename': record.filename,
            'processing_status': record.processing_status.value,
            'processing_errors': record.processing_errors,
            'processing_started_at': _iso(record.processing_started_at),
            'processing_completed_at': _iso(record.processing_completed_at),
            'width': record.width,
            'height': record.height,
            'variants': variants,
        }

    def get_status(self, image_id: str) -> dict:
        """
        Status of one image.

        Raises:
            NotFoundError: If the image does not exist
        """
        record = self.store.get(image_id)
        if record is None:
            raise NotFoundError(f"Image {image_id} not found")
        return self.describe(record)

    def get_statuses(self, image_ids: Iterable[str]) -> dict:
        """Status of several images; unknown ids are listed under 'missing'."""
        images, missing = [], []
        for image_id in image_ids:
            record = self.store.get(image_id)
            if record is None:
                missing.append(image_id)
            else:
                images.append(self.describe(record))
        return {'images': images, 'missing': missing}

    def gallery_status(self, gallery_id: str, incomplete_only: bool = True) -> dict:
        """Images of a gallery in position order, by default only those not yet completed."""
        records = self.store.list_by_gallery(gallery_id)
        if incomplete_only:
            records = [r for r in records if r.processing_status != ProcessingStatus.COMPLETED]
        return {
            'gallery_id': gallery_id,
            'images': [self.describe(r) for r in records],
            'total_processing': len(records),
        }
