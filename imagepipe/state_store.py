"""
StateStore - Durable processing records with optimistic versioning.
"""

import logging
import threading
from typing import Dict, List, Optional

from .errors import RecordGoneError, VersionConflictError
from .image_record import ImageRecord


class StateStore:
    """
    Interface shared by the in-memory store and :class:`imagepipe.image_db.ImageDb`.

    Records handed out are copies; callers persist changes with ``update``,
    which fails if anyone else wrote the record in between.
    """

    def create(self, record: ImageRecord) -> ImageRecord:
        """Insert a new record, assigning its gallery position and version."""
        raise NotImplementedError

    def get(self, image_id: str) -> Optional[ImageRecord]:
        """Return a copy of the record, or None if it does not exist."""
        raise NotImplementedError

    def update(self, record: ImageRecord) -> ImageRecord:
        """
        Persist a modified record.

        Raises:
            RecordGoneError: If the record was deleted
            VersionConflictError: If the stored version moved on
        """
        raise NotImplementedError

    def delete(self, image_id: str) -> Optional[ImageRecord]:
        """Remove a record, returning what was stored (None if absent)."""
        raise NotImplementedError

    def exists(self, image_id: str) -> bool:
        return self.get(image_id) is not None

    def list_by_gallery(self, gallery_id: str) -> List[ImageRecord]:
        """Records of a gallery ordered by position."""
        raise NotImplementedError

    def list_ids(self) -> List[str]:
        raise NotImplementedError


class MemoryStateStore(StateStore):
    """Thread-safe in-process store used by tests and single-process runs."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._records: Dict[str, dict] = {}
        self._positions: Dict[str, int] = {}

    def create(self, record: ImageRecord) -> ImageRecord:
        with self._lock:
            if record.image_id in self._records:
                raise ValueError(f"Image {record.image_id} already exists")
            position = self._positions.get(record.gallery_id, 0) + 1
            self._positions[record.gallery_id] = position
            record.position = position
            record.version = 1
            self._records[record.image_id] = record.to_dict()
        self.logger.debug(f"Created image {record.image_id} at position {position}")
        return record

    def get(self, image_id: str) -> Optional[ImageRecord]:
        with self._lock:
            data = self._records.get(image_id)
        return ImageRecord.from_dict(data) if data else None

    def update(self, record: ImageRecord) -> ImageRecord:
        with self._lock:
            stored = self._records.get(record.image_id)
            if stored is None:
                raise RecordGoneError(f"Image {record.image_id} no longer exists")
            if stored['version'] != record.version:
                raise VersionConflictError(
                    f"Image {record.image_id} is at version {stored['version']}, "
                    f"update was based on {record.version}"
                )
            record.version += 1
            self._records[record.image_id] = record.to_dict()
        return record

    def delete(self, image_id: str) -> Optional[ImageRecord]:
        with self._lock:
            data = self._records.pop(image_id, None)
        return ImageRecord.from_dict(data) if data else None

    def exists(self, image_id: str) -> bool:
        with self._lock:
            return image_id in self._records

    def list_by_gallery(self, gallery_id: str) -> List[ImageRecord]:
        with self._lock:
            rows = [d for d in self._records.values() if d['gallery_id'] == gallery_id]
        rows.sort(key=lambda d: d['position'])
        return [ImageRecord.from_dict(d) for d in rows]

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
