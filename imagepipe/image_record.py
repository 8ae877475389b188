"""
ImageRecord - Processing state of one uploaded image and its variants.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .blob_ref import BlobRef


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ProcessingStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    RETRYING = 'retrying'

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


class VariantStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class VariantRecord:
    """
    Outcome of generating a single variant.

    Attributes:
        status: pending, completed or failed
        blob_ref: Where the derived blob lives (completed only)
        error: Last error text for this variant
        completed_at: When the variant was stored
    """
    status: VariantStatus = VariantStatus.PENDING
    blob_ref: Optional[BlobRef] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    def mark_completed(self, blob_ref: BlobRef, when: Optional[datetime] = None) -> None:
        self.status = VariantStatus.COMPLETED
        self.blob_ref = blob_ref
        self.error = None
        self.completed_at = when or utcnow()

    def mark_failed(self, error: str) -> None:
        self.status = VariantStatus.FAILED
        self.blob_ref = None
        self.error = error
        self.completed_at = None

    def reset(self) -> None:
        """Return the variant to pending, keeping the last error for context."""
        self.status = VariantStatus.PENDING
        self.blob_ref = None
        self.completed_at = None

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'blob_ref': self.blob_ref.to_dict() if self.blob_ref else None,
            'error': self.error,
            'completed_at': _format_time(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'VariantRecord':
        blob = data.get('blob_ref')
        return cls(
            status=VariantStatus(data.get('status', 'pending')),
            blob_ref=BlobRef.from_dict(blob) if blob else None,
            error=data.get('error'),
            completed_at=_parse_time(data.get('completed_at')),
        )


@dataclass
class ImageRecord:
    """
    Durable processing record for one image.

    The ``variants`` mapping always holds exactly the configured variant
    names. ``processing_status`` is only changed through
    :func:`imagepipe.state_machine.transition`.

    Attributes:
        image_id: Unique id (hex uuid)
        gallery_id: Owning gallery
        position: Order within the gallery, assigned at creation
        original: Reference to the stored original (immutable)
        content_type: Content type of the original
        format: Decoded image format (None until extracted)
        byte_size: Size of the original in bytes
        width: Pixel width (None until extracted)
        height: Pixel height (None until extracted)
        processing_status: Current status
        variants: Variant name -> VariantRecord
        processing_started_at: Start of the latest processing attempt
        processing_completed_at: When a terminal status was reached
        processing_errors: Aggregated error text
        filename: Optional original filename
        created_at: When ingestion accepted the upload
        version: Optimistic concurrency counter
    """
    image_id: str
    gallery_id: str
    position: int
    original: BlobRef
    content_type: str
    byte_size: int
    variants: Dict[str, VariantRecord]
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    processing_errors: Optional[str] = None
    filename: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def new(
        cls,
        image_id: str,
        gallery_id: str,
        original: BlobRef,
        content_type: str,
        byte_size: int,
        variant_names: Iterable[str],
        filename: Optional[str] = None,
        position: int = 0,
    ) -> 'ImageRecord':
        """Create a pending record with every variant pending."""
        return cls(
            image_id=image_id,
            gallery_id=gallery_id,
            position=position,
            original=original,
            content_type=content_type,
            byte_size=byte_size,
            variants={name: VariantRecord() for name in variant_names},
            filename=filename,
        )

    @property
    def has_metadata(self) -> bool:
        return self.width is not None and self.height is not None

    def variants_with_status(self, status: VariantStatus) -> List[str]:
        return [name for name, v in self.variants.items() if v.status == status]

    @property
    def pending_variants(self) -> List[str]:
        return self.variants_with_status(VariantStatus.PENDING)

    @property
    def failed_variants(self) -> List[str]:
        return self.variants_with_status(VariantStatus.FAILED)

    @property
    def variants_complete(self) -> bool:
        return all(v.status == VariantStatus.COMPLETED for v in self.variants.values())

    def blob_refs(self) -> List[BlobRef]:
        """All blob references held by this record, original first."""
        refs = [self.original]
        refs.extend(v.blob_ref for v in self.variants.values() if v.blob_ref)
        return refs

    def collect_errors(self) -> Optional[str]:
        """Aggregate variant errors as 'name: error; name: error'."""
        parts = [
            f"{name}: {v.error}"
            for name, v in self.variants.items()
            if v.error and v.status != VariantStatus.COMPLETED
        ]
        return '; '.join(parts) or None

    def validate(self, variant_names: Optional[Iterable[str]] = None) -> List[str]:
        """
        Check the record invariants.

        Args:
            variant_names: Configured variant set, if the caller knows it

        Returns:
            List of violated invariants (empty if the record is consistent)
        """
        errors = []
        if self.original is None:
            errors.append("missing original blob reference")
        if variant_names is not None and set(self.variants) != set(variant_names):
            errors.append(
                f"variant keys {sorted(self.variants)} != configured {sorted(variant_names)}"
            )
        if self.processing_status == ProcessingStatus.COMPLETED and not self.variants_complete:
            errors.append("completed image has unfinished variants")
        if self.processing_status == ProcessingStatus.FAILED:
            if not self.failed_variants:
                errors.append("failed image has no failed variant")
            if self.pending_variants:
                errors.append("failed image has pending variants")
        for name, v in self.variants.items():
            if v.status == VariantStatus.COMPLETED and v.blob_ref is None:
                errors.append(f"completed variant {name} has no blob reference")
        return errors

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'image_id': self.image_id,
            'gallery_id': self.gallery_id,
            'position': self.position,
            'original': self.original.to_dict(),
            'content_type': self.content_type,
            'byte_size': self.byte_size,
            'format': self.format,
            'width': self.width,
            'height': self.height,
            'processing_status': self.processing_status.value,
            'variants': {name: v.to_dict() for name, v in self.variants.items()},
            'processing_started_at': _format_time(self.processing_started_at),
            'processing_completed_at': _format_time(self.processing_completed_at),
            'processing_errors': self.processing_errors,
            'filename': self.filename,
            'created_at': _format_time(self.created_at),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ImageRecord':
        """Create from dictionary."""
        return cls(
            image_id=data['image_id'],
            gallery_id=data['gallery_id'],
            position=data.get('position', 0),
            original=BlobRef.from_dict(data['original']),
            content_type=data['content_type'],
            byte_size=data['byte_size'],
            format=data.get('format'),
            width=data.get('width'),
            height=data.get('height'),
            processing_status=ProcessingStatus(data.get('processing_status', 'pending')),
            variants={
                name: VariantRecord.from_dict(v)
                for name, v in data.get('variants', {}).items()
            },
            processing_started_at=_parse_time(data.get('processing_started_at')),
            processing_completed_at=_parse_time(data.get('processing_completed_at')),
            processing_errors=data.get('processing_errors'),
            filename=data.get('filename'),
            created_at=_parse_time(data.get('created_at')) or utcnow(),
            version=data.get('version', 0),
        )
