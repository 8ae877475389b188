"""
StorageRouter - Tier assignment and deterministic keys for image blobs.
"""

import logging
import re
from typing import Iterator, Mapping, Optional, Union

from .blob_ref import BlobRef, Tier
from .errors import NotFoundError
from .local_client import LocalClient
from .s3_client import S3Client
from .variant_spec import VariantSpec

StorageClient = Union[S3Client, LocalClient]


class StorageRouter:
    """
    Routes originals and variants to storage tiers.

    Keys depend only on gallery id, image id and variant name, so
    regenerating a variant overwrites the same object.
    """

    ORIGINAL = 'original'
    ORIGINAL_TIER = Tier.COLD

    # Pattern to match blob keys: galleries/<gallery>/images/<image>/<name>.<ext>
    KEY_PATTERN = re.compile(r'^galleries/([^/]+)/images/([^/]+)/([^/.]+)\.[^/.]+$')

    EXTENSIONS = {
        'image/jpeg': 'jpg',
        'image/jpg': 'jpg',
        'image/png': 'png',
        'image/gif': 'gif',
        'image/webp': 'webp',
        'image/tiff': 'tif',
        'image/heic': 'heic',
        'image/heif': 'heif',
    }

    def __init__(
        self,
        storage_client: StorageClient,
        variant_specs: Mapping[str, VariantSpec],
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize router.

        Args:
            storage_client: Storage backend (S3Client or LocalClient)
            variant_specs: Configured variants by name
            logger: Optional logger instance
        """
        self.storage = storage_client
        self.variant_specs = variant_specs
        self.logger = logger or logging.getLogger(__name__)

    # --- Tier policy and keys ----------------------------------------------

    def tier_for(self, name: str) -> Tier:
        """Tier for the original ('original') or a configured variant."""
        if name == self.ORIGINAL:
            return self.ORIGINAL_TIER
        return self.variant_specs[name].tier

    @staticmethod
    def image_prefix(gallery_id: str, image_id: str) -> str:
        return f"galleries/{gallery_id}/images/{image_id}/"

    def original_ref(self, gallery_id: str, image_id: str, content_type: str) -> BlobRef:
        """Reference where the original of an image is stored."""
        ext = self.EXTENSIONS.get(content_type.lower(), 'bin')
        key = f"{self.image_prefix(gallery_id, image_id)}{self.ORIGINAL}.{ext}"
        return BlobRef(key=key, tier=self.ORIGINAL_TIER)

    def variant_ref(self, gallery_id: str, image_id: str, variant_name: str) -> BlobRef:
        """Reference where a variant of an image is stored."""
        spec = self.variant_specs[variant_name]
        key = f"{self.image_prefix(gallery_id, image_id)}{variant_name}.{spec.extension}"
        return BlobRef(key=key, tier=spec.tier)

    @classmethod
    def parse_key(cls, key: str) -> Optional[tuple]:
        """Return (gallery_id, image_id, name) for a pipeline key, else None."""
        match = cls.KEY_PATTERN.match(key)
        return match.groups() if match else None

    # --- Storage operations ------------------------------------------------

    def put(
        self,
        tier: Tier,
        key: str,
        data: bytes,
        content_type: str = 'application/octet-stream'
    ) -> BlobRef:
        """Store bytes and return their reference."""
        self.logger.debug(f"Uploading {key} to {tier.value} tier ({len(data)} bytes)")
        self.storage.put_object(tier, key, data, content_type)
        return BlobRef(key=key, tier=tier)

    def get(self, ref: BlobRef) -> bytes:
        return self.storage.get_object(ref.tier, ref.key)

    def exists(self, ref: BlobRef) -> bool:
        return self.storage.object_exists(ref.tier, ref.key)

    def signed_url(self, ref: BlobRef, ttl: int) -> str:
        """Time-limited download URL for a blob."""
        return self.storage.generate_url(ref.tier, ref.key, ttl)

    def delete(self, ref: BlobRef) -> None:
        """
        Delete a blob.

        Raises:
            NotFoundError: If the blob does not exist
        """
        self.logger.debug(f"Deleting {ref.key} from {ref.tier.value} tier")
        self.storage.delete_object(ref.tier, ref.key)

    def delete_quietly(self, ref: BlobRef) -> bool:
        """Delete a blob, returning False instead of raising if it is missing."""
        try:
            self.delete(ref)
            return True
        except NotFoundError:
            return False

    def list_refs(self, tier: Tier, prefix: str = 'galleries/') -> Iterator[BlobRef]:
        """Yield references for every pipeline blob in a tier."""
        for key in self.storage.list_keys(tier, prefix):
            yield BlobRef(key=key, tier=tier)
