"""
MetadataExtractor - Reads format and dimensions from an uploaded original.
"""

import io
import logging
from dataclasses import dataclass, asdict
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .errors import PermanentProcessingError

# EXIF orientations that rotate the picture by 90 or 270 degrees.
TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}
ORIENTATION_TAG = 0x0112


@dataclass
class ImageMetadata:
    """
    Facts derived from the original bytes.

    Attributes:
        format: Decoded format in lower case (e.g., 'jpeg')
        content_type: Content type matching the decoded format
        width: Width in display orientation
        height: Height in display orientation
        byte_size: Size of the original in bytes
    """
    format: str
    content_type: str
    width: int
    height: int
    byte_size: int

    def to_dict(self) -> dict:
        return asdict(self)


class MetadataExtractor:
    """
    Decodes an original just far enough to trust it.

    Decoding failures are permanent by definition, so nothing here retries.
    """

    SUPPORTED_FORMATS = {
        'JPEG': 'image/jpeg',
        'PNG': 'image/png',
        'GIF': 'image/gif',
        'WEBP': 'image/webp',
        'TIFF': 'image/tiff',
    }

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def extract(self, data: bytes, declared_content_type: Optional[str] = None) -> ImageMetadata:
        """
        Extract metadata from image bytes.

        Args:
            data: Original image bytes
            declared_content_type: Content type claimed by the uploader

        Returns:
            ImageMetadata

        Raises:
            PermanentProcessingError: If the bytes are not a supported image
        """
        if not data:
            raise PermanentProcessingError("Empty image data")

        try:
            with Image.open(io.BytesIO(data)) as img:
                image_format = img.format
                width, height = img.size
                orientation = img.getexif().get(ORIENTATION_TAG)
                # Force a full decode so truncated files are caught here
                img.load()
        except Image.DecompressionBombError as e:
            raise PermanentProcessingError(f"Image too large to decode: {e}") from e
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise PermanentProcessingError(f"Cannot decode image: {e}") from e

        if image_format not in self.SUPPORTED_FORMATS:
            raise PermanentProcessingError(f"Unsupported image format: {image_format}")

        if orientation in TRANSPOSED_ORIENTATIONS:
            width, height = height, width

        content_type = self.SUPPORTED_FORMATS[image_format]
        if declared_content_type and declared_content_type.lower() != content_type:
            self.logger.warning(
                f"Declared content type {declared_content_type} does not match "
                f"decoded format {image_format}; using {content_type}"
            )

        return ImageMetadata(
            format=image_format.lower(),
            content_type=content_type,
            width=width,
            height=height,
            byte_size=len(data),
        )
