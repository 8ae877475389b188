"""
VariantGenerator - Resizes and transcodes an original into one variant.
"""

import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import PermanentProcessingError
from .variant_spec import VariantSpec


@dataclass
class GeneratedVariant:
    """Encoded output of one variant."""
    data: bytes
    content_type: str
    width: int
    height: int


def fit_within(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """
    Scale (width, height) to fit the box, preserving aspect ratio.

    Never upscales: the scale factor is capped at 1.0.
    """
    scale = min(max_width / width, max_height / height, 1.0)
    if scale >= 1.0:
        return width, height
    return (
        max(1, min(max_width, round(width * scale))),
        max(1, min(max_height, round(height * scale))),
    )


class VariantGenerator:
    """
    Generates derived images using Pillow.

    Each call decodes its own copy of the original, so variants of the same
    image can be generated in parallel threads.
    """

    # Metadata kept on derived images; EXIF, XMP and comments are dropped.
    KEEP_INFO = ('icc_profile',)

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize variant generator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or logging.getLogger(__name__)

    def generate(self, image_data: bytes, spec: VariantSpec) -> GeneratedVariant:
        """
        Generate one variant from image data.

        Args:
            image_data: Original image as bytes
            spec: Variant specification

        Returns:
            GeneratedVariant with the encoded bytes

        Raises:
            PermanentProcessingError: If the image cannot be decoded,
                converted or encoded
        """
        try:
            with Image.open(io.BytesIO(image_data)) as source:
                img = ImageOps.exif_transpose(source)
                size = fit_within(img.width, img.height, spec.max_width, spec.max_height)
                if size != img.size:
                    img = img.resize(size, Image.Resampling.LANCZOS)
                img = self._convert_color_mode(img, spec.target_format)
                data = self._encode(img, spec)
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            self.logger.error(f"Error generating {spec.name} variant: {e}")
            raise PermanentProcessingError(f"{spec.name}: {e}") from e

        self.logger.debug(f"Generated {spec.name} variant {size[0]}x{size[1]} ({len(data)} bytes)")
        return GeneratedVariant(
            data=data,
            content_type=spec.content_type,
            width=size[0],
            height=size[1],
        )

    def _encode(self, img: Image.Image, spec: VariantSpec) -> bytes:
        """Encode without EXIF; the original is stored untouched elsewhere."""
        options = {}
        icc_profile = img.info.get('icc_profile')
        img.info = {k: v for k, v in img.info.items() if k in self.KEEP_INFO}
        if icc_profile:
            options['icc_profile'] = icc_profile

        output = io.BytesIO()
        if spec.target_format == 'JPEG':
            img.save(output, format='JPEG', quality=spec.quality, optimize=True,
                     progressive=True, **options)
        elif spec.target_format == 'WEBP':
            img.save(output, format='WEBP', quality=spec.quality, method=4, **options)
        else:
            img.save(output, format='PNG', optimize=True, **options)
        return output.getvalue()

    def _convert_color_mode(self, img: Image.Image, target_format: str) -> Image.Image:
        """Convert image to a color mode the target format can encode."""
        if target_format == 'JPEG':
            if img.mode in ('RGBA', 'LA', 'P'):
                img = img.convert('RGBA')
                background = Image.new('RGB', img.size, (255, 255, 255))
                background.paste(img, mask=img.split()[-1])
                return background
            if img.mode not in ('RGB', 'L'):
                return img.convert('RGB')
            return img

        if img.mode == 'P':
            return img.convert('RGBA')
        if img.mode not in ('RGB', 'RGBA', 'L', 'LA'):
            return img.convert('RGB')
        if target_format == 'WEBP' and img.mode in ('L', 'LA'):
            return img.convert('RGBA' if img.mode == 'LA' else 'RGB')
        return img
