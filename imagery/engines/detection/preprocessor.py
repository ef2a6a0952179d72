"""
Image Preprocessor

Validates raw upload bytes against their declared format and normalizes them
into a bounded RGB pixel buffer for the model adapters.

Validation Flow:
1. Hard upload limit (SIZE_EXCEEDED, checked before any resize)
2. Declared format + magic bytes (UNSUPPORTED_FORMAT)
3. In-memory decode with Pillow (CORRUPT_IMAGE)
4. Deterministic Lanczos downsample when over the large-image threshold

No disk I/O: the decoder reads straight from the request's buffer.
"""

import io
import math
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from imagery.core.config import Settings, settings as default_settings
from imagery.core.exceptions import CorruptImageError, SizeExceededError, UnsupportedFormatError
from imagery.core.logging import get_logger, with_logging
from imagery.engines.detection.schemas import ImageFormat, NormalizedImage

logger = get_logger(__name__)


# Pillow's format names for each supported format
PIL_FORMATS = {
    ImageFormat.JPEG: {"JPEG", "MPO"},
    ImageFormat.PNG: {"PNG"},
    ImageFormat.WEBP: {"WEBP"},
    ImageFormat.TIFF: {"TIFF"},
}

# Lanczos keeps the high-frequency residue the detectors look for;
# box/bilinear kernels would smooth it away.
RESAMPLING_FILTER = Image.Resampling.LANCZOS


def sniff_format(data: memoryview) -> Optional[ImageFormat]:
    """Identify the container from its magic bytes."""
    head = bytes(data[:12])
    if head[:3] == b"\xff\xd8\xff":
        return ImageFormat.JPEG
    if head[:8] == b"\x89PNG\r\n\x1a\n":
        return ImageFormat.PNG
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return ImageFormat.WEBP
    if head[:4] in (b"II*\x00", b"MM\x00*"):
        return ImageFormat.TIFF
    return None


def fit_within_budget(width: int, height: int, max_bytes: int, channels: int = 3) -> Tuple[int, int]:
    """Largest (w, h) with the same aspect ratio whose RGB buffer fits ``max_bytes``."""
    if width * height * channels <= max_bytes:
        return width, height

    scale = math.sqrt(max_bytes / float(width * height * channels))
    new_w = max(1, int(math.floor(width * scale)))
    new_h = max(1, int(math.floor(height * scale)))

    # Floating point can leave us one row/column over budget
    while new_w * new_h * channels > max_bytes and (new_w > 1 or new_h > 1):
        if new_w >= new_h:
            new_w -= 1
            new_h = max(1, int(math.floor(new_w * height / float(width))))
        else:
            new_h -= 1
            new_w = max(1, int(math.floor(new_h * width / float(height))))
    return new_w, new_h


class MemoryviewReader(io.RawIOBase):
    """Seekable, read-only file object over a memoryview (no full copy)."""

    def __init__(self, view: memoryview):
        self._view = view
        self._pos = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            pos = offset
        elif whence == io.SEEK_CUR:
            pos = self._pos + offset
        elif whence == io.SEEK_END:
            pos = len(self._view) + offset
        else:
            raise ValueError(f"invalid whence: {whence}")
        self._pos = max(0, pos)
        return self._pos

    def readinto(self, target) -> int:
        remaining = len(self._view) - self._pos
        if remaining <= 0:
            return 0
        n = min(len(target), remaining)
        target[:n] = self._view[self._pos:self._pos + n]
        self._pos += n
        return n

    def close(self):
        self._view = memoryview(b"")
        super().close()


class ImagePreprocessor:
    """Turns raw upload bytes into a NormalizedImage."""

    def __init__(self, settings: Settings = default_settings):
        self.max_upload_bytes = settings.MAX_UPLOAD_BYTES
        self.threshold_bytes = settings.LARGE_IMAGE_THRESHOLD_BYTES
        self.max_image_pixels = settings.MAX_IMAGE_PIXELS
        self.food_hint_threshold = settings.FOOD_HINT_THRESHOLD

    @with_logging("preprocess")
    def prepare(self, data: memoryview, declared_format: Optional[str]) -> NormalizedImage:
        """Validate and normalize one image.

        Raises:
            SizeExceededError: upload over the hard limit or decompression bomb
            UnsupportedFormatError: unknown declared format or magic-byte mismatch
            CorruptImageError: bytes cannot be decoded
        """
        size = len(data)
        if size == 0:
            raise CorruptImageError("Image is empty")
        if size > self.max_upload_bytes:
            raise SizeExceededError(
                f"Image size ({size / 1048576:.2f}MB) exceeds maximum "
                f"({self.max_upload_bytes / 1048576:.0f}MB)",
                details={"byte_size": size, "limit": self.max_upload_bytes}
            )

        expected = ImageFormat.parse(declared_format)
        if expected is None:
            raise UnsupportedFormatError(
                f"Unsupported image format '{declared_format}'. Supported: JPEG, PNG, WebP, TIFF",
                details={"declared_format": declared_format}
            )

        sniffed = sniff_format(data)
        if sniffed != expected:
            raise UnsupportedFormatError(
                f"Image content does not match declared format {expected.value}",
                details={
                    "declared_format": expected.value,
                    "detected_format": sniffed.value if sniffed else None
                }
            )

        pixels, original_size = self._decode(data, expected)

        resized = False
        target = fit_within_budget(original_size[0], original_size[1], self.threshold_bytes)
        if target != original_size:
            pixels = self._downsample(pixels, target)
            resized = True

        logger.debug(
            "image_prepared",
            format=expected.value,
            original_width=original_size[0],
            original_height=original_size[1],
            width=int(pixels.shape[1]),
            height=int(pixels.shape[0]),
            resized=resized
        )

        return NormalizedImage(
            pixels=pixels,
            source_format=expected,
            original_size=original_size,
            resized=resized
        )

    def _decode(self, data: memoryview, expected: ImageFormat) -> Tuple[np.ndarray, Tuple[int, int]]:
        """Decode to an RGB uint8 array entirely in memory."""
        Image.MAX_IMAGE_PIXELS = self.max_image_pixels
        reader = MemoryviewReader(data)
        try:
            with Image.open(reader, formats=sorted(PIL_FORMATS[expected])) as img:
                if img.format not in PIL_FORMATS[expected]:
                    raise UnsupportedFormatError(
                        f"Image content does not match declared format {expected.value}",
                        details={"declared_format": expected.value, "detected_format": img.format}
                    )
                # Header-only check before any pixel data is decoded
                if img.width * img.height > self.max_image_pixels:
                    raise SizeExceededError(
                        "Image dimensions exceed the decompression limit",
                        details={"max_pixels": self.max_image_pixels}
                    )
                img.load()
                oriented = ImageOps.exif_transpose(img)
                try:
                    rgb = oriented.convert("RGB")
                    try:
                        pixels = np.array(rgb, dtype=np.uint8)
                    finally:
                        rgb.close()
                finally:
                    if oriented is not img:
                        oriented.close()
        except Image.DecompressionBombError as e:
            raise SizeExceededError(
                "Image dimensions exceed the decompression limit",
                details={"max_pixels": self.max_image_pixels}
            ) from e
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError) as e:
            raise CorruptImageError(
                f"Image could not be decoded as {expected.value}",
                details={"decoder_error": type(e).__name__}
            ) from e
        finally:
            reader.close()

        height, width = pixels.shape[:2]
        if width == 0 or height == 0:
            raise CorruptImageError("Image has no pixels")
        return pixels, (width, height)

    @staticmethod
    def _downsample(pixels: np.ndarray, target: Tuple[int, int]) -> np.ndarray:
        """Lanczos resize to ``target`` (w, h); zeroes the source array."""
        source = Image.fromarray(pixels, mode="RGB")
        try:
            resized = source.resize(target, resample=RESAMPLING_FILTER)
            try:
                out = np.array(resized, dtype=np.uint8)
            finally:
                resized.close()
        finally:
            source.close()
            pixels.fill(0)
        return out

    def detect_content_hint(self, image: NormalizedImage) -> Optional[str]:
        """Lightweight content classifier used to activate specialised adapters.

        Food photography is dominated by warm, saturated hues (reds, oranges,
        yellows, browns). Returns "food" when their share crosses the
        configured threshold, otherwise None.
        """
        pixels = image.pixels
        h, w = pixels.shape[:2]
        step = max(1, int(max(h, w) // 256))
        sample = pixels[::step, ::step].copy()
        hsv = cv2.cvtColor(sample, cv2.COLOR_RGB2HSV)
        try:
            hue, sat, val = hsv[..., 0], hsv[..., 1], hsv[..., 2]
            # OpenCV hue range is 0-179; warm band is red through yellow
            warm = ((hue <= 35) | (hue >= 165)) & (sat >= 70) & (val >= 50)
            ratio = float(np.count_nonzero(warm)) / float(warm.size)
        finally:
            hsv.fill(0)
            sample.fill(0)
        return "food" if ratio >= self.food_hint_threshold else None
