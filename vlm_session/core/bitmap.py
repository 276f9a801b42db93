"""Bitmap staging: canonical RGB images queued for the next tokenization.

Raw pixel buffers arrive in whatever layout the capture source produced
(camera frames are usually BGRA, decoded files RGBA or RGB). The vision
encoder only accepts tightly packed 8-bit RGB, row-major, no padding. This
module converts between the two with length-checked numpy views and keeps the
ordered queue of staged images until the session consumes them.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from pathlib import Path
import threading

from loguru import logger
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from ..models.errors import ImageStagingError

RGB_CHANNELS = 3


class PixelLayout(Enum):
    """Source pixel layouts with their per-pixel size and RGB channel offsets."""

    RGB = (3, (0, 1, 2))
    BGR = (3, (2, 1, 0))
    RGBA = (4, (0, 1, 2))
    BGRA = (4, (2, 1, 0))
    ARGB = (4, (1, 2, 3))
    GRAY = (1, (0, 0, 0))

    @property
    def bytes_per_pixel(self) -> int:
        return self.value[0]

    @property
    def rgb_offsets(self) -> tuple[int, int, int]:
        return self.value[1]


@dataclass(frozen=True)
class Bitmap:
    """A staged image: ``width * height * 3`` bytes of packed RGB."""

    width: int
    height: int
    data: bytes

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ImageStagingError(
                f"Bitmap dimensions must be positive (got {self.width}x{self.height})"
            )
        expected = self.width * self.height * RGB_CHANNELS
        if len(self.data) != expected:
            raise ImageStagingError(
                f"Bitmap data is {len(self.data)} bytes, expected {expected} "
                f"for {self.width}x{self.height} RGB"
            )


def stage_from_buffer(
    raw_pixels: bytes | bytearray | memoryview,
    width: int,
    height: int,
    layout: PixelLayout = PixelLayout.RGBA,
) -> Bitmap:
    """Convert a raw pixel buffer into a canonical RGB ``Bitmap``.

    Parameters
    ----------
    raw_pixels : bytes | bytearray | memoryview
        Tightly packed source pixels, row-major.
    width, height : int
        Image dimensions in pixels.
    layout : PixelLayout, optional
        Channel layout of ``raw_pixels``. Alpha is discarded.

    Returns
    -------
    Bitmap
        The converted image, ready to enqueue.

    Raises
    ------
    ImageStagingError
        If the dimensions are not positive or the buffer length does not equal
        ``width * height * layout.bytes_per_pixel``.
    """
    if width <= 0 or height <= 0:
        raise ImageStagingError(f"Image dimensions must be positive (got {width}x{height})")

    expected = width * height * layout.bytes_per_pixel
    source = np.frombuffer(raw_pixels, dtype=np.uint8)
    if source.size != expected:
        raise ImageStagingError(
            f"Pixel buffer is {source.size} bytes, expected {expected} "
            f"for {width}x{height} {layout.name}"
        )

    pixels = source.reshape(height * width, layout.bytes_per_pixel)
    rgb = pixels[:, list(layout.rgb_offsets)]
    return Bitmap(width=width, height=height, data=np.ascontiguousarray(rgb).tobytes())


def load_bitmap_from_file(path: str | Path) -> Bitmap:
    """Decode an image file into a canonical RGB ``Bitmap``.

    EXIF orientation is applied so camera images are staged upright.

    Raises
    ------
    ImageStagingError
        If the file does not exist or cannot be decoded as an image.
    """
    image_path = Path(path)
    if not image_path.is_file():
        raise ImageStagingError(f"Image file {image_path} does not exist")
    try:
        with Image.open(image_path) as image:
            rgb_image = ImageOps.exif_transpose(image).convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageStagingError(f"Failed to decode image {image_path}: {exc}") from exc

    logger.debug(f"Decoded {image_path} as {rgb_image.width}x{rgb_image.height} RGB")
    return Bitmap(width=rgb_image.width, height=rgb_image.height, data=rgb_image.tobytes())


def load_bitmap_from_bytes(data: bytes) -> Bitmap:
    """Decode an encoded image (PNG, JPEG, ...) held in memory."""
    try:
        with Image.open(BytesIO(data)) as image:
            rgb_image = ImageOps.exif_transpose(image).convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageStagingError(f"Failed to decode image data: {exc}") from exc
    return Bitmap(width=rgb_image.width, height=rgb_image.height, data=rgb_image.tobytes())


class PendingImageQueue:
    """Insertion-ordered queue of bitmaps waiting for the next tokenization.

    Images are single-use: ``drain`` hands every queued bitmap to the caller
    and leaves the queue empty in one step.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bitmaps: list[Bitmap] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._bitmaps)

    def __iter__(self) -> Iterator[Bitmap]:
        return iter(self.snapshot())

    def push(self, bitmap: Bitmap) -> None:
        with self._lock:
            self._bitmaps.append(bitmap)

    def snapshot(self) -> list[Bitmap]:
        """Return the queued bitmaps without consuming them."""
        with self._lock:
            return list(self._bitmaps)

    def drain(self) -> list[Bitmap]:
        with self._lock:
            drained, self._bitmaps = self._bitmaps, []
        return drained

    def clear(self) -> None:
        with self._lock:
            self._bitmaps.clear()
