"""Image sources accepted by the classifier.

Each variant knows its own native pixel size and how to render itself as an
RGB Pillow image. Video frames report the frame's pixel dimensions, never the
size they are displayed at.
"""

from __future__ import annotations

import io
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from PIL import Image, ImageOps, UnidentifiedImageError

EXIF_ORIENTATION = 0x0112

# orientations 5-8 swap width and height
_TRANSPOSED_ORIENTATIONS = frozenset({5, 6, 7, 8})


def _array_to_image(pixels: NDArray[np.uint8]) -> Image.Image:
    if pixels.ndim == 2:
        return Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8)).convert("RGB")
    if pixels.ndim == 3 and pixels.shape[2] in (3, 4):
        rgb = np.ascontiguousarray(pixels[:, :, :3], dtype=np.uint8)
        return Image.fromarray(rgb)
    raise ValueError(f"Unsupported pixel array shape: {pixels.shape}")


@dataclass(frozen=True)
class StillImage:
    """A static, already-decoded image."""

    image: Image.Image

    def native_size(self) -> tuple[int, int]:
        return self.image.size

    def to_image(self) -> Image.Image:
        return self.image.convert("RGB")


@dataclass(frozen=True)
class CanvasBuffer:
    """An in-memory pixel buffer (HxW, HxWx3 or HxWx4 uint8, RGB order)."""

    pixels: NDArray[np.uint8]

    def native_size(self) -> tuple[int, int]:
        height, width = self.pixels.shape[:2]
        return width, height

    def to_image(self) -> Image.Image:
        return _array_to_image(self.pixels)


@dataclass(frozen=True)
class VideoFrame:
    """A frame grabbed from a live video feed.

    ``display_width``/``display_height`` describe how the feed is shown and
    are ignored for preprocessing. Set ``bgr`` for OpenCV-style frames.
    """

    frame: NDArray[np.uint8]
    display_width: int | None = None
    display_height: int | None = None
    bgr: bool = False

    def native_size(self) -> tuple[int, int]:
        height, width = self.frame.shape[:2]
        return width, height

    def to_image(self) -> Image.Image:
        frame = self.frame
        if self.bgr and frame.ndim == 3:
            frame = frame[:, :, 2::-1]
        return _array_to_image(frame)


@dataclass(frozen=True)
class EncodedBitmap:
    """Encoded image file bytes (PNG, JPEG, ...).

    The EXIF orientation tag is honored, so a rotated camera JPEG reports and
    renders the size it is displayed at.
    """

    data: bytes
    max_pixels: int | None = None

    def _open(self) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(self.data))
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
            raise ValueError(f"Cannot decode image: {exc}") from exc
        width, height = image.size
        if self.max_pixels is not None and width * height > self.max_pixels:
            image.close()
            raise ValueError(f"Image too large: {width}x{height} exceeds {self.max_pixels} pixels")
        return image

    def native_size(self) -> tuple[int, int]:
        with self._open() as image:
            width, height = image.size
            if image.getexif().get(EXIF_ORIENTATION) in _TRANSPOSED_ORIENTATIONS:
                return height, width
            return width, height

    def to_image(self) -> Image.Image:
        with self._open() as image:
            try:
                oriented = ImageOps.exif_transpose(image)
            except OSError as exc:
                raise ValueError(f"Cannot decode image: {exc}") from exc
            with oriented:
                return oriented.convert("RGB")


ClassifierInputSource = StillImage | CanvasBuffer | VideoFrame | EncodedBitmap
