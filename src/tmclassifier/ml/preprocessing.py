"""Image preprocessing pipeline.

Turns any classifier input source into the batched float tensor the model
expects:

    native size -> scale shorter side to ``size`` -> center crop -> (mirror)
    -> float pixels -> (grayscale) -> add batch axis -> x / 127 - 1

Intermediate buffers are registered with a :class:`ScratchScope`, which
releases all of them when the pass ends, whether it succeeded or not.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import numpy as np
from PIL import Image, ImageOps

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from tmclassifier.ml.sources import ClassifierInputSource

logger = logging.getLogger(__name__)

T = TypeVar("T")

RGB_WEIGHTS = np.array([0.2989, 0.587, 0.114], dtype=np.float32)

# Not 127.5: 255 maps to 255/127 - 1, slightly above 1.0.
NORMALIZATION_DIVISOR = np.float32(127)


class ScratchScope:
    """Holds the temporaries of one preprocessing and inference pass.

    Use as a context manager; everything passed to :meth:`keep` is released
    on exit. Pillow images are closed, array references are dropped.
    """

    def __init__(self) -> None:
        self._buffers: list[object] = []

    def __enter__(self) -> ScratchScope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def keep(self, buffer: T) -> T:
        self._buffers.append(buffer)
        return buffer

    @property
    def live(self) -> int:
        """Number of buffers not yet released."""
        return len(self._buffers)

    def release(self) -> None:
        for buffer in self._buffers:
            if isinstance(buffer, Image.Image):
                buffer.close()
        self._buffers.clear()


def _keep(scope: ScratchScope | None, buffer: T) -> T:
    return buffer if scope is None else scope.keep(buffer)


@dataclass(frozen=True)
class CropGeometry:
    """Where a ``size x size`` square sits inside the scaled source image."""

    size: int
    scaled_width: int
    scaled_height: int
    offset_x: int
    offset_y: int

    @property
    def box(self) -> tuple[int, int, int, int]:
        """Crop box (left, upper, right, lower) in scaled-image coordinates."""
        return (self.offset_x, self.offset_y, self.offset_x + self.size, self.offset_y + self.size)

    def source_box(self, width: int, height: int) -> tuple[float, float, float, float]:
        """The crop box mapped back onto the unscaled ``width x height`` source."""
        shortest = min(width, height)
        left, upper, right, lower = (edge * shortest / self.size for edge in self.box)
        return (left, upper, min(right, width), min(lower, height))


def crop_geometry(width: int, height: int, size: int) -> CropGeometry:
    """Compute the scale-then-center-crop layout for a ``width x height`` image.

    The shorter side is scaled to ``size``. Scaled dimensions are rounded up,
    and offsets are truncated, so an odd difference leaves the extra pixel on
    the right (or bottom) edge.

    Raises:
        ValueError: If any dimension is not positive.
    """
    if width <= 0 or height <= 0 or size <= 0:
        raise ValueError(f"Invalid crop dimensions: {width}x{height} -> {size}")

    shortest = min(width, height)
    # ceil(dim * size / shortest) in exact integer arithmetic
    scaled_width = -(-width * size // shortest)
    scaled_height = -(-height * size // shortest)
    return CropGeometry(
        size=size,
        scaled_width=scaled_width,
        scaled_height=scaled_height,
        offset_x=(scaled_width - size) // 2,
        offset_y=(scaled_height - size) // 2,
    )


def crop_to(
    source: ClassifierInputSource,
    size: int,
    flipped: bool = False,
    scope: ScratchScope | None = None,
) -> Image.Image:
    """Scale and center-crop ``source`` to a ``size x size`` RGB image.

    Args:
        source: Any classifier input source.
        size: Side length of the output square.
        flipped: Mirror the square horizontally.
        scope: Optional scratch scope that receives the intermediate images.
    """
    width, height = source.native_size()
    geometry = crop_geometry(width, height, size)

    rendered = _keep(scope, source.to_image())
    # only the crop region is resampled; the full scaled image is never built
    canvas = rendered.resize(
        (size, size),
        Image.Resampling.BILINEAR,
        box=geometry.source_box(width, height),
    )

    if flipped:
        canvas = ImageOps.mirror(_keep(scope, canvas))

    logger.debug(
        "Cropped %sx%s source to %s (scaled %sx%s, offset %s,%s, flipped=%s)",
        width,
        height,
        size,
        geometry.scaled_width,
        geometry.scaled_height,
        geometry.offset_x,
        geometry.offset_y,
        flipped,
    )
    return canvas


def to_grayscale(pixels: NDArray[np.float32]) -> NDArray[np.float32]:
    """Collapse the color axis of an HxWx3 array to a single luminance channel."""
    return np.sum(pixels[..., :3] * RGB_WEIGHTS, axis=-1, keepdims=True, dtype=np.float32)


def crop_tensor(pixels: NDArray[np.float32], grayscale: bool = False) -> NDArray[np.float32]:
    """Take the centered square of an HxWxC array, optionally as grayscale."""
    height, width = pixels.shape[:2]
    size = min(height, width)
    top = (height - size) // 2
    left = (width - size) // 2
    cropped = pixels[top : top + size, left : left + size, :3]
    if grayscale:
        return to_grayscale(cropped)
    return cropped


def normalize(pixels: NDArray[np.generic]) -> NDArray[np.float32]:
    """Map 0..255 pixel values to [-1, ~1.008] via ``x / 127 - 1``."""
    return np.asarray(pixels, dtype=np.float32) / NORMALIZATION_DIVISOR - np.float32(1)


def capture(
    image: Image.Image,
    grayscale: bool = False,
    scope: ScratchScope | None = None,
) -> NDArray[np.float32]:
    """Convert a cropped RGB image into a normalized 1xHxWxC float32 batch."""
    rgb = image if image.mode == "RGB" else _keep(scope, image.convert("RGB"))
    pixels = _keep(scope, np.asarray(rgb, dtype=np.float32))
    cropped = _keep(scope, crop_tensor(pixels, grayscale))
    batched = _keep(scope, cropped[np.newaxis, ...])
    return normalize(batched)
