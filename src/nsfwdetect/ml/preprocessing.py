"""Image preprocessing pipeline.

Turns encoded image bytes into the input tensor of the classification model:

    decode -> float32 -> batch of one -> bilinear resize -> (x - mean) / scale

The resize reproduces the legacy bilinear sampling the model was exported
with (source coordinate ``dst * in / out``, no half-pixel offset and no
antialiasing), so Pillow's own resampling filters are not used.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image

from nsfwdetect.errors import InvalidImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from nsfwdetect.config import Settings

logger = logging.getLogger(__name__)

ImageFormat = Literal["jpeg", "png"]

# Multi-picture JPEGs (MPO) decode to their first frame.
_PIL_FORMATS: dict[str, tuple[str, ...]] = {"jpeg": ("JPEG", "MPO"), "png": ("PNG",)}


class ImageNormalizer:
    """Builds the fixed-size normalized tensor the model expects."""

    def __init__(self, settings: Settings) -> None:
        self._size = settings.image_size
        self._mean = np.float32(settings.mean)
        self._scale = np.float32(settings.scale)
        self._max_pixels = settings.max_image_pixels

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        return (1, self._size, self._size, 3)

    def decode_image(self, image_bytes: bytes, image_format: ImageFormat = "jpeg") -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Encoded file contents.
            image_format: Container format the bytes must be in.

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            InvalidImageError: If the bytes are not a decodable image of the
                requested format or exceed the pixel limit.
        """
        expected = _PIL_FORMATS[image_format]
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                if img.format not in expected:
                    raise InvalidImageError(f"expected {expected[0]} data, got {img.format}")
                width, height = img.size
                if width * height > self._max_pixels:
                    raise InvalidImageError(f"image has {width * height} pixels, limit is {self._max_pixels}")
                rgb = img.convert("RGB")
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
            logger.debug("Could not decode %s image: %s", image_format, exc)
            raise InvalidImageError("invalid image") from exc

        pixels = np.asarray(rgb, dtype=np.uint8)
        if pixels.ndim != 3 or pixels.shape[2] != 3 or 0 in pixels.shape:
            raise InvalidImageError(f"unexpected pixel layout {pixels.shape}")
        return pixels

    def normalize(self, image_bytes: bytes, image_format: ImageFormat = "jpeg") -> NDArray[np.float32]:
        """Decode an image and return a (1, size, size, 3) float32 tensor.

        A new buffer is built on every call; nothing is cached between images.
        """
        pixels = self.decode_image(image_bytes, image_format)
        resized = resize_bilinear(pixels, self._size, self._size)
        batch = np.expand_dims(resized, axis=0)
        return (batch - self._mean) / self._scale


def resize_bilinear(pixels: NDArray[np.uint8], height: int, width: int) -> NDArray[np.float32]:
    """Resize an HxWxC image with legacy bilinear sampling.

    Only the four neighbours of each output pixel are cast to float32, which
    gives the same result as casting the whole image first.
    """
    in_h, in_w = pixels.shape[:2]

    ys = np.arange(height, dtype=np.float32) * np.float32(in_h / height)
    xs = np.arange(width, dtype=np.float32) * np.float32(in_w / width)

    y0 = np.minimum(np.floor(ys).astype(np.intp), in_h - 1)
    x0 = np.minimum(np.floor(xs).astype(np.intp), in_w - 1)
    y1 = np.minimum(y0 + 1, in_h - 1)
    x1 = np.minimum(x0 + 1, in_w - 1)

    dy = (ys - y0)[:, None, None]
    dx = (xs - x0)[None, :, None]

    top_left = pixels[y0[:, None], x0[None, :]].astype(np.float32)
    top_right = pixels[y0[:, None], x1[None, :]].astype(np.float32)
    bottom_left = pixels[y1[:, None], x0[None, :]].astype(np.float32)
    bottom_right = pixels[y1[:, None], x1[None, :]].astype(np.float32)

    top = top_left + (top_right - top_left) * dx
    bottom = bottom_left + (bottom_right - bottom_left) * dx
    return (top + (bottom - top) * dy).astype(np.float32)
