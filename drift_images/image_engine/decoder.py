"""Image decoder using pyvips.

Encoded bytes go in, a read-only RGB `Bitmap` comes out. When a target
size is given the image is thumbnailed straight from the buffer: libvips
shrinks on load, so the full-resolution raster is never materialized and
peak memory follows the target size rather than the source size.
"""

from __future__ import annotations

import contextlib
from typing import Any

import numpy as np

from drift_images.logger import get_logger

from .errors import DecodeError
from .metrics import metrics
from .types import Bitmap, TargetSize

_logger = get_logger("decoder")

RGB_CHANNELS = 3

_pyvips: Any | None = None


def _get_pyvips_module() -> Any:
    global _pyvips
    if _pyvips is None:
        import pyvips  # type: ignore

        # Configure pyvips caches to avoid memory growth
        with contextlib.suppress(Exception):
            pyvips.cache_set_max(0)
            pyvips.cache_set_max_mem(0)
            pyvips.cache_set_max_files(0)
        _pyvips = pyvips
    return _pyvips


def _to_rgb_array(image: Any) -> np.ndarray:
    pyvips = _get_pyvips_module()
    with contextlib.suppress(Exception):
        image = image.colourspace("srgb")
    if image.hasalpha():
        image = image.flatten(background=[0, 0, 0])
    if image.bands > RGB_CHANNELS:
        image = image.extract_band(0, n=RGB_CHANNELS)
    elif image.bands < RGB_CHANNELS:
        image = pyvips.Image.bandjoin([image] * RGB_CHANNELS)
    if image.format != "uchar":
        image = image.cast("uchar")

    mem = image.write_to_memory()
    array = np.frombuffer(mem, dtype=np.uint8).reshape(image.height, image.width, image.bands)
    # frombuffer views are tied to `mem`; own the pixels.
    array = array.copy()
    if array.shape[2] != RGB_CHANNELS:
        raise RuntimeError(f"Unsupported band count after conversion: {array.shape[2]}")
    return array


def decode_bytes(data: bytes, size: TargetSize | None = None, scale: float = 1.0) -> Bitmap:
    """Decode `data` into a Bitmap, downsampling on load when `size` is given.

    With a size, the longest edge of the result is
    ``max(size.width, size.height) * scale`` pixels. Sources already smaller
    than that are kept at native resolution (never upscaled).

    Raises DecodeError for empty, corrupt or unsupported input.
    """
    if not data:
        metrics.inc("decoder.failures")
        raise DecodeError("no image data")
    pyvips = _get_pyvips_module()
    try:
        with metrics.timed("decoder.duration"):
            if size is not None:
                edge = size.longest_edge_px(scale)
                image = pyvips.Image.thumbnail_buffer(data, edge, height=edge, size="down")
            else:
                # thumbnail_buffer applies EXIF orientation; match it here.
                image = pyvips.Image.new_from_buffer(data, "").autorot()
            array = _to_rgb_array(image)
    except Exception as e:
        metrics.inc("decoder.failures")
        _logger.debug("decode failed: %s", e)
        if size is not None:
            raise DecodeError(f"thumbnail generation failed: {e}") from e
        raise DecodeError(f"cannot decode image data: {e}") from e
    _logger.debug("decoded %d bytes -> %dx%d (target=%s)", len(data), array.shape[1], array.shape[0], size)
    return Bitmap(array)


class Decoder:
    """Decoder bound to the host's device scale factor."""

    def __init__(self, scale: float = 1.0):
        if scale <= 0:
            raise ValueError(f"scale must be positive, got {scale}")
        self.scale = float(scale)

    def decode(self, data: bytes, size: TargetSize | None = None) -> Bitmap:
        return decode_bytes(data, size, self.scale)
