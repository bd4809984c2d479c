"""Image preprocessing pipeline.

Turns a file path, base64 payload, encoded upload, or raw RGBA camera frame
into the flat float32 tensor the classifier consumes:

    decode -> exact-fit bilinear resize -> RGB -> HWC floats in [0, 1]

Aspect ratio is not preserved; non-square inputs are stretched.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import threading
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps

from visiontag.errors import DecodeError

if TYPE_CHECKING:
    from os import PathLike

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

DATA_URL_MARKER = "base64,"
RGBA_CHANNELS = 4

_DECODE_ERRORS = (OSError, ValueError, Image.DecompressionBombError)


def strip_data_url(text: str) -> str:
    """Drop everything up to and including the first ``base64,`` marker.

    Text without a marker is returned unchanged, so stripping is idempotent.
    """
    _, marker, payload = text.partition(DATA_URL_MARKER)
    return payload if marker else text


class Preprocessor:
    """Converts images of arbitrary size and layout into normalized tensors."""

    def __init__(
        self,
        target_width: int = 224,
        target_height: int = 224,
        max_image_pixels: int | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._target_width = target_width
        self._target_height = target_height
        self._max_image_pixels = max_image_pixels

    @property
    def target_size(self) -> tuple[int, int]:
        """Output (width, height)."""
        return self._target_width, self._target_height

    def set_target_dimensions(self, width: int, height: int) -> None:
        """Change the output size.

        Must not be called while classifications using this preprocessor are
        in flight.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Target dimensions must be positive, got {width}x{height}")
        with self._lock:
            self._target_width = width
            self._target_height = height

    # -- Entry points -------------------------------------------------------

    def from_path(self, path: str | PathLike[str]) -> NDArray[np.float32]:
        """Decode an image file (any format Pillow recognizes)."""
        with self._lock:
            try:
                with Image.open(path) as img:
                    return self._preprocess(self._prepare_decoded(img))
            except DecodeError:
                raise
            except _DECODE_ERRORS as exc:
                raise DecodeError(f"Failed to open image from path {path}: {exc}") from exc

    def from_encoded(self, text: str) -> NDArray[np.float32]:
        """Decode base64 image data, with or without a data-URL header."""
        payload = "".join(strip_data_url(text).split())
        try:
            image_bytes = base64.b64decode(payload, validate=True)
        except binascii.Error as exc:
            raise DecodeError(f"Failed to decode base64 image data: {exc}") from exc
        return self.from_bytes(image_bytes)

    def from_bytes(self, data: bytes) -> NDArray[np.float32]:
        """Decode an in-memory image container (PNG, JPEG, ...)."""
        with self._lock:
            try:
                with Image.open(io.BytesIO(data)) as img:
                    return self._preprocess(self._prepare_decoded(img))
            except DecodeError:
                raise
            except _DECODE_ERRORS as exc:
                raise DecodeError(f"Failed to load image from decoded data: {exc}") from exc

    def from_raw_pixels(self, width: int, height: int, data: bytes) -> NDArray[np.float32]:
        """Interpret ``data`` as a tightly packed RGBA frame of ``width`` x ``height``."""
        if width <= 0 or height <= 0:
            raise DecodeError(f"Invalid camera frame dimensions {width}x{height}")
        expected = width * height * RGBA_CHANNELS
        if len(data) != expected:
            raise DecodeError(
                f"Camera frame buffer has {len(data)} bytes, expected {expected} for {width}x{height} RGBA"
            )
        with self._lock:
            self._check_pixel_limit(width, height)
            img = Image.frombytes("RGBA", (width, height), bytes(data))
            return self._preprocess(img)

    # -- Internal -----------------------------------------------------------

    def _check_pixel_limit(self, width: int, height: int) -> None:
        if self._max_image_pixels is not None and width * height > self._max_image_pixels:
            raise DecodeError(f"Image of {width}x{height} exceeds the limit of {self._max_image_pixels} pixels")

    def _prepare_decoded(self, img: Image.Image) -> Image.Image:
        self._check_pixel_limit(*img.size)
        transposed = ImageOps.exif_transpose(img)
        return transposed if transposed is not None else img

    def _preprocess(self, img: Image.Image) -> NDArray[np.float32]:
        logger.debug("Resizing %s image from %s to %s", img.mode, img.size, self.target_size)
        # Alpha is discarded, not composited, so dropping it before the
        # resize gives the same pixels as dropping it after.
        rgb = img.convert("RGB")
        resized = rgb.resize(
            (self._target_width, self._target_height),
            resample=Image.Resampling.BILINEAR,
        )
        pixels = np.asarray(resized, dtype=np.float32)
        return (pixels / np.float32(255.0)).reshape(-1)
