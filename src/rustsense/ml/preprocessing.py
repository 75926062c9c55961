"""Image preprocessing pipeline.

    JPEG bytes -> PixelBuffer (RGBA) -> PixelBuffer (resize_size x resize_size)
               -> float32 tensor [1, 3, crop_size, crop_size]

The resize stretches to a square and does NOT preserve aspect ratio. The
severity model was trained on stretched inputs, so letterboxing here would
silently shift predictions.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image

from rustsense.ml.errors import DecodeError, ResizeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from rustsense.config import Settings

logger = logging.getLogger(__name__)

CHANNELS = 4
JPEG_SOI = b"\xff\xd8\xff"

ResampleName = Literal["bilinear", "bicubic", "nearest"]

_RESAMPLE_FILTERS: dict[str, Image.Resampling] = {
    "bilinear": Image.Resampling.BILINEAR,
    "bicubic": Image.Resampling.BICUBIC,
    "nearest": Image.Resampling.NEAREST,
}


@dataclass(frozen=True)
class PixelBuffer:
    """Interleaved RGBA pixels, row-major.

    ``data`` is immutable, so every stage returns a new buffer and concurrent
    invocations never share writable pixel memory.
    """

    width: int
    height: int
    data: bytes

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid buffer dimensions {self.width}x{self.height}")
        expected = self.width * self.height * CHANNELS
        if len(self.data) != expected:
            raise ValueError(f"Buffer holds {len(self.data)} bytes, expected {expected}")

    def as_array(self) -> NDArray[np.uint8]:
        """Return a read-only HxWx4 view of the pixel data."""
        return np.frombuffer(self.data, dtype=np.uint8).reshape(self.height, self.width, CHANNELS)


@dataclass(frozen=True)
class PreprocessConfig:
    """Geometry and layout of the model input.

    ``resize_mode`` and ``layout`` only admit the values the model was trained
    with; they are named here so the assumptions are visible and testable.
    """

    resize_size: int = 256
    crop_size: int = 224
    resample: ResampleName = "bilinear"
    resize_mode: Literal["stretch"] = "stretch"
    layout: Literal["NCHW"] = "NCHW"
    max_pixels: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> PreprocessConfig:
        return cls(
            resize_size=settings.resize_size,
            crop_size=settings.crop_size,
            resample=settings.resample,
            max_pixels=settings.max_image_pixels,
        )

    @property
    def tensor_shape(self) -> tuple[int, int, int, int]:
        return (1, 3, self.crop_size, self.crop_size)


def decode_jpeg(image_bytes: bytes, max_pixels: int | None = None) -> PixelBuffer:
    """Decode a JPEG byte stream into an RGBA pixel buffer.

    The stream is validated structurally even if the caller already checked
    the file type: it must start with the SOI marker, be recognized by Pillow
    as JPEG, and decode completely.

    Args:
        image_bytes: Raw JPEG file bytes.
        max_pixels: Optional upper bound on width * height.

    Returns:
        RGBA PixelBuffer at the image's native resolution.

    Raises:
        DecodeError: If the bytes are empty, not JPEG, truncated, corrupt,
            or exceed ``max_pixels``.
    """
    if not image_bytes:
        raise DecodeError("Empty image payload")
    if not image_bytes.startswith(JPEG_SOI):
        raise DecodeError("Payload is not a JPEG byte stream")

    try:
        image = Image.open(io.BytesIO(image_bytes), formats=["JPEG"])
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Unreadable JPEG: {exc}") from exc

    with image:
        width, height = image.size
        if max_pixels is not None and width * height > max_pixels:
            raise DecodeError(f"Image {width}x{height} exceeds the {max_pixels} pixel limit")
        try:
            image.load()
            rgba = image.convert("RGBA")
        except (OSError, SyntaxError, ValueError) as exc:
            raise DecodeError(f"Corrupt JPEG data: {exc}") from exc

    logger.debug("Decoded JPEG %dx%d", width, height)
    return PixelBuffer(width=rgba.width, height=rgba.height, data=rgba.tobytes())


def resize(
    buffer: PixelBuffer,
    target_width: int,
    target_height: int,
    resample: ResampleName = "bilinear",
) -> PixelBuffer:
    """Stretch ``buffer`` to exactly ``target_width`` x ``target_height``.

    Raises:
        ResizeError: If a target dimension is not positive, the filter is
            unknown, or resampling fails.
    """
    if target_width <= 0 or target_height <= 0:
        raise ResizeError(f"Invalid resize target {target_width}x{target_height}")
    try:
        resample_filter = _RESAMPLE_FILTERS[resample]
    except KeyError:
        raise ResizeError(f"Unknown resample filter: {resample}") from None

    source = Image.frombytes("RGBA", (buffer.width, buffer.height), buffer.data)
    try:
        resized = source.resize((target_width, target_height), resample_filter)
    except (OSError, ValueError) as exc:
        raise ResizeError(f"Resampling failed: {exc}") from exc

    if resized.size != (target_width, target_height):
        raise ResizeError(f"Resampler returned {resized.size}, expected {(target_width, target_height)}")
    return PixelBuffer(width=target_width, height=target_height, data=resized.tobytes())


def normalize_channels(pixels: NDArray[np.generic]) -> NDArray[np.float32]:
    """Turn HxWx3 channel values into 3xHxW float32 planes scaled to [0, 1].

    NaN (possible only for float input) becomes 0.0.
    """
    planes = np.transpose(pixels, (2, 0, 1)).astype(np.float32) / np.float32(255.0)
    result: NDArray[np.float32] = np.nan_to_num(planes, nan=0.0)
    return result


def center_crop_normalize(buffer: PixelBuffer, crop_size: int) -> NDArray[np.float32]:
    """Crop the center ``crop_size`` square and convert it to an NCHW tensor.

    Offsets are ``floor((dim - crop_size) / 2)`` on each axis. Destination
    pixels whose source falls outside the buffer (a source smaller than the
    crop) are zero in all three planes. Alpha is dropped and RGB are scaled
    to [0, 1].

    Returns:
        float32 array of shape (1, 3, crop_size, crop_size).
    """
    if crop_size <= 0:
        raise ValueError(f"Invalid crop size {crop_size}")

    offset_x = (buffer.width - crop_size) // 2
    offset_y = (buffer.height - crop_size) // 2
    tensor = np.zeros((1, 3, crop_size, crop_size), dtype=np.float32)

    # Clip the crop window to the source; everything outside stays zero.
    src_x0, src_x1 = max(offset_x, 0), min(offset_x + crop_size, buffer.width)
    src_y0, src_y1 = max(offset_y, 0), min(offset_y + crop_size, buffer.height)
    if src_x1 > src_x0 and src_y1 > src_y0:
        window = buffer.as_array()[src_y0:src_y1, src_x0:src_x1, :3]
        dst_x0 = src_x0 - offset_x
        dst_y0 = src_y0 - offset_y
        rows, cols = window.shape[:2]
        tensor[0, :, dst_y0 : dst_y0 + rows, dst_x0 : dst_x0 + cols] = normalize_channels(window)

    logger.debug("Cropped %dx%d at offset (%d, %d)", crop_size, crop_size, offset_x, offset_y)
    return tensor


class ImagePreprocessor:
    """Runs decode, stretch resize and center crop under one config."""

    def __init__(self, config: PreprocessConfig) -> None:
        self._config = config

    @property
    def config(self) -> PreprocessConfig:
        return self._config

    def preprocess(self, image_bytes: bytes) -> NDArray[np.float32]:
        """Turn JPEG bytes into a model-ready tensor.

        Raises:
            DecodeError: If the bytes cannot be decoded.
            ResizeError: If resizing fails.
        """
        cfg = self._config
        decoded = decode_jpeg(image_bytes, max_pixels=cfg.max_pixels)
        resized = resize(decoded, cfg.resize_size, cfg.resize_size, cfg.resample)
        return center_crop_normalize(resized, cfg.crop_size)
