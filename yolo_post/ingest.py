from __future__ import annotations

from typing import Optional, Union

import numpy as np

from .errors import InvalidImage


BufferLike = Union[bytes, bytearray, memoryview, np.ndarray]

# channel_order -> (bytes per pixel, cv2 conversion code name or None)
_LAYOUTS = {
    "BGR": (3, None),
    "RGB": (3, "COLOR_RGB2BGR"),
    "BGRA": (4, "COLOR_BGRA2BGR"),
    "RGBA": (4, "COLOR_RGBA2BGR"),
    "NV12": (1, "COLOR_YUV2BGR_NV12"),
    "NV21": (1, "COLOR_YUV2BGR_NV21"),
}


def _rows_view(data: np.ndarray, rows: int, row_bytes: int, stride: int) -> np.ndarray:
    need = stride * (rows - 1) + row_bytes
    if data.size < need:
        raise InvalidImage(f"Buffer too small: need {need} bytes, got {data.size}")
    if data.size >= stride * rows:
        return data[: stride * rows].reshape(rows, stride)[:, :row_bytes]
    # Last row may be unpadded.
    return np.lib.stride_tricks.as_strided(data, shape=(rows, row_bytes), strides=(stride, 1))


def image_from_buffer(
    buffer: BufferLike,
    width: int,
    height: int,
    stride: Optional[int] = None,
    channel_order: str = "BGR",
) -> np.ndarray:
    """
    Wrap a raw pixel buffer as a contiguous (H, W, 3) BGR uint8 image.

    Args:
        buffer: raw bytes; rows may carry padding
        width, height: image size in pixels
        stride: bytes per row (>= width * bytes-per-pixel); defaults to tightly packed
        channel_order: BGR, RGB, BGRA, RGBA, or the NV12 / NV21 camera layouts
    """

    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for image_from_buffer(). Install with `pip install opencv-python`.") from e

    order = str(channel_order).upper()
    if order not in _LAYOUTS:
        raise InvalidImage(f"Unsupported channel layout {channel_order!r}. Supported: {sorted(_LAYOUTS)}")
    if width <= 0 or height <= 0:
        raise InvalidImage(f"Image dimensions must be > 0, got {width}x{height}")

    bpp, conversion = _LAYOUTS[order]
    row_bytes = width * bpp
    if stride is None:
        stride = row_bytes
    if stride < row_bytes:
        raise InvalidImage(f"Row stride {stride} is smaller than width * bpp = {row_bytes}")

    rows = height
    if order in ("NV12", "NV21"):
        if width % 2 or height % 2:
            raise InvalidImage("NV12/NV21 frames need even width and height")
        rows = height * 3 // 2

    if isinstance(buffer, np.ndarray):
        # Byte strides below assume packed memory.
        data = np.ascontiguousarray(buffer).reshape(-1)
    else:
        data = np.frombuffer(buffer, dtype=np.uint8)
    if data.dtype != np.uint8:
        raise InvalidImage(f"Pixel buffer must be uint8, got {data.dtype}")

    # Always copy: the caller owns `buffer` only for the duration of the call.
    frame = np.array(_rows_view(data, rows, row_bytes, stride), dtype=np.uint8)
    if order not in ("NV12", "NV21"):
        frame = frame.reshape(height, width, bpp)

    if conversion is None:
        return frame
    return cv2.cvtColor(frame, getattr(cv2, conversion))
