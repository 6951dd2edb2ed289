from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .config import LetterboxConfig
from .errors import InvalidImage
from .types import LetterboxTransform


_INTERPOLATIONS = {
    "linear": "INTER_LINEAR",
    "area": "INTER_AREA",
}


def _check_image(image: np.ndarray) -> Tuple[int, int]:
    if image is None or not hasattr(image, "shape"):
        raise InvalidImage("image must be a NumPy array (H, W, 3).")
    if image.ndim != 3 or image.shape[2] != 3:
        raise InvalidImage(f"Expected image shape (H, W, 3), got {getattr(image, 'shape', None)}")
    h, w = image.shape[:2]
    if w <= 0 or h <= 0:
        raise InvalidImage(f"Image dimensions must be > 0, got {w}x{h}")
    return int(w), int(h)


def compute_transform(
    orig_w: int,
    orig_h: int,
    target_size: int = 640,
    *,
    stride_aligned: bool = False,
    align_stride: int = 32,
) -> Tuple[LetterboxTransform, Tuple[int, int]]:
    """
    Letterbox geometry for an `orig_w` x `orig_h` image.

    The long side is scaled to `target_size`. With `stride_aligned` each scaled
    side is padded up to the next multiple of `align_stride` instead of to a
    `target_size` square.

    Returns:
        transform: scale, left/top padding and the network input size
        resized: (w, h) of the scaled image before padding
    """

    if orig_w <= 0 or orig_h <= 0:
        raise InvalidImage(f"Image dimensions must be > 0, got {orig_w}x{orig_h}")
    if target_size <= 0:
        raise ValueError("target_size must be > 0")
    if stride_aligned and align_stride <= 0:
        raise ValueError("align_stride must be > 0")

    scale = target_size / max(orig_w, orig_h)
    resized_w = max(1, int(round(orig_w * scale)))
    resized_h = max(1, int(round(orig_h * scale)))

    if stride_aligned:
        net_w = int(math.ceil(resized_w / align_stride) * align_stride)
        net_h = int(math.ceil(resized_h / align_stride) * align_stride)
    else:
        net_w = net_h = int(target_size)

    pad_x = (net_w - resized_w) // 2
    pad_y = (net_h - resized_h) // 2

    transform = LetterboxTransform(
        scale=float(scale),
        pad_x=float(pad_x),
        pad_y=float(pad_y),
        network_w=net_w,
        network_h=net_h,
    )
    return transform, (resized_w, resized_h)


def letterbox(
    image: np.ndarray,
    target_size: int = 640,
    *,
    stride_aligned: bool = False,
    align_stride: int = 32,
    color: Tuple[int, int, int] = (114, 114, 114),
    interpolation: str = "linear",
) -> Tuple[np.ndarray, LetterboxTransform]:
    """
    Resize with a uniform scale and pad with `color` to the network input size.

    Padding is split floor-half before (left/top) and the remainder after
    (right/bottom).
    """

    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for letterbox(). Install with `pip install opencv-python`.") from e

    orig_w, orig_h = _check_image(image)
    if interpolation not in _INTERPOLATIONS:
        raise ValueError(f"interpolation must be one of {sorted(_INTERPOLATIONS)}, got {interpolation!r}")

    transform, (resized_w, resized_h) = compute_transform(
        orig_w,
        orig_h,
        target_size,
        stride_aligned=stride_aligned,
        align_stride=align_stride,
    )

    if (orig_w, orig_h) != (resized_w, resized_h):
        flag = getattr(cv2, _INTERPOLATIONS[interpolation])
        image = cv2.resize(image, (resized_w, resized_h), interpolation=flag)

    left, top = int(transform.pad_x), int(transform.pad_y)
    right = transform.network_w - resized_w - left
    bottom = transform.network_h - resized_h - top
    padded = cv2.copyMakeBorder(image, top, bottom, left, right, cv2.BORDER_CONSTANT, value=color)

    return padded, transform


def to_tensor(padded: np.ndarray, swap_rb: bool = True) -> np.ndarray:
    """
    HWC uint8 -> CHW float32 scaled by 1/255 (no mean subtraction).
    """

    img = padded[:, :, ::-1] if swap_rb else padded
    tensor = img.astype(np.float32) * np.float32(1.0 / 255.0)
    return np.ascontiguousarray(np.transpose(tensor, (2, 0, 1)))


@dataclass(frozen=True)
class PreprocessResult:
    tensor: np.ndarray
    transform: LetterboxTransform
    orig_size: Tuple[int, int]


def preprocess(image_bgr: np.ndarray, cfg: LetterboxConfig = LetterboxConfig()) -> PreprocessResult:
    """
    Letterbox a BGR image and produce the (3, H, W) network tensor.
    """

    orig_w, orig_h = _check_image(image_bgr)
    padded, transform = letterbox(
        image_bgr,
        cfg.target_size,
        stride_aligned=cfg.stride_aligned,
        align_stride=cfg.align_stride,
        color=cfg.color,
        interpolation=cfg.interpolation,
    )
    return PreprocessResult(
        tensor=to_tensor(padded, swap_rb=cfg.swap_rb),
        transform=transform,
        orig_size=(orig_w, orig_h),
    )
