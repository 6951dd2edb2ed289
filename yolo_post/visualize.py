from __future__ import annotations

import time
from collections import deque
from typing import Callable, Iterable, Optional, Tuple

import numpy as np

from .catalog import ClassCatalog
from .types import Detection


_PALETTE = [
    (255, 56, 56),
    (255, 157, 151),
    (255, 112, 31),
    (255, 178, 29),
    (207, 210, 49),
    (72, 249, 10),
    (146, 204, 23),
    (61, 219, 134),
    (26, 147, 52),
    (0, 212, 187),
    (44, 153, 168),
    (0, 194, 255),
    (52, 69, 147),
    (100, 115, 255),
    (0, 24, 236),
    (132, 56, 255),
    (82, 0, 133),
    (203, 56, 255),
    (255, 149, 200),
    (255, 55, 199),
]


def color_for_class(class_id: int) -> Tuple[int, int, int]:
    """Deterministic BGR color; seeded RNG past the fixed palette."""
    if 0 <= class_id < len(_PALETTE):
        return _PALETTE[class_id]
    rng = np.random.default_rng(int(class_id))
    bgr = rng.integers(0, 256, size=3, dtype=np.uint8)
    return int(bgr[0]), int(bgr[1]), int(bgr[2])


def format_label(det: Detection, catalog: Optional[ClassCatalog] = None) -> str:
    name = catalog.name(det.class_id) if catalog is not None else str(det.class_id)
    return f"{name} {det.confidence * 100:.1f}%"


def draw_detections(
    image_bgr: np.ndarray,
    detections: Iterable[Detection],
    *,
    catalog: Optional[ClassCatalog] = None,
    box_thickness: int = 2,
    font_scale: float = 0.5,
    font_thickness: int = 1,
) -> np.ndarray:
    """
    Draw boxes and "<name> <pct>%" labels on a copy of a BGR image.

    Zero-area detections are skipped.
    """

    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for draw_detections(). Install with `pip install opencv-python`.") from e

    if image_bgr is None or not hasattr(image_bgr, "shape"):
        raise TypeError("image_bgr must be a NumPy array (BGR).")
    if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
        raise ValueError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")

    out = image_bgr.copy()
    h, w = out.shape[:2]

    for det in detections:
        if det.width <= 0 or det.height <= 0:
            continue

        x1i = int(np.clip(round(det.x1), 0, w - 1))
        y1i = int(np.clip(round(det.y1), 0, h - 1))
        x2i = int(np.clip(round(det.x2), 0, w - 1))
        y2i = int(np.clip(round(det.y2), 0, h - 1))

        color = color_for_class(det.class_id)
        cv2.rectangle(out, (x1i, y1i), (x2i, y2i), color, thickness=box_thickness)

        label = format_label(det, catalog)
        (tw, th), baseline = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, font_scale, font_thickness)
        # Above the box when it fits, pushed back inside the image otherwise.
        x = min(x1i, max(0, w - tw))
        y = max(0, y1i - th - baseline)

        cv2.rectangle(out, (x, y), (min(x + tw, w - 1), min(y + th + baseline, h - 1)), color, thickness=-1)
        cv2.putText(
            out,
            label,
            (x, min(y + th, h - 1)),
            cv2.FONT_HERSHEY_SIMPLEX,
            font_scale,
            (255, 255, 255),
            thickness=font_thickness,
            lineType=cv2.LINE_AA,
        )

    return out


class FpsMeter:
    """
    Moving average of frames per second over the last `window` frame intervals.

    `tick()` is called once per displayed frame and returns None until the
    window is full.
    """

    def __init__(self, window: int = 10, clock: Callable[[], float] = time.perf_counter):
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = int(window)
        self._clock = clock
        self._last: Optional[float] = None
        self._history: deque = deque(maxlen=self.window)

    def tick(self) -> Optional[float]:
        now = self._clock()
        last, self._last = self._last, now
        if last is None:
            return None
        dt = now - last
        if dt <= 0:
            return self.fps
        self._history.append(1.0 / dt)
        return self.fps

    @property
    def fps(self) -> Optional[float]:
        if len(self._history) < self.window:
            return None
        return sum(self._history) / len(self._history)

    def reset(self) -> None:
        self._last = None
        self._history.clear()


def draw_fps(image_bgr: np.ndarray, fps: Optional[float], *, font_scale: float = 0.5) -> np.ndarray:
    """Draw an "FPS=12.34" badge in the top-right corner, in place. No-op when `fps` is None."""

    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for draw_fps(). Install with `pip install opencv-python`.") from e

    if fps is None:
        return image_bgr

    text = f"FPS={fps:.2f}"
    (tw, th), baseline = cv2.getTextSize(text, cv2.FONT_HERSHEY_SIMPLEX, font_scale, 1)
    w = image_bgr.shape[1]
    x = max(0, w - tw)
    cv2.rectangle(image_bgr, (x, 0), (w - 1, th + baseline), (255, 255, 255), thickness=-1)
    cv2.putText(image_bgr, text, (x, th), cv2.FONT_HERSHEY_SIMPLEX, font_scale, (0, 0, 0))
    return image_bgr
