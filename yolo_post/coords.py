from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from .types import Detection, LetterboxTransform, Proposal


def scale_boxes(boxes: np.ndarray, transform: LetterboxTransform, orig_size: Tuple[int, int]) -> np.ndarray:
    """
    Map xyxy boxes from letterboxed network space back to the original image.

    Each coordinate is clipped independently to [0, dim - 1].
    """

    out = np.array(boxes, dtype=np.float32).reshape(-1, 4)
    out[:, [0, 2]] = (out[:, [0, 2]] - transform.pad_x) / transform.scale
    out[:, [1, 3]] = (out[:, [1, 3]] - transform.pad_y) / transform.scale

    orig_w, orig_h = orig_size
    out[:, [0, 2]] = np.clip(out[:, [0, 2]], 0, orig_w - 1)
    out[:, [1, 3]] = np.clip(out[:, [1, 3]], 0, orig_h - 1)
    return out


def to_network_space(boxes: np.ndarray, transform: LetterboxTransform) -> np.ndarray:
    """Forward letterbox mapping for xyxy boxes in original image coordinates."""
    out = np.array(boxes, dtype=np.float64).reshape(-1, 4)
    out[:, [0, 2]] = out[:, [0, 2]] * transform.scale + transform.pad_x
    out[:, [1, 3]] = out[:, [1, 3]] * transform.scale + transform.pad_y
    return out


def to_detections(boxes: np.ndarray, scores: np.ndarray, class_ids: np.ndarray) -> List[Detection]:
    return [
        Detection(
            x1=float(x1),
            y1=float(y1),
            x2=float(x2),
            y2=float(y2),
            confidence=float(score),
            class_id=int(cls_id),
        )
        for (x1, y1, x2, y2), score, cls_id in zip(boxes, scores, class_ids)
    ]


def map_proposals(
    proposals: Sequence[Proposal],
    transform: LetterboxTransform,
    orig_size: Tuple[int, int],
) -> List[Detection]:
    """
    Turn network-space proposals into clipped detections, preserving order.
    """

    if not proposals:
        return []
    boxes = np.array([p.as_xyxy() for p in proposals], dtype=np.float32)
    boxes = scale_boxes(boxes, transform, orig_size)
    scores = np.array([p.confidence for p in proposals], dtype=np.float32)
    class_ids = np.array([p.class_id for p in proposals], dtype=np.int64)
    return to_detections(boxes, scores, class_ids)
