from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .types import Proposal


@dataclass
class NMSConfig:
    iou_threshold: float = 0.45
    max_detections: Optional[int] = None


def box_iou(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    """
    IoU between one xyxy box (4,) and N xyxy boxes (N, 4). A zero union gives 0.
    """

    others = np.asarray(others, dtype=np.float32).reshape(-1, 4)
    xx1 = np.maximum(box[0], others[:, 0])
    yy1 = np.maximum(box[1], others[:, 1])
    xx2 = np.minimum(box[2], others[:, 2])
    yy2 = np.minimum(box[3], others[:, 3])

    inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
    area = max(0.0, float(box[2] - box[0])) * max(0.0, float(box[3] - box[1]))
    areas = np.maximum(0.0, others[:, 2] - others[:, 0]) * np.maximum(0.0, others[:, 3] - others[:, 1])
    union = area + areas - inter
    return np.where(union > 0, inter / np.where(union > 0, union, 1.0), 0.0)


def sort_order(scores: np.ndarray) -> np.ndarray:
    """Indices ordering `scores` descending; equal scores keep their input order."""
    return np.argsort(-np.asarray(scores), kind="stable")


def sort_proposals(proposals: Sequence[Proposal]) -> List[Proposal]:
    return sorted(proposals, key=lambda p: p.confidence, reverse=True)


def nms_sorted(boxes: np.ndarray, class_ids: np.ndarray, cfg: NMSConfig) -> np.ndarray:
    """
    Greedy per-class NMS over boxes already sorted by descending confidence.

    Expects boxes shape (N, 4) in xyxy and class_ids shape (N,). A box is dropped
    when its IoU with an already kept box of the same class exceeds the
    threshold; other classes never suppress it. Returns kept indices in input
    order.
    """

    n = int(boxes.shape[0]) if boxes.size else 0
    if n == 0:
        return np.empty((0,), dtype=np.int32)

    keep: List[int] = []
    for i in range(n):
        if cfg.max_detections is not None and len(keep) >= cfg.max_detections:
            break
        same = [j for j in keep if class_ids[j] == class_ids[i]]
        if same and np.any(box_iou(boxes[i], boxes[same]) > cfg.iou_threshold):
            continue
        keep.append(i)

    return np.array(keep, dtype=np.int32)


def nms(proposals: Sequence[Proposal], iou_threshold: float = 0.45, max_detections: Optional[int] = None) -> List[Proposal]:
    """
    Per-class NMS on a list of proposals sorted by descending confidence.
    """

    if not proposals:
        return []
    boxes = np.array([p.as_xyxy() for p in proposals], dtype=np.float32)
    class_ids = np.array([p.class_id for p in proposals], dtype=np.int64)
    keep = nms_sorted(boxes, class_ids, NMSConfig(iou_threshold=iou_threshold, max_detections=max_detections))
    return [proposals[i] for i in keep]
