"""
Decode raw detector output rows into network-space proposals.

Two head layouts are supported behind `decode(..., style=...)`:

- "direct" (A): rows of (cx, cy, w, h, score_0 .. score_C-1), boxes already in
  network pixels, scores already probabilities.
- "dfl" (B): rows of (4 * reg_max box logits, C class logits). Each box side is
  a distribution over `reg_max` bins; its expectation times the grid stride is
  the distance from the cell center to that side.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from .config import STYLE_DFL, STYLE_DIRECT, normalize_style
from .errors import CatalogMismatch
from .grid import AnchorGrid
from .types import Proposal


logger = logging.getLogger(__name__)

_LOG2E = np.float32(1.4426950408889634)
# Cubic fit of 2**f on [0, 1); endpoints are exact.
_EXP2_C1 = np.float32(0.69583)
_EXP2_C2 = np.float32(0.22606)
_EXP2_C3 = np.float32(0.07811)


def fast_exp(x: np.ndarray) -> np.ndarray:
    """
    Approximate exp(x) by splitting x*log2(e) into integer and fractional parts.

    The integer part goes straight into the float exponent via `np.ldexp`; the
    fractional part uses a cubic polynomial. Relative error stays below 0.05%.
    Inputs are clamped to [-87, 88] to stay finite.
    """

    x = np.clip(np.asarray(x, dtype=np.float32), -87.0, 88.0)
    t = x * _LOG2E
    n = np.floor(t)
    f = t - n
    p = 1.0 + f * (_EXP2_C1 + f * (_EXP2_C2 + f * _EXP2_C3))
    return np.ldexp(p, n.astype(np.int32)).astype(np.float32)


def sigmoid(x: np.ndarray, fast: bool = False) -> np.ndarray:
    x = np.asarray(x, dtype=np.float32)
    if fast:
        return 1.0 / (1.0 + fast_exp(-x))
    # Split by sign so exp never overflows.
    out = np.empty_like(x)
    pos = x >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-x[pos]))
    ex = np.exp(x[~pos])
    out[~pos] = ex / (1.0 + ex)
    return out


def softmax(x: np.ndarray, axis: int = -1, fast: bool = False) -> np.ndarray:
    x = np.asarray(x, dtype=np.float32)
    shifted = x - np.max(x, axis=axis, keepdims=True)
    e = fast_exp(shifted) if fast else np.exp(shifted)
    return e / np.sum(e, axis=axis, keepdims=True)


def row_width(style: str, class_count: int, reg_max: int = 16) -> int:
    style = normalize_style(style)
    if style == STYLE_DIRECT:
        return 4 + int(class_count)
    return 4 * int(reg_max) + int(class_count)


def infer_class_count(width: int, style: str, reg_max: int = 16) -> int:
    """Number of classes implied by an output row width."""
    style = normalize_style(style)
    box = 4 if style == STYLE_DIRECT else 4 * int(reg_max)
    return int(width) - box


def as_rows(tensor: np.ndarray, width: int, num_anchors: Optional[int] = None) -> np.ndarray:
    """
    Normalise a single-image output to (num_anchors, width) float32 rows.

    Accepts (A, W), (1, A, W) and the channel-first transposes (W, A) / (1, W, A).
    """

    p = np.asarray(tensor)
    if p.ndim == 3:
        if p.shape[0] != 1:
            raise ValueError(f"Batch > 1 is not supported (got shape {p.shape}). Pass one image at a time.")
        p = p[0]
    if p.ndim != 2:
        raise ValueError(f"Unsupported output shape: {np.shape(tensor)}")

    rows_match = p.shape[1] == width and (num_anchors is None or p.shape[0] == num_anchors)
    cols_match = p.shape[0] == width and (num_anchors is None or p.shape[1] == num_anchors)
    if rows_match:
        rows = p
    elif cols_match:
        rows = p.T
    elif width not in p.shape:
        raise CatalogMismatch(f"Output shape {p.shape} has no axis of width {width}; model and class count disagree.")
    else:
        raise CatalogMismatch(
            f"Output shape {p.shape} does not match {num_anchors} grid points; model and grid strides disagree."
        )
    return np.ascontiguousarray(rows, dtype=np.float32)


def _decode_direct(rows: np.ndarray, class_count: int, prob_threshold: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    scores = rows[:, 4 : 4 + class_count]
    class_ids = np.argmax(scores, axis=1)
    conf = scores[np.arange(rows.shape[0]), class_ids]

    finite = np.isfinite(rows).all(axis=1)
    keep = finite & (conf > prob_threshold)

    kept = rows[keep]
    cx, cy, w, h = kept[:, 0], kept[:, 1], kept[:, 2], kept[:, 3]
    boxes = np.stack([cx - w * 0.5, cy - h * 0.5, cx + w * 0.5, cy + h * 0.5], axis=1)
    return boxes, np.clip(conf[keep], 0.0, 1.0), class_ids[keep]


def _decode_dfl(
    rows: np.ndarray,
    grid: AnchorGrid,
    class_count: int,
    prob_threshold: float,
    reg_max: int,
    fast_exp: bool,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    box_width = 4 * reg_max
    logits = rows[:, box_width : box_width + class_count]
    class_ids = np.argmax(logits, axis=1)
    max_logit = logits[np.arange(rows.shape[0]), class_ids]

    finite = np.isfinite(rows).all(axis=1)
    conf = np.zeros(rows.shape[0], dtype=np.float32)
    conf[finite] = sigmoid(max_logit[finite], fast=fast_exp)
    keep = finite & (conf >= prob_threshold)
    if not keep.any():
        return np.empty((0, 4), dtype=np.float32), conf[:0], class_ids[:0]

    # Box regression only for rows that passed the threshold.
    dist = rows[keep, :box_width].reshape(-1, 4, reg_max)
    prob = softmax(dist, axis=2, fast=fast_exp)
    bins = np.arange(reg_max, dtype=np.float32)
    expected = (prob * bins).sum(axis=2)  # (K, 4): left, top, right, bottom

    points = grid.points[keep]
    stride = points[:, 2:3].astype(np.float32)
    expected = expected * stride
    cx = (points[:, 0].astype(np.float32) + 0.5) * stride[:, 0]
    cy = (points[:, 1].astype(np.float32) + 0.5) * stride[:, 0]

    boxes = np.stack(
        [cx - expected[:, 0], cy - expected[:, 1], cx + expected[:, 2], cy + expected[:, 3]],
        axis=1,
    )
    return boxes, conf[keep], class_ids[keep]


def decode_arrays(
    tensor: np.ndarray,
    grid: Optional[AnchorGrid],
    class_count: int,
    style: str = STYLE_DIRECT,
    prob_threshold: float = 0.25,
    *,
    reg_max: int = 16,
    fast_exp: bool = False,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Array form of `decode`.

    Returns:
        boxes: (K, 4) float32 xyxy in network pixels
        scores: (K,) float32 confidences
        class_ids: (K,) int64
        all in grid enumeration order.
    """

    style = normalize_style(style)
    if class_count < 1:
        raise CatalogMismatch(f"class_count must be >= 1, got {class_count}")

    width = row_width(style, class_count, reg_max)
    if style == STYLE_DFL:
        if grid is None:
            raise ValueError("The DFL head needs an AnchorGrid.")
        rows = as_rows(tensor, width, num_anchors=len(grid))
    else:
        rows = as_rows(tensor, width)

    if rows.shape[0] == 0:
        return np.empty((0, 4), dtype=np.float32), np.empty((0,), dtype=np.float32), np.empty((0,), dtype=np.int64)

    if style == STYLE_DFL:
        boxes, scores, class_ids = _decode_dfl(rows, grid, class_count, prob_threshold, reg_max, fast_exp)
    else:
        boxes, scores, class_ids = _decode_direct(rows, class_count, prob_threshold)

    logger.debug("decode style=%s rows=%d kept=%d", style, rows.shape[0], scores.shape[0])
    return boxes.astype(np.float32), scores.astype(np.float32), class_ids.astype(np.int64)


def decode(
    tensor: np.ndarray,
    grid: Optional[AnchorGrid],
    class_count: int,
    style: str = STYLE_DIRECT,
    prob_threshold: float = 0.25,
    *,
    reg_max: int = 16,
    fast_exp: bool = False,
) -> List[Proposal]:
    """
    Decode one image's output into unsorted proposals above `prob_threshold`.

    `grid` is only read by the DFL head and may be None for the direct head.
    """

    boxes, scores, class_ids = decode_arrays(
        tensor,
        grid,
        class_count,
        style,
        prob_threshold,
        reg_max=reg_max,
        fast_exp=fast_exp,
    )
    return [
        Proposal(
            x=float(x1),
            y=float(y1),
            width=float(x2 - x1),
            height=float(y2 - y1),
            class_id=int(cls_id),
            confidence=float(score),
        )
        for (x1, y1, x2, y2), score, cls_id in zip(boxes, scores, class_ids)
    ]
