from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from .config import STYLE_DFL, PostConfig
from .coords import scale_boxes, to_detections
from .decode import decode_arrays
from .grid import GridCache
from .nms import NMSConfig, nms_sorted, sort_order
from .types import Detection, LetterboxTransform


logger = logging.getLogger(__name__)


class YoloPostprocessor:
    """
    Raw output -> detections in original image coordinates.

    Steps: decode (+ threshold) -> sort by confidence -> per-class NMS ->
    inverse letterbox + clipping. Holds no per-call state, so one instance can
    serve several threads.
    """

    def __init__(self, cfg: PostConfig, class_count: int, grid_cache: Optional[GridCache] = None):
        if class_count < 1:
            raise ValueError("class_count must be >= 1")
        self.cfg = cfg
        self.class_count = int(class_count)
        self._grids = grid_cache if grid_cache is not None else GridCache()

    def process(
        self,
        preds: np.ndarray,
        transform: LetterboxTransform,
        orig_size: Tuple[int, int],
    ) -> List[Detection]:
        """
        Args:
            preds: model output for a single image
            transform: letterbox parameters the input was prepared with
            orig_size: (width, height) of the original image
        """

        grid = None
        if self.cfg.style == STYLE_DFL:
            grid = self._grids.get(transform.network_w, transform.network_h, self.cfg.strides)

        boxes, scores, class_ids = decode_arrays(
            preds,
            grid,
            self.class_count,
            self.cfg.style,
            self.cfg.prob_threshold,
            reg_max=self.cfg.reg_max,
            fast_exp=self.cfg.fast_exp,
        )
        if scores.size == 0:
            return []

        order = sort_order(scores)
        boxes, scores, class_ids = boxes[order], scores[order], class_ids[order]

        nms_cfg = NMSConfig(iou_threshold=self.cfg.nms_threshold, max_detections=self.cfg.max_detections)
        keep = nms_sorted(boxes, class_ids, nms_cfg)
        boxes, scores, class_ids = boxes[keep], scores[keep], class_ids[keep]
        logger.debug("proposals=%d after_nms=%d", order.size, keep.size)

        boxes = scale_boxes(boxes, transform, orig_size)
        return to_detections(boxes, scores, class_ids)
