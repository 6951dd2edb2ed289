"""
Post-processing for single-image YOLO detectors.

Letterbox an image, hand the tensor to any inference engine, then decode the
raw output (direct or DFL head), suppress overlaps per class and map boxes back
to the original image. Core needs NumPy and OpenCV; engines are optional.
"""

from .types import Detection, GridPoint, LetterboxTransform, Proposal
from .errors import CatalogMismatch, InferenceFailure, InvalidImage, SessionNotReady, YoloPostError
from .config import (
    STYLE_DFL,
    STYLE_DIRECT,
    LetterboxConfig,
    PipelineConfig,
    PostConfig,
    load_pipeline_config,
)
from .letterbox import compute_transform, letterbox, preprocess, to_tensor
from .grid import AnchorGrid, GridCache, generate_grid, get_grid
from .decode import decode, decode_arrays
from .nms import nms, sort_proposals
from .coords import map_proposals, scale_boxes, to_network_space
from .postprocess import YoloPostprocessor
from .catalog import ClassCatalog, load_catalog
from .ingest import image_from_buffer
from .session import DetectorSession, load_session
from .visualize import FpsMeter, draw_detections, draw_fps

__all__ = [
    "Detection",
    "GridPoint",
    "LetterboxTransform",
    "Proposal",
    "CatalogMismatch",
    "InferenceFailure",
    "InvalidImage",
    "SessionNotReady",
    "YoloPostError",
    "STYLE_DFL",
    "STYLE_DIRECT",
    "LetterboxConfig",
    "PipelineConfig",
    "PostConfig",
    "load_pipeline_config",
    "compute_transform",
    "letterbox",
    "preprocess",
    "to_tensor",
    "AnchorGrid",
    "GridCache",
    "generate_grid",
    "get_grid",
    "decode",
    "decode_arrays",
    "nms",
    "sort_proposals",
    "map_proposals",
    "scale_boxes",
    "to_network_space",
    "YoloPostprocessor",
    "ClassCatalog",
    "load_catalog",
    "image_from_buffer",
    "DetectorSession",
    "load_session",
    "draw_detections",
    "draw_fps",
    "FpsMeter",
]
