from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


STYLE_DIRECT = "direct"
STYLE_DFL = "dfl"

_STYLE_ALIASES = {
    "direct": STYLE_DIRECT,
    "a": STYLE_DIRECT,
    "dfl": STYLE_DFL,
    "b": STYLE_DFL,
}

# (prob_threshold, nms_threshold) each head was tuned with.
STYLE_DEFAULT_THRESHOLDS = {
    STYLE_DIRECT: (0.25, 0.45),
    STYLE_DFL: (0.4, 0.5),
}


def normalize_style(style: str) -> str:
    key = str(style).strip().lower()
    if key not in _STYLE_ALIASES:
        raise ValueError(f"Unknown decode style {style!r}. Use 'direct' (A) or 'dfl' (B).")
    return _STYLE_ALIASES[key]


@dataclass(frozen=True)
class LetterboxConfig:
    target_size: int = 640
    stride_aligned: bool = False
    align_stride: int = 32
    color: Tuple[int, int, int] = (114, 114, 114)
    interpolation: str = "linear"
    swap_rb: bool = True

    def __post_init__(self) -> None:
        if self.target_size < 32:
            raise ValueError("target_size must be >= 32")
        if self.align_stride <= 0:
            raise ValueError("align_stride must be > 0")
        if len(self.color) != 3:
            raise ValueError("color must have 3 channels")
        if self.interpolation not in ("linear", "area"):
            raise ValueError("interpolation must be 'linear' or 'area'")


@dataclass(frozen=True)
class PostConfig:
    """
    Decode + NMS settings.

    The probability threshold is compared against the raw max class score for
    the direct head and against sigmoid(max logit) for the DFL head.
    """

    style: str = STYLE_DIRECT
    prob_threshold: float = 0.25
    nms_threshold: float = 0.45
    strides: Tuple[int, ...] = (8, 16, 32)
    reg_max: int = 16
    # None keeps every box that survives NMS.
    max_detections: Optional[int] = None
    # Opt-in approximate exp (<= 1% relative error) for sigmoid/softmax.
    fast_exp: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "style", normalize_style(self.style))
        object.__setattr__(self, "strides", tuple(int(s) for s in self.strides))
        if not 0.0 <= self.prob_threshold <= 1.0:
            raise ValueError("prob_threshold must be in [0, 1]")
        if not 0.0 <= self.nms_threshold <= 1.0:
            raise ValueError("nms_threshold must be in [0, 1]")
        if not self.strides or any(s <= 0 for s in self.strides):
            raise ValueError("strides must be a non-empty sequence of positive ints")
        if self.reg_max < 1:
            raise ValueError("reg_max must be >= 1")
        if self.max_detections is not None and self.max_detections < 1:
            raise ValueError("max_detections must be >= 1 or None")

    @classmethod
    def for_style(cls, style: str, **overrides: Any) -> "PostConfig":
        """Config with the thresholds paired with `style`; keyword overrides win."""
        name = normalize_style(style)
        prob, nms = STYLE_DEFAULT_THRESHOLDS[name]
        base = cls(style=name, prob_threshold=prob, nms_threshold=nms)
        return replace(base, **overrides) if overrides else base


@dataclass(frozen=True)
class PipelineConfig:
    letterbox: LetterboxConfig = LetterboxConfig()
    post: PostConfig = PostConfig()


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return int(value)


def _require_bool(payload: Dict[str, Any], key: str) -> bool:
    value = payload[key]
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


def _check_keys(payload: Dict[str, Any], allowed: set, where: str) -> None:
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown {where} keys: {unknown}")


def _parse_letterbox(payload: Dict[str, Any]) -> LetterboxConfig:
    if not isinstance(payload, dict):
        raise ValueError("letterbox must be a JSON object")
    _check_keys(payload, {"target_size", "stride_aligned", "align_stride", "color", "interpolation", "swap_rb"}, "letterbox")

    kwargs: Dict[str, Any] = {}
    if "target_size" in payload:
        kwargs["target_size"] = _require_int(payload, "target_size")
    if "align_stride" in payload:
        kwargs["align_stride"] = _require_int(payload, "align_stride")
    if "stride_aligned" in payload:
        kwargs["stride_aligned"] = _require_bool(payload, "stride_aligned")
    if "swap_rb" in payload:
        kwargs["swap_rb"] = _require_bool(payload, "swap_rb")
    if "color" in payload:
        color = payload["color"]
        if not isinstance(color, list) or len(color) != 3 or not all(isinstance(c, int) for c in color):
            raise ValueError("color must be a list of 3 integers")
        kwargs["color"] = tuple(color)
    if "interpolation" in payload:
        if not isinstance(payload["interpolation"], str):
            raise ValueError("interpolation must be a string")
        kwargs["interpolation"] = payload["interpolation"]
    return LetterboxConfig(**kwargs)


def _parse_post(payload: Dict[str, Any]) -> PostConfig:
    if not isinstance(payload, dict):
        raise ValueError("post must be a JSON object")
    _check_keys(
        payload,
        {"style", "prob_threshold", "nms_threshold", "strides", "reg_max", "max_detections", "fast_exp"},
        "post",
    )

    style = payload.get("style", STYLE_DIRECT)
    if not isinstance(style, str):
        raise ValueError("style must be a string")

    overrides: Dict[str, Any] = {}
    if "prob_threshold" in payload:
        overrides["prob_threshold"] = _require_number(payload, "prob_threshold")
    if "nms_threshold" in payload:
        overrides["nms_threshold"] = _require_number(payload, "nms_threshold")
    if "reg_max" in payload:
        overrides["reg_max"] = _require_int(payload, "reg_max")
    if "fast_exp" in payload:
        overrides["fast_exp"] = _require_bool(payload, "fast_exp")
    if "strides" in payload:
        strides = payload["strides"]
        if not isinstance(strides, list) or not all(isinstance(s, int) and not isinstance(s, bool) for s in strides):
            raise ValueError("strides must be a list of integers")
        overrides["strides"] = tuple(strides)
    if "max_detections" in payload and payload["max_detections"] is not None:
        overrides["max_detections"] = _require_int(payload, "max_detections")

    return PostConfig.for_style(style, **overrides)


def load_pipeline_config(path: Path) -> PipelineConfig:
    """
    Load a JSON pipeline config:

        {
          "schema_version": 1,
          "letterbox": {"target_size": 640, "stride_aligned": false},
          "post": {"style": "dfl", "prob_threshold": 0.4}
        }

    Thresholds omitted from "post" default to the pair tuned for its style.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pipeline config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid pipeline config JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Pipeline config must be a JSON object")

    _check_keys(payload, {"schema_version", "letterbox", "post"}, "pipeline config")
    if "schema_version" not in payload:
        raise ValueError("Missing required key: schema_version")
    if _require_int(payload, "schema_version") != 1:
        raise ValueError("pipeline config schema_version must be 1")

    letterbox_cfg = _parse_letterbox(payload.get("letterbox", {}))
    post_cfg = _parse_post(payload.get("post", {}))
    return PipelineConfig(letterbox=letterbox_cfg, post=post_cfg)
