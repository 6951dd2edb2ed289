from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class LetterboxTransform:
    """
    Parameters of a letterbox resize, enough to map boxes back to the source image.

    pad_x / pad_y are the padding applied *before* the image (left / top).
    """

    scale: float
    pad_x: float
    pad_y: float
    network_w: int
    network_h: int

    def __post_init__(self) -> None:
        if not self.scale > 0:
            raise ValueError("scale must be > 0")
        if self.pad_x < 0 or self.pad_y < 0:
            raise ValueError("padding must be >= 0")
        if self.network_w <= 0 or self.network_h <= 0:
            raise ValueError("network size must be > 0")


@dataclass(frozen=True)
class GridPoint:
    gx: int
    gy: int
    stride: int

    def center(self) -> Tuple[float, float]:
        return (self.gx + 0.5) * self.stride, (self.gy + 0.5) * self.stride


@dataclass
class Proposal:
    """
    Candidate box in network-input coordinates (x, y = top-left corner).
    """

    x: float
    y: float
    width: float
    height: float
    class_id: int
    confidence: float

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.x, self.y, self.x + self.width, self.y + self.height

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)


@dataclass
class Detection:
    """
    Final detection in original image coordinates.
    """

    x1: float
    y1: float
    x2: float
    y2: float
    confidence: float
    class_id: int

    @property
    def width(self) -> float:
        return max(0.0, self.x2 - self.x1)

    @property
    def height(self) -> float:
        return max(0.0, self.y2 - self.y1)

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.x1, self.y1, self.x2, self.y2

    def as_xywh(self) -> Tuple[float, float, float, float]:
        return self.x1, self.y1, self.width, self.height
