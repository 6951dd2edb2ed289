from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

from .types import GridPoint


@dataclass(frozen=True)
class AnchorGrid:
    """
    Anchor points for every stride level, finest level first.

    Row i of `points` is (gx, gy, stride) and corresponds to row i of the
    model output tensor.
    """

    network_w: int
    network_h: int
    strides: Tuple[int, ...]
    points: np.ndarray  # (N, 3) int32

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def centers(self) -> np.ndarray:
        """(N, 2) cell centers in network pixels."""
        xy = self.points[:, :2].astype(np.float32) + np.float32(0.5)
        return xy * self.points[:, 2:3].astype(np.float32)

    def point(self, index: int) -> GridPoint:
        gx, gy, stride = (int(v) for v in self.points[index])
        return GridPoint(gx=gx, gy=gy, stride=stride)

    def as_points(self) -> List[GridPoint]:
        return [GridPoint(int(gx), int(gy), int(s)) for gx, gy, s in self.points]


def generate_grid(network_w: int, network_h: int, strides: Sequence[int] = (8, 16, 32)) -> AnchorGrid:
    """
    Enumerate floor(h/s) x floor(w/s) cells per stride, y outer and x inner.
    """

    if network_w <= 0 or network_h <= 0:
        raise ValueError(f"network size must be > 0, got {network_w}x{network_h}")
    strides = tuple(int(s) for s in strides)
    if not strides or any(s <= 0 for s in strides):
        raise ValueError("strides must be a non-empty sequence of positive ints")

    levels = []
    for stride in strides:
        num_w = network_w // stride
        num_h = network_h // stride
        gy, gx = np.meshgrid(np.arange(num_h, dtype=np.int32), np.arange(num_w, dtype=np.int32), indexing="ij")
        level = np.empty((num_h * num_w, 3), dtype=np.int32)
        level[:, 0] = gx.reshape(-1)
        level[:, 1] = gy.reshape(-1)
        level[:, 2] = stride
        levels.append(level)

    points = np.concatenate(levels, axis=0) if levels else np.empty((0, 3), dtype=np.int32)
    points.setflags(write=False)
    return AnchorGrid(network_w=int(network_w), network_h=int(network_h), strides=strides, points=points)


class GridCache:
    """
    Geometry-keyed cache of `AnchorGrid`s, safe to share between threads.

    Grids are immutable; the lock is only taken on a miss.
    """

    def __init__(self) -> None:
        self._grids: Dict[Tuple[int, int, Tuple[int, ...]], AnchorGrid] = {}
        self._lock = threading.Lock()

    def get(self, network_w: int, network_h: int, strides: Sequence[int] = (8, 16, 32)) -> AnchorGrid:
        key = (int(network_w), int(network_h), tuple(int(s) for s in strides))
        grid = self._grids.get(key)
        if grid is not None:
            return grid
        with self._lock:
            grid = self._grids.get(key)
            if grid is None:
                grid = generate_grid(*key)
                self._grids[key] = grid
        return grid

    def clear(self) -> None:
        with self._lock:
            self._grids.clear()

    def __len__(self) -> int:
        return len(self._grids)


_default_cache = GridCache()


def get_grid(network_w: int, network_h: int, strides: Sequence[int] = (8, 16, 32)) -> AnchorGrid:
    return _default_cache.get(network_w, network_h, strides)
