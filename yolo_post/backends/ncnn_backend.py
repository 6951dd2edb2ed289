from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Union

import numpy as np


PathLike = Union[str, Path]


@dataclass(frozen=True)
class NcnnBackendConfig:
    """
    - use_gpu: enable Vulkan compute when the ncnn build supports it
    - input_name/output_name: blob names from the .param file (pnnx exports
      use "in0"/"out0", older Ultralytics exports "images"/"output0")
    """

    use_gpu: bool = False
    input_name: str = "images"
    output_name: str = "output0"
    num_threads: int = 0


class NcnnBackend:
    """
    ncnn engine. `param_path` points at the .param file; the .bin must sit beside it.

    Returns the output blob as a 2-D (rows, row_width) array.
    """

    def __init__(self, param_path: PathLike, cfg: NcnnBackendConfig = NcnnBackendConfig()):
        try:
            import ncnn  # type: ignore
        except ImportError as e:  # pragma: no cover
            raise ImportError("ncnn is required for the ncnn backend. Install with `pip install ncnn`.") from e

        self.param_path = Path(param_path).with_suffix(".param")
        self.bin_path = self.param_path.with_suffix(".bin")
        if not self.param_path.exists():
            raise FileNotFoundError(str(self.param_path))
        if not self.bin_path.exists():
            raise FileNotFoundError(str(self.bin_path))

        self._ncnn = ncnn
        self.cfg = cfg
        self.net = ncnn.Net()
        if cfg.use_gpu and getattr(ncnn, "build_with_gpu", False):
            self.net.opt.use_vulkan_compute = True
        if cfg.num_threads > 0:
            self.net.opt.num_threads = int(cfg.num_threads)
        if self.net.load_param(str(self.param_path)) != 0:
            raise RuntimeError(f"Failed to load ncnn param: {self.param_path}")
        if self.net.load_model(str(self.bin_path)) != 0:
            raise RuntimeError(f"Failed to load ncnn model: {self.bin_path}")

    def infer(self, blob: np.ndarray) -> np.ndarray:
        if self.net is None:
            raise RuntimeError("ncnn net is closed.")
        # ncnn.Mat wants a C-contiguous (C, H, W) float32 array.
        chw = np.ascontiguousarray(np.asarray(blob, dtype=np.float32).reshape(blob.shape[-3:]))
        mat_in = self._ncnn.Mat(chw)

        ex = self.net.create_extractor()
        ex.input(self.cfg.input_name, mat_in)
        ret, mat_out = ex.extract(self.cfg.output_name)
        if ret != 0:
            raise RuntimeError(f"Failed to extract output '{self.cfg.output_name}' from ncnn model (ret={ret})")
        return np.array(mat_out)

    def close(self) -> None:
        if self.net is not None:
            self.net.clear()
        self.net = None
