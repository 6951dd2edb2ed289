from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    - providers: ORT execution providers, e.g. ["CUDAExecutionProvider", "CPUExecutionProvider"]
    - input_name/output_name: override the first input / first output
    - intra_op_threads: 0 lets ORT decide
    """

    providers: Optional[Sequence[str]] = None
    input_name: Optional[str] = None
    output_name: Optional[str] = None
    intra_op_threads: int = 0


class OnnxRuntimeBackend:
    """
    ONNX Runtime engine for (1, 3, H, W) float32 blobs.

    Returns the selected output, e.g. (1, 84, 8400) for a direct head export.
    """

    def __init__(self, model_path: PathLike, cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig()):
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "onnxruntime is required for the ONNX backend. Install it with `pip install onnxruntime` "
                "(or `onnxruntime-gpu`)."
            ) from e

        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise FileNotFoundError(str(self.model_path))

        sess_opts = ort.SessionOptions()
        if cfg.intra_op_threads > 0:
            sess_opts.intra_op_num_threads = int(cfg.intra_op_threads)
        providers = list(cfg.providers) if cfg.providers is not None else None
        self.session = ort.InferenceSession(str(self.model_path), sess_options=sess_opts, providers=providers)

        self.input_name = cfg.input_name or self.session.get_inputs()[0].name
        self.output_name = cfg.output_name or self.session.get_outputs()[0].name
        logger.info("ONNX Runtime providers in use: %s", ", ".join(self.providers_in_use))

    @property
    def providers_in_use(self) -> Tuple[str, ...]:
        return tuple(self.session.get_providers())

    def infer(self, blob: np.ndarray) -> np.ndarray:
        if self.session is None:
            raise RuntimeError("ONNX Runtime session is closed.")
        x = np.ascontiguousarray(blob, dtype=np.float32)
        outputs = self.session.run([self.output_name], {self.input_name: x})
        return outputs[0]

    def close(self) -> None:
        self.session = None
