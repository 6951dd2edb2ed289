from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np


PathLike = Union[str, Path]


@dataclass(frozen=True)
class TorchScriptBackendConfig:
    """
    - device: "cpu" or "cuda"
    - half: feed float16 (only for models exported in half precision)
    - output_index: which element to return when the model yields a tuple/list
    """

    device: str = "cpu"
    half: bool = False
    output_index: int = 0


class TorchScriptBackend:
    """
    Engine backed by `torch.jit.load`; needs no model class code.
    """

    def __init__(self, model_path: PathLike, cfg: TorchScriptBackendConfig = TorchScriptBackendConfig()):
        try:
            import torch  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError("torch is required for the TorchScript backend. Install with `pip install torch`.") from e

        self._torch = torch
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise FileNotFoundError(str(self.model_path))

        self.device = torch.device(cfg.device)
        self.half = cfg.half
        self.output_index = cfg.output_index

        model = torch.jit.load(str(self.model_path), map_location=self.device)
        model.eval()
        self.model: Optional[object] = model

    def infer(self, blob: np.ndarray) -> np.ndarray:
        if self.model is None:
            raise RuntimeError("TorchScript model is closed.")
        torch = self._torch
        x = torch.as_tensor(blob, device=self.device)
        x = x.half() if self.half else x.float()

        with torch.no_grad():
            y = self.model(x.contiguous())

        if isinstance(y, (tuple, list)):
            y = y[self.output_index]
        return y.detach().float().to("cpu").numpy()

    def close(self) -> None:
        self.model = None
