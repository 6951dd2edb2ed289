from __future__ import annotations

import logging
import math
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from .catalog import ClassCatalog, load_catalog
from .config import STYLE_DFL, PipelineConfig
from .decode import infer_class_count
from .errors import CatalogMismatch, InferenceFailure, SessionNotReady
from .grid import GridCache
from .ingest import BufferLike, image_from_buffer
from .letterbox import PreprocessResult, preprocess
from .postprocess import YoloPostprocessor
from .types import Detection


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
InferFn = Callable[[np.ndarray], np.ndarray]


def find_project_root(
    start: Optional[PathLike] = None,
    markers: Sequence[str] = ("pyproject.toml", ".git"),
) -> Path:
    """
    Nearest parent of `start` (default: cwd) that contains one of `markers`.
    """

    p = Path(start) if start is not None else Path.cwd()
    p = p.resolve()
    if p.is_file():
        p = p.parent

    for parent in (p, *p.parents):
        for m in markers:
            if (parent / m).exists():
                return parent
    return p


def resolve_path(path: PathLike, root: Optional[PathLike] = "auto") -> Path:
    """
    Absolute paths are returned as-is; relative ones resolve against `root`
    ("auto" = project root).
    """

    p = Path(path)
    if p.is_absolute():
        return p
    base = find_project_root() if root == "auto" or root is None else Path(root).resolve()
    return (base / p).resolve()


class DetectorSession:
    """
    Owns one inference engine, its class catalog and the pipeline settings.

        image -> letterbox -> infer -> decode -> sort -> NMS -> original coords

    Engine calls are serialized per session (engines are not assumed reentrant);
    pre/post-processing runs outside the lock. A catalog/model mismatch moves
    the session into a failed state: every later call raises `SessionNotReady`
    until `reinitialize()` succeeds.
    """

    def __init__(
        self,
        infer_fn: InferFn,
        catalog: ClassCatalog,
        *,
        config: PipelineConfig = PipelineConfig(),
        backend: Optional[object] = None,
        backend_name: Optional[str] = None,
        num_classes: Optional[int] = None,
        probe: bool = False,
        serialize_engine: bool = True,
    ):
        self.config = config
        self._engine_lock = threading.Lock() if serialize_engine else None
        self._grids = GridCache()
        self._infer_fn: Optional[InferFn] = None
        self.backend: Optional[object] = None
        self.backend_name: Optional[str] = None
        self.catalog = catalog
        self.post: Optional[YoloPostprocessor] = None
        self._error: Optional[BaseException] = None
        self._closed = False
        self._initialize(infer_fn, catalog, backend, backend_name, num_classes, probe)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def _initialize(
        self,
        infer_fn: InferFn,
        catalog: ClassCatalog,
        backend: Optional[object],
        backend_name: Optional[str],
        num_classes: Optional[int],
        probe: bool,
    ) -> None:
        # Nothing is committed until every check has passed.
        try:
            if len(catalog) == 0:
                raise CatalogMismatch("Class catalog is empty.")
            if num_classes is not None:
                catalog.validate(num_classes)
            if probe:
                catalog.validate(self._probe_class_count(infer_fn))
            post = YoloPostprocessor(self.config.post, len(catalog), grid_cache=self._grids)
        except Exception as exc:
            self._error = exc
            logger.error("Session initialization failed: %s", exc)
            raise

        self._infer_fn = infer_fn
        self.backend = backend
        self.backend_name = backend_name
        self.catalog = catalog
        self.post = post
        self._error = None
        self._closed = False
        logger.info(
            "Detector session ready: backend=%s style=%s classes=%d",
            backend_name or "custom",
            self.config.post.style,
            len(catalog),
        )

    def _probe_class_count(self, infer_fn: InferFn) -> int:
        """Run one blank frame through the engine and read the class count off the output width."""
        lb = self.config.letterbox
        size = lb.target_size
        if lb.stride_aligned:
            size = int(math.ceil(size / lb.align_stride) * lb.align_stride)
        blob = np.full((1, 3, size, size), 114.0 / 255.0, dtype=np.float32)
        out = np.asarray(self._run_engine(blob, infer_fn))
        if out.ndim == 3:
            out = out[0]
        if out.ndim != 2:
            raise CatalogMismatch(f"Unexpected model output shape {out.shape}")

        post = self.config.post
        if post.style == STYLE_DFL:
            anchors = len(self._grids.get(size, size, post.strides))
            width = out.shape[1] if out.shape[0] == anchors else out.shape[0]
        else:
            width = min(out.shape)
        return infer_class_count(width, post.style, post.reg_max)

    def reinitialize(
        self,
        infer_fn: Optional[InferFn] = None,
        catalog: Optional[ClassCatalog] = None,
        *,
        backend: Optional[object] = None,
        backend_name: Optional[str] = None,
        num_classes: Optional[int] = None,
        probe: bool = False,
    ) -> None:
        """
        Replace the owned engine and/or catalog and clear any failed state.

        On failure the previous engine and catalog are kept (and stay open), but
        the session is marked failed until a later call succeeds.
        """
        old_backend = self.backend
        self._initialize(
            infer_fn if infer_fn is not None else self._infer_fn,
            catalog if catalog is not None else self.catalog,
            backend if infer_fn is not None else self.backend,
            backend_name if infer_fn is not None else self.backend_name,
            num_classes,
            probe,
        )
        if infer_fn is not None and old_backend is not None and old_backend is not self.backend:
            _close_backend(old_backend)

    def close(self) -> None:
        if self._closed:
            return
        if self.backend is not None:
            _close_backend(self.backend)
        self._infer_fn = None
        self.backend = None
        self.post = None
        self._closed = True
        logger.info("Detector session closed")

    def __enter__(self) -> "DetectorSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def ready(self) -> bool:
        return not self._closed and self._error is None and self.post is not None

    def _check_ready(self) -> None:
        if self._closed:
            raise SessionNotReady("Session is closed.")
        if self._error is not None:
            raise SessionNotReady(f"Session failed initialization: {self._error}") from self._error
        if self.post is None:
            raise SessionNotReady("Session is not initialized.")

    # ------------------------------------------------------------------ #
    # Per-frame
    # ------------------------------------------------------------------ #
    def _run_engine(self, blob: np.ndarray, infer_fn: Optional[InferFn] = None) -> np.ndarray:
        fn = infer_fn if infer_fn is not None else self._infer_fn
        try:
            if self._engine_lock is None:
                out = fn(blob)
            else:
                with self._engine_lock:
                    out = fn(blob)
        except InferenceFailure:
            raise
        except Exception as exc:
            raise InferenceFailure(f"Inference failed: {exc}") from exc
        if out is None:
            raise InferenceFailure("Inference engine returned no output.")
        return out

    def preprocess(self, image_bgr: np.ndarray) -> PreprocessResult:
        return preprocess(image_bgr, self.config.letterbox)

    def postprocess(self, preds: np.ndarray, prep: PreprocessResult) -> List[Detection]:
        self._check_ready()
        try:
            return self.post.process(preds, prep.transform, prep.orig_size)
        except CatalogMismatch as exc:
            self._error = exc
            logger.error("Model output does not match the class catalog: %s", exc)
            raise

    def detect(self, image_bgr: np.ndarray) -> List[Detection]:
        """
        Detections for one BGR image, in its own pixel coordinates.

        Raises:
            InvalidImage: bad image shape or size
            InferenceFailure: the engine failed on this frame
            CatalogMismatch: output shape disagrees with the catalog or grid (session is now failed)
            SessionNotReady: closed or failed session
        """

        self._check_ready()
        prep = self.preprocess(image_bgr)
        try:
            preds = self._run_engine(prep.tensor[None, ...])
        except InferenceFailure as exc:
            logger.warning("Skipping frame: %s", exc)
            raise
        return self.postprocess(preds, prep)

    def detect_buffer(
        self,
        buffer: BufferLike,
        width: int,
        height: int,
        stride: Optional[int] = None,
        channel_order: str = "BGR",
    ) -> List[Detection]:
        """`detect` for a raw pixel buffer (e.g. an RGBA bitmap or NV12 camera frame)."""
        self._check_ready()
        image = image_from_buffer(buffer, width, height, stride=stride, channel_order=channel_order)
        return self.detect(image)

    def __call__(self, image_bgr: np.ndarray) -> List[Detection]:
        return self.detect(image_bgr)


def _close_backend(backend: object) -> None:
    close = getattr(backend, "close", None)
    if callable(close):
        close()


def load_session(
    model_path: PathLike,
    labels_path: PathLike,
    *,
    backend: Optional[str] = None,
    root: Optional[PathLike] = "auto",
    config: PipelineConfig = PipelineConfig(),
    probe: bool = True,
    onnx_providers: Optional[Sequence[str]] = None,
    onnx_input_name: Optional[str] = None,
    onnx_output_name: Optional[str] = None,
    torch_device: str = "cpu",
    torch_half: bool = False,
    torch_output_index: int = 0,
    ncnn_use_gpu: bool = False,
    ncnn_input_name: str = "images",
    ncnn_output_name: str = "output0",
) -> DetectorSession:
    """
    Create a session for a model on disk.

        session = load_session("models/yolov8s.onnx", "models/label.txt")

    Args:
        model_path: .onnx, .torchscript/.pt, or an ncnn .param file (the .bin sits beside it)
        labels_path: label.txt (one name per line) or metadata.yaml
        backend: "onnxruntime", "torchscript", "ncnn", or None to infer from the extension
        probe: run one blank frame to check the output width against the catalog
    """

    resolved = resolve_path(model_path, root=root)
    catalog = load_catalog(resolve_path(labels_path, root=root))

    chosen = backend
    if chosen is None:
        suffix = resolved.suffix.lower()
        if suffix == ".onnx":
            chosen = "onnxruntime"
        elif suffix in {".torchscript", ".ts", ".pt"}:
            chosen = "torchscript"
        elif suffix in {".param", ".bin"}:
            chosen = "ncnn"
        else:
            raise ValueError(f"Could not infer backend from extension '{suffix}'. Pass backend=... explicitly.")

    chosen = chosen.lower()
    if chosen == "onnxruntime":
        from .backends.onnxruntime_backend import OnnxRuntimeBackend, OnnxRuntimeBackendConfig

        engine = OnnxRuntimeBackend(
            resolved,
            OnnxRuntimeBackendConfig(providers=onnx_providers, input_name=onnx_input_name, output_name=onnx_output_name),
        )
    elif chosen == "torchscript":
        from .backends.torchscript_backend import TorchScriptBackend, TorchScriptBackendConfig

        engine = TorchScriptBackend(
            resolved,
            TorchScriptBackendConfig(device=torch_device, half=torch_half, output_index=torch_output_index),
        )
    elif chosen == "ncnn":
        from .backends.ncnn_backend import NcnnBackend, NcnnBackendConfig

        engine = NcnnBackend(
            resolved,
            NcnnBackendConfig(use_gpu=ncnn_use_gpu, input_name=ncnn_input_name, output_name=ncnn_output_name),
        )
    else:
        raise ValueError(f"Unsupported backend: {backend!r}")

    logger.info("Loaded %s model from %s", chosen, resolved)
    try:
        return DetectorSession(
            engine.infer,
            catalog,
            config=config,
            backend=engine,
            backend_name=chosen,
            probe=probe,
        )
    except Exception:
        _close_backend(engine)
        raise
