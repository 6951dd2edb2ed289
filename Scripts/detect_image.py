import argparse
import logging
from dataclasses import replace
from pathlib import Path

import cv2

from yolo_post import (
    LetterboxConfig,
    PipelineConfig,
    PostConfig,
    draw_detections,
    load_pipeline_config,
    load_session,
)


def _build_config(args: argparse.Namespace) -> PipelineConfig:
    if args.config:
        cfg = load_pipeline_config(Path(args.config))
    else:
        cfg = PipelineConfig(
            letterbox=LetterboxConfig(target_size=int(args.imgsz), stride_aligned=bool(args.stride_aligned)),
            post=PostConfig.for_style(args.style),
        )

    post_overrides = {}
    if args.conf is not None:
        post_overrides["prob_threshold"] = float(args.conf)
    if args.iou is not None:
        post_overrides["nms_threshold"] = float(args.iou)
    if post_overrides:
        cfg = replace(cfg, post=replace(cfg.post, **post_overrides))
    return cfg


def main() -> int:
    parser = argparse.ArgumentParser(description="Run YOLO detection on one image and print/draw the detections.")
    parser.add_argument("--image", required=True, help="Path to an input image.")
    parser.add_argument("--model", default="models/yolov8s.onnx", help="Model file (.onnx / .torchscript / ncnn .param).")
    parser.add_argument("--labels", default="models/label.txt", help="Label file (one name per line) or metadata.yaml.")
    parser.add_argument("--style", default="direct", choices=["direct", "dfl"], help="Output head layout.")
    parser.add_argument("--imgsz", type=int, default=640, help="Letterbox target size (long side).")
    parser.add_argument("--stride-aligned", action="store_true", help="Pad to a multiple of 32 instead of a square.")
    parser.add_argument("--conf", type=float, default=None, help="Probability threshold (default: paired with --style).")
    parser.add_argument("--iou", type=float, default=None, help="NMS IoU threshold (default: paired with --style).")
    parser.add_argument("--config", default=None, help="JSON pipeline config; overrides --style/--imgsz.")
    parser.add_argument("--backend", default=None, help="Force backend: onnxruntime / torchscript / ncnn.")
    parser.add_argument("--out", default=None, help="Optional output path for the annotated image.")
    parser.add_argument("--show", action="store_true", help="Show a window with the detections.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...).")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="[%(asctime)s] %(name)s %(levelname)s: %(message)s",
    )

    if args.imgsz < 32:
        raise ValueError("--imgsz must be >= 32")

    img = cv2.imread(args.image)
    if img is None:
        raise FileNotFoundError(f"Could not read image at path: {args.image}")

    with load_session(args.model, args.labels, backend=args.backend, config=_build_config(args)) as session:
        detections = session.detect(img)
        catalog = session.catalog

    for det in detections:
        print(catalog.name(det.class_id), f"{det.confidence:.3f}", det.as_xywh())
    print(f"detections={len(detections)}")

    if args.out or args.show:
        vis = draw_detections(img, detections, catalog=catalog)
        if args.out:
            if not cv2.imwrite(args.out, vis):
                raise RuntimeError(f"Failed to write output image: {args.out}")
        if args.show:
            cv2.imshow("detections", vis)
            cv2.waitKey(0)
            cv2.destroyAllWindows()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
