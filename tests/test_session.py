import threading
import unittest

import numpy as np

from yolo_post.catalog import ClassCatalog
from yolo_post.config import LetterboxConfig, PipelineConfig, PostConfig
from yolo_post.errors import CatalogMismatch, InferenceFailure, InvalidImage, SessionNotReady
from yolo_post.grid import generate_grid
from yolo_post.session import DetectorSession


def _direct_output(num_classes: int = 3) -> np.ndarray:
    # (1, 4 + C, A) channel-first, like an ONNX export; 8 anchors
    rows = np.zeros((8, 4 + num_classes), dtype=np.float32)
    rows[:, 2:4] = 10.0
    rows[0, :4] = [320, 320, 100, 50]
    rows[0, 4 + 1] = 0.9
    rows[1, :4] = [325, 322, 100, 50]  # overlaps row 0, same class
    rows[1, 4 + 1] = 0.8
    rows[2, :4] = [320, 320, 100, 50]  # same box, other class
    rows[2, 4 + 2] = 0.6
    return rows.T[None]


class FakeBackend:
    def __init__(self, output: np.ndarray):
        self.output = output
        self.calls = 0
        self.closed = False

    def infer(self, blob: np.ndarray) -> np.ndarray:
        self.calls += 1
        self.last_shape = blob.shape
        self.last_blob = np.array(blob)
        return self.output

    def close(self) -> None:
        self.closed = True


class TestDirectSession(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = FakeBackend(_direct_output())
        self.session = DetectorSession(
            self.backend.infer,
            ClassCatalog(["person", "helmet", "vest"]),
            backend=self.backend,
            backend_name="fake",
        )
        self.image = np.zeros((720, 1280, 3), dtype=np.uint8)

    def test_end_to_end(self) -> None:
        dets = self.session.detect(self.image)
        self.assertEqual(self.backend.last_shape, (1, 3, 640, 640))
        self.assertEqual([d.class_id for d in dets], [1, 2])
        self.assertAlmostEqual(dets[0].confidence, 0.9, places=5)
        np.testing.assert_allclose(dets[0].as_xyxy(), (540, 310, 740, 410), atol=1e-3)
        np.testing.assert_allclose(dets[1].as_xyxy(), (540, 310, 740, 410), atol=1e-3)

    def test_call_alias(self) -> None:
        self.assertEqual(self.session(self.image), self.session.detect(self.image))

    def test_inference_failure_is_recoverable(self) -> None:
        def broken(blob):
            raise RuntimeError("device lost")

        session = DetectorSession(broken, ClassCatalog(["a", "b", "c"]))
        with self.assertRaises(InferenceFailure):
            session.detect(self.image)
        self.assertTrue(session.ready)

    def test_invalid_image(self) -> None:
        with self.assertRaises(InvalidImage):
            self.session.detect(np.zeros((0, 0, 3), dtype=np.uint8))
        self.assertTrue(self.session.ready)

    def test_output_mismatch_fails_session_until_reinitialized(self) -> None:
        session_backend = FakeBackend(_direct_output(num_classes=3))
        session = DetectorSession(session_backend.infer, ClassCatalog(["a", "b"]))
        with self.assertRaises(CatalogMismatch):
            session.detect(self.image)
        self.assertFalse(session.ready)
        with self.assertRaises(SessionNotReady):
            session.detect(self.image)

        session.reinitialize(catalog=ClassCatalog(["a", "b", "c"]))
        self.assertTrue(session.ready)
        self.assertEqual(len(session.detect(self.image)), 2)

    def test_failed_reinitialize_keeps_previous_state(self) -> None:
        def broken(blob):
            raise RuntimeError("device lost")

        replacement = FakeBackend(_direct_output())
        with self.assertRaises(InferenceFailure):
            self.session.reinitialize(broken, ClassCatalog(["a", "b"]), backend=replacement, probe=True)

        self.assertFalse(self.session.ready)
        with self.assertRaises(SessionNotReady):
            self.session.detect(self.image)
        self.assertEqual(self.session.catalog.labels, ("person", "helmet", "vest"))
        self.assertIs(self.session.backend, self.backend)
        self.assertFalse(self.backend.closed)
        self.assertFalse(replacement.closed)

        self.session.reinitialize()
        self.assertTrue(self.session.ready)
        self.assertEqual(len(self.session.detect(self.image)), 2)

    def test_reinitialize_closes_replaced_backend(self) -> None:
        replacement = FakeBackend(_direct_output())
        self.session.reinitialize(replacement.infer, backend=replacement, probe=True)
        self.assertTrue(self.backend.closed)
        self.assertFalse(replacement.closed)
        self.session.detect(self.image)
        self.assertEqual(replacement.calls, 2)

    def test_engine_failure_during_startup_check(self) -> None:
        def broken(blob):
            raise RuntimeError("device lost")

        with self.assertRaises(InferenceFailure):
            DetectorSession(broken, ClassCatalog(["a", "b", "c"]), probe=True)

    def test_num_classes_checked_at_init(self) -> None:
        with self.assertRaises(CatalogMismatch):
            DetectorSession(self.backend.infer, ClassCatalog(["a"]), num_classes=80)

    def test_output_width_checked_at_startup(self) -> None:
        big = FakeBackend(np.zeros((1, 84, 8400), dtype=np.float32))
        DetectorSession(big.infer, ClassCatalog([str(i) for i in range(80)]), probe=True)
        with self.assertRaises(CatalogMismatch):
            DetectorSession(big.infer, ClassCatalog(["a", "b"]), probe=True)

    def test_close(self) -> None:
        with self.session as session:
            session.detect(self.image)
        self.assertTrue(self.backend.closed)
        self.assertFalse(self.session.ready)
        with self.assertRaises(SessionNotReady):
            self.session.detect(self.image)

    def test_detect_buffer_rgba(self) -> None:
        rgba = np.zeros((720, 1280, 4), dtype=np.uint8)
        dets = self.session.detect_buffer(rgba.tobytes(), 1280, 720, channel_order="RGBA")
        self.assertEqual(len(dets), 2)

    def test_detect_buffer_defaults_to_bgr(self) -> None:
        image = np.zeros((720, 1280, 3), dtype=np.uint8)
        image[..., 0] = 255  # pure blue in BGR
        self.session.detect(image)
        expected = self.backend.last_blob
        self.session.detect_buffer(image.tobytes(), 1280, 720)
        np.testing.assert_array_equal(self.backend.last_blob, expected)

    def test_concurrent_frames(self) -> None:
        expected = self.session.detect(self.image)
        results = []

        def worker() -> None:
            for _ in range(5):
                results.append(self.session.detect(self.image))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(results), 20)
        self.assertTrue(all(r == expected for r in results))


class TestDflSession(unittest.TestCase):
    def test_end_to_end(self) -> None:
        reg_max = 16
        grid = generate_grid(64, 64, (8, 16, 32))
        rows = np.full((len(grid), 4 * reg_max + 2), -1000.0, dtype=np.float32)
        rows[:, 4 * reg_max :] = -10.0
        for side in range(4):
            rows[:, side * reg_max + 1] = 0.0  # every side at bin 1
        rows[0, 4 * reg_max + 1] = 5.0  # cell (0, 0) at stride 8, class 1

        backend = FakeBackend(rows)
        config = PipelineConfig(
            letterbox=LetterboxConfig(target_size=64),
            post=PostConfig.for_style("dfl"),
        )
        session = DetectorSession(backend.infer, ClassCatalog(["a", "b"]), config=config)
        dets = session.detect(np.zeros((64, 64, 3), dtype=np.uint8))

        self.assertEqual(len(dets), 1)
        self.assertEqual(dets[0].class_id, 1)
        # center (4, 4) +- 8 px, clipped at 0
        np.testing.assert_allclose(dets[0].as_xyxy(), (0, 0, 12, 12), atol=1e-4)

    def test_row_count_mismatch_fails_session(self) -> None:
        # 64x64 at strides 8/16/32 has 84 grid points
        backend = FakeBackend(np.zeros((85, 4 * 16 + 2), dtype=np.float32))
        config = PipelineConfig(
            letterbox=LetterboxConfig(target_size=64),
            post=PostConfig.for_style("dfl"),
        )
        session = DetectorSession(backend.infer, ClassCatalog(["a", "b"]), config=config)
        image = np.zeros((64, 64, 3), dtype=np.uint8)
        with self.assertRaises(CatalogMismatch):
            session.detect(image)
        self.assertFalse(session.ready)
        with self.assertRaises(SessionNotReady):
            session.detect(image)


if __name__ == "__main__":
    unittest.main()
