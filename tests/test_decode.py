import unittest

import numpy as np

from yolo_post.decode import as_rows, decode, decode_arrays, fast_exp, sigmoid, softmax
from yolo_post.errors import CatalogMismatch
from yolo_post.grid import generate_grid


REG_MAX = 16


def _dfl_side(bin_index: int) -> np.ndarray:
    """Logits putting (numerically) all probability on `bin_index`."""
    logits = np.full(REG_MAX, -1000.0, dtype=np.float32)
    logits[bin_index] = 0.0
    return logits


def _dfl_row(bins, class_logits) -> np.ndarray:
    parts = [_dfl_side(b) for b in bins]
    parts.append(np.asarray(class_logits, dtype=np.float32))
    return np.concatenate(parts)


class TestDirectDecode(unittest.TestCase):
    def setUp(self) -> None:
        self.rows = np.array(
            [
                [50, 60, 10, 20, 0.1, 0.9, 0.2],  # class 1
                [55, 66, 12, 18, 0.7, 0.1, 0.2],  # class 0
                [10, 10, 4, 4, 0.25, 0.1, 0.1],  # exactly at threshold
            ],
            dtype=np.float32,
        )

    def test_threshold_is_strict(self) -> None:
        proposals = decode(self.rows, None, 3, "direct", 0.25)
        self.assertEqual(len(proposals), 2)
        self.assertEqual([p.class_id for p in proposals], [1, 0])
        self.assertAlmostEqual(proposals[0].confidence, 0.9, places=5)
        self.assertAlmostEqual(proposals[1].confidence, 0.7, places=5)

    def test_center_to_corner(self) -> None:
        p = decode(self.rows, None, 3, "direct", 0.25)[0]
        self.assertAlmostEqual(p.x, 45.0)
        self.assertAlmostEqual(p.y, 50.0)
        self.assertAlmostEqual(p.width, 10.0)
        self.assertAlmostEqual(p.height, 20.0)

    def test_layouts_agree(self) -> None:
        expected = decode(self.rows, None, 3, "A", 0.25)
        for tensor in (self.rows[None], self.rows.T, self.rows.T[None]):
            got = decode(tensor, None, 3, "direct", 0.25)
            self.assertEqual(got, expected)

    def test_non_finite_rows_are_dropped(self) -> None:
        rows = self.rows.copy()
        rows[0, 0] = np.nan
        rows[1, 5] = np.inf
        proposals = decode(rows, None, 3, "direct", 0.25)
        self.assertEqual(proposals, [])

    def test_high_threshold_yields_empty(self) -> None:
        rows = np.zeros((10, 6), dtype=np.float32)
        rows[:, 2:4] = 5.0
        rows[:, 4:] = 0.5
        self.assertEqual(decode(rows, None, 2, "direct", 0.9), [])

    def test_empty_tensor(self) -> None:
        boxes, scores, class_ids = decode_arrays(np.zeros((0, 7), dtype=np.float32), None, 3, "direct")
        self.assertEqual(boxes.shape, (0, 4))
        self.assertEqual(scores.shape, (0,))
        self.assertEqual(class_ids.shape, (0,))

    def test_width_mismatch_is_catalog_error(self) -> None:
        with self.assertRaises(CatalogMismatch):
            decode(self.rows, None, 5, "direct", 0.25)

    def test_batch_greater_than_one_rejected(self) -> None:
        with self.assertRaises(ValueError):
            decode(np.stack([self.rows, self.rows]), None, 3, "direct")

    def test_threshold_monotonicity(self) -> None:
        rng = np.random.default_rng(0)
        rows = rng.random((500, 4 + 5), dtype=np.float32)
        counts = [len(decode(rows, None, 5, "direct", t)) for t in np.linspace(0.0, 1.0, 11)]
        self.assertTrue(all(a >= b for a, b in zip(counts, counts[1:])))


class TestDflDecode(unittest.TestCase):
    def test_one_hot_bin_times_stride(self) -> None:
        grid = generate_grid(8, 8, (8,))  # one cell, center (4, 4)
        rows = _dfl_row([5, 5, 5, 5], [2.0])[None]
        proposals = decode(rows, grid, 1, "dfl", 0.5)
        self.assertEqual(len(proposals), 1)
        p = proposals[0]
        # distance 5 * 8 = 40 on every side
        self.assertEqual((p.x, p.y), (-36.0, -36.0))
        self.assertEqual((p.width, p.height), (80.0, 80.0))
        self.assertAlmostEqual(p.confidence, 1.0 / (1.0 + np.exp(-2.0)), places=6)

    def test_sides_and_anchor_cell(self) -> None:
        grid = generate_grid(16, 8, (8,))  # cells (0,0) and (1,0)
        rows = np.stack([_dfl_row([0, 0, 0, 0], [-10.0]), _dfl_row([1, 2, 3, 4], [3.0])])
        boxes, scores, class_ids = decode_arrays(rows, grid, 1, "dfl", 0.5)
        self.assertEqual(boxes.shape, (1, 4))
        # center (12, 4); distances 8, 16, 24, 32
        np.testing.assert_allclose(boxes[0], [4.0, -12.0, 36.0, 36.0], atol=1e-4)

    def test_uniform_distribution_expectation(self) -> None:
        grid = generate_grid(8, 8, (8,))
        row = np.zeros(4 * REG_MAX + 1, dtype=np.float32)
        row[-1] = 5.0
        boxes, _, _ = decode_arrays(row[None], grid, 1, "dfl", 0.5)
        # mean of bins 0..15 is 7.5 -> 60 px
        np.testing.assert_allclose(boxes[0], [4 - 60, 4 - 60, 4 + 60, 4 + 60], atol=1e-3)

    def test_sigmoid_threshold_inclusive(self) -> None:
        grid = generate_grid(16, 8, (8,))
        rows = np.stack([_dfl_row([1, 1, 1, 1], [0.0]), _dfl_row([1, 1, 1, 1], [-1.0])])
        proposals = decode(rows, grid, 1, "dfl", 0.5)
        self.assertEqual(len(proposals), 1)
        self.assertAlmostEqual(proposals[0].confidence, 0.5)

    def test_argmax_on_raw_logits(self) -> None:
        grid = generate_grid(8, 8, (8,))
        rows = _dfl_row([1, 1, 1, 1], [1.0, 3.0, 2.0])[None]
        p = decode(rows, grid, 3, "dfl", 0.1)[0]
        self.assertEqual(p.class_id, 1)
        self.assertAlmostEqual(p.confidence, 1.0 / (1.0 + np.exp(-3.0)), places=6)

    def test_multi_level_strides(self) -> None:
        grid = generate_grid(32, 32, (8, 16, 32))  # 16 + 4 + 1 rows
        rows = np.stack([_dfl_row([1, 1, 1, 1], [-20.0]) for _ in range(len(grid))])
        rows[-1] = _dfl_row([1, 1, 1, 1], [4.0])  # the single stride-32 cell, center (16, 16)
        boxes, _, _ = decode_arrays(rows, grid, 1, "dfl", 0.5)
        np.testing.assert_allclose(boxes[0], [-16.0, -16.0, 48.0, 48.0], atol=1e-4)

    def test_channel_first_layout(self) -> None:
        grid = generate_grid(16, 8, (8,))
        rows = np.stack([_dfl_row([1, 2, 3, 4], [3.0]), _dfl_row([2, 2, 2, 2], [1.0])])
        expected = decode(rows, grid, 1, "dfl", 0.5)
        self.assertEqual(decode(rows.T[None], grid, 1, "dfl", 0.5), expected)

    def test_row_count_must_match_grid(self) -> None:
        grid = generate_grid(16, 8, (8,))
        rows = _dfl_row([1, 1, 1, 1], [3.0])[None]
        with self.assertRaises(CatalogMismatch):
            decode(rows, grid, 1, "dfl", 0.5)

    def test_grid_required(self) -> None:
        with self.assertRaises(ValueError):
            decode(np.zeros((1, 65), dtype=np.float32), None, 1, "dfl")

    def test_non_finite_logits_dropped(self) -> None:
        grid = generate_grid(16, 8, (8,))
        rows = np.stack([_dfl_row([1, 1, 1, 1], [np.nan]), _dfl_row([1, 1, 1, 1], [2.0])])
        rows[1, 3] = np.inf
        self.assertEqual(decode(rows, grid, 1, "dfl", 0.1), [])

    def test_fast_exp_mode_close_to_exact(self) -> None:
        rng = np.random.default_rng(1)
        grid = generate_grid(64, 64, (8, 16, 32))
        rows = rng.normal(size=(len(grid), 4 * REG_MAX + 3)).astype(np.float32)
        # Threshold 0 keeps every row in both modes.
        exact = decode_arrays(rows, grid, 3, "dfl", 0.0)
        fast = decode_arrays(rows, grid, 3, "dfl", 0.0, fast_exp=True)
        self.assertEqual(exact[0].shape, fast[0].shape)
        np.testing.assert_allclose(fast[0], exact[0], rtol=1e-2, atol=0.1)
        np.testing.assert_allclose(fast[1], exact[1], rtol=1e-2)
        np.testing.assert_array_equal(fast[2], exact[2])


class TestMathHelpers(unittest.TestCase):
    def test_fast_exp_relative_error(self) -> None:
        x = np.linspace(-30.0, 30.0, 4001, dtype=np.float32)
        rel = np.abs(fast_exp(x) - np.exp(x.astype(np.float64))) / np.exp(x.astype(np.float64))
        self.assertLess(float(rel.max()), 0.01)

    def test_sigmoid_stable_for_large_inputs(self) -> None:
        out = sigmoid(np.array([-1000.0, 0.0, 1000.0], dtype=np.float32))
        np.testing.assert_allclose(out, [0.0, 0.5, 1.0], atol=1e-6)
        self.assertTrue(np.all(np.isfinite(out)))

    def test_fast_sigmoid_close(self) -> None:
        x = np.linspace(-10, 10, 201, dtype=np.float32)
        np.testing.assert_allclose(sigmoid(x, fast=True), sigmoid(x), rtol=0.01)

    def test_softmax_sums_to_one(self) -> None:
        x = np.random.default_rng(2).normal(size=(5, 4, REG_MAX)).astype(np.float32)
        np.testing.assert_allclose(softmax(x, axis=2).sum(axis=2), 1.0, rtol=1e-5)

    def test_as_rows_square_prefers_row_major(self) -> None:
        p = np.arange(49, dtype=np.float32).reshape(7, 7)
        np.testing.assert_array_equal(as_rows(p, 7), p)


if __name__ == "__main__":
    unittest.main()
