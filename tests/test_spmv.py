import numpy as np
import pytest

from deltaloss.core.spmv import times, trans_times
from deltaloss.data import RowBlock
from deltaloss.utils.parallel import WorkerPool


def make_block(n_rows: int = 30, n_cols: int = 12, seed: int = 0) -> tuple[np.ndarray, RowBlock]:
    rng = np.random.default_rng(seed)
    D = rng.normal(size=(n_rows, n_cols))
    D[rng.random(size=D.shape) < 0.6] = 0.0
    return D, RowBlock.from_dense(D)


def test_times_matches_dense() -> None:
    D, block = make_block()
    x = np.random.default_rng(1).normal(size=D.shape[1])
    y = np.zeros(D.shape[0])
    times(block, x, y)
    np.testing.assert_allclose(y, D @ x, rtol=1e-12, atol=1e-12)


def test_trans_times_matches_dense() -> None:
    D, block = make_block(seed=2)
    x = np.random.default_rng(3).normal(size=D.shape[0])
    y = np.zeros(D.shape[1])
    trans_times(block, x, y)
    np.testing.assert_allclose(y, D.T @ x, rtol=1e-12, atol=1e-12)


def test_both_forms_accumulate() -> None:
    D, block = make_block(seed=4)
    rng = np.random.default_rng(5)
    x_cols = rng.normal(size=D.shape[1])
    x_rows = rng.normal(size=D.shape[0])

    y = np.ones(D.shape[0])
    times(block, x_cols, y)
    times(block, x_cols, y)
    np.testing.assert_allclose(y, 1.0 + 2.0 * (D @ x_cols), rtol=1e-12)

    z = np.full(D.shape[1], -2.0)
    trans_times(block, x_rows, z)
    np.testing.assert_allclose(z, -2.0 + D.T @ x_rows, rtol=1e-12)


def test_times_with_position_maps() -> None:
    D, block = make_block(seed=6)
    n_rows, n_cols = D.shape

    # x holds only three columns, in a different order
    cols = np.array([7, 1, 10])
    x_pos = np.full(n_cols, -1)
    x_pos[cols] = [2, 0, 1]
    x = np.array([0.5, -1.5, 3.0])
    x_full = np.zeros(n_cols)
    x_full[cols] = x[[2, 0, 1]]

    rows = np.array([3, 0, 17, 29])
    y_pos = np.full(n_rows, -1)
    y_pos[rows] = 2 * np.arange(rows.size)
    y = np.zeros(2 * rows.size)
    times(block, x, y, x_pos=x_pos, y_pos=y_pos)

    expected = np.zeros_like(y)
    expected[0::2] = (D @ x_full)[rows]
    np.testing.assert_allclose(y, expected, rtol=1e-12, atol=1e-12)


def test_trans_times_with_position_maps() -> None:
    D, block = make_block(seed=8)
    n_rows, n_cols = D.shape

    rows = np.array([4, 9, 22])
    x_pos = np.full(n_rows, -1)
    x_pos[rows] = np.arange(rows.size)
    x = np.array([1.0, -2.0, 0.25])

    cols = np.array([0, 5, 11])
    y_pos = np.full(n_cols, -1)
    y_pos[cols] = [2, 1, 0]
    y = np.zeros(3)
    trans_times(block, x, y, x_pos=x_pos, y_pos=y_pos)

    expected = (D[rows].T @ x)[cols]
    np.testing.assert_allclose(y[[2, 1, 0]], expected, rtol=1e-12, atol=1e-12)


def test_row_slice_uses_absolute_offsets() -> None:
    D, block = make_block(seed=9)
    view = block.slice_rows(5, 12)
    x = np.random.default_rng(10).normal(size=D.shape[1])
    y = np.zeros(view.size)
    times(view, x, y)
    np.testing.assert_allclose(y, D[5:12] @ x, rtol=1e-12, atol=1e-12)

    xr = np.arange(view.size, dtype=np.float64)
    z = np.zeros(D.shape[1])
    trans_times(view, xr, z)
    np.testing.assert_allclose(z, D[5:12].T @ xr, rtol=1e-12, atol=1e-12)


def test_float32_output_buffer() -> None:
    D, block = make_block(seed=11)
    x = np.ones(D.shape[1])
    y = np.zeros(D.shape[0], dtype=np.float32)
    times(block, x, y)
    np.testing.assert_allclose(y, D.sum(axis=1), rtol=1e-5, atol=1e-5)


def test_short_buffers_and_maps_are_rejected() -> None:
    D, block = make_block(seed=12)
    with pytest.raises(ValueError, match="x has length"):
        times(block, np.ones(D.shape[1] - 1), np.zeros(D.shape[0]))
    with pytest.raises(ValueError, match="y has length"):
        trans_times(block, np.ones(D.shape[0]), np.zeros(D.shape[1] - 1))
    with pytest.raises(ValueError, match="y_pos"):
        times(block, np.ones(D.shape[1]), np.zeros(4), y_pos=np.array([0, 1]))


@pytest.mark.parametrize("num_threads", [2, 3, 8])
def test_results_independent_of_thread_count(num_threads: int) -> None:
    D, block = make_block(n_rows=200, n_cols=60, seed=13)
    rng = np.random.default_rng(14)
    x_cols = rng.normal(size=D.shape[1])
    x_rows = rng.normal(size=D.shape[0])

    with WorkerPool(num_threads, min_chunk=1) as pool:
        y = np.zeros(D.shape[0])
        times(block, x_cols, y, pool)
        z = np.zeros(D.shape[1])
        trans_times(block, x_rows, z, pool)

    np.testing.assert_allclose(y, D @ x_cols, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(z, D.T @ x_rows, rtol=1e-10, atol=1e-12)


def test_empty_block() -> None:
    block = RowBlock.from_csr([0], np.empty(0, dtype=np.int64), num_cols=3)
    y = np.zeros(3)
    trans_times(block, np.zeros(0), y)
    np.testing.assert_array_equal(y, 0.0)
    times(block, np.zeros(3), np.zeros(0))
