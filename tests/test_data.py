import numpy as np
import pandas as pd
import pytest
import torch

from deltaloss import LogitLossDelta, LogitLossDeltaConfig
from deltaloss.data import RowBlock, as_output_buffer, as_positions, ensure_numpy


def make_dense(seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(6, 5))
    X[rng.random(size=X.shape) < 0.4] = 0.0
    return X


def test_from_dense_round_trip() -> None:
    X = make_dense()
    block = RowBlock.from_dense(X)
    assert block.size == 6
    assert block.num_cols == 5
    assert block.nnz == int(np.count_nonzero(X))
    np.testing.assert_array_equal(block.to_dense(), X)


def test_from_dense_accepts_frames_and_tensors() -> None:
    X = make_dense(1)
    df = pd.DataFrame(X, columns=[f"f{i}" for i in range(X.shape[1])])
    np.testing.assert_array_equal(RowBlock.from_dense(df).to_dense(), X)
    np.testing.assert_array_equal(RowBlock.from_dense(torch.from_numpy(X)).to_dense(), X)


def test_transpose_matches_dense_and_keeps_labels() -> None:
    X = make_dense(2)
    label = np.array([1.0, -1.0, 1.0, 0.0, 1.0, -1.0])
    block = RowBlock.from_dense(X, label=label)
    Xt = block.transpose()
    assert Xt.size == X.shape[1]
    assert Xt.num_cols == X.shape[0]
    np.testing.assert_array_equal(Xt.to_dense(), X.T)
    assert Xt.label is block.label


def test_valueless_block_means_ones() -> None:
    block = RowBlock.from_csr([0, 2, 3], [0, 2, 1])
    np.testing.assert_array_equal(block.to_dense(), [[1.0, 0.0, 1.0], [0.0, 1.0, 0.0]])
    assert block.squared() is block


def test_squared_shares_structure() -> None:
    block = RowBlock.from_dense(make_dense(3), label=np.arange(6.0))
    sq = block.squared()
    assert sq.offset is block.offset
    assert sq.index is block.index
    assert sq.label is block.label
    np.testing.assert_allclose(sq.to_dense(), block.to_dense() ** 2)


def test_squared_of_row_slice_rebases_offsets() -> None:
    X = make_dense(4)
    view = RowBlock.from_dense(X).slice_rows(2, 5)
    assert int(view.offset[0]) > 0
    sq = view.squared()
    assert int(sq.offset[0]) == 0
    assert np.shares_memory(sq.index, view.index)
    np.testing.assert_allclose(sq.to_dense(), X[2:5] ** 2)


def test_slice_rows_is_zero_copy() -> None:
    X = make_dense(5)
    block = RowBlock.from_dense(X)
    view = block.slice_rows(1, 4)
    assert view.index is block.index
    np.testing.assert_array_equal(view.to_dense(), X[1:4])
    with pytest.raises(ValueError):
        block.slice_rows(4, 2)


@pytest.mark.parametrize(
    "offset, index, value",
    [
        ([0, 2, 1], [0, 1], None),
        ([0, 3], [0, 1], None),
        ([0, 2], [0, 1], [1.0]),
        ([], [], None),
    ],
)
def test_invalid_blocks_are_rejected(offset, index, value) -> None:
    with pytest.raises(ValueError):
        RowBlock.from_csr(offset, index, value)


def test_explicit_num_cols_is_checked() -> None:
    with pytest.raises(ValueError, match="num_cols"):
        RowBlock.from_csr([0, 1], [4], num_cols=3)


def test_output_buffer_aliases_tensor() -> None:
    t = torch.zeros(4, dtype=torch.float64)
    view = as_output_buffer(t)
    view[2] = 5.0
    assert float(t[2]) == 5.0


def test_output_buffer_rejections() -> None:
    ro = np.zeros(3)
    ro.flags.writeable = False
    with pytest.raises(ValueError, match="read-only"):
        as_output_buffer(ro)
    with pytest.raises(ValueError, match="1D"):
        as_output_buffer(np.zeros((2, 2)))
    with pytest.raises(ValueError, match="floats"):
        as_output_buffer(np.zeros(3, dtype=np.int32))
    with pytest.raises(ValueError):
        as_output_buffer([0.0, 1.0])


def test_positions_normalisation() -> None:
    assert as_positions(None) is None
    assert as_positions(np.empty(0, dtype=np.int32)) is None
    pos = as_positions(torch.tensor([0, -1, 2], dtype=torch.int32))
    assert pos.dtype == np.int64
    with pytest.raises(ValueError, match="integers"):
        as_positions(np.array([0.0, 1.0]))


def test_ensure_numpy_shares_tensor_memory() -> None:
    t = torch.arange(3, dtype=torch.float32)
    arr = ensure_numpy(t)
    arr[0] = 9.0
    assert float(t[0]) == 9.0


def test_transpose_of_row_slice_cuts_labels() -> None:
    X = make_dense(6)
    label = np.array([1.0, -1.0, 1.0, 0.0, 1.0, -1.0])
    view = RowBlock.from_dense(X, label=label).slice_rows(2, 5)
    assert view.row_start == 2
    Xt = view.transpose()
    np.testing.assert_array_equal(Xt.to_dense(), X[2:5].T)
    np.testing.assert_array_equal(Xt.label, label[2:5])

    nested = RowBlock.from_dense(X, label=label).slice_rows(1, 6).slice_rows(2, 4)
    assert nested.row_start == 3
    np.testing.assert_array_equal(nested.transpose().label, label[3:5])


def test_gradient_on_transposed_row_slice() -> None:
    X = np.ones((4, 1))
    label = np.array([1.0, 1.0, -1.0, -1.0])
    Xt = RowBlock.from_dense(X, label=label).slice_rows(2, 4).transpose()
    config = LogitLossDeltaConfig(compute_diag_hessian=False, compute_upper_diag_hessian=False)
    grad = np.zeros(1)
    LogitLossDelta(config).calc_grad(Xt, [np.zeros(2)], grad)
    # both remaining examples are negative: tau = 0.5 each
    np.testing.assert_allclose(grad, [1.0])
