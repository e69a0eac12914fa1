"""Sparse row blocks and dense buffer helpers for deltaloss."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Union

import numpy as np
import torch

ArrayLike = Union[np.ndarray, torch.Tensor, Sequence[float]]


def ensure_numpy(array: ArrayLike) -> np.ndarray:
    """Convert ``array`` to an ``np.ndarray`` without copying when possible.

    CPU tensors are exposed through :meth:`torch.Tensor.numpy`, so the result
    aliases the tensor's storage.
    """

    if isinstance(array, np.ndarray):
        return array
    if isinstance(array, torch.Tensor):
        if array.device.type != "cpu":
            raise ValueError(f"tensor buffers must live on the CPU, got {array.device}")
        return array.detach().numpy()
    return np.asarray(array)


def as_output_buffer(buf: ArrayLike) -> np.ndarray:
    """Return a writable 1-D ndarray sharing memory with ``buf``."""

    if not isinstance(buf, (np.ndarray, torch.Tensor)):
        raise ValueError("output buffers must be numpy arrays or torch tensors")
    arr = ensure_numpy(buf)
    if arr.ndim != 1:
        raise ValueError(f"output buffer must be 1D, got shape {arr.shape}")
    if not arr.flags.writeable:
        raise ValueError("output buffer is read-only")
    if not np.issubdtype(arr.dtype, np.floating):
        raise ValueError(f"output buffer must hold floats, got {arr.dtype}")
    return arr


def as_positions(pos: ArrayLike | None) -> np.ndarray | None:
    """Normalise a position mapping to ``int64``; ``None`` and empty mean identity."""

    if pos is None:
        return None
    arr = ensure_numpy(pos)
    if arr.size == 0:
        return None
    if arr.ndim != 1:
        raise ValueError("position mappings must be 1D")
    if not np.issubdtype(arr.dtype, np.integer):
        raise ValueError(f"position mappings must be integers, got {arr.dtype}")
    return arr.astype(np.int64, copy=False)


def _as_1d(name: str, arr: ArrayLike | None) -> np.ndarray | None:
    if arr is None:
        return None
    out = ensure_numpy(arr)
    if out.ndim != 1:
        raise ValueError(f"{name} must be 1D, got shape {out.shape}")
    return out


@dataclass(frozen=True, slots=True)
class RowBlock:
    """Row-major sparse block.

    Row ``r`` owns ``index[offset[r]:offset[r + 1]]`` and the matching
    ``value`` entries; ``value=None`` means every stored entry is 1.0.
    ``offset[0]`` may be non-zero when the block is a row range of a larger
    block, entries are always addressed by absolute position.

    ``label`` holds one signed value per example (``> 0`` is the positive
    class). On a transposed block (rows are features) the examples are the
    columns, so ``label`` follows the columns rather than the rows.

    ``row_start`` is the position of row 0 within the block the view was
    sliced from; it is 0 for blocks that own their rows.
    """

    offset: np.ndarray
    index: np.ndarray
    value: np.ndarray | None = None
    label: np.ndarray | None = None
    num_cols: int | None = field(default=None)
    row_start: int = 0

    def __post_init__(self) -> None:
        offset = _as_1d("offset", self.offset)
        index = _as_1d("index", self.index)
        value = _as_1d("value", self.value)
        label = _as_1d("label", self.label)
        if offset.size == 0:
            raise ValueError("offset must hold at least one entry")
        if not np.issubdtype(offset.dtype, np.integer):
            raise ValueError(f"offset must be integer typed, got {offset.dtype}")
        if not np.issubdtype(index.dtype, np.integer):
            raise ValueError(f"index must be integer typed, got {index.dtype}")
        if offset.size > 1 and np.any(np.diff(offset) < 0):
            raise ValueError("offset must be non-decreasing")
        lo, hi = int(offset[0]), int(offset[-1])
        if lo < 0 or hi > index.size:
            raise ValueError(f"offset range [{lo}, {hi}) exceeds index length {index.size}")
        if value is not None and value.size < hi:
            raise ValueError(f"value length {value.size} is shorter than offset[-1]={hi}")
        if self.row_start < 0:
            raise ValueError(f"row_start must be non-negative, got {self.row_start}")

        num_cols = self.num_cols
        if num_cols is None:
            used = index[lo:hi]
            num_cols = int(used.max()) + 1 if used.size else 0
        elif hi > lo and int(index[lo:hi].max()) >= num_cols:
            raise ValueError(f"column index out of range for num_cols={num_cols}")

        object.__setattr__(self, "offset", offset)
        object.__setattr__(self, "index", index)
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "label", label)
        object.__setattr__(self, "num_cols", int(num_cols))
        object.__setattr__(self, "row_start", int(self.row_start))

    # ------------------------------------------------------------------
    # constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_csr(
        cls,
        indptr: ArrayLike,
        indices: ArrayLike,
        data: ArrayLike | None = None,
        label: ArrayLike | None = None,
        num_cols: int | None = None,
    ) -> "RowBlock":
        return cls(
            offset=np.asarray(ensure_numpy(indptr), dtype=np.int64),
            index=ensure_numpy(indices),
            value=None if data is None else ensure_numpy(data),
            label=None if label is None else ensure_numpy(label),
            num_cols=num_cols,
        )

    @classmethod
    def from_dense(cls, X: ArrayLike, label: ArrayLike | None = None) -> "RowBlock":
        """Store the nonzeros of a dense 2-D matrix (ndarray, tensor or DataFrame)."""

        X_np = ensure_numpy(X)
        if X_np.ndim != 2:
            raise ValueError(f"X must be 2D, got shape {X_np.shape}")
        n_rows, n_cols = X_np.shape
        rows, cols = np.nonzero(X_np)
        counts = np.bincount(rows, minlength=n_rows)
        offset = np.zeros(n_rows + 1, dtype=np.int64)
        np.cumsum(counts, out=offset[1:])
        value = X_np[rows, cols].astype(np.float64, copy=False)
        if label is not None:
            label = np.asarray(ensure_numpy(label), dtype=np.float64)
            if label.shape != (n_rows,):
                raise ValueError("label must hold one entry per row of X")
        return cls(
            offset=offset,
            index=cols.astype(np.int64, copy=False),
            value=value,
            label=label,
            num_cols=n_cols,
        )

    # ------------------------------------------------------------------
    # shape
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return int(self.offset.size - 1)

    @property
    def nnz(self) -> int:
        return int(self.offset[-1] - self.offset[0])

    def row_counts(self) -> np.ndarray:
        return np.diff(self.offset)

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------

    def slice_rows(self, start: int, stop: int) -> "RowBlock":
        """Zero-copy view of rows ``[start, stop)``; offsets stay absolute."""

        if not 0 <= start <= stop <= self.size:
            raise ValueError(f"invalid row range [{start}, {stop}) for {self.size} rows")
        return RowBlock(
            offset=self.offset[start : stop + 1],
            index=self.index,
            value=self.value,
            label=self.label,
            num_cols=self.num_cols,
            row_start=self.row_start + start,
        )

    def squared(self) -> "RowBlock":
        """Same sparsity pattern with every value squared.

        ``index`` and ``label`` are shared with ``self``; only the value buffer
        is newly allocated. A valueless block is returned as is (1**2 == 1).
        """

        if self.value is None:
            return self
        lo, hi = int(self.offset[0]), int(self.offset[-1])
        sq = np.square(self.value[lo:hi], dtype=np.float64)
        if lo == 0:
            offset, index = self.offset, self.index
        else:
            offset = self.offset - lo
            index = self.index[lo:hi]
        return RowBlock(
            offset=offset,
            index=index,
            value=sq,
            label=self.label,
            num_cols=self.num_cols,
            row_start=self.row_start,
        )

    def transpose(self) -> "RowBlock":
        """Return the row-major form of the transposed matrix.

        The rows of ``self`` are taken to be the examples. Entries within each
        new row keep ascending source-row order and the label is cut to the
        rows of this view, so on a row slice example ``i`` of the result is
        source row ``row_start + i`` and carries that row's label.
        """

        lo, hi = int(self.offset[0]), int(self.offset[-1])
        cols = self.index[lo:hi].astype(np.int64, copy=False)
        rows = np.repeat(np.arange(self.size, dtype=np.int64), self.row_counts())
        order = np.argsort(cols, kind="stable")
        counts = np.bincount(cols, minlength=self.num_cols)
        offset = np.zeros(self.num_cols + 1, dtype=np.int64)
        np.cumsum(counts, out=offset[1:])
        value = None if self.value is None else self.value[lo:hi][order]
        label = self.label
        if label is not None and self.row_start:
            label = label[self.row_start : self.row_start + self.size]
        return RowBlock(
            offset=offset,
            index=rows[order],
            value=value,
            label=label,
            num_cols=self.size,
        )

    def to_dense(self) -> np.ndarray:
        out = np.zeros((self.size, self.num_cols), dtype=np.float64)
        lo, hi = int(self.offset[0]), int(self.offset[-1])
        rows = np.repeat(np.arange(self.size), self.row_counts())
        vals = np.ones(hi - lo) if self.value is None else self.value[lo:hi]
        np.add.at(out, (rows, self.index[lo:hi].astype(np.int64)), vals)
        return out
