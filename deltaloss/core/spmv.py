"""Sparse matrix times dense vector, restricted by optional position maps.

Both entry points accumulate into ``y`` and never overwrite it. A position
map translates a logical coordinate into a physical slot of the dense
buffer; a negative entry marks the coordinate as inactive.
"""

from __future__ import annotations

import numpy as np

from ..data import ArrayLike, RowBlock, as_output_buffer, as_positions, ensure_numpy
from ..utils.parallel import WorkerPool, borrow_pool

__all__ = ["times", "trans_times"]


def _check_map(name: str, pos: np.ndarray | None, needed: int, buf_len: int, buf: str) -> None:
    if pos is None:
        if buf_len < needed:
            raise ValueError(f"{buf} has length {buf_len}, expected at least {needed}")
        return
    if pos.size < needed:
        raise ValueError(f"{name} has length {pos.size}, expected at least {needed}")


def _gather(x: np.ndarray, coords: np.ndarray, pos: np.ndarray | None) -> np.ndarray:
    """``x[pos[coords]]`` with zeros where the mapping is negative."""
    if pos is None:
        return x[coords].astype(np.float64, copy=False)
    slots = pos[coords]
    active = slots >= 0
    out = np.zeros(coords.size, dtype=np.float64)
    out[active] = x[slots[active]]
    return out


def _scatter_add(y: np.ndarray, sums: np.ndarray, coords_start: int, pos: np.ndarray | None) -> None:
    sums = sums.astype(y.dtype, copy=False)
    if pos is None:
        y[coords_start : coords_start + sums.size] += sums
        return
    slots = pos[coords_start : coords_start + sums.size]
    active = slots >= 0
    np.add.at(y, slots[active], sums[active])


def times(
    block: RowBlock,
    x: ArrayLike,
    y: ArrayLike,
    pool: WorkerPool | int = 1,
    x_pos: ArrayLike | None = None,
    y_pos: ArrayLike | None = None,
) -> None:
    """``y += D * x``.

    ``x_pos`` maps columns of ``block`` into ``x``; ``y_pos`` maps rows into
    ``y``. Workers own disjoint row ranges, hence disjoint output slots.
    """

    x_np = ensure_numpy(x)
    y_np = as_output_buffer(y)
    xp = as_positions(x_pos)
    yp = as_positions(y_pos)
    _check_map("x_pos", xp, block.num_cols, x_np.size, "x")
    _check_map("y_pos", yp, block.size, y_np.size, "y")

    offset, index, value = block.offset, block.index, block.value

    def run(start: int, stop: int) -> None:
        lo, hi = int(offset[start]), int(offset[stop])
        cols = index[lo:hi].astype(np.int64, copy=False)
        contrib = _gather(x_np, cols, xp)
        if value is not None:
            contrib *= value[lo:hi]
        seg = np.repeat(np.arange(stop - start), np.diff(offset[start : stop + 1]))
        sums = np.bincount(seg, weights=contrib, minlength=stop - start)
        _scatter_add(y_np, sums, start, yp)

    with borrow_pool(pool) as workers:
        workers.run(block.size, run)


def trans_times(
    block: RowBlock,
    x: ArrayLike,
    y: ArrayLike,
    pool: WorkerPool | int = 1,
    x_pos: ArrayLike | None = None,
    y_pos: ArrayLike | None = None,
) -> None:
    """``y += D^T * x``.

    ``x_pos`` maps rows of ``block`` into ``x``; ``y_pos`` maps columns into
    ``y``. Per-entry products are formed over row ranges, then each worker
    sums the entries falling into its own column range.
    """

    x_np = ensure_numpy(x)
    y_np = as_output_buffer(y)
    xp = as_positions(x_pos)
    yp = as_positions(y_pos)
    _check_map("x_pos", xp, block.size, x_np.size, "x")
    _check_map("y_pos", yp, block.num_cols, y_np.size, "y")

    offset, index, value = block.offset, block.index, block.value
    base = int(offset[0])
    cols = index[base : int(offset[-1])].astype(np.int64, copy=False)
    contrib = np.empty(cols.size, dtype=np.float64)

    def products(start: int, stop: int) -> None:
        lo, hi = int(offset[start]), int(offset[stop])
        rows = np.arange(start, stop)
        row_x = _gather(x_np, rows, xp)
        vals = np.repeat(row_x, np.diff(offset[start : stop + 1]))
        if value is not None:
            vals *= value[lo:hi]
        contrib[lo - base : hi - base] = vals

    def accumulate(c0: int, c1: int) -> None:
        mask = (cols >= c0) & (cols < c1)
        sums = np.bincount(cols[mask] - c0, weights=contrib[mask], minlength=c1 - c0)
        _scatter_add(y_np, sums, c0, yp)

    with borrow_pool(pool) as workers:
        workers.run(block.size, products)
        workers.run(block.num_cols, accumulate)
