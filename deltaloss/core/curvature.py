"""Diagonal curvature estimators for the delta logistic loss."""

from __future__ import annotations

import logging
from typing import Protocol

import numpy as np

from ..config import LogitLossDeltaConfig
from ..data import RowBlock
from ..utils.parallel import WorkerPool
from .spmv import times

_logger = logging.getLogger(__name__)


class CurvatureEstimator(Protocol):
    name: str
    requires_delta: bool
    writes_hessian: bool

    def accumulate(
        self,
        block_sq: RowBlock,
        weights: np.ndarray,
        out: np.ndarray,
        h_pos: np.ndarray,
        delta: np.ndarray | None,
        pool: WorkerPool,
    ) -> None:
        ...


class DiagonalHessian:
    """Exact diagonal: ``h += (X .* X)' * (tau .* (1 - tau))``."""

    name = "diag"
    requires_delta = False
    writes_hessian = True

    def accumulate(self, block_sq, weights, out, h_pos, delta, pool) -> None:
        times(block_sq, weights, out, pool, y_pos=h_pos)


class UpperBoundHessian:
    """Upper bound of the diagonal Hessian over a trust region ``delta``.

    Only the interface exists: ``delta`` is required and validated, the
    Hessian slots are left as the caller passed them.
    """

    name = "upper_bound"
    requires_delta = True
    writes_hessian = False

    def accumulate(self, block_sq, weights, out, h_pos, delta, pool) -> None:
        if delta is None:
            raise ValueError("upper_bound curvature requires the delta parameter")
        # TODO: bound tau * (1 - tau) over pred +/- |X| * delta once the driver defines delta's layout.
        _logger.debug(
            "upper_bound curvature is not implemented; %d Hessian slots left unchanged",
            int(np.count_nonzero(h_pos >= 0)),
        )


CURVATURE_ESTIMATORS: dict[str, type] = {
    DiagonalHessian.name: DiagonalHessian,
    UpperBoundHessian.name: UpperBoundHessian,
}


def resolve_curvature(config: LogitLossDeltaConfig) -> CurvatureEstimator | None:
    """Pick the estimator for ``config``; ``None`` means first order only."""

    name = config.curvature
    if name is None:
        if config.compute_diag_hessian:
            name = DiagonalHessian.name
        elif config.compute_upper_diag_hessian:
            name = UpperBoundHessian.name
        else:
            return None
    if name == "none":
        return None
    try:
        cls = CURVATURE_ESTIMATORS[name]
    except KeyError:
        raise ValueError(
            f"Unsupported curvature: {name!r} (expected one of {sorted(CURVATURE_ESTIMATORS)} or 'none')"
        ) from None
    return cls()
