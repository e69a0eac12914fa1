"""Sparse kernels and curvature estimators."""

from .curvature import (
    CURVATURE_ESTIMATORS,
    CurvatureEstimator,
    DiagonalHessian,
    UpperBoundHessian,
    resolve_curvature,
)
from .spmv import times, trans_times

__all__ = [
    "CURVATURE_ESTIMATORS",
    "CurvatureEstimator",
    "DiagonalHessian",
    "UpperBoundHessian",
    "resolve_curvature",
    "times",
    "trans_times",
]
