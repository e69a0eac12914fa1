"""Logistic loss specialised for block coordinate descent.

:math:`\\ell(x, y, w) = \\log(1 + \\exp(-y \\langle w, x \\rangle))`

:class:`LogitLossDelta` is fed ``X'`` (the transpose of the design matrix,
row-major, so each row is one feature) together with a weight delta, and can
return first order gradients plus a diagonal second order term for the
features of the block.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

import numpy as np

from .config import KWArgs, LogitLossDeltaConfig
from .core.curvature import resolve_curvature
from .core.spmv import times, trans_times
from .data import ArrayLike, RowBlock, as_output_buffer, as_positions, ensure_numpy
from .utils.parallel import WorkerPool


def signed_labels(label: np.ndarray) -> np.ndarray:
    """Map raw labels to ``+1`` (``label > 0``) or ``-1``."""
    return np.where(label > 0, 1.0, -1.0)


def logistic_weight(pred: np.ndarray, label: np.ndarray) -> np.ndarray:
    """``tau = -y / (1 + exp(y * pred))``, the per-example gradient weight.

    ``exp`` overflowing to ``inf`` gives ``tau = -0.0 * y``, which is the
    correct limit, so the overflow warning is silenced.
    """
    y = signed_labels(label)
    with np.errstate(over="ignore"):
        return -y / (1.0 + np.exp(y * pred))


def curvature_weight(tau: np.ndarray, label: np.ndarray) -> np.ndarray:
    """Bernoulli variance ``s * (1 - s)`` with ``s = -y * tau`` in ``[0, 1]``."""
    s = -signed_labels(label) * tau
    return s * (1.0 - s)


def hessian_positions(grad_pos: np.ndarray) -> np.ndarray:
    """Hessian slot of every active coordinate: one past its gradient slot."""
    h_pos = grad_pos.copy()
    h_pos[h_pos >= 0] += 1
    return h_pos


class Loss(ABC):
    """Interface shared by the losses a block coordinate descent driver calls."""

    def init(self, kwargs: KWArgs) -> list[tuple[str, Any]]:
        """Apply options and return the ones this loss does not recognise."""
        return list(kwargs.items()) if hasattr(kwargs, "items") else list(kwargs)

    @abstractmethod
    def predict(self, block: RowBlock, param: Sequence[ArrayLike], pred: ArrayLike) -> None:
        ...

    @abstractmethod
    def calc_grad(self, block: RowBlock, param: Sequence[ArrayLike], grad: ArrayLike) -> None:
        ...

    @abstractmethod
    def evaluate(self, block: RowBlock, pred: ArrayLike) -> float:
        ...


@dataclass(frozen=True, slots=True)
class CoordinateGradient:
    coordinate: int
    gradient: float
    hessian: float | None


@dataclass(frozen=True, slots=True)
class GradientRecords:
    """Gradient and optional Hessian per active coordinate, in one typed record."""

    coordinates: np.ndarray
    gradient: np.ndarray
    hessian: np.ndarray | None

    def __len__(self) -> int:
        return int(self.coordinates.size)

    def __iter__(self) -> Iterator[CoordinateGradient]:
        for k, coord in enumerate(self.coordinates):
            h = None if self.hessian is None else float(self.hessian[k])
            yield CoordinateGradient(int(coord), float(self.gradient[k]), h)


class LogitLossDelta(Loss):
    """Logistic loss over ``X'`` and weight deltas.

    ``pred = X * w`` is maintained incrementally by :meth:`predict`, and
    :meth:`calc_grad` evaluates, for the features (rows) of ``X'``::

        tau   = -y / (1 + exp(y .* pred))
        f'(w) = X' * tau
        f''(w) = (X .* X)' * (s .* (1 - s)),  s = 1 / (1 + exp(y .* pred))

    Gradient and Hessian share one output buffer: the Hessian of a
    coordinate lives in the slot right after its gradient.
    """

    def __init__(self, config: LogitLossDeltaConfig | None = None) -> None:
        self._logger = logging.getLogger(__name__)
        self._pool: WorkerPool | None = None
        self._configure(config if config is not None else LogitLossDeltaConfig().with_env_overrides())

    def _configure(self, config: LogitLossDeltaConfig) -> None:
        self.config = config
        self._curvature = resolve_curvature(config)
        if self._pool is not None:
            self._pool.close()
        self._pool = WorkerPool(config.num_threads, min_chunk=config.min_chunk)

    def init(self, kwargs: KWArgs) -> list[tuple[str, Any]]:
        config, unknown = LogitLossDeltaConfig.from_kwargs(kwargs)
        self._configure(config)
        return unknown

    @property
    def curvature(self) -> str:
        return "none" if self._curvature is None else self._curvature.name

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()

    def __enter__(self) -> "LogitLossDelta":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Loss API
    # ------------------------------------------------------------------

    def predict(self, block: RowBlock, param: Sequence[ArrayLike], pred: ArrayLike) -> None:
        """``pred += X * delta_w``, where ``block`` is ``X'``.

        Parameters
        ----------
        block:
            ``X'``, the transpose of ``X``.
        param:
            ``[delta_w]`` or ``[delta_w, w_pos]``; ``delta_w = new_w - old_w``
            and ``w_pos`` maps rows of ``block`` into ``delta_w``.
        pred:
            Pre-allocated prediction buffer, accumulated in place.
        """
        psize = len(param)
        if not 1 <= psize <= 2:
            raise ValueError(f"predict expects 1 or 2 parameters, got {psize}")
        delta_w = ensure_numpy(param[0])
        w_pos = param[1] if psize == 2 else None
        trans_times(block, delta_w, pred, self._pool, x_pos=w_pos)

    def calc_grad(self, block: RowBlock, param: Sequence[ArrayLike], grad: ArrayLike) -> None:
        """Accumulate gradients (and the diagonal curvature) into ``grad``.

        Parameters
        ----------
        block:
            ``X'``, the transpose of ``X``, with per-example labels.
        param:
            ``[pred]``, ``[pred, grad_pos]`` or ``[pred, grad_pos, delta]``.
            ``grad_pos`` maps rows of ``block`` into ``grad``; a curvature
            estimator writes the Hessian to ``grad_pos + 1``. ``delta`` is the
            step bound needed by the ``upper_bound`` estimator.
        grad:
            Pre-allocated output buffer, accumulated in place.

        Raises
        ------
        ValueError
            On a malformed ``param`` list or an unlabelled block. Also when a
            curvature estimator is active and ``grad_pos`` is missing or empty:
            the identity layout has no room for the Hessian slots, so callers
            asking for curvature must pass ``grad_pos`` with ``grad_pos + 1``
            inside ``grad``.
        """
        psize = len(param)
        if not 1 <= psize <= 3:
            raise ValueError(f"calc_grad expects 1 to 3 parameters, got {psize}")
        if block.label is None:
            raise ValueError("calc_grad requires a labelled block")
        curvature = self._curvature
        if curvature is not None and curvature.requires_delta and psize != 3:
            raise ValueError(f"{curvature.name} curvature requires 3 parameters, got {psize}")

        out = as_output_buffer(grad)
        p = np.array(ensure_numpy(param[0]), dtype=np.float64, copy=True)
        if p.ndim != 1:
            raise ValueError(f"pred must be 1D, got shape {p.shape}")
        label = block.label
        if label.size < p.size:
            raise ValueError(f"label has {label.size} entries for {p.size} predictions")
        grad_pos = as_positions(param[1]) if psize > 1 else None
        delta = ensure_numpy(param[2]) if psize > 2 else None
        if curvature is not None and grad_pos is None:
            raise ValueError("curvature output requires grad_pos to place the Hessian slots")

        def tau_kernel(start: int, stop: int) -> None:
            p[start:stop] = logistic_weight(p[start:stop], label[start:stop])

        self._pool.run(p.size, tau_kernel)
        times(block, p, out, self._pool, y_pos=grad_pos)
        self._log_call(block, grad_pos)
        if curvature is None:
            return

        h_pos = hessian_positions(grad_pos)
        if h_pos.size and int(h_pos.max()) >= out.size:
            raise ValueError(
                f"Hessian slot {int(h_pos.max())} is out of range for a buffer of {out.size}"
            )
        block_sq = block.squared()

        def variance_kernel(start: int, stop: int) -> None:
            p[start:stop] = curvature_weight(p[start:stop], label[start:stop])

        self._pool.run(p.size, variance_kernel)
        curvature.accumulate(block_sq, p, out, h_pos, delta, self._pool)

    def evaluate(self, block: RowBlock, pred: ArrayLike) -> float:
        """Total logistic loss ``sum(log(1 + exp(-y * pred)))``."""
        if block.label is None:
            raise ValueError("evaluate requires a labelled block")
        pred_np = ensure_numpy(pred)
        y = signed_labels(block.label[: pred_np.size])
        return float(np.logaddexp(0.0, -y * pred_np).sum())

    # ------------------------------------------------------------------
    # structured output
    # ------------------------------------------------------------------

    def calc_grad_records(
        self,
        block: RowBlock,
        pred: ArrayLike,
        coordinates: ArrayLike | None = None,
        delta: ArrayLike | None = None,
    ) -> GradientRecords:
        """Gradient (and Hessian) for the rows ``coordinates`` of ``block``.

        Lays out a private buffer with slots ``2k`` / ``2k + 1`` and calls
        :meth:`calc_grad`, so the values are exactly those of the shared
        buffer layout.
        """
        if coordinates is None:
            coords = np.arange(block.size, dtype=np.int64)
        else:
            coords = np.asarray(ensure_numpy(coordinates), dtype=np.int64)
        if coords.size and (coords.min() < 0 or coords.max() >= block.size):
            raise ValueError("coordinates must index rows of the block")
        if np.unique(coords).size != coords.size:
            raise ValueError("coordinates must be unique")
        grad_pos = np.full(block.size, -1, dtype=np.int64)
        grad_pos[coords] = 2 * np.arange(coords.size, dtype=np.int64)
        buf = np.zeros(2 * coords.size, dtype=np.float64)
        param: list[ArrayLike] = [pred, grad_pos]
        if delta is not None:
            param.append(delta)
        self.calc_grad(block, param, buf)
        writes_hessian = self._curvature is not None and self._curvature.writes_hessian
        return GradientRecords(
            coordinates=coords,
            gradient=buf[0::2].copy(),
            hessian=buf[1::2].copy() if writes_hessian else None,
        )

    def _log_call(self, block: RowBlock, grad_pos: np.ndarray | None) -> None:
        if not self._logger.isEnabledFor(logging.DEBUG):
            return
        active = block.size if grad_pos is None else int(np.count_nonzero(grad_pos[: block.size] >= 0))
        self._logger.debug(
            json.dumps(
                {
                    "op": "calc_grad",
                    "rows": block.size,
                    "nnz": block.nnz,
                    "active": active,
                    "curvature": self.curvature,
                    "num_threads": self.config.num_threads,
                }
            )
        )


LOSSES: dict[str, type[Loss]] = {
    "logit_delta": LogitLossDelta,
}


def create_loss(name: str, **kwargs: Any) -> Loss:
    """Instantiate a registered loss and apply ``kwargs`` as options.

    Unrecognised options are logged and ignored.
    """
    try:
        cls = LOSSES[name]
    except KeyError:
        raise ValueError(f"Unknown loss: {name!r} (expected one of {sorted(LOSSES)})") from None
    loss = cls()
    unknown = loss.init(kwargs)
    if unknown:
        logging.getLogger(__name__).debug("ignoring unknown %s options: %s", name, unknown)
    return loss
