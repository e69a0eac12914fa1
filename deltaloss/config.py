"""Configuration objects for deltaloss."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Iterable, Mapping, Union

KWArgs = Union[Mapping[str, Any], Iterable[tuple[str, Any]]]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True, slots=True)
class LogitLossDeltaConfig:
    """Options for :class:`deltaloss.loss.LogitLossDelta`.

    Parameters
    ----------
    compute_diag_hessian:
        Emit the exact diagonal Hessian next to each gradient entry.
    compute_upper_diag_hessian:
        Emit an upper bound of the diagonal Hessian instead. The estimator
        behind this option is a placeholder that requires the step bound
        ``delta`` and leaves the Hessian slots untouched.
    num_threads:
        Size of the worker pool the evaluator creates once.
    min_chunk:
        Minimum number of rows (or columns) handed to one worker; smaller
        loops run on the calling thread.
    curvature:
        Explicit curvature estimator name (``"diag"``, ``"upper_bound"`` or
        ``"none"``). ``None`` derives it from the two flags, with
        ``compute_diag_hessian`` taking precedence.
    """

    compute_diag_hessian: bool = False
    compute_upper_diag_hessian: bool = True
    num_threads: int = 2
    min_chunk: int = 4096
    curvature: str | None = None

    def __post_init__(self) -> None:
        if self.num_threads <= 0:
            raise ValueError(f"num_threads must be positive, got {self.num_threads}")
        if self.min_chunk <= 0:
            raise ValueError(f"min_chunk must be positive, got {self.min_chunk}")

    @classmethod
    def from_kwargs(cls, kwargs: KWArgs) -> tuple["LogitLossDeltaConfig", list[tuple[str, Any]]]:
        """Build a config from string-valued options.

        Returns the config and the ``(key, value)`` pairs that were not
        recognised, in input order.
        """
        items = list(kwargs.items()) if isinstance(kwargs, Mapping) else list(kwargs)
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        unknown: list[tuple[str, Any]] = []
        for key, raw in items:
            if key not in known:
                unknown.append((key, raw))
                continue
            if key in ("compute_diag_hessian", "compute_upper_diag_hessian"):
                values[key] = _parse_flag(key, raw)
            elif key in ("num_threads", "min_chunk"):
                values[key] = int(raw)
            else:
                values[key] = None if raw is None else str(raw)
        return cls(**values).with_env_overrides(), unknown

    def with_env_overrides(self) -> "LogitLossDeltaConfig":
        env_threads = os.getenv("DELTALOSS_NUM_THREADS")
        if env_threads:
            return replace(self, num_threads=int(env_threads))
        return self


def _parse_flag(key: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int):
        if raw not in (0, 1):
            raise ValueError(f"{key} must be 0 or 1, got {raw}")
        return bool(raw)
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"{key} must be 0 or 1, got {raw!r}")
