"""Fixed-size worker pool for flat data-parallel loops."""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Iterator, List, Tuple

Range = Tuple[int, int]


def partition(n: int, parts: int) -> List[Range]:
    """Split ``[0, n)`` into at most ``parts`` contiguous, non-empty ranges."""

    if n < 0:
        raise ValueError("n must be non-negative")
    if parts <= 0:
        raise ValueError("parts must be positive")
    if n == 0:
        return []
    parts = min(parts, n)
    step = n // parts
    extra = n % parts
    ranges: list[Range] = []
    start = 0
    for k in range(parts):
        stop = start + step + (1 if k < extra else 0)
        ranges.append((start, stop))
        start = stop
    return ranges


class WorkerPool:
    """Thread pool sized once at construction.

    Loops smaller than ``min_chunk`` items per worker are run inline; numpy
    releases the GIL inside the vectorised kernels so larger loops do scale.
    """

    def __init__(self, num_threads: int = 1, *, min_chunk: int = 4096) -> None:
        if num_threads <= 0:
            raise ValueError(f"num_threads must be positive, got {num_threads}")
        if min_chunk <= 0:
            raise ValueError("min_chunk must be positive")
        self.num_threads = int(num_threads)
        self.min_chunk = int(min_chunk)
        self._executor: ThreadPoolExecutor | None = None

    def ranges(self, n: int) -> List[Range]:
        parts = max(1, min(self.num_threads, math.ceil(n / self.min_chunk)))
        return partition(n, parts)

    def run(self, n: int, fn: Callable[[int, int], None]) -> None:
        """Call ``fn(start, stop)`` over a partition of ``[0, n)``.

        The first exception raised by a worker is re-raised here.
        """
        ranges = self.ranges(n)
        if len(ranges) <= 1:
            for start, stop in ranges:
                fn(start, stop)
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.num_threads, thread_name_prefix="deltaloss"
            )
        futures = [self._executor.submit(fn, start, stop) for start, stop in ranges]
        for fut in futures:
            fut.result()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"WorkerPool(num_threads={self.num_threads}, min_chunk={self.min_chunk})"


@contextmanager
def borrow_pool(pool: "WorkerPool | int") -> Iterator[WorkerPool]:
    """Yield ``pool`` unchanged, or a temporary pool when given a thread count."""

    if isinstance(pool, WorkerPool):
        yield pool
        return
    tmp = WorkerPool(int(pool))
    try:
        yield tmp
    finally:
        tmp.close()
