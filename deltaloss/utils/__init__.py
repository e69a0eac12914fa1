"""Shared helpers for deltaloss."""

from .parallel import WorkerPool, borrow_pool, partition

__all__ = ["WorkerPool", "borrow_pool", "partition"]
