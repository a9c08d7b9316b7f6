"""Utility exports for filesystem and concurrency helpers."""

from notebook_runtime.utils.concurrency import KeyedLocks, PeriodicWorker
from notebook_runtime.utils.fs import atomic_copy, atomic_write, is_within, safe_delete

__all__ = [
    "KeyedLocks",
    "PeriodicWorker",
    "atomic_copy",
    "atomic_write",
    "is_within",
    "safe_delete",
]
