"""
notebook-runtime — cooperative cell lock protocol.

File: src/notebook_runtime/execution/locks.py

Purpose
- Let a human editor and an agent share a notebook without clobbering each
  other's work. A lock is ``(holder, acquired_at)`` on the cell row.

Functional requirements
- Acquire is one compare-and-set against the store; no queueing.
- A lock older than the staleness window is treated as free, so a crashed
  holder cannot block a cell forever.
- Release is unconditional.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

import structlog

from notebook_runtime.constants import DEFAULT_LOCK_STALENESS_SECONDS
from notebook_runtime.domain import events as notebook_events
from notebook_runtime.domain.models import LockStatus, utc_now
from notebook_runtime.errors import ConflictError
from notebook_runtime.observability.events import EventBroadcaster
from notebook_runtime.persistence.cell_store import CellStore


class CellLockProtocol:
    """Acquire/release/status over the cell store with a staleness window."""

    def __init__(
        self,
        store: CellStore,
        *,
        staleness_seconds: float = DEFAULT_LOCK_STALENESS_SECONDS,
        broadcaster: EventBroadcaster | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        if staleness_seconds <= 0:
            raise ValueError("staleness_seconds must be > 0")
        self._store = store
        self._window = timedelta(seconds=staleness_seconds)
        self._broadcaster = broadcaster
        self._now = now_fn
        self._logger = structlog.get_logger(__name__)

    @property
    def staleness_window(self) -> timedelta:
        return self._window

    def acquire(self, cell_id: str, holder: str) -> bool:
        if not holder:
            raise ValueError("holder must be a non-empty string")
        now = self._now()
        acquired = self._store.lock_cell(
            cell_id, holder, now=now, stale_before=now - self._window
        )
        if acquired:
            self._logger.debug("cell_lock_acquired", cell_id=cell_id, holder=holder)
            self._publish(cell_id, notebook_events.cell_locked(cell_id, holder))
        return acquired

    def release(self, cell_id: str) -> None:
        self._store.unlock_cell(cell_id)
        self._logger.debug("cell_lock_released", cell_id=cell_id)
        self._publish(cell_id, notebook_events.cell_unlocked(cell_id))

    def status(self, cell_id: str) -> LockStatus:
        current = self._store.get_cell_lock(cell_id)
        if current is None:
            return LockStatus(locked=False)
        holder, since = current
        if self._now() - since >= self._window:
            return LockStatus(locked=False)
        return LockStatus(locked=True, holder=holder, since=since)

    def ensure_acquired(self, cell_id: str, holder: str) -> None:
        """Acquire or raise ``ConflictError`` naming whoever holds the cell."""

        if self.acquire(cell_id, holder):
            return
        current = self.status(cell_id)
        if not current.locked:
            # Released between the failed update and the read; one more try.
            if self.acquire(cell_id, holder):
                return
            current = self.status(cell_id)
        raise ConflictError(cell_id, current.holder)

    @contextmanager
    def held(self, cell_id: str, holder: str) -> Iterator[None]:
        self.ensure_acquired(cell_id, holder)
        try:
            yield
        finally:
            self.release(cell_id)

    def _publish(self, cell_id: str, event: notebook_events.NotebookEvent) -> None:
        if self._broadcaster is None:
            return
        cell = self._store.get_cell(cell_id)
        if cell is None:
            return
        self._broadcaster.notify(cell.notebook_id, event)


__all__ = ["CellLockProtocol"]
