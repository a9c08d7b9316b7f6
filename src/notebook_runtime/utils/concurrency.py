"""Thread concurrency primitives used by the sandbox manager and runtime."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)

logger = logging.getLogger(__name__)


class KeyedLocks(Generic[K]):
    """Arena of per-key mutexes.

    Entries are reference counted so the arena does not grow with every key
    ever seen: a mutex is dropped once no thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[K, threading.Lock] = {}
        self._waiters: dict[K, int] = {}

    @contextmanager
    def hold(self, key: K) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._waiters[key] - 1
                if remaining:
                    self._waiters[key] = remaining
                else:
                    del self._waiters[key]
                    del self._locks[key]

    def is_held(self, key: K) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass(slots=True)
class PeriodicWorker:
    """Daemon thread calling ``action`` every ``interval_seconds`` until stopped."""

    name: str
    interval_seconds: float
    action: Callable[[], object]
    _stop: threading.Event = field(init=False, repr=False, default_factory=threading.Event)
    _thread: threading.Thread | None = field(init=False, repr=False, default=None)

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.action()
            except Exception:  # noqa: BLE001
                logger.exception("periodic worker %s failed", self.name)


__all__ = ["KeyedLocks", "PeriodicWorker"]
