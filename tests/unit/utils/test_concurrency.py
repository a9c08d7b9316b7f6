"""Tests for the keyed mutex arena and the periodic worker."""

from __future__ import annotations

import threading

import pytest

from notebook_runtime.utils.concurrency import KeyedLocks, PeriodicWorker


def test_same_key_is_mutually_exclusive() -> None:
    locks: KeyedLocks[str] = KeyedLocks()
    inside = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def first() -> None:
        with locks.hold("proj-1"):
            order.append("first-in")
            inside.set()
            release.wait(5)
            order.append("first-out")

    def second() -> None:
        inside.wait(5)
        with locks.hold("proj-1"):
            order.append("second-in")

    threads = [threading.Thread(target=first), threading.Thread(target=second)]
    for thread in threads:
        thread.start()
    inside.wait(5)
    assert locks.is_held("proj-1")
    release.set()
    for thread in threads:
        thread.join(5)

    assert order == ["first-in", "first-out", "second-in"]


def test_distinct_keys_do_not_block_each_other() -> None:
    locks: KeyedLocks[str] = KeyedLocks()

    with locks.hold("a"):
        acquired = threading.Event()

        def other() -> None:
            with locks.hold("b"):
                acquired.set()

        thread = threading.Thread(target=other)
        thread.start()
        assert acquired.wait(5)
        thread.join(5)


def test_arena_drops_unused_keys() -> None:
    locks: KeyedLocks[str] = KeyedLocks()

    with locks.hold("a"):
        assert len(locks) == 1
    with pytest.raises(RuntimeError):
        with locks.hold("b"):
            raise RuntimeError("boom")

    assert len(locks) == 0
    assert not locks.is_held("a")


def test_periodic_worker_runs_until_stopped() -> None:
    ticks = threading.Semaphore(0)
    worker = PeriodicWorker(name="test-reaper", interval_seconds=0.01, action=ticks.release)

    worker.start()
    worker.start()
    assert worker.running
    assert ticks.acquire(timeout=5)
    assert ticks.acquire(timeout=5)
    worker.stop()

    assert not worker.running


def test_periodic_worker_survives_action_failures() -> None:
    calls = threading.Semaphore(0)

    def flaky() -> None:
        calls.release()
        raise OSError("transient")

    worker = PeriodicWorker(name="test-flaky", interval_seconds=0.01, action=flaky)
    worker.start()
    try:
        assert calls.acquire(timeout=5)
        assert calls.acquire(timeout=5)
    finally:
        worker.stop()


def test_periodic_worker_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        PeriodicWorker(name="bad", interval_seconds=0, action=lambda: None)
