from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest

from notebook_runtime.domain.events import EventType
from notebook_runtime.domain.models import LockStatus
from notebook_runtime.errors import ConflictError
from notebook_runtime.execution.locks import CellLockProtocol
from notebook_runtime.observability.events import EventBroadcaster
from tests.unit.persistence import ManualClock, make_store

if TYPE_CHECKING:
    from pathlib import Path


def _setup(
    tmp_path: Path, *, window: float = 60.0
) -> tuple[CellLockProtocol, ManualClock, str, EventBroadcaster]:
    store = make_store(tmp_path)
    notebook = store.ensure_notebook("proj-locks")
    cell = store.create_cell(notebook.notebook_id, "x = 1")
    clock = ManualClock()
    broadcaster = EventBroadcaster()
    locks = CellLockProtocol(
        store, staleness_seconds=window, broadcaster=broadcaster, now_fn=clock
    )
    return locks, clock, cell.cell_id, broadcaster


def test_acquire_is_exclusive_until_released(tmp_path: Path) -> None:
    locks, _, cell_id, _ = _setup(tmp_path)

    assert locks.acquire(cell_id, "ai") is True
    assert locks.acquire(cell_id, "user") is False
    assert locks.acquire(cell_id, "ai") is False

    status = locks.status(cell_id)
    assert status.locked is True
    assert status.holder == "ai"

    locks.release(cell_id)
    assert locks.status(cell_id).locked is False
    assert locks.acquire(cell_id, "user") is True


def test_stale_lock_is_free_at_exactly_the_window(tmp_path: Path) -> None:
    locks, clock, cell_id, _ = _setup(tmp_path, window=60.0)
    assert locks.acquire(cell_id, "ai")

    clock.advance(59.999)
    assert locks.status(cell_id).holder == "ai"
    assert locks.acquire(cell_id, "user") is False

    clock.advance(0.001)
    assert locks.status(cell_id).locked is False
    assert locks.acquire(cell_id, "user") is True
    assert locks.status(cell_id).holder == "user"


def test_ensure_acquired_raises_conflict_naming_holder(tmp_path: Path) -> None:
    locks, _, cell_id, _ = _setup(tmp_path)
    locks.acquire(cell_id, "user")

    with pytest.raises(ConflictError) as excinfo:
        locks.ensure_acquired(cell_id, "ai")

    assert excinfo.value.holder == "user"
    assert excinfo.value.cell_id == cell_id
    assert "locked by user" in str(excinfo.value)


def test_ensure_acquired_retries_when_holder_lets_go_mid_check(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    locks, _, cell_id, broadcaster = _setup(tmp_path)
    locks.acquire(cell_id, "user")
    read_status = locks.status

    def status_after_release(target: str) -> LockStatus:
        locks.release(target)
        return read_status(target)

    monkeypatch.setattr(locks, "status", status_after_release)

    locks.ensure_acquired(cell_id, "ai")

    monkeypatch.undo()
    assert locks.status(cell_id).holder == "ai"
    assert broadcaster.replay()[-1].event.event_type is EventType.CELL_LOCKED


def test_held_releases_on_exception(tmp_path: Path) -> None:
    locks, _, cell_id, _ = _setup(tmp_path)

    with pytest.raises(RuntimeError, match="boom"):
        with locks.held(cell_id, "ai"):
            assert locks.status(cell_id).holder == "ai"
            raise RuntimeError("boom")

    assert locks.status(cell_id).locked is False


def test_lock_transitions_are_broadcast(tmp_path: Path) -> None:
    locks, _, cell_id, broadcaster = _setup(tmp_path)

    with locks.held(cell_id, "ai"):
        pass
    locks.acquire(cell_id, "user")
    locks.acquire(cell_id, "ai")  # refused, nothing published

    types = [record.event.event_type for record in broadcaster.replay()]
    assert types == [EventType.CELL_LOCKED, EventType.CELL_UNLOCKED, EventType.CELL_LOCKED]
    locked = broadcaster.replay(event_type=EventType.CELL_LOCKED)
    assert [record.event.fields["lockedBy"] for record in locked] == ["ai", "user"]


def test_concurrent_acquirers_have_one_winner(tmp_path: Path) -> None:
    locks, _, cell_id, _ = _setup(tmp_path)
    barrier = threading.Barrier(8)
    results: list[bool] = []
    results_lock = threading.Lock()

    def worker(index: int) -> None:
        barrier.wait()
        acquired = locks.acquire(cell_id, f"holder-{index}")
        with results_lock:
            results.append(acquired)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(results) == [False] * 7 + [True]


def test_invalid_arguments_are_rejected(tmp_path: Path) -> None:
    locks, _, cell_id, _ = _setup(tmp_path)

    with pytest.raises(ValueError):
        locks.acquire(cell_id, "")
    with pytest.raises(ValueError):
        CellLockProtocol(make_store(tmp_path / "other"), staleness_seconds=0)
