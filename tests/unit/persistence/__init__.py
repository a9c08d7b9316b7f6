"""Shared builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Final

from notebook_runtime.persistence.cell_store import CellStore
from notebook_runtime.persistence.state_db import StateDB

if TYPE_CHECKING:
    from pathlib import Path

BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def make_store(tmp_path: Path) -> CellStore:
    db = StateDB(tmp_path / "state" / "notebook_runtime.sqlite")
    db.migrate()
    return CellStore(db, tmp_path / "outputs")


def at(seconds: float) -> datetime:
    """``BASE_TS`` shifted by ``seconds``."""

    return BASE_TS + timedelta(seconds=seconds)


class ManualClock:
    """Settable clock for lock staleness tests."""

    def __init__(self, start: datetime = BASE_TS) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)
