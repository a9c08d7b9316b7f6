from __future__ import annotations

from datetime import UTC, datetime

import pytest

from notebook_runtime.domain import events
from notebook_runtime.domain.events import EventType, NotebookEvent
from notebook_runtime.domain.models import Cell

STAMP = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def test_payload_is_type_fields_timestamp() -> None:
    event = NotebookEvent("cell:locked", {"cellId": "cell-1", "lockedBy": "ai"}, STAMP)

    assert event.event_type is EventType.CELL_LOCKED
    assert event.to_payload() == {
        "type": "cell:locked",
        "cellId": "cell-1",
        "lockedBy": "ai",
        "timestamp": "2026-01-02T03:04:05.000000Z",
    }


def test_fields_cannot_shadow_envelope_keys() -> None:
    with pytest.raises(ValueError, match="must not override"):
        NotebookEvent(EventType.CELL_DELETED, {"type": "x"})
    with pytest.raises(ValueError):
        NotebookEvent("cell:exploded")


def test_builders_cover_every_event_type() -> None:
    cell = Cell(cell_id="cell-1", notebook_id="nb-1", kind="code", content="", position=0)

    built = [
        events.cell_created(cell),
        events.cell_updated(cell),
        events.cell_deleted("cell-1"),
        events.cell_locked("cell-1", "user"),
        events.cell_unlocked("cell-1"),
        events.cell_executing("cell-1"),
        events.cell_executed(cell),
    ]

    assert {event.event_type for event in built} == set(EventType)
    assert built[0].fields["cell"] == cell.to_dict()
    assert built[2].fields == {"cellId": "cell-1"}
    assert built[3].fields == {"cellId": "cell-1", "lockedBy": "user"}
