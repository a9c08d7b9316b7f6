"""Notebook broadcast event definitions and payload serialization."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from notebook_runtime.domain.models import datetime_to_iso8601z, utc_now

if TYPE_CHECKING:
    from notebook_runtime.domain.models import Cell, JSONValue


class EventType(StrEnum):
    """Cell lifecycle events pushed to notebook subscribers."""

    CELL_CREATED = "cell:created"
    CELL_UPDATED = "cell:updated"
    CELL_DELETED = "cell:deleted"
    CELL_LOCKED = "cell:locked"
    CELL_UNLOCKED = "cell:unlocked"
    CELL_EXECUTING = "cell:executing"
    CELL_EXECUTED = "cell:executed"


@dataclass(frozen=True, slots=True)
class NotebookEvent:
    """Event envelope; serializes to ``{type, ...fields, timestamp}``."""

    event_type: EventType
    fields: dict[str, JSONValue] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not isinstance(self.event_type, EventType):
            object.__setattr__(self, "event_type", EventType(self.event_type))
        if "type" in self.fields or "timestamp" in self.fields:
            raise ValueError("event fields must not override 'type' or 'timestamp'")

    def to_payload(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"type": self.event_type.value}
        payload.update(self.fields)
        payload["timestamp"] = datetime_to_iso8601z(self.timestamp)
        return payload


def cell_created(cell: Cell) -> NotebookEvent:
    return NotebookEvent(EventType.CELL_CREATED, {"cell": cell.to_dict()})


def cell_updated(cell: Cell) -> NotebookEvent:
    return NotebookEvent(EventType.CELL_UPDATED, {"cell": cell.to_dict()})


def cell_deleted(cell_id: str) -> NotebookEvent:
    return NotebookEvent(EventType.CELL_DELETED, {"cellId": cell_id})


def cell_locked(cell_id: str, holder: str) -> NotebookEvent:
    return NotebookEvent(EventType.CELL_LOCKED, {"cellId": cell_id, "lockedBy": holder})


def cell_unlocked(cell_id: str) -> NotebookEvent:
    return NotebookEvent(EventType.CELL_UNLOCKED, {"cellId": cell_id})


def cell_executing(cell_id: str) -> NotebookEvent:
    return NotebookEvent(EventType.CELL_EXECUTING, {"cellId": cell_id})


def cell_executed(cell: Cell) -> NotebookEvent:
    return NotebookEvent(EventType.CELL_EXECUTED, {"cell": cell.to_dict()})


__all__ = [
    "EventType",
    "NotebookEvent",
    "cell_created",
    "cell_deleted",
    "cell_executed",
    "cell_executing",
    "cell_locked",
    "cell_unlocked",
    "cell_updated",
]
