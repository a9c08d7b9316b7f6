"""
notebook-runtime — notebook editing service.

File: src/notebook_runtime/notebook_service.py

Purpose
- The edit surface an agent tool layer (or the CLI) uses: list, read, write,
  line-range edit, insert, delete, reorder, and explicit lock handling.
- Every mutation is checked against the cell lock and broadcast to notebook
  subscribers.

Lock rules
- Writes and edits are refused while another holder has the cell.
- Delete and reorder are refused while *anyone* holds an affected cell.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from notebook_runtime.constants import DEFAULT_AGENT_HOLDER
from notebook_runtime.domain import events as notebook_events
from notebook_runtime.domain.models import (
    Cell,
    CellKind,
    CellSummary,
    JSONValue,
    LockStatus,
    Notebook,
)
from notebook_runtime.errors import ConflictError, InvalidCellError, NotFoundError
from notebook_runtime.execution.locks import CellLockProtocol
from notebook_runtime.observability.events import EventBroadcaster
from notebook_runtime.persistence.cell_store import CellStore


@dataclass(frozen=True, slots=True)
class EditResult:
    cell: Cell
    old_content: str
    new_content: str
    lines_removed: tuple[str, ...]
    lines_added: tuple[str, ...]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "cell": self.cell.to_dict(),
            "oldContent": self.old_content,
            "newContent": self.new_content,
            "diff": {
                "linesRemoved": list(self.lines_removed),
                "linesAdded": list(self.lines_added),
            },
        }


class NotebookService:
    def __init__(
        self,
        store: CellStore,
        locks: CellLockProtocol,
        *,
        broadcaster: EventBroadcaster | None = None,
        editor: str = DEFAULT_AGENT_HOLDER,
    ) -> None:
        self._store = store
        self._locks = locks
        self._broadcaster = broadcaster
        self._editor = editor

    @property
    def editor(self) -> str:
        return self._editor

    # -- notebooks ------------------------------------------------------

    def ensure_notebook(self, project_id: str) -> Notebook:
        return self._store.ensure_notebook(project_id)

    def get_notebook(self, notebook_id: str) -> Notebook | None:
        return self._store.get_notebook(notebook_id)

    def get_notebook_by_project(self, project_id: str) -> Notebook | None:
        return self._store.get_notebook_by_project(project_id)

    # -- reads ----------------------------------------------------------

    def list_cells(self, notebook_id: str) -> list[CellSummary]:
        self._require_notebook(notebook_id)
        return self._store.get_cell_summaries(notebook_id)

    def read_cell(self, cell_id: str) -> Cell:
        return self._store.require_cell(cell_id)

    # -- writes ---------------------------------------------------------

    def write_cell(
        self,
        notebook_id: str,
        content: str,
        *,
        cell_id: str | None = None,
        title: str | None = None,
        kind: CellKind | str | None = None,
    ) -> Cell:
        """Create a cell, or replace an existing cell's content when ``cell_id`` is given."""

        if cell_id is None:
            self._require_notebook(notebook_id)
            cell = self._store.create_cell(
                notebook_id, content, kind=kind or CellKind.CODE, title=title
            )
            self._publish(notebook_id, notebook_events.cell_created(cell))
            return cell

        self._store.require_cell(cell_id)
        self._refuse_if_held_by_other(cell_id)
        fields: dict[str, object] = {"content": content}
        if title is not None:
            fields["title"] = title
        if kind is not None:
            fields["kind"] = CellKind(kind)
        cell = self._store.update_cell(cell_id, **fields)
        self._publish(cell.notebook_id, notebook_events.cell_updated(cell))
        return cell

    def edit_cell(
        self, cell_id: str, start_line: int, end_line: int, new_content: str
    ) -> EditResult:
        """Replace the 1-based inclusive line range ``start_line..end_line``."""

        cell = self._store.require_cell(cell_id)
        self._refuse_if_held_by_other(cell_id)

        lines = cell.content.split("\n")
        start, end = start_line - 1, end_line - 1
        if start < 0 or end < 0:
            raise InvalidCellError("Line numbers must be positive (1-indexed)")
        if start > end:
            raise InvalidCellError("startLine must be <= endLine")
        if end >= len(lines):
            raise InvalidCellError(f"endLine {end_line} exceeds file length {len(lines)}")

        removed = lines[start : end + 1]
        added = new_content.split("\n")
        updated_content = "\n".join([*lines[:start], *added, *lines[end + 1 :]])
        updated = self._store.update_cell(cell_id, content=updated_content)
        self._publish(updated.notebook_id, notebook_events.cell_updated(updated))
        return EditResult(
            cell=updated,
            old_content=cell.content,
            new_content=updated_content,
            lines_removed=tuple(removed),
            lines_added=tuple(added),
        )

    def insert_cell(
        self,
        notebook_id: str,
        content: str = "",
        *,
        position: int | None = None,
        title: str | None = None,
        kind: CellKind | str = CellKind.CODE,
    ) -> Cell:
        self._require_notebook(notebook_id)
        cell = self._store.create_cell(
            notebook_id, content, kind=kind, title=title, position=position
        )
        self._publish(notebook_id, notebook_events.cell_created(cell))
        return cell

    def delete_cell(self, cell_id: str) -> None:
        cell = self._store.require_cell(cell_id)
        status = self._locks.status(cell_id)
        if status.locked:
            raise ConflictError(cell_id, status.holder)
        self._store.delete_cell(cell_id)
        self._publish(cell.notebook_id, notebook_events.cell_deleted(cell_id))

    def reorder_cells(self, notebook_id: str, cell_ids: Sequence[str]) -> list[Cell]:
        self._require_notebook(notebook_id)
        existing = {cell.cell_id for cell in self._store.list_cells(notebook_id)}
        for cell_id in cell_ids:
            if cell_id not in existing:
                raise InvalidCellError(f"Cell {cell_id} not found in notebook")
        for cell_id in cell_ids:
            status = self._locks.status(cell_id)
            if status.locked:
                raise ConflictError(cell_id, status.holder)
        cells = self._store.reorder_cells(notebook_id, cell_ids)
        for cell in cells:
            self._publish(notebook_id, notebook_events.cell_updated(cell))
        return cells

    def move_cell(self, cell_id: str, position: int) -> list[Cell]:
        """Move one cell to ``position`` (clamped), shifting the others."""

        cell = self._store.require_cell(cell_id)
        order = [
            item.cell_id
            for item in self._store.list_cells(cell.notebook_id)
            if item.cell_id != cell_id
        ]
        order.insert(max(0, min(int(position), len(order))), cell_id)
        return self.reorder_cells(cell.notebook_id, order)

    # -- locks ----------------------------------------------------------

    def acquire_lock(self, cell_id: str, holder: str) -> bool:
        self._store.require_cell(cell_id)
        return self._locks.acquire(cell_id, holder)

    def release_lock(self, cell_id: str) -> None:
        self._store.require_cell(cell_id)
        self._locks.release(cell_id)

    def is_locked(self, cell_id: str) -> LockStatus:
        self._store.require_cell(cell_id)
        return self._locks.status(cell_id)

    # -- internals ------------------------------------------------------

    def _require_notebook(self, notebook_id: str) -> Notebook:
        notebook = self._store.get_notebook(notebook_id)
        if notebook is None:
            raise NotFoundError("Notebook", notebook_id)
        return notebook

    def _refuse_if_held_by_other(self, cell_id: str) -> None:
        status = self._locks.status(cell_id)
        if status.locked and status.holder != self._editor:
            raise ConflictError(cell_id, status.holder)

    def _publish(self, notebook_id: str, event: notebook_events.NotebookEvent) -> None:
        if self._broadcaster is not None:
            self._broadcaster.notify(notebook_id, event)


__all__ = ["EditResult", "NotebookService"]
