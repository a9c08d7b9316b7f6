"""
notebook-runtime — cell and notebook store.

File: src/notebook_runtime/persistence/cell_store.py

Purpose
- Read/write notebooks and cells in the state DB.
- Store output payloads that are too large to keep inline on the cell row.

Functional requirements
- Cell positions are dense (0..N-1) per notebook after every create, delete
  and reorder; each of those runs inside one ``BEGIN IMMEDIATE`` transaction.
- ``lock_cell`` is a single conditional UPDATE so concurrent acquirers
  cannot both succeed.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from notebook_runtime.domain import ids
from notebook_runtime.domain.models import (
    Cell,
    CellKind,
    CellOutput,
    CellStatus,
    CellSummary,
    Notebook,
    OutputKind,
    OutputRef,
    as_utc_datetime,
    datetime_to_iso8601z,
    outputs_from_json,
    refs_from_json,
    utc_now,
)
from notebook_runtime.errors import InvalidCellError, NotFoundError
from notebook_runtime.persistence.state_db import RowValue, StateDB, canonical_json
from notebook_runtime.utils.fs import atomic_write, safe_delete

if TYPE_CHECKING:
    import sqlite3

DEFAULT_NOTEBOOK_NAME: Final[str] = "Notebook"
OUTPUT_REF_ROOT: Final[str] = "outputs"

_SAFE_FILENAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

_CELL_COLUMNS: Final[str] = (
    "id, notebook_id, cell_type, title, content, position, execution_count, "
    "execution_status, execution_duration_ms, output_json, output_refs_json, "
    "locked_by, locked_at, created_at, updated_at"
)

_UPDATABLE_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "content",
        "title",
        "kind",
        "status",
        "execution_count",
        "execution_duration_ms",
        "outputs",
        "output_refs",
    }
)


class CellStore:
    """Repository for notebooks, cells and stored cell outputs."""

    def __init__(self, db: StateDB, output_dir: str | Path) -> None:
        self._db = db
        self._output_dir = Path(output_dir)

    @property
    def db(self) -> StateDB:
        return self._db

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    # ------------------------------------------------------------------
    # Notebooks
    # ------------------------------------------------------------------

    def ensure_notebook(self, project_id: str, *, name: str = DEFAULT_NOTEBOOK_NAME) -> Notebook:
        """Return the project's notebook, creating it on first use."""

        now = datetime_to_iso8601z(utc_now())
        self._db.execute(
            """
            INSERT INTO notebooks (id, project_id, name, metadata_json, created_at, updated_at)
            VALUES (?, ?, ?, '{}', ?, ?)
            ON CONFLICT(project_id) DO NOTHING
            """,
            (ids.generate_notebook_id(), project_id, name, now, now),
        )
        notebook = self.get_notebook_by_project(project_id)
        if notebook is None:
            raise NotFoundError("Notebook", project_id)
        return notebook

    def get_notebook(self, notebook_id: str) -> Notebook | None:
        row = self._db.query_one("SELECT * FROM notebooks WHERE id = ?", (notebook_id,))
        return None if row is None else _notebook_from_row(row)

    def get_notebook_by_project(self, project_id: str) -> Notebook | None:
        row = self._db.query_one("SELECT * FROM notebooks WHERE project_id = ?", (project_id,))
        return None if row is None else _notebook_from_row(row)

    def list_notebooks(self) -> list[Notebook]:
        rows = self._db.query_all("SELECT * FROM notebooks ORDER BY project_id ASC")
        return [_notebook_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Cells
    # ------------------------------------------------------------------

    def get_cell(self, cell_id: str) -> Cell | None:
        row = self._db.query_one(f"SELECT {_CELL_COLUMNS} FROM cells WHERE id = ?", (cell_id,))
        return None if row is None else _cell_from_row(row)

    def require_cell(self, cell_id: str) -> Cell:
        cell = self.get_cell(cell_id)
        if cell is None:
            raise NotFoundError("Cell", cell_id)
        return cell

    def list_cells(self, notebook_id: str) -> list[Cell]:
        rows = self._db.query_all(
            f"SELECT {_CELL_COLUMNS} FROM cells WHERE notebook_id = ? ORDER BY position ASC",
            (notebook_id,),
        )
        return [_cell_from_row(row) for row in rows]

    def get_cell_summaries(self, notebook_id: str) -> list[CellSummary]:
        return [cell.summary() for cell in self.list_cells(notebook_id)]

    def create_cell(
        self,
        notebook_id: str,
        content: str = "",
        kind: CellKind | str = CellKind.CODE,
        title: str | None = None,
        position: int | None = None,
    ) -> Cell:
        """Insert a cell at ``position`` (appended when None) and shift later cells down."""

        parsed_kind = CellKind(kind)
        cell_id = ids.generate_cell_id()
        now = datetime_to_iso8601z(utc_now())
        with self._db.transaction() as tx:
            self._require_notebook(notebook_id, tx)
            count = self._cell_count(notebook_id, tx)
            target = count if position is None else max(0, min(int(position), count))
            self._db.execute(
                "UPDATE cells SET position = position + 1 WHERE notebook_id = ? AND position >= ?",
                (notebook_id, target),
                conn=tx,
            )
            self._db.execute(
                """
                INSERT INTO cells (
                    id, notebook_id, cell_type, title, content, position,
                    execution_count, execution_status, output_json, output_refs_json,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, 'idle', '[]', '[]', ?, ?)
                """,
                (cell_id, notebook_id, parsed_kind.value, title, content, target, now, now),
                conn=tx,
            )
            self._touch_notebook(notebook_id, now, tx)
        return self.require_cell(cell_id)

    def update_cell(self, cell_id: str, **fields: Any) -> Cell:
        """Update content/execution fields of a cell. Lock columns are not writable here."""

        unknown = sorted(set(fields) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"unsupported cell fields: {unknown}")

        assignments: list[str] = []
        params: list[RowValue] = []
        for key in sorted(fields):
            column, value = _column_value(key, fields[key])
            assignments.append(f"{column} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(datetime_to_iso8601z(utc_now()))

        changed = self._db.execute(
            f"UPDATE cells SET {', '.join(assignments)} WHERE id = ?",
            (*params, cell_id),
        )
        if changed != 1:
            raise NotFoundError("Cell", cell_id)
        return self.require_cell(cell_id)

    def delete_cell(self, cell_id: str) -> bool:
        """Delete a cell, close the position gap and drop its stored outputs."""

        with self._db.transaction() as tx:
            row = self._db.query_one(
                "SELECT notebook_id, position FROM cells WHERE id = ?", (cell_id,), conn=tx
            )
            if row is None:
                return False
            notebook_id = str(row["notebook_id"])
            position = _as_int(row["position"])
            self._db.execute("DELETE FROM cells WHERE id = ?", (cell_id,), conn=tx)
            self._db.execute(
                "UPDATE cells SET position = position - 1 WHERE notebook_id = ? AND position > ?",
                (notebook_id, position),
                conn=tx,
            )
            self._touch_notebook(notebook_id, datetime_to_iso8601z(utc_now()), tx)

        cell_dir = self._output_dir / cell_id
        if cell_dir.exists():
            safe_delete(cell_dir, self._output_dir)
        return True

    def reorder_cells(self, notebook_id: str, cell_ids: Sequence[str]) -> list[Cell]:
        """Assign positions from ``cell_ids``, which must list every cell exactly once."""

        ordered = list(cell_ids)
        with self._db.transaction() as tx:
            self._require_notebook(notebook_id, tx)
            rows = self._db.query_all(
                "SELECT id FROM cells WHERE notebook_id = ?", (notebook_id,), conn=tx
            )
            existing = {str(row["id"]) for row in rows}
            if len(ordered) != len(set(ordered)):
                raise InvalidCellError("cell ids must not repeat")
            foreign = sorted(set(ordered) - existing)
            if foreign:
                raise InvalidCellError(f"cells do not belong to notebook: {', '.join(foreign)}")
            missing = sorted(existing - set(ordered))
            if missing:
                raise InvalidCellError(f"reorder must list every cell; missing: {', '.join(missing)}")
            now = datetime_to_iso8601z(utc_now())
            for index, cell_id in enumerate(ordered):
                self._db.execute(
                    "UPDATE cells SET position = ?, updated_at = ? WHERE id = ?",
                    (index, now, cell_id),
                    conn=tx,
                )
            self._touch_notebook(notebook_id, now, tx)
        return self.list_cells(notebook_id)

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def lock_cell(self, cell_id: str, holder: str, *, now: datetime, stale_before: datetime) -> bool:
        """Compare-and-set the lock; succeeds when unlocked or the holder's lock is stale."""

        changed = self._db.execute(
            """
            UPDATE cells SET locked_by = ?, locked_at = ?
            WHERE id = ? AND (locked_by IS NULL OR locked_at IS NULL OR locked_at <= ?)
            """,
            (holder, datetime_to_iso8601z(now), cell_id, datetime_to_iso8601z(stale_before)),
        )
        return changed == 1

    def unlock_cell(self, cell_id: str) -> None:
        self._db.execute(
            "UPDATE cells SET locked_by = NULL, locked_at = NULL WHERE id = ?", (cell_id,)
        )

    def get_cell_lock(self, cell_id: str) -> tuple[str, datetime] | None:
        row = self._db.query_one(
            "SELECT locked_by, locked_at FROM cells WHERE id = ?", (cell_id,)
        )
        if row is None or row["locked_by"] is None or row["locked_at"] is None:
            return None
        return str(row["locked_by"]), as_utc_datetime(row["locked_at"], "cells.locked_at")

    # ------------------------------------------------------------------
    # Stored outputs
    # ------------------------------------------------------------------

    def save_large_output(
        self,
        cell_id: str,
        filename: str,
        payload: bytes,
        *,
        kind: OutputKind,
        mime_type: str,
    ) -> OutputRef:
        """Persist ``payload`` under the cell's output directory and return its locator."""

        path = self.get_output_path(cell_id, filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(path, payload)
        self._db.execute(
            """
            INSERT INTO cell_outputs (cell_id, filename, output_type, mime_type, byte_size, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(cell_id, filename) DO UPDATE SET
                output_type=excluded.output_type,
                mime_type=excluded.mime_type,
                byte_size=excluded.byte_size,
                created_at=excluded.created_at
            """,
            (
                cell_id,
                filename,
                OutputKind(kind).value,
                mime_type,
                len(payload),
                datetime_to_iso8601z(utc_now()),
            ),
        )
        return OutputRef(
            kind=OutputKind(kind),
            ref=f"{OUTPUT_REF_ROOT}/{cell_id}/{filename}",
            mime_type=mime_type,
            byte_size=len(payload),
        )

    def get_output_path(self, cell_id: str, filename: str) -> Path:
        for label, value in (("cell_id", cell_id), ("filename", filename)):
            if not _SAFE_FILENAME.fullmatch(value):
                raise ValueError(f"unsafe {label} for output path: {value!r}")
        return self._output_dir / cell_id / filename

    def resolve_output_ref(self, ref: str) -> Path:
        parts = ref.split("/")
        if len(parts) != 3 or parts[0] != OUTPUT_REF_ROOT:
            raise ValueError(f"not an output ref: {ref!r}")
        return self.get_output_path(parts[1], parts[2])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_notebook(self, notebook_id: str, conn: sqlite3.Connection) -> None:
        row = self._db.query_one("SELECT id FROM notebooks WHERE id = ?", (notebook_id,), conn=conn)
        if row is None:
            raise NotFoundError("Notebook", notebook_id)

    def _cell_count(self, notebook_id: str, conn: sqlite3.Connection) -> int:
        row = self._db.query_one(
            "SELECT COUNT(*) AS n FROM cells WHERE notebook_id = ?", (notebook_id,), conn=conn
        )
        return 0 if row is None else _as_int(row["n"])

    def _touch_notebook(self, notebook_id: str, now: str, conn: sqlite3.Connection) -> None:
        self._db.execute(
            "UPDATE notebooks SET updated_at = ? WHERE id = ?", (now, notebook_id), conn=conn
        )


def _column_value(key: str, value: object) -> tuple[str, RowValue]:
    if key == "content":
        if not isinstance(value, str):
            raise ValueError("content must be a string")
        return "content", value
    if key == "title":
        if value is not None and not isinstance(value, str):
            raise ValueError("title must be a string or None")
        return "title", value
    if key == "kind":
        return "cell_type", CellKind(value).value  # type: ignore[arg-type]
    if key == "status":
        return "execution_status", CellStatus(value).value  # type: ignore[arg-type]
    if key == "execution_count":
        return "execution_count", _as_int(value)
    if key == "execution_duration_ms":
        return "execution_duration_ms", None if value is None else _as_int(value)
    if key == "outputs":
        return "output_json", canonical_json([_output_dict(item) for item in value])  # type: ignore[attr-defined]
    return "output_refs_json", canonical_json([_ref_dict(item) for item in value])  # type: ignore[attr-defined]


def _output_dict(item: object) -> object:
    if isinstance(item, CellOutput):
        return item.to_dict()
    if isinstance(item, Mapping):
        return CellOutput.from_dict(item).to_dict()
    raise ValueError(f"unsupported output item: {type(item).__name__}")


def _ref_dict(item: object) -> object:
    if isinstance(item, OutputRef):
        return item.to_dict()
    if isinstance(item, Mapping):
        return OutputRef.from_dict(item).to_dict()
    raise ValueError(f"unsupported output ref item: {type(item).__name__}")


def _as_int(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected integer, got {type(value).__name__}")
    return value


def _optional_text(value: RowValue) -> str | None:
    return None if value is None else str(value)


def _notebook_from_row(row: Mapping[str, RowValue]) -> Notebook:
    metadata = json.loads(str(row["metadata_json"] or "{}"))
    return Notebook(
        notebook_id=str(row["id"]),
        project_id=str(row["project_id"]),
        name=str(row["name"]),
        metadata=metadata if isinstance(metadata, dict) else {},
        created_at=as_utc_datetime(row["created_at"], "notebooks.created_at"),
        updated_at=as_utc_datetime(row["updated_at"], "notebooks.updated_at"),
    )


def _cell_from_row(row: Mapping[str, RowValue]) -> Cell:
    locked_at = row["locked_at"]
    duration = row["execution_duration_ms"]
    return Cell(
        cell_id=str(row["id"]),
        notebook_id=str(row["notebook_id"]),
        kind=CellKind(str(row["cell_type"])),
        title=_optional_text(row["title"]),
        content=str(row["content"] or ""),
        position=_as_int(row["position"]),
        execution_count=_as_int(row["execution_count"]),
        status=CellStatus(str(row["execution_status"])),
        execution_duration_ms=None if duration is None else _as_int(duration),
        outputs=outputs_from_json(json.loads(str(row["output_json"] or "[]"))),
        output_refs=refs_from_json(json.loads(str(row["output_refs_json"] or "[]"))),
        locked_by=_optional_text(row["locked_by"]),
        locked_at=None if locked_at is None else as_utc_datetime(locked_at, "cells.locked_at"),
        created_at=as_utc_datetime(row["created_at"], "cells.created_at"),
        updated_at=as_utc_datetime(row["updated_at"], "cells.updated_at"),
    )


__all__ = ["DEFAULT_NOTEBOOK_NAME", "OUTPUT_REF_ROOT", "CellStore"]
