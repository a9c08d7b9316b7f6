"""
notebook-runtime — error taxonomy.

File: src/notebook_runtime/errors.py

Purpose
- Typed failures surfaced by the execution runtime to its callers.

Propagation rules
- ``ConflictError`` is raised when a cell lock is held by someone else; it is
  never retried here and carries the current holder so a UI can say
  "being edited by X" instead of "run failed".
- ``SandboxUnavailableError`` covers sandbox creation/execution infrastructure
  failures; callers may retry.
- ``ExecutionFailure`` describes user code failing or timing out. It is
  converted into cell state by the orchestrator and never escapes ``run``.
- ``NotFoundError`` is the 404-equivalent for missing cells/notebooks.
"""

from __future__ import annotations


class NotebookRuntimeError(RuntimeError):
    """Base class for runtime failures."""


class ConflictError(NotebookRuntimeError):
    """Raised when a cell is locked by another, non-stale holder."""

    def __init__(self, cell_id: str, holder: str | None) -> None:
        self.cell_id = cell_id
        self.holder = holder
        shown = holder if holder else "another editor"
        super().__init__(f"Cell is locked by {shown}")


class SandboxUnavailableError(NotebookRuntimeError):
    """Raised when a sandbox cannot be created or reached."""

    def __init__(self, project_id: str, reason: str) -> None:
        self.project_id = project_id
        self.reason = reason
        super().__init__(f"sandbox unavailable for project {project_id}: {reason}")


class ExecutionFailure(NotebookRuntimeError):
    """User code raised or was killed; absorbed into cell state."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        self.timed_out = timed_out
        super().__init__(message)


class NotFoundError(NotebookRuntimeError, LookupError):
    """Raised when a referenced notebook or cell does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidCellError(NotebookRuntimeError, ValueError):
    """Raised when an operation does not apply to the cell (e.g. running markdown)."""


__all__ = [
    "ConflictError",
    "ExecutionFailure",
    "InvalidCellError",
    "NotFoundError",
    "NotebookRuntimeError",
    "SandboxUnavailableError",
]
