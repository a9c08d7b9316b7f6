"""
notebook-runtime — cell execution orchestrator.

File: src/notebook_runtime/execution/orchestrator.py

Purpose
- Run one code cell end to end: lock, sandbox, workspace sync, execute,
  classify, persist, broadcast, unlock.

Failure semantics
- Only ``NotFoundError``, ``InvalidCellError`` and ``ConflictError`` leave
  ``run``. Everything that goes wrong after the lock is taken (sandbox
  infrastructure, user code, timeouts, classification) is written to the
  cell as status ``error`` with one error output, and returned as an
  ``error`` result.
- The lock is released and ``cell:unlocked`` broadcast on every path once it
  was acquired.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from notebook_runtime.constants import DEFAULT_AGENT_HOLDER
from notebook_runtime.domain import events as notebook_events
from notebook_runtime.domain import ids
from notebook_runtime.domain.models import (
    Cell,
    CellOutput,
    CellStatus,
    DatasetEntry,
    ExecutionResult,
    Sandbox,
)
from notebook_runtime.errors import InvalidCellError, NotFoundError, SandboxUnavailableError
from notebook_runtime.execution.locks import CellLockProtocol
from notebook_runtime.execution.output_classifier import OutputClassifier
from notebook_runtime.observability.events import EventBroadcaster
from notebook_runtime.observability.logging import correlation_scope
from notebook_runtime.persistence.cell_store import CellStore


class SandboxRunner(Protocol):
    """The part of the sandbox lifecycle manager the orchestrator depends on."""

    def ensure(self, project_id: str, dataset_paths: Sequence[Path] = ()) -> Sandbox: ...

    def execute(
        self,
        sandbox: Sandbox,
        code: str,
        *,
        timeout_ms: int | None = None,
        execution_id: str | None = None,
    ) -> ExecutionResult: ...


class WorkspaceSync(Protocol):
    def datasets_for(self, project_id: str) -> list[DatasetEntry]: ...

    def sync(
        self,
        project_id: str,
        workspace: Path,
        entries: Sequence[DatasetEntry] | None = None,
    ) -> object: ...


@dataclass(frozen=True, slots=True)
class RunOutcome:
    cell: Cell
    result: ExecutionResult


class ExecutionOrchestrator:
    """Re-entrant; distinct cells may run concurrently from different threads."""

    def __init__(
        self,
        store: CellStore,
        locks: CellLockProtocol,
        sandboxes: SandboxRunner,
        synchronizer: WorkspaceSync,
        classifier: OutputClassifier,
        *,
        broadcaster: EventBroadcaster | None = None,
        holder: str = DEFAULT_AGENT_HOLDER,
        timeout_ms: int | None = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._sandboxes = sandboxes
        self._synchronizer = synchronizer
        self._classifier = classifier
        self._broadcaster = broadcaster
        self._holder = holder
        self._timeout_ms = timeout_ms
        self._logger = structlog.get_logger(__name__)

    @property
    def holder(self) -> str:
        return self._holder

    def run(self, cell_id: str, project_id: str) -> RunOutcome:
        cell = self._store.get_cell(cell_id)
        if cell is None:
            raise NotFoundError("Cell", cell_id)
        if not cell.is_code:
            raise InvalidCellError(f"Cell {cell_id} is not a code cell")

        self._locks.ensure_acquired(cell_id, self._holder)
        execution_id = ids.generate_execution_id()
        started = time.monotonic()
        try:
            with correlation_scope(
                project_id=project_id,
                notebook_id=cell.notebook_id,
                cell_id=cell_id,
                execution_id=execution_id,
            ):
                try:
                    outcome = self._run_locked(cell, project_id, execution_id)
                except Exception as exc:  # noqa: BLE001
                    outcome = self._record_failure(cell, exc, _elapsed_ms(started))
                self._publish(cell.notebook_id, notebook_events.cell_executed(outcome.cell))
                self._logger.info(
                    "cell_run_finished",
                    cell_id=cell_id,
                    project_id=project_id,
                    execution_id=execution_id,
                    status=outcome.result.status.value,
                    duration_ms=outcome.result.duration_ms,
                )
                return outcome
        finally:
            self._locks.release(cell_id)

    def _run_locked(self, cell: Cell, project_id: str, execution_id: str) -> RunOutcome:
        self._store.update_cell(cell.cell_id, status=CellStatus.RUNNING)
        self._publish(cell.notebook_id, notebook_events.cell_executing(cell.cell_id))

        datasets = self._synchronizer.datasets_for(project_id)
        sandbox = self._sandboxes.ensure(project_id, [entry.source_path for entry in datasets])
        self._synchronizer.sync(project_id, sandbox.workspace, datasets)

        result = self._sandboxes.execute(
            sandbox, cell.content, timeout_ms=self._timeout_ms, execution_id=execution_id
        )
        classification = self._classifier.classify(cell.cell_id, result.outputs)
        updated = self._store.update_cell(
            cell.cell_id,
            status=CellStatus.SUCCESS if result.succeeded else CellStatus.ERROR,
            execution_count=cell.execution_count + 1,
            execution_duration_ms=result.duration_ms,
            outputs=classification.inline,
            output_refs=classification.refs,
        )
        return RunOutcome(cell=updated, result=result)

    def _record_failure(self, cell: Cell, exc: Exception, duration_ms: int) -> RunOutcome:
        message = _failure_message(exc)
        if isinstance(exc, SandboxUnavailableError):
            self._logger.error("cell_run_sandbox_unavailable", cell_id=cell.cell_id, error=message)
        else:
            self._logger.exception("cell_run_failed", cell_id=cell.cell_id, error=message)

        result = ExecutionResult.failure(message, duration_ms=duration_ms)
        fields = {
            "status": CellStatus.ERROR,
            "execution_count": cell.execution_count + 1,
            "execution_duration_ms": duration_ms,
            "outputs": (CellOutput.error(message),),
            "output_refs": (),
        }
        try:
            updated = self._store.update_cell(cell.cell_id, **fields)
        except Exception:  # noqa: BLE001
            self._logger.exception("cell_failure_not_persisted", cell_id=cell.cell_id)
            updated = cell.with_updates(
                status=CellStatus.ERROR,
                execution_count=cell.execution_count + 1,
                execution_duration_ms=duration_ms,
                outputs=(CellOutput.error(message),),
                output_refs=(),
            )
        return RunOutcome(cell=updated, result=result)

    def _publish(self, notebook_id: str, event: notebook_events.NotebookEvent) -> None:
        if self._broadcaster is not None:
            self._broadcaster.notify(notebook_id, event)


def _failure_message(exc: Exception) -> str:
    if isinstance(exc, SandboxUnavailableError):
        return f"Sandbox unavailable: {exc.reason}"
    text = str(exc) or type(exc).__name__
    return f"{type(exc).__name__}: {text}"


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


__all__ = ["ExecutionOrchestrator", "RunOutcome", "SandboxRunner", "WorkspaceSync"]
