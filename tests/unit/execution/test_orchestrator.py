"""
notebook-runtime — unit tests for the cell execution orchestrator.

File: tests/unit/execution/test_orchestrator.py

Purpose
- Drive ``ExecutionOrchestrator.run`` against fake sandbox and sync
  collaborators and check the persisted cell, the broadcast sequence and the
  lock state on every exit path.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from notebook_runtime.domain.events import EventType
from notebook_runtime.domain.models import (
    CellKind,
    CellOutput,
    CellStatus,
    DatasetEntry,
    ExecutionResult,
    ExecutionStatus,
    OutputKind,
    Sandbox,
    SandboxBackendKind,
)
from notebook_runtime.errors import (
    ConflictError,
    InvalidCellError,
    NotFoundError,
    SandboxUnavailableError,
)
from notebook_runtime.execution.locks import CellLockProtocol
from notebook_runtime.execution.orchestrator import ExecutionOrchestrator
from notebook_runtime.execution.output_classifier import OutputClassifier
from notebook_runtime.observability.events import EventBroadcaster
from tests.unit.persistence import make_store


class FakeRunner:
    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace
        self.result: ExecutionResult | None = None
        self.ensure_error: Exception | None = None
        self.execute_error: Exception | None = None
        self.executed: list[tuple[str, int | None, str | None]] = []
        self.ensured: list[tuple[str, tuple[Path, ...]]] = []

    def ensure(self, project_id: str, dataset_paths: Sequence[Path] = ()) -> Sandbox:
        self.ensured.append((project_id, tuple(dataset_paths)))
        if self.ensure_error is not None:
            raise self.ensure_error
        return Sandbox(
            project_id=project_id,
            sandbox_id="sbx-test",
            name="nbrt-exec-test",
            backend=SandboxBackendKind.LOCAL,
            workspace=self.workspace,
        )

    def execute(
        self,
        sandbox: Sandbox,
        code: str,
        *,
        timeout_ms: int | None = None,
        execution_id: str | None = None,
    ) -> ExecutionResult:
        self.executed.append((code, timeout_ms, execution_id))
        if self.execute_error is not None:
            raise self.execute_error
        assert self.result is not None
        return self.result


class FakeSync:
    def __init__(self, entries: Sequence[DatasetEntry] = ()) -> None:
        self.entries = list(entries)
        self.synced: list[tuple[str, Path]] = []

    def datasets_for(self, project_id: str) -> list[DatasetEntry]:
        return list(self.entries)

    def sync(
        self,
        project_id: str,
        workspace: Path,
        entries: Sequence[DatasetEntry] | None = None,
    ) -> object:
        self.synced.append((project_id, workspace))
        return None


class Harness:
    def __init__(self, tmp_path: Path, *, inline_max_bytes: int = 1024) -> None:
        self.store = make_store(tmp_path)
        self.notebook = self.store.ensure_notebook("proj-run")
        self.broadcaster = EventBroadcaster()
        self.locks = CellLockProtocol(self.store, broadcaster=self.broadcaster)
        self.runner = FakeRunner(tmp_path / "workspace")
        dataset = DatasetEntry(
            dataset_id="ds-1",
            filename="sales.csv",
            source_path=tmp_path / "storage" / "sales.csv",
            project_id="proj-run",
        )
        self.sync = FakeSync([dataset])
        self.orchestrator = ExecutionOrchestrator(
            self.store,
            self.locks,
            self.runner,
            self.sync,
            OutputClassifier(self.store, inline_max_bytes=inline_max_bytes),
            broadcaster=self.broadcaster,
            timeout_ms=5_000,
        )

    def add_cell(self, content: str, *, kind: CellKind = CellKind.CODE) -> str:
        return self.store.create_cell(self.notebook.notebook_id, content, kind=kind).cell_id

    def event_types(self) -> list[EventType]:
        return [record.event.event_type for record in self.broadcaster.replay()]


def test_successful_run_persists_outputs_and_broadcasts(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    cell_id = harness.add_cell("print('hi')\n1 + 1")
    harness.runner.result = ExecutionResult(
        status=ExecutionStatus.SUCCESS,
        stdout="hi\n",
        outputs=(CellOutput.text("hi\n"), CellOutput.text("2")),
        duration_ms=42,
    )

    outcome = harness.orchestrator.run(cell_id, "proj-run")

    assert outcome.result.succeeded
    assert outcome.cell.status is CellStatus.SUCCESS
    assert outcome.cell.execution_count == 1
    assert outcome.cell.execution_duration_ms == 42
    assert [item.content for item in outcome.cell.outputs] == ["hi\n", "2"]
    assert harness.store.require_cell(cell_id).outputs == outcome.cell.outputs

    code, timeout_ms, execution_id = harness.runner.executed[0]
    assert code == "print('hi')\n1 + 1"
    assert timeout_ms == 5_000
    assert execution_id is not None and execution_id.startswith("exec-")
    assert harness.runner.ensured == [("proj-run", (tmp_path / "storage" / "sales.csv",))]
    assert harness.sync.synced == [("proj-run", tmp_path / "workspace")]

    assert harness.event_types() == [
        EventType.CELL_LOCKED,
        EventType.CELL_EXECUTING,
        EventType.CELL_EXECUTED,
        EventType.CELL_UNLOCKED,
    ]
    assert harness.locks.status(cell_id).locked is False


def test_user_error_marks_cell_error_and_counts_once(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    cell_id = harness.add_cell("1 / 0")
    harness.runner.result = ExecutionResult(
        status=ExecutionStatus.ERROR,
        stderr="ZeroDivisionError: division by zero",
        outputs=(CellOutput.error("ZeroDivisionError: division by zero"),),
        duration_ms=3,
        error="ZeroDivisionError: division by zero",
    )

    first = harness.orchestrator.run(cell_id, "proj-run")
    second = harness.orchestrator.run(cell_id, "proj-run")

    assert first.cell.status is CellStatus.ERROR
    assert first.cell.outputs[0].kind is OutputKind.ERROR
    assert first.cell.execution_count == 1
    assert second.cell.execution_count == 2


def test_timeout_result_is_recorded_as_error(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    cell_id = harness.add_cell("import time; time.sleep(60)")
    harness.runner.result = ExecutionResult(
        status=ExecutionStatus.TIMEOUT,
        outputs=(CellOutput.error("Execution timed out after 5000ms"),),
        duration_ms=5_000,
        error="Execution timed out after 5000ms",
    )

    outcome = harness.orchestrator.run(cell_id, "proj-run")

    assert outcome.result.status is ExecutionStatus.TIMEOUT
    assert outcome.cell.status is CellStatus.ERROR
    assert "timed out" in outcome.cell.outputs[0].content


def test_large_outputs_become_refs(tmp_path: Path) -> None:
    harness = Harness(tmp_path, inline_max_bytes=16)
    cell_id = harness.add_cell("big()")
    harness.runner.result = ExecutionResult(
        status=ExecutionStatus.SUCCESS,
        outputs=(CellOutput.text("small"), CellOutput(kind=OutputKind.HTML, content="<p>" * 20)),
    )

    outcome = harness.orchestrator.run(cell_id, "proj-run")

    assert [item.content for item in outcome.cell.outputs] == ["small"]
    assert len(outcome.cell.output_refs) == 1
    assert outcome.cell.output_refs[0].kind is OutputKind.HTML


def test_sandbox_unavailable_becomes_error_output(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    cell_id = harness.add_cell("1")
    harness.runner.ensure_error = SandboxUnavailableError("proj-run", "docker daemon not reachable")

    outcome = harness.orchestrator.run(cell_id, "proj-run")

    assert outcome.result.status is ExecutionStatus.ERROR
    assert outcome.cell.status is CellStatus.ERROR
    assert outcome.cell.execution_count == 1
    assert outcome.cell.outputs == (
        CellOutput.error("Sandbox unavailable: docker daemon not reachable"),
    )
    assert harness.runner.executed == []
    assert harness.locks.status(cell_id).locked is False
    assert harness.event_types()[-2:] == [EventType.CELL_EXECUTED, EventType.CELL_UNLOCKED]


def test_unexpected_exception_is_absorbed_into_cell_state(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    cell_id = harness.add_cell("1")
    harness.runner.execute_error = OSError("pipe closed")

    outcome = harness.orchestrator.run(cell_id, "proj-run")

    assert outcome.cell.status is CellStatus.ERROR
    assert outcome.cell.outputs[0].content == "OSError: pipe closed"
    assert outcome.result.error == "OSError: pipe closed"
    assert harness.locks.status(cell_id).locked is False


def test_missing_and_markdown_cells_are_rejected_before_locking(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    markdown_id = harness.add_cell("# notes", kind=CellKind.MARKDOWN)

    with pytest.raises(NotFoundError):
        harness.orchestrator.run("cell-missing", "proj-run")
    with pytest.raises(InvalidCellError):
        harness.orchestrator.run(markdown_id, "proj-run")

    assert harness.event_types() == []
    assert harness.store.require_cell(markdown_id).execution_count == 0


def test_conflict_leaves_cell_and_foreign_lock_untouched(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    cell_id = harness.add_cell("1")
    harness.locks.acquire(cell_id, "user")

    with pytest.raises(ConflictError) as excinfo:
        harness.orchestrator.run(cell_id, "proj-run")

    assert excinfo.value.holder == "user"
    cell = harness.store.require_cell(cell_id)
    assert cell.execution_count == 0
    assert cell.status is CellStatus.IDLE
    assert harness.locks.status(cell_id).holder == "user"
    assert harness.runner.executed == []
