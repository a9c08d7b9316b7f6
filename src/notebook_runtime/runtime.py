"""
notebook-runtime — runtime facade.

File: src/notebook_runtime/runtime.py

Purpose
- Wire the state DB, cell store, lock protocol, sandbox manager, workspace
  synchronizer, classifier, orchestrator and notebook service from one
  ``RuntimeSettings`` and expose the operations callers use.

Lifecycle
- ``initialize_runtime`` migrates the DB, reclaims orphaned sandboxes and
  starts the idle reaper.
- ``teardown_all`` stops the reaper and destroys every live sandbox.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import TracebackType
from typing import Any

import structlog

from notebook_runtime.config.settings import RuntimeSettings
from notebook_runtime.domain.models import Completion, InstallResult, PackageInfo, Sandbox
from notebook_runtime.errors import SandboxUnavailableError
from notebook_runtime.execution.locks import CellLockProtocol
from notebook_runtime.execution.orchestrator import ExecutionOrchestrator, RunOutcome
from notebook_runtime.execution.output_classifier import OutputClassifier
from notebook_runtime.notebook_service import NotebookService
from notebook_runtime.observability.events import EventBroadcaster
from notebook_runtime.persistence.cell_store import CellStore
from notebook_runtime.persistence.state_db import StateDB, StateDBError
from notebook_runtime.sandbox.backends import SandboxBackend
from notebook_runtime.sandbox.sandbox_manager import SandboxLifecycleManager
from notebook_runtime.sandbox.workspace_sync import (
    CatalogDatasetLocator,
    DatasetLocator,
    WorkspaceSynchronizer,
)


class NotebookRuntime:
    """Entry point for running cells and managing per-project sandboxes."""

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        locator: DatasetLocator | None = None,
        broadcaster: EventBroadcaster | None = None,
        backend: SandboxBackend | None = None,
    ) -> None:
        self.settings = settings
        self.db = StateDB(settings.state_db)
        self.store = CellStore(self.db, settings.output_dir)
        self.broadcaster = broadcaster or EventBroadcaster()
        self.locks = CellLockProtocol(
            self.store,
            staleness_seconds=settings.lock_staleness_seconds,
            broadcaster=self.broadcaster,
        )
        self.synchronizer = WorkspaceSynchronizer(
            locator
            or CatalogDatasetLocator(settings.dataset_catalog, storage_root=settings.dataset_root)
        )
        self.sandboxes = SandboxLifecycleManager(
            settings.sandbox,
            workspace_root=settings.workspace_root,
            dataset_root=settings.dataset_root,
            backend=backend,
        )
        self.classifier = OutputClassifier(self.store, inline_max_bytes=settings.inline_max_bytes)
        self.orchestrator = ExecutionOrchestrator(
            self.store,
            self.locks,
            self.sandboxes,
            self.synchronizer,
            self.classifier,
            broadcaster=self.broadcaster,
            holder=settings.agent_holder,
            timeout_ms=settings.sandbox.timeout_ms,
        )
        self.notebooks = NotebookService(
            self.store,
            self.locks,
            broadcaster=self.broadcaster,
            editor=settings.agent_holder,
        )
        self._initialized = False
        self._logger = structlog.get_logger(__name__)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> NotebookRuntime:
        return cls(RuntimeSettings.from_config(config), **kwargs)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def prepare_storage(self) -> int:
        """Create runtime directories and migrate the state DB; returns the schema version."""

        for directory in (
            self.settings.workspace_root,
            self.settings.output_dir,
            self.settings.dataset_root,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        return self.db.migrate()

    def initialize_runtime(self) -> list[str]:
        """Migrate, reclaim orphaned sandboxes and start the idle reaper."""

        version = self.prepare_storage()
        reclaimed = self.sandboxes.reclaim_orphans()
        self.sandboxes.start_reaper()
        self._initialized = True
        self._logger.info(
            "runtime_initialized",
            schema_version=version,
            backend=self.settings.sandbox.backend.value,
            reclaimed=len(reclaimed),
        )
        return reclaimed

    def teardown_all(self) -> list[str]:
        self.sandboxes.stop_reaper()
        failures = self.sandboxes.destroy_all()
        self._initialized = False
        self._logger.info("runtime_torn_down", failures=len(failures))
        return failures

    def __enter__(self) -> NotebookRuntime:
        self.initialize_runtime()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.teardown_all()

    # -- execution ------------------------------------------------------

    def run(self, cell_id: str, project_id: str) -> RunOutcome:
        return self.orchestrator.run(cell_id, project_id)

    def ensure_sandbox(self, project_id: str) -> Sandbox:
        datasets = self.synchronizer.datasets_for(project_id)
        sandbox = self.sandboxes.ensure(project_id, [entry.source_path for entry in datasets])
        self.synchronizer.sync(project_id, sandbox.workspace, datasets)
        return sandbox

    # -- packages and completions --------------------------------------

    def install_package(self, project_id: str, spec: str) -> InstallResult:
        try:
            sandbox = self.ensure_sandbox(project_id)
        except SandboxUnavailableError as exc:
            return InstallResult(False, str(exc))
        return self.sandboxes.install_package(sandbox, spec)

    def uninstall_package(self, project_id: str, name: str) -> InstallResult:
        try:
            sandbox = self.ensure_sandbox(project_id)
        except SandboxUnavailableError as exc:
            return InstallResult(False, str(exc))
        return self.sandboxes.uninstall_package(sandbox, name)

    def list_packages(self, project_id: str) -> list[PackageInfo]:
        try:
            sandbox = self.ensure_sandbox(project_id)
        except SandboxUnavailableError:
            return []
        return self.sandboxes.list_packages(sandbox)

    def get_completions(
        self, project_id: str, code: str, line: int, column: int
    ) -> list[Completion]:
        try:
            sandbox = self.ensure_sandbox(project_id)
        except SandboxUnavailableError:
            return []
        return self.sandboxes.get_completions(sandbox, code, line, column)

    # -- health ---------------------------------------------------------

    def health(self) -> dict[str, Any]:
        report = self.sandboxes.health()
        db_report: dict[str, Any] = {"path": str(self.db.path), "exists": self.db.path.exists()}
        if db_report["exists"]:
            try:
                db_report["schema_version"] = self.db.schema_version()
                db_report["integrity"] = list(self.db.integrity_check()) or "ok"
            except StateDBError as exc:
                db_report["error"] = str(exc)
        report["state_db"] = db_report
        report["initialized"] = self._initialized
        report["dispatch_errors"] = len(self.broadcaster.dispatch_errors())
        return report


__all__ = ["NotebookRuntime"]
