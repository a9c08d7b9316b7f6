"""
notebook-runtime — per-project sandbox lifecycle manager.

File: src/notebook_runtime/sandbox/sandbox_manager.py

Purpose
- Own the registry of live sandboxes (at most one per project) and every
  operation that runs something inside one: cell code, pip, package
  listing, completions.

Concurrency
- Creation for a project is serialized by a per-project mutex from a keyed
  arena; lookups of an existing sandbox are plain dict reads.
- Registry mutation happens under one ``RLock``.
- Package mutations for a sandbox serialize on a per-sandbox mutex.

Lifecycle
- Created lazily by ``ensure``; destroyed by ``destroy``/``destroy_all``,
  by the idle reaper, or reclaimed as an orphan on the next start.
- The reaper skips a sandbox while a run, pip call or query is in progress
  in it; ensure and every such call count as use.
"""

from __future__ import annotations

import json
import os
import re
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import psutil
import structlog

from notebook_runtime.config.settings import SandboxSettings
from notebook_runtime.constants import (
    AUXILIARY_TIMEOUT_SECONDS,
    DEFAULT_PACKAGES,
    PACKAGE_INSTALL_TIMEOUT_SECONDS,
    SANDBOX_MARKER_FILENAME,
    WORKSPACE_DATASETS_DIR,
    WORKSPACE_PACKAGES_DIR,
    WORKSPACE_PIP_CACHE_DIR,
    WORKSPACE_TMP_DIR,
)
from notebook_runtime.domain import ids
from notebook_runtime.domain.models import (
    Completion,
    ExecutionResult,
    InstallResult,
    PackageInfo,
    Sandbox,
    datetime_to_iso8601z,
    utc_now,
)
from notebook_runtime.errors import SandboxUnavailableError
from notebook_runtime.persistence.state_db import canonical_json
from notebook_runtime.sandbox import packages
from notebook_runtime.sandbox.backends import CommandResult, SandboxBackend, create_backend
from notebook_runtime.sandbox.exec_wrapper import (
    build_result,
    read_outputs,
    render_wrapper,
    script_names,
    timeout_result,
)
from notebook_runtime.utils.concurrency import KeyedLocks, PeriodicWorker
from notebook_runtime.utils.fs import atomic_write, safe_delete

_DIST_NAME_SEPARATORS = re.compile(r"[-_.]+")


class SandboxLifecycleManager:
    """Registry and operations for per-project sandboxes."""

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        workspace_root: Path,
        dataset_root: Path,
        backend: SandboxBackend | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._workspace_root = Path(workspace_root)
        self._dataset_root = Path(dataset_root)
        self._backend = backend or create_backend(settings, dataset_root=self._dataset_root)
        self._now = now_fn
        self._registry: dict[str, Sandbox] = {}
        self._registry_lock = threading.RLock()
        self._in_flight: dict[str, int] = {}
        self._creation_locks: KeyedLocks[str] = KeyedLocks()
        self._package_locks: KeyedLocks[str] = KeyedLocks()
        self._reaper: PeriodicWorker | None = None
        self._logger = structlog.get_logger(__name__)

    @property
    def backend(self) -> SandboxBackend:
        return self._backend

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    def get(self, project_id: str) -> Sandbox | None:
        return self._registry.get(project_id)

    def sandboxes(self) -> tuple[Sandbox, ...]:
        with self._registry_lock:
            return tuple(self._registry.values())

    # ------------------------------------------------------------------
    # Creation / teardown
    # ------------------------------------------------------------------

    def ensure(self, project_id: str, dataset_paths: Sequence[Path] = ()) -> Sandbox:
        """Return the project's live sandbox, creating it on first use."""

        existing = self._registry.get(project_id)
        if existing is not None and existing.alive:
            return self._touch(existing)

        with self._creation_locks.hold(project_id):
            existing = self._registry.get(project_id)
            if existing is not None and existing.alive:
                return self._touch(existing)
            sandbox = self._create(project_id, dataset_paths)
            with self._registry_lock:
                self._registry[project_id] = sandbox
            return sandbox

    def _create(self, project_id: str, dataset_paths: Sequence[Path]) -> Sandbox:
        sandbox_id = ids.generate_sandbox_id()
        name = f"{self._settings.name_prefix}{ids.short_id(sandbox_id)}"
        workspace = self._workspace_root / name
        now = self._now()
        sandbox = Sandbox(
            project_id=project_id,
            sandbox_id=sandbox_id,
            name=name,
            backend=self._backend.kind,
            workspace=workspace,
            dataset_paths=tuple(Path(item) for item in dataset_paths),
            created_at=now,
            last_used_at=now,
        )
        try:
            self._prepare_workspace(sandbox)
            handle = self._backend.start(sandbox)
        except Exception as exc:
            self._discard_workspace(workspace)
            self._logger.error(
                "sandbox_create_failed",
                project_id=project_id,
                sandbox_name=name,
                error=str(exc),
            )
            if isinstance(exc, SandboxUnavailableError):
                raise
            raise SandboxUnavailableError(project_id, str(exc)) from exc

        sandbox = replace(sandbox, handle=handle)
        self._logger.info(
            "sandbox_created",
            project_id=project_id,
            sandbox_id=sandbox_id,
            sandbox_name=name,
            backend=sandbox.backend.value,
            datasets=len(sandbox.dataset_paths),
        )
        return sandbox

    def _prepare_workspace(self, sandbox: Sandbox) -> None:
        workspace = sandbox.workspace
        for relative in (
            WORKSPACE_DATASETS_DIR,
            WORKSPACE_PACKAGES_DIR,
            WORKSPACE_TMP_DIR,
            WORKSPACE_PIP_CACHE_DIR,
        ):
            (workspace / relative).mkdir(parents=True, exist_ok=True)
        marker = {
            "name": sandbox.name,
            "projectId": sandbox.project_id,
            "sandboxId": sandbox.sandbox_id,
            "backend": sandbox.backend.value,
            "ownerPid": os.getpid(),
            "createdAt": datetime_to_iso8601z(sandbox.created_at),
        }
        atomic_write(workspace / SANDBOX_MARKER_FILENAME, canonical_json(marker) + "\n")

    def destroy(self, project_id: str) -> bool:
        return self._retire(project_id, lambda sandbox: True)

    def _retire(self, project_id: str, should_retire: Callable[[Sandbox], bool]) -> bool:
        """Unregister and tear down the project's sandbox if ``should_retire`` agrees."""

        with self._creation_locks.hold(project_id):
            with self._registry_lock:
                sandbox = self._registry.get(project_id)
                if sandbox is None or not should_retire(sandbox):
                    return False
                del self._registry[project_id]
            try:
                self._backend.stop(sandbox)
            finally:
                self._discard_workspace(sandbox.workspace)
        self._logger.info(
            "sandbox_destroyed",
            project_id=project_id,
            sandbox_id=sandbox.sandbox_id,
            sandbox_name=sandbox.name,
        )
        return True

    def destroy_all(self) -> list[str]:
        """Destroy every live sandbox; returns ``"{project_id}: {error}"`` for failures."""

        failures: list[str] = []
        for sandbox in self.sandboxes():
            try:
                self.destroy(sandbox.project_id)
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "sandbox_destroy_failed", project_id=sandbox.project_id, error=str(exc)
                )
                failures.append(f"{sandbox.project_id}: {exc}")
        return failures

    def reap_idle(self, now: datetime | None = None) -> list[str]:
        """Destroy sandboxes idle for longer than the configured timeout.

        A sandbox with a run, pip call or query in progress is never idle.
        Idleness is re-checked under the registry lock right before removal.
        """

        current = now or self._now()
        limit = timedelta(seconds=self._settings.idle_timeout_seconds)

        def idle(sandbox: Sandbox) -> bool:
            if self._in_flight.get(sandbox.sandbox_id, 0) > 0:
                return False
            return current - sandbox.last_used_at > limit

        reaped: list[str] = []
        for sandbox in self.sandboxes():
            if not idle(sandbox):
                continue
            try:
                if self._retire(sandbox.project_id, idle):
                    reaped.append(sandbox.project_id)
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "sandbox_reap_failed", project_id=sandbox.project_id, error=str(exc)
                )
        if reaped:
            self._logger.info("sandboxes_reaped", count=len(reaped), projects=reaped)
        return reaped

    def reclaim_orphans(self) -> list[str]:
        """Remove prefixed sandboxes left behind by a previous host process."""

        known = {sandbox.name for sandbox in self.sandboxes()}
        reclaimed: list[str] = []
        for name in self._backend.orphan_candidates(self._workspace_root):
            if name in known:
                continue
            try:
                self._backend.remove(name)
                self._discard_workspace(self._workspace_root / name)
            except Exception as exc:  # noqa: BLE001
                self._logger.error("orphan_reclaim_failed", sandbox_name=name, error=str(exc))
                continue
            reclaimed.append(name)
        self._logger.info("orphans_reclaimed", count=len(reclaimed), names=reclaimed)
        return reclaimed

    def start_reaper(self) -> None:
        if self._reaper is None:
            self._reaper = PeriodicWorker(
                name="sandbox-idle-reaper",
                interval_seconds=self._settings.reap_interval_seconds,
                action=self.reap_idle,
            )
        self._reaper.start()

    def stop_reaper(self) -> None:
        if self._reaper is not None:
            self._reaper.stop()

    @property
    def reaper_running(self) -> bool:
        return self._reaper is not None and self._reaper.running

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        sandbox: Sandbox,
        code: str,
        *,
        timeout_ms: int | None = None,
        execution_id: str | None = None,
    ) -> ExecutionResult:
        """Run ``code`` through the wrapper with a hard timeout."""

        effective_timeout_ms = self._settings.clamp_timeout_ms(timeout_ms)
        names = script_names(execution_id or ids.generate_execution_id())
        script_path = sandbox.workspace / names.script
        outputs_path = sandbox.workspace / names.outputs
        script = render_wrapper(
            code,
            outputs_path=self._backend.inside_path(sandbox, names.outputs),
            paths=self._backend.wrapper_paths(sandbox),
        )
        with self._in_use(sandbox):
            try:
                atomic_write(script_path, script)
            except OSError as exc:
                raise SandboxUnavailableError(
                    sandbox.project_id, f"workspace not writable: {exc}"
                ) from exc

            try:
                command = self._backend.run_python(
                    sandbox,
                    [self._backend.inside_path(sandbox, names.script)],
                    timeout_seconds=effective_timeout_ms / 1000.0,
                )
                if command.timed_out:
                    result = timeout_result(
                        stdout=command.stdout,
                        stderr=command.stderr,
                        timeout_ms=effective_timeout_ms,
                    )
                else:
                    result = build_result(
                        returncode=command.returncode,
                        stdout=command.stdout,
                        stderr=command.stderr,
                        outputs=read_outputs(outputs_path, command.stdout),
                        duration_ms=command.duration_ms,
                    )
            finally:
                script_path.unlink(missing_ok=True)
                outputs_path.unlink(missing_ok=True)

        self._logger.info(
            "sandbox_executed",
            project_id=sandbox.project_id,
            sandbox_id=sandbox.sandbox_id,
            status=result.status.value,
            duration_ms=result.duration_ms,
            output_count=len(result.outputs),
        )
        return result

    def _touch(self, sandbox: Sandbox) -> Sandbox:
        with self._registry_lock:
            current = self._registry.get(sandbox.project_id)
            if current is None or current.sandbox_id != sandbox.sandbox_id:
                return sandbox
            touched = current.touched(self._now())
            self._registry[sandbox.project_id] = touched
            return touched

    @contextmanager
    def _in_use(self, sandbox: Sandbox) -> Iterator[None]:
        """Mark ``sandbox`` busy so the reaper leaves it alone; touch it on both ends."""

        key = sandbox.sandbox_id
        with self._registry_lock:
            self._in_flight[key] = self._in_flight.get(key, 0) + 1
            self._touch(sandbox)
        try:
            yield
        finally:
            with self._registry_lock:
                remaining = self._in_flight.pop(key) - 1
                if remaining:
                    self._in_flight[key] = remaining
                self._touch(sandbox)

    def in_flight(self, project_id: str) -> int:
        sandbox = self._registry.get(project_id)
        return 0 if sandbox is None else self._in_flight.get(sandbox.sandbox_id, 0)

    # ------------------------------------------------------------------
    # Packages and completions
    # ------------------------------------------------------------------

    def install_package(self, sandbox: Sandbox, spec: str) -> InstallResult:
        request = packages.normalize_package_input(spec)
        if not request.requirements:
            return InstallResult(success=False, message="No valid package name provided.")
        notice = request.alias_notice
        requirements = request.requirements
        target = self._backend.wrapper_paths(sandbox).packages_dir

        with self._package_locks.hold(sandbox.sandbox_id):
            try:
                binary = self._pip(
                    sandbox, packages.pip_install_args(target, requirements, binary_only=True)
                )
                if binary.succeeded:
                    return self._installed(sandbox, notice, requirements, binary)
                if binary.timed_out:
                    return InstallResult(False, f"{notice}{_timeout_message(requirements)}")
                if packages.is_missing_binary_error(binary.details):
                    return InstallResult(
                        False,
                        f"{notice}{packages.missing_binary_message(requirements)}"
                        " Try another package or build a custom runtime image.",
                    )
                source = self._pip(
                    sandbox, packages.pip_install_args(target, requirements, binary_only=False)
                )
            except SandboxUnavailableError as exc:
                return InstallResult(False, f"{notice}{exc}")

        if source.succeeded:
            return self._installed(sandbox, notice, requirements, source)
        if source.timed_out:
            return InstallResult(False, f"{notice}{_timeout_message(requirements)}")
        self._logger.warning(
            "package_install_failed",
            project_id=sandbox.project_id,
            requirements=list(requirements),
        )
        return InstallResult(
            False, f"{notice}{packages.format_install_error(source.details, requirements)}"
        )

    def uninstall_package(self, sandbox: Sandbox, name: str) -> InstallResult:
        try:
            dist_name = packages.validate_distribution_name(name)
        except ValueError as exc:
            return InstallResult(False, str(exc))
        if not self._installed_in_workspace(sandbox, dist_name):
            return InstallResult(False, f"{dist_name} is not installed in this sandbox.")

        with self._package_locks.hold(sandbox.sandbox_id):
            try:
                outcome = self._pip(sandbox, packages.pip_uninstall_args(dist_name))
            except SandboxUnavailableError as exc:
                return InstallResult(False, str(exc))
            # pip refuses to touch --target installs ("outside environment").
            removed = outcome.succeeded or self._remove_recorded_files(sandbox, dist_name)
        if removed:
            self._logger.info(
                "package_uninstalled", project_id=sandbox.project_id, package=dist_name
            )
            return InstallResult(True, f"Successfully uninstalled {dist_name}")
        detail = " ".join(outcome.details.strip().splitlines()[-6:])
        return InstallResult(False, detail or f"Failed to uninstall {dist_name}.")

    def list_packages(self, sandbox: Sandbox) -> list[PackageInfo]:
        try:
            with self._in_use(sandbox):
                result = self._backend.run_python(
                    sandbox,
                    ["-c", packages.LIST_PACKAGES_SCRIPT],
                    timeout_seconds=AUXILIARY_TIMEOUT_SECONDS,
                )
            if not result.succeeded:
                return []
            return packages.parse_package_listing(result.stdout)
        except Exception as exc:  # noqa: BLE001
            self._logger.debug(
                "list_packages_failed", project_id=sandbox.project_id, error=str(exc)
            )
            return []

    def get_completions(
        self, sandbox: Sandbox, code: str, line: int, column: int
    ) -> list[Completion]:
        """Stateless jedi completions at 1-based ``line`` and 0-based ``column``."""

        try:
            with self._in_use(sandbox):
                result = self._backend.run_python(
                    sandbox,
                    ["-c", packages.COMPLETIONS_SCRIPT],
                    timeout_seconds=AUXILIARY_TIMEOUT_SECONDS,
                    stdin_text=json.dumps({"code": code, "line": line, "column": column}),
                )
            if not result.succeeded:
                return []
            return packages.parse_completions(result.stdout)
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("completions_failed", project_id=sandbox.project_id, error=str(exc))
            return []

    def _pip(self, sandbox: Sandbox, args: list[str]) -> CommandResult:
        with self._in_use(sandbox):
            return self._backend.run_python(
                sandbox, args, timeout_seconds=PACKAGE_INSTALL_TIMEOUT_SECONDS
            )

    def _installed(
        self,
        sandbox: Sandbox,
        notice: str,
        requirements: tuple[str, ...],
        result: CommandResult,
    ) -> InstallResult:
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        fallback = f"Successfully installed {', '.join(requirements)}"
        summary = lines[-1].strip() if lines else fallback
        self._logger.info(
            "package_installed", project_id=sandbox.project_id, requirements=list(requirements)
        )
        return InstallResult(True, f"{notice}{summary}")

    def _installed_in_workspace(self, sandbox: Sandbox, dist_name: str) -> bool:
        target = sandbox.workspace / WORKSPACE_PACKAGES_DIR
        wanted = _normalize_dist(dist_name)
        if not target.is_dir():
            return False
        for entry in target.glob("*.dist-info"):
            if _normalize_dist(entry.name.split("-", 1)[0]) == wanted:
                return True
        return False

    def _remove_recorded_files(self, sandbox: Sandbox, dist_name: str) -> bool:
        """Delete the files a workspace dist-info RECORD lists, then the dist-info itself."""

        target = sandbox.workspace / WORKSPACE_PACKAGES_DIR
        wanted = _normalize_dist(dist_name)
        removed = False
        for dist_info in sorted(target.glob("*.dist-info")):
            if _normalize_dist(dist_info.name.split("-", 1)[0]) != wanted:
                continue
            record = dist_info / "RECORD"
            lines = record.read_text(encoding="utf-8").splitlines() if record.is_file() else []
            top_level: set[str] = set()
            for line in lines:
                relative = line.split(",", 1)[0].strip()
                if not relative or relative.startswith(("/", "..")):
                    continue
                top_level.add(Path(relative).parts[0])
                safe_delete(target / relative, target)
            for name in sorted(top_level):
                candidate = target / name
                if candidate.is_dir() and not any(p.is_file() for p in candidate.rglob("*")):
                    safe_delete(candidate, target)
            safe_delete(dist_info, target)
            removed = True
        return removed

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        available, detail = self._backend.availability()
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(str(_existing_ancestor(self._workspace_root)))
        return {
            "backend": self._backend.kind.value,
            "available": available,
            "detail": detail,
            "sandboxes": len(self._registry),
            "reaper_running": self.reaper_running,
            "default_packages": list(DEFAULT_PACKAGES),
            "host": {
                "memory_total_bytes": int(memory.total),
                "memory_available_bytes": int(memory.available),
                "disk_total_bytes": int(disk.total),
                "disk_free_bytes": int(disk.free),
            },
        }

    def _discard_workspace(self, workspace: Path) -> None:
        if workspace.exists():
            safe_delete(workspace, self._workspace_root)


def _normalize_dist(name: str) -> str:
    return _DIST_NAME_SEPARATORS.sub("_", name).lower()


def _timeout_message(requirements: tuple[str, ...]) -> str:
    seconds = int(PACKAGE_INSTALL_TIMEOUT_SECONDS)
    return f"Installing {', '.join(requirements)} timed out after {seconds}s."


def _existing_ancestor(path: Path) -> Path:
    candidate = path.resolve()
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return candidate


__all__ = ["SandboxLifecycleManager"]
