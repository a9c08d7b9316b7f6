"""
notebook-runtime — sandbox process-isolation backends.

File: src/notebook_runtime/sandbox/backends.py

Purpose
- Start, run interpreters in, and tear down per-project sandboxes.

Backends
- ``local``: one child interpreter per run, launched in the workspace with a
  scrubbed environment, its own session, address-space and CPU-seconds
  rlimits, and a whole-tree kill on timeout.
- ``docker``: one long-lived container per project, driven through the Docker
  SDK (memory/cpu/network/read-only limits at create time). Runs go through
  ``exec_run`` under an in-container ``timeout -s KILL`` so the interpreter dies
  with its deadline; removal is a forced container remove.

Both name sandboxes ``{prefix}{short id}`` so orphans can be found after a
host restart.
"""

from __future__ import annotations

import json
import os
import shlex
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Final
from uuid import uuid4

import docker
import psutil
import structlog
from docker.errors import DockerException, NotFound

from notebook_runtime.config.settings import SandboxSettings
from notebook_runtime.constants import (
    SANDBOX_MARKER_FILENAME,
    WORKSPACE_DATASETS_DIR,
    WORKSPACE_PACKAGES_DIR,
    WORKSPACE_PIP_CACHE_DIR,
    WORKSPACE_TMP_DIR,
)
from notebook_runtime.domain.models import Sandbox, SandboxBackendKind
from notebook_runtime.errors import SandboxUnavailableError
from notebook_runtime.sandbox.exec_wrapper import WrapperPaths
from notebook_runtime.utils.fs import atomic_write

_CONTAINER_WORKSPACE: Final[PurePosixPath] = PurePosixPath("/workspace")
_CONTAINER_DATASETS: Final[PurePosixPath] = PurePosixPath("/datasets")
_KILL_GRACE_SECONDS: Final[float] = 3.0
_PROJECT_LABEL: Final[str] = "notebook-runtime.project"
# 124 from coreutils timeout, 137 when the KILL signal lands on the child.
_KILLED_BY_TIMEOUT: Final[frozenset[int]] = frozenset({124, 137})

# Applies rlimits in the child then execs the real interpreter; avoids preexec_fn,
# which is unsafe while other threads are running.
_LIMITS_LAUNCHER: Final[str] = "\n".join(
    [
        "import os, resource, sys",
        "memory, cpu = int(sys.argv[1]), int(sys.argv[2])",
        "if memory > 0:",
        "    resource.setrlimit(resource.RLIMIT_AS, (memory, memory))",
        "if cpu > 0:",
        "    resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu))",
        "os.execvp(sys.argv[3], sys.argv[3:])",
    ]
)

_PASSTHROUGH_ENV: Final[tuple[str, ...]] = ("PATH", "LANG", "LC_ALL", "SYSTEMROOT")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized result of one command run inside (or against) a sandbox."""

    command: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: int

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.returncode == 0

    @property
    def details(self) -> str:
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


def kill_process_tree(pid: int, *, grace_seconds: float = _KILL_GRACE_SECONDS) -> None:
    """SIGKILL ``pid`` and all of its descendants."""

    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        victims = [*root.children(recursive=True), root]
    except psutil.NoSuchProcess:
        victims = [root]
    for proc in victims:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    psutil.wait_procs(victims, timeout=grace_seconds)


def run_command(
    command: Sequence[str],
    *,
    timeout_seconds: float,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    stdin_text: str | None = None,
) -> CommandResult:
    """Run ``command`` to completion or kill its whole process tree at the deadline.

    Raises ``OSError`` when the executable cannot be started.
    """

    argv = tuple(command)
    started = time.perf_counter()
    process = subprocess.Popen(
        list(argv),
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        start_new_session=sys.platform != "win32",
    )
    try:
        stdout, stderr = process.communicate(stdin_text, timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        kill_process_tree(process.pid)
        stdout, stderr = process.communicate()
        return CommandResult(
            command=argv,
            returncode=None,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=True,
            duration_ms=_elapsed_ms(started),
        )
    return CommandResult(
        command=argv,
        returncode=process.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=False,
        duration_ms=_elapsed_ms(started),
    )


def read_marker(workspace: Path) -> dict[str, object] | None:
    try:
        raw = json.loads((workspace / SANDBOX_MARKER_FILENAME).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return raw if isinstance(raw, dict) else None


class SandboxBackend(ABC):
    """Process isolation strategy for sandboxes."""

    kind: SandboxBackendKind

    def __init__(self, settings: SandboxSettings, *, dataset_root: Path) -> None:
        self._settings = settings
        self._dataset_root = Path(dataset_root)
        self._logger = structlog.get_logger(__name__)

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    @abstractmethod
    def start(self, sandbox: Sandbox) -> str | None:
        """Bring the sandbox up; returns a backend handle (container id) or None."""

    @abstractmethod
    def stop(self, sandbox: Sandbox) -> None:
        """Tear the sandbox down. Must tolerate an already-gone sandbox."""

    @abstractmethod
    def run_python(
        self,
        sandbox: Sandbox,
        args: Sequence[str],
        *,
        timeout_seconds: float,
        stdin_text: str | None = None,
    ) -> CommandResult:
        """Run the sandbox interpreter with ``args``.

        Raises SandboxUnavailableError when the interpreter cannot be started.
        """

    @abstractmethod
    def wrapper_paths(self, sandbox: Sandbox) -> WrapperPaths:
        """Workspace, package target and dataset directories as seen from inside."""

    @abstractmethod
    def orphan_candidates(self, workspace_root: Path) -> list[str]:
        """Names of prefixed sandboxes that no live process of ours owns."""

    @abstractmethod
    def remove(self, name: str) -> None:
        """Remove a sandbox known only by name (orphan reclamation)."""

    @abstractmethod
    def availability(self) -> tuple[bool, str]:
        """``(available, detail)`` for health reporting."""

    def inside_path(self, sandbox: Sandbox, relative: str) -> str:
        workspace = self.wrapper_paths(sandbox).workspace
        if self.kind is SandboxBackendKind.DOCKER:
            return str(PurePosixPath(workspace) / relative)
        return str(Path(workspace) / relative)


class LocalBackend(SandboxBackend):
    kind = SandboxBackendKind.LOCAL

    def start(self, sandbox: Sandbox) -> str | None:
        executable = self._settings.python_executable
        if shutil.which(executable) is None and not Path(executable).is_file():
            raise SandboxUnavailableError(
                sandbox.project_id, f"python executable not found: {executable}"
            )
        return None

    def stop(self, sandbox: Sandbox) -> None:
        # Local runs do not outlive a call; nothing is left running.
        return None

    def run_python(
        self,
        sandbox: Sandbox,
        args: Sequence[str],
        *,
        timeout_seconds: float,
        stdin_text: str | None = None,
    ) -> CommandResult:
        command = [*self._launcher(timeout_seconds), self._settings.python_executable, *args]
        try:
            return run_command(
                command,
                timeout_seconds=timeout_seconds,
                cwd=sandbox.workspace,
                env=self._environment(sandbox.workspace),
                stdin_text=stdin_text,
            )
        except OSError as exc:
            raise SandboxUnavailableError(
                sandbox.project_id, f"cannot start interpreter: {exc}"
            ) from exc

    def wrapper_paths(self, sandbox: Sandbox) -> WrapperPaths:
        workspace = sandbox.workspace
        return WrapperPaths(
            workspace=str(workspace),
            packages_dir=str(workspace / WORKSPACE_PACKAGES_DIR),
            dataset_dirs=(str(workspace / WORKSPACE_DATASETS_DIR), str(self._dataset_root)),
        )

    def orphan_candidates(self, workspace_root: Path) -> list[str]:
        if not workspace_root.is_dir():
            return []
        names: list[str] = []
        for child in sorted(workspace_root.iterdir()):
            if not child.is_dir() or not child.name.startswith(self._settings.name_prefix):
                continue
            marker = read_marker(child)
            if marker is None:
                continue
            owner = marker.get("ownerPid")
            if isinstance(owner, int) and psutil.pid_exists(owner):
                continue
            names.append(child.name)
        return names

    def remove(self, name: str) -> None:
        return None

    def availability(self) -> tuple[bool, str]:
        executable = self._settings.python_executable
        if shutil.which(executable) is None and not Path(executable).is_file():
            return False, f"python executable not found: {executable}"
        return True, executable

    def _launcher(self, timeout_seconds: float) -> list[str]:
        if sys.platform == "win32":
            return []
        memory_bytes = self._settings.memory_mb * 1024 * 1024
        cpu_seconds = int(timeout_seconds) + 1
        return [
            self._settings.python_executable,
            "-c",
            _LIMITS_LAUNCHER,
            str(memory_bytes),
            str(cpu_seconds),
        ]

    def _environment(self, workspace: Path) -> dict[str, str]:
        env = {key: os.environ[key] for key in _PASSTHROUGH_ENV if key in os.environ}
        threads = str(max(1, self._settings.cpu_percent // 100))
        env.update(
            {
                "HOME": str(workspace),
                "PYTHONPATH": str(workspace / WORKSPACE_PACKAGES_DIR),
                "PYTHONIOENCODING": "utf-8",
                "PYTHONDONTWRITEBYTECODE": "1",
                "PIP_CACHE_DIR": str(workspace / WORKSPACE_PIP_CACHE_DIR),
                "PIP_DISABLE_PIP_VERSION_CHECK": "1",
                "TMPDIR": str(workspace / WORKSPACE_TMP_DIR),
                "MPLBACKEND": "Agg",
                "OMP_NUM_THREADS": threads,
                "OPENBLAS_NUM_THREADS": threads,
                "MKL_NUM_THREADS": threads,
            }
        )
        return env


class DockerBackend(SandboxBackend):
    """One long-lived container per project, driven through the Docker SDK."""

    kind = SandboxBackendKind.DOCKER

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        dataset_root: Path,
        client: docker.DockerClient | None = None,
    ) -> None:
        super().__init__(settings, dataset_root=dataset_root)
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Created on first use so a host without a daemon can still build the backend."""

        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def start(self, sandbox: Sandbox) -> str | None:
        settings = self._settings
        try:
            container = self.client.containers.run(
                settings.resolved_image,
                ["tail", "-f", "/dev/null"],
                name=sandbox.name,
                detach=True,
                mem_limit=f"{settings.memory_mb}m",
                nano_cpus=settings.cpu_percent * 10_000_000,
                network_mode=settings.network,
                read_only=True,
                tmpfs={"/tmp": f"rw,nosuid,size={settings.tmpfs_mb}m"},
                volumes={
                    str(sandbox.workspace.resolve()): {
                        "bind": str(_CONTAINER_WORKSPACE),
                        "mode": "rw",
                    },
                    str(self._dataset_root.resolve()): {
                        "bind": str(_CONTAINER_DATASETS),
                        "mode": "ro",
                    },
                },
                working_dir=str(_CONTAINER_WORKSPACE),
                user="sandbox",
                environment=_container_environment(),
                labels={_PROJECT_LABEL: sandbox.project_id},
            )
        except DockerException as exc:
            raise SandboxUnavailableError(
                sandbox.project_id, f"failed to create container: {exc}"
            ) from exc
        return container.id or sandbox.name

    def stop(self, sandbox: Sandbox) -> None:
        try:
            self._remove_container(sandbox.handle or sandbox.name)
        except DockerException as exc:
            raise SandboxUnavailableError(
                sandbox.project_id, f"failed to remove container: {exc}"
            ) from exc

    def run_python(
        self,
        sandbox: Sandbox,
        args: Sequence[str],
        *,
        timeout_seconds: float,
        stdin_text: str | None = None,
    ) -> CommandResult:
        # The deadline is enforced inside the container; killing the host-side
        # exec call would leave the interpreter running.
        command = ["timeout", "-s", "KILL", f"{timeout_seconds:.3f}", "python", *args]
        staged: Path | None = None
        if stdin_text is not None:
            staged = sandbox.workspace / WORKSPACE_TMP_DIR / f"stdin-{uuid4().hex}.json"
            staged.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(staged, stdin_text)
            inside = self.inside_path(sandbox, f"{WORKSPACE_TMP_DIR}/{staged.name}")
            command = ["sh", "-c", f"{shlex.join(command)} < {shlex.quote(inside)}"]

        started = time.perf_counter()
        try:
            container = self.client.containers.get(sandbox.handle or sandbox.name)
            exit_code, output = container.exec_run(
                command, demux=True, workdir=str(_CONTAINER_WORKSPACE)
            )
        except NotFound as exc:
            raise SandboxUnavailableError(sandbox.project_id, "container is gone") from exc
        except DockerException as exc:
            raise SandboxUnavailableError(sandbox.project_id, f"docker exec failed: {exc}") from exc
        finally:
            if staged is not None:
                staged.unlink(missing_ok=True)

        duration_ms = _elapsed_ms(started)
        stdout, stderr = _demuxed(output)
        timed_out = exit_code in _KILLED_BY_TIMEOUT and duration_ms >= timeout_seconds * 1000
        return CommandResult(
            command=tuple(command),
            returncode=None if timed_out else exit_code,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
            duration_ms=duration_ms,
        )

    def wrapper_paths(self, sandbox: Sandbox) -> WrapperPaths:
        return WrapperPaths(
            workspace=str(_CONTAINER_WORKSPACE),
            packages_dir=str(_CONTAINER_WORKSPACE / WORKSPACE_PACKAGES_DIR),
            dataset_dirs=(
                str(_CONTAINER_WORKSPACE / WORKSPACE_DATASETS_DIR),
                str(_CONTAINER_DATASETS),
            ),
        )

    def orphan_candidates(self, workspace_root: Path) -> list[str]:
        prefix = self._settings.name_prefix
        try:
            containers = self.client.containers.list(all=True, filters={"name": prefix})
        except DockerException as exc:
            self._logger.warning("docker_list_failed", error=str(exc))
            return []
        # The name filter matches substrings.
        return sorted({c.name for c in containers if c.name and c.name.startswith(prefix)})

    def remove(self, name: str) -> None:
        try:
            self._remove_container(name)
        except DockerException as exc:
            raise RuntimeError(f"cannot remove container {name}: {exc}") from exc

    def availability(self) -> tuple[bool, str]:
        try:
            version = self.client.version()
        except DockerException as exc:
            return False, f"docker daemon unreachable: {exc}"
        return True, f"docker {version.get('Version', 'unknown')}"

    def _remove_container(self, name: str) -> None:
        try:
            self.client.containers.get(name).remove(force=True)
        except NotFound:
            self._logger.debug("container_already_gone", sandbox_name=name)


def _container_environment() -> dict[str, str]:
    return {
        "HOME": str(_CONTAINER_WORKSPACE),
        "PYTHONPATH": str(_CONTAINER_WORKSPACE / WORKSPACE_PACKAGES_DIR),
        "PYTHONIOENCODING": "utf-8",
        "PIP_CACHE_DIR": str(_CONTAINER_WORKSPACE / WORKSPACE_PIP_CACHE_DIR),
        "PIP_DISABLE_PIP_VERSION_CHECK": "1",
        "TMPDIR": str(_CONTAINER_WORKSPACE / WORKSPACE_TMP_DIR),
        "MPLBACKEND": "Agg",
    }


def _demuxed(output: object) -> tuple[str, str]:
    if isinstance(output, tuple):
        out, err = output
    else:
        out, err = output, None
    return (
        (out or b"").decode("utf-8", errors="replace"),
        (err or b"").decode("utf-8", errors="replace"),
    )


def create_backend(settings: SandboxSettings, *, dataset_root: Path) -> SandboxBackend:
    if settings.backend is SandboxBackendKind.DOCKER:
        return DockerBackend(settings, dataset_root=dataset_root)
    return LocalBackend(settings, dataset_root=dataset_root)


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.perf_counter() - started) * 1000))


__all__ = [
    "CommandResult",
    "DockerBackend",
    "LocalBackend",
    "SandboxBackend",
    "create_backend",
    "kill_process_tree",
    "read_marker",
    "run_command",
]
