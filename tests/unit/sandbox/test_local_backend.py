from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from notebook_runtime.config.settings import SandboxSettings
from notebook_runtime.constants import SANDBOX_MARKER_FILENAME
from notebook_runtime.domain.models import Sandbox, SandboxBackendKind
from notebook_runtime.errors import SandboxUnavailableError
from notebook_runtime.sandbox.backends import (
    DockerBackend,
    LocalBackend,
    create_backend,
    read_marker,
    run_command,
)

_MISSING_BINARY = "/nonexistent/bin/definitely-not-here"


def _sandbox(workspace: Path, kind: SandboxBackendKind = SandboxBackendKind.LOCAL) -> Sandbox:
    for relative in (".python", ".tmp", ".cache/pip", "datasets"):
        (workspace / relative).mkdir(parents=True, exist_ok=True)
    return Sandbox(
        project_id="proj-1",
        sandbox_id="sbx-01TEST",
        name="nbrt-exec-test0001",
        backend=kind,
        workspace=workspace,
    )


def _write_marker(workspace: Path, owner_pid: int) -> None:
    workspace.mkdir(parents=True)
    (workspace / SANDBOX_MARKER_FILENAME).write_text(
        json.dumps({"name": workspace.name, "ownerPid": owner_pid}), encoding="utf-8"
    )


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


def test_child_environment_is_scrubbed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NBRT_TEST_SECRET", "hunter2")
    backend = LocalBackend(SandboxSettings(cpu_percent=200), dataset_root=tmp_path / "data")
    sandbox = _sandbox(tmp_path / "ws")

    result = backend.run_python(
        sandbox,
        ["-c", "import json, os; print(json.dumps(dict(os.environ)))"],
        timeout_seconds=30,
    )

    assert result.succeeded, result.details
    env = json.loads(result.stdout.strip().splitlines()[-1])
    assert "NBRT_TEST_SECRET" not in env
    assert env["HOME"] == str(sandbox.workspace)
    assert env["PYTHONPATH"] == str(sandbox.workspace / ".python")
    assert env["TMPDIR"] == str(sandbox.workspace / ".tmp")
    assert env["MPLBACKEND"] == "Agg"
    assert env["OMP_NUM_THREADS"] == "2"


def test_run_python_uses_workspace_cwd_and_stdin(tmp_path: Path) -> None:
    backend = LocalBackend(SandboxSettings(), dataset_root=tmp_path / "data")
    sandbox = _sandbox(tmp_path / "ws")

    result = backend.run_python(
        sandbox,
        ["-c", "import os, sys; print(os.getcwd()); print(sys.stdin.read().upper())"],
        timeout_seconds=30,
        stdin_text="ping",
    )

    lines = result.stdout.splitlines()
    assert Path(lines[0]).resolve() == sandbox.workspace.resolve()
    assert lines[1] == "PING"


def test_timeout_kills_the_child(tmp_path: Path) -> None:
    backend = LocalBackend(SandboxSettings(), dataset_root=tmp_path / "data")
    sandbox = _sandbox(tmp_path / "ws")

    result = backend.run_python(
        sandbox, ["-c", "import time; time.sleep(60)"], timeout_seconds=0.5
    )

    assert result.timed_out
    assert result.returncode is None
    assert not result.succeeded


def test_wrapper_paths_and_inside_path(tmp_path: Path) -> None:
    backend = LocalBackend(SandboxSettings(), dataset_root=tmp_path / "data")
    sandbox = _sandbox(tmp_path / "ws")

    paths = backend.wrapper_paths(sandbox)

    assert paths.packages_dir == str(sandbox.workspace / ".python")
    assert paths.dataset_dirs == (str(sandbox.workspace / "datasets"), str(tmp_path / "data"))
    assert backend.inside_path(sandbox, "_outputs.json") == str(sandbox.workspace / "_outputs.json")


def test_orphan_candidates_follow_marker_owner(tmp_path: Path) -> None:
    backend = LocalBackend(SandboxSettings(), dataset_root=tmp_path / "data")
    root = tmp_path / "sandboxes"
    _write_marker(root / "nbrt-exec-live0001", os.getpid())
    _write_marker(root / "nbrt-exec-dead0001", _dead_pid())
    _write_marker(root / "other-prefix-0001", _dead_pid())
    (root / "nbrt-exec-nomarker").mkdir()

    assert backend.orphan_candidates(root) == ["nbrt-exec-dead0001"]
    assert backend.orphan_candidates(tmp_path / "absent") == []
    assert read_marker(root / "nbrt-exec-nomarker") is None


def test_missing_interpreter_is_unavailable(tmp_path: Path) -> None:
    backend = LocalBackend(
        SandboxSettings(python_executable=_MISSING_BINARY), dataset_root=tmp_path
    )
    sandbox = _sandbox(tmp_path / "ws")

    with pytest.raises(SandboxUnavailableError, match="python executable not found"):
        backend.start(sandbox)
    with pytest.raises(SandboxUnavailableError, match="cannot start interpreter"):
        backend.run_python(sandbox, ["-c", "pass"], timeout_seconds=5)
    assert backend.availability()[0] is False


def test_run_command_raises_for_missing_executable() -> None:
    with pytest.raises(OSError):
        run_command([_MISSING_BINARY], timeout_seconds=5)


def test_create_backend_picks_kind(tmp_path: Path) -> None:
    local = create_backend(SandboxSettings(), dataset_root=tmp_path)
    docker = create_backend(
        SandboxSettings(backend=SandboxBackendKind.DOCKER), dataset_root=tmp_path
    )

    assert isinstance(local, LocalBackend)
    assert isinstance(docker, DockerBackend)
