from __future__ import annotations

import pytest

from notebook_runtime import main as main_module
from notebook_runtime.config.loader import ConfigLoadError
from notebook_runtime.errors import ConflictError, NotFoundError, SandboxUnavailableError
from notebook_runtime.main import ExitCode, cli_entrypoint


def _raise(exc: BaseException):
    def _runner(argv: object = None) -> int:
        raise exc

    return _runner


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ConflictError("cell-1", "user"), ExitCode.CONFLICT),
        (NotFoundError("Cell", "cell-1"), ExitCode.NOT_FOUND),
        (SandboxUnavailableError("proj-1", "no docker"), ExitCode.SANDBOX_UNAVAILABLE),
        (ConfigLoadError("bad toml"), ExitCode.USAGE_ERROR),
        (PermissionError("denied"), ExitCode.USAGE_ERROR),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_unhandled_exceptions_map_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch, exc: BaseException, expected: ExitCode
) -> None:
    monkeypatch.setattr("notebook_runtime.ui.cli.run_cli", _raise(exc))

    assert cli_entrypoint([]) == expected


def test_wrapped_cause_is_followed(monkeypatch: pytest.MonkeyPatch) -> None:
    try:
        try:
            raise NotFoundError("Notebook", "nb-1")
        except NotFoundError as inner:
            raise RuntimeError("wrapper") from inner
    except RuntimeError as outer:
        wrapped = outer
    monkeypatch.setattr("notebook_runtime.ui.cli.run_cli", _raise(wrapped))

    assert cli_entrypoint([]) == ExitCode.NOT_FOUND


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 0), (3, 3), (99, int(ExitCode.INTERNAL_ERROR)), ("fatal", int(ExitCode.INTERNAL_ERROR))],
)
def test_system_exit_codes_are_normalized(
    monkeypatch: pytest.MonkeyPatch, raw: object, expected: int
) -> None:
    monkeypatch.setattr("notebook_runtime.ui.cli.run_cli", _raise(SystemExit(raw)))

    assert main_module.cli_entrypoint(["--help"]) == expected
