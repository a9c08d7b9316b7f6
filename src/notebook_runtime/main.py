"""
Process entrypoint for the ``notebook-runtime`` command.

Every outcome leaves through ``ExitCode``. Errors the CLI did not handle are
classified by walking the exception's cause/context chain, so a
``NotFoundError`` wrapped in another exception still exits with 4.
Anything unrecognized is an internal error and gets a full traceback.
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING, Final

from notebook_runtime.config.loader import ConfigLoadError
from notebook_runtime.config.schema import ConfigValidationError
from notebook_runtime.errors import ConflictError, NotFoundError, SandboxUnavailableError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    EXECUTION_FAILED = 1
    USAGE_ERROR = 2
    CONFLICT = 3
    NOT_FOUND = 4
    SANDBOX_UNAVAILABLE = 5
    INTERNAL_ERROR = 6


# First match wins, checked against each link of the chain in turn.
_EXIT_FOR: Final[tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...]] = (
    ((ConfigLoadError, ConfigValidationError), ExitCode.USAGE_ERROR),
    ((ConflictError,), ExitCode.CONFLICT),
    ((NotFoundError,), ExitCode.NOT_FOUND),
    ((SandboxUnavailableError,), ExitCode.SANDBOX_UNAVAILABLE),
    ((FileNotFoundError, NotADirectoryError, PermissionError), ExitCode.USAGE_ERROR),
)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and return a process exit status; never raises."""

    try:
        from notebook_runtime.ui.cli import run_cli

        return _as_exit_status(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_status(exc.code)
    except BaseException as exc:  # noqa: BLE001 - last line before the shell
        code = classify(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return int(code)


def classify(exc: BaseException) -> ExitCode:
    for link in _chain(exc):
        for types, code in _EXIT_FOR:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        if link.__cause__ is not None:
            link = link.__cause__
        elif not link.__suppress_context__:
            link = link.__context__
        else:
            link = None


def _as_exit_status(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in set(ExitCode):
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


__all__ = ["ExitCode", "classify", "cli_entrypoint"]
