"""Command-line interface router for notebook-runtime."""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from types import FrameType
from typing import Any, Final

from notebook_runtime.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    redact_config,
)
from notebook_runtime.config.settings import RuntimeSettings
from notebook_runtime.domain.ids import generate_ulid
from notebook_runtime.domain.models import Cell, CellKind, OutputKind
from notebook_runtime.errors import (
    ConflictError,
    InvalidCellError,
    NotFoundError,
    SandboxUnavailableError,
)
from notebook_runtime.main import ExitCode
from notebook_runtime.observability import LoggingSink, setup_logging, shutdown_logging
from notebook_runtime.persistence.state_db import StateDBError
from notebook_runtime.runtime import NotebookRuntime
from notebook_runtime.ui.render import CLIRenderer, create_renderer

_INLINE_PREVIEW_CHARS: Final[int] = 2000


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, exit_code: int = ExitCode.USAGE_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = int(exit_code)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="notebook-runtime",
        description=(
            "notebook-runtime: sandboxed execution of notebook cells.\n\n"
            "Common workflows:\n"
            "  notebook-runtime init                       Create storage and migrate the DB\n"
            "  notebook-runtime notebook add -p P -c CODE  Append a code cell\n"
            "  notebook-runtime run CELL -p P              Execute one cell\n"
            "  notebook-runtime serve                      Keep sandboxes warm until SIGTERM\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the runtime TOML config (default: ./notebook_runtime.toml if present).",
    )
    common.add_argument(
        "--backend",
        choices=("local", "docker"),
        default=None,
        help="Override the sandbox backend from config.",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and mirror logs to stderr.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init ----------------------------------------------------------------
    init_parser = subparsers.add_parser(
        "init", parents=[common], help="Create runtime directories and migrate the state DB"
    )
    init_parser.set_defaults(handler=_cmd_init)

    # serve ---------------------------------------------------------------
    serve_parser = subparsers.add_parser(
        "serve",
        parents=[common],
        help="Initialize the runtime and hold it until SIGINT/SIGTERM",
        description=(
            "Migrate the DB, reclaim orphaned sandboxes, start the idle reaper and wait.\n"
            "Notebook events are written to the structured log while serving."
        ),
    )
    serve_parser.add_argument(
        "--max-seconds",
        type=float,
        default=None,
        help="Stop after this many seconds instead of waiting for a signal.",
    )
    serve_parser.set_defaults(handler=_cmd_serve)

    # health --------------------------------------------------------------
    health_parser = subparsers.add_parser(
        "health", parents=[common], help="Report backend availability and host resources"
    )
    health_parser.set_defaults(handler=_cmd_health)

    # reclaim -------------------------------------------------------------
    reclaim_parser = subparsers.add_parser(
        "reclaim", parents=[common], help="Remove sandboxes left behind by dead processes"
    )
    reclaim_parser.set_defaults(handler=_cmd_reclaim)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    # notebook ------------------------------------------------------------
    notebook_parser = subparsers.add_parser("notebook", help="Inspect and edit notebook cells")
    notebook_sub = notebook_parser.add_subparsers(dest="notebook_command", required=True)

    show_parser = notebook_sub.add_parser(
        "show", parents=[common], help="List a project's cells, or show one cell"
    )
    show_parser.add_argument("cell_id", nargs="?", default=None, help="Cell to show in full.")
    show_parser.add_argument("--project", "-p", default=None, help="Project id.")
    show_parser.set_defaults(handler=_cmd_notebook_show)

    add_parser = notebook_sub.add_parser("add", parents=[common], help="Insert a new cell")
    add_parser.add_argument("--project", "-p", required=True, help="Project id.")
    _add_source_arguments(add_parser)
    add_parser.add_argument("--position", type=int, default=None, help="0-based position.")
    add_parser.add_argument("--title", default=None)
    add_parser.add_argument(
        "--markdown", action="store_true", default=False, help="Create a markdown cell."
    )
    add_parser.set_defaults(handler=_cmd_notebook_add)

    edit_parser = notebook_sub.add_parser(
        "edit", parents=[common], help="Replace a cell's content or a line range of it"
    )
    edit_parser.add_argument("cell_id")
    _add_source_arguments(edit_parser)
    edit_parser.add_argument(
        "--lines",
        default=None,
        metavar="START:END",
        help="1-based inclusive line range to replace instead of the whole cell.",
    )
    edit_parser.add_argument("--title", default=None)
    edit_parser.set_defaults(handler=_cmd_notebook_edit)

    move_parser = notebook_sub.add_parser("move", parents=[common], help="Move a cell")
    move_parser.add_argument("cell_id")
    move_parser.add_argument("position", type=int, help="Target 0-based position (clamped).")
    move_parser.set_defaults(handler=_cmd_notebook_move)

    delete_parser = notebook_sub.add_parser("delete", parents=[common], help="Delete a cell")
    delete_parser.add_argument("cell_id")
    delete_parser.set_defaults(handler=_cmd_notebook_delete)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Execute one code cell in its project's sandbox",
        description=(
            "Acquire the cell lock, run the cell in a sandbox and persist its outputs.\n\n"
            "Examples:\n"
            "  notebook-runtime run 01J... --project demo\n"
            "  notebook-runtime run 01J... --project demo --backend docker --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("cell_id")
    run_parser.add_argument("--project", "-p", required=True, help="Project id.")
    run_parser.set_defaults(handler=_cmd_run)

    # packages ------------------------------------------------------------
    packages_parser = subparsers.add_parser(
        "packages", help="Manage packages inside a project sandbox"
    )
    packages_sub = packages_parser.add_subparsers(dest="packages_command", required=True)

    list_parser = packages_sub.add_parser("list", parents=[common], help="List packages")
    list_parser.add_argument("--project", "-p", required=True)
    list_parser.set_defaults(handler=_cmd_packages_list)

    install_parser = packages_sub.add_parser(
        "install", parents=[common], help="Install a package (e.g. 'seaborn==0.13')"
    )
    install_parser.add_argument("spec")
    install_parser.add_argument("--project", "-p", required=True)
    install_parser.set_defaults(handler=_cmd_packages_install)

    uninstall_parser = packages_sub.add_parser(
        "uninstall", parents=[common], help="Remove a package installed into the sandbox"
    )
    uninstall_parser.add_argument("name")
    uninstall_parser.add_argument("--project", "-p", required=True)
    uninstall_parser.set_defaults(handler=_cmd_packages_uninstall)

    # complete ------------------------------------------------------------
    complete_parser = subparsers.add_parser(
        "complete", parents=[common], help="Code completions at a cursor position"
    )
    complete_parser.add_argument("--project", "-p", required=True)
    _add_source_arguments(complete_parser)
    complete_parser.add_argument("--line", type=int, required=True, help="1-based line.")
    complete_parser.add_argument("--column", type=int, required=True, help="0-based column.")
    complete_parser.set_defaults(handler=_cmd_complete)

    return parser


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--content", "-c", default=None, help="Source text.")
    source.add_argument("--file", "-f", default=None, help="Read source text from a file.")


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.USAGE_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except ConflictError as exc:
        _report_error(namespace, "conflict", str(exc), holder=exc.holder, cell_id=exc.cell_id)
        return int(ExitCode.CONFLICT)
    except NotFoundError as exc:
        _report_error(namespace, "not_found", str(exc))
        return int(ExitCode.NOT_FOUND)
    except InvalidCellError as exc:
        _report_error(namespace, "invalid", str(exc))
        return int(ExitCode.USAGE_ERROR)
    except SandboxUnavailableError as exc:
        _report_error(namespace, "sandbox_unavailable", str(exc))
        return int(ExitCode.SANDBOX_UNAVAILABLE)
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings) as runtime:
        version = runtime.db.schema_version()
        paths = {
            "state_db": str(settings.state_db),
            "workspace_root": str(settings.workspace_root),
            "output_dir": str(settings.output_dir),
            "dataset_root": str(settings.dataset_root),
            "dataset_catalog": str(settings.dataset_catalog),
        }

    if _flag(args, "json"):
        _emit_json({"command": "init", "schema_version": version, "paths": paths})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.heading("notebook-runtime initialized")
    renderer.kv("Schema version", version)
    for key, value in paths.items():
        renderer.kv(key, value)
    return int(ExitCode.SUCCESS)


def _cmd_serve(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    stop = threading.Event()

    def _request_stop(signum: int, frame: FrameType | None) -> None:
        stop.set()

    previous = {
        signum: signal.signal(signum, _request_stop) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    renderer = _get_renderer(args)
    try:
        with _runtime_session(args, config, settings, prepare=False) as runtime:
            reclaimed = runtime.initialize_runtime()
            runtime.broadcaster.subscribe(LoggingSink())
            if _flag(args, "json"):
                _emit_json(
                    {
                        "command": "serve",
                        "state": "ready",
                        "backend": settings.sandbox.backend.value,
                        "reclaimed": reclaimed,
                    }
                )
            else:
                renderer.heading("notebook-runtime serving")
                renderer.kv("Backend", settings.sandbox.backend.value)
                renderer.kv("Reclaimed orphans", len(reclaimed))
                renderer.text("Press Ctrl+C to stop.")
            stop.wait(timeout=getattr(args, "max_seconds", None))
            failures = runtime.teardown_all()
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    if _flag(args, "json"):
        _emit_json({"command": "serve", "state": "stopped", "teardown_failures": failures})
    else:
        renderer.text("Stopped.")
        if failures:
            renderer.warning(f"could not destroy: {', '.join(failures)}")
    return int(ExitCode.SUCCESS)


def _cmd_health(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings, prepare=False) as runtime:
        report = runtime.health()
    exit_code = ExitCode.SUCCESS if report["available"] else ExitCode.SANDBOX_UNAVAILABLE
    if report["state_db"].get("integrity", "ok") != "ok":
        exit_code = ExitCode.INTERNAL_ERROR

    if _flag(args, "json"):
        _emit_json({"command": "health", **report})
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.heading("notebook-runtime health")
    backend_line = f"backend {report['backend']}: {report['detail']}"
    if report["available"]:
        renderer.ok(backend_line)
    else:
        renderer.fail(backend_line)

    db_report = report["state_db"]
    if "error" in db_report:
        renderer.fail(f"state_db: {db_report['error']}")
    elif db_report.get("integrity", "ok") != "ok":
        renderer.fail(f"state_db: integrity check failed at {db_report['path']}")
        renderer.items(db_report["integrity"])
    elif db_report["exists"]:
        renderer.ok(f"state_db: schema v{db_report.get('schema_version')} at {db_report['path']}")
    else:
        renderer.ok(f"state_db: not yet created at {db_report['path']}")

    host = report["host"]
    renderer.kv("Memory available", _format_bytes(host["memory_available_bytes"]))
    renderer.kv("Disk free", _format_bytes(host["disk_free_bytes"]))
    renderer.kv("Default packages", ", ".join(report["default_packages"]))
    return int(exit_code)


def _cmd_reclaim(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings, prepare=False) as runtime:
        reclaimed = runtime.sandboxes.reclaim_orphans()

    if _flag(args, "json"):
        _emit_json({"command": "reclaim", "reclaimed": reclaimed})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    if not reclaimed:
        renderer.text("No orphaned sandboxes found.")
    else:
        renderer.heading(f"Reclaimed {len(reclaimed)} sandbox(es):")
        renderer.items(reclaimed)
    return int(ExitCode.SUCCESS)


def _cmd_config(args: argparse.Namespace) -> int:
    config, _ = _load_settings(args)
    redacted = redact_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "config": redacted})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Config file", _optional_str(getattr(args, "config_path", None)) or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return int(ExitCode.SUCCESS)


def _cmd_notebook_show(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    cell_id = _optional_str(getattr(args, "cell_id", None))
    project_id = _optional_str(getattr(args, "project", None))
    if cell_id is None and project_id is None:
        raise CLIError("pass a cell id or --project")

    with _runtime_session(args, config, settings) as runtime:
        if cell_id is not None:
            cell = runtime.notebooks.read_cell(cell_id)
            if _flag(args, "json"):
                _emit_json({"command": "notebook show", "cell": cell.to_dict()})
                return int(ExitCode.SUCCESS)
            _render_cell(_get_renderer(args), cell)
            return int(ExitCode.SUCCESS)

        assert project_id is not None
        notebook = runtime.notebooks.ensure_notebook(project_id)
        summaries = runtime.notebooks.list_cells(notebook.notebook_id)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "notebook show",
                "notebook": notebook.to_dict(),
                "cells": [item.to_dict() for item in summaries],
            }
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Notebook", f"{notebook.name} ({notebook.notebook_id})")
    if not summaries:
        renderer.text("No cells yet.")
        return int(ExitCode.SUCCESS)
    renderer.table(
        ["#", "id", "type", "status", "runs", "lock", "preview"],
        [
            [
                str(item.position),
                item.cell_id,
                item.kind.value,
                item.status.value,
                str(item.execution_count),
                item.locked_by or "",
                _truncate(item.preview.replace("\n", " "), 48),
            ]
            for item in summaries
        ],
    )
    return int(ExitCode.SUCCESS)


def _cmd_notebook_add(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    content = _read_source(args)
    kind = CellKind.MARKDOWN if _flag(args, "markdown") else CellKind.CODE
    with _runtime_session(args, config, settings) as runtime:
        notebook = runtime.notebooks.ensure_notebook(_require_str(args.project, "project"))
        cell = runtime.notebooks.insert_cell(
            notebook.notebook_id,
            content,
            position=getattr(args, "position", None),
            title=_optional_str(getattr(args, "title", None)),
            kind=kind,
        )
    return _emit_cell_change(args, "notebook add", cell, "Added")


def _cmd_notebook_edit(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    content = _read_source(args)
    line_range = _optional_str(getattr(args, "lines", None))
    with _runtime_session(args, config, settings) as runtime:
        cell = runtime.notebooks.read_cell(args.cell_id)
        if line_range is None:
            updated = runtime.notebooks.write_cell(
                cell.notebook_id,
                content,
                cell_id=cell.cell_id,
                title=_optional_str(getattr(args, "title", None)),
            )
            return _emit_cell_change(args, "notebook edit", updated, "Updated")

        start_line, end_line = _parse_line_range(line_range)
        result = runtime.notebooks.edit_cell(cell.cell_id, start_line, end_line, content)

    if _flag(args, "json"):
        _emit_json({"command": "notebook edit", **result.to_dict()})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.heading(f"Edited lines {start_line}-{end_line} of {result.cell.cell_id}")
    renderer.items(list(result.lines_removed), prefix="- ")
    renderer.items(list(result.lines_added), prefix="+ ")
    return int(ExitCode.SUCCESS)


def _cmd_notebook_move(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings) as runtime:
        cells = runtime.notebooks.move_cell(args.cell_id, args.position)

    if _flag(args, "json"):
        _emit_json({"command": "notebook move", "order": [cell.cell_id for cell in cells]})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.heading("New order:")
    renderer.items([f"{cell.position}: {cell.cell_id}" for cell in cells], prefix="")
    return int(ExitCode.SUCCESS)


def _cmd_notebook_delete(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings) as runtime:
        runtime.notebooks.delete_cell(args.cell_id)

    if _flag(args, "json"):
        _emit_json({"command": "notebook delete", "deleted": args.cell_id})
    else:
        _get_renderer(args).text(f"Deleted {args.cell_id}")
    return int(ExitCode.SUCCESS)


def _cmd_run(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings) as runtime:
        outcome = runtime.run(args.cell_id, args.project)

    exit_code = ExitCode.SUCCESS if outcome.result.succeeded else ExitCode.EXECUTION_FAILED
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "run",
                "cell": outcome.cell.to_dict(),
                "result": outcome.result.to_dict(),
            }
        )
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.kv("Status", outcome.result.status.value)
    renderer.kv("Duration", f"{outcome.result.duration_ms} ms")
    renderer.kv("Execution count", outcome.cell.execution_count)
    _render_outputs(renderer, outcome.cell)
    return int(exit_code)


def _cmd_packages_list(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings, prepare=False) as runtime:
        packages = runtime.list_packages(args.project)

    if _flag(args, "json"):
        _emit_json({"command": "packages list", "packages": [item.to_dict() for item in packages]})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    if not packages:
        renderer.text("No packages reported by the sandbox.")
        return int(ExitCode.SUCCESS)
    renderer.table(
        ["name", "version", "summary"],
        [[item.name, item.version, _truncate(item.summary, 60)] for item in packages],
    )
    return int(ExitCode.SUCCESS)


def _cmd_packages_install(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings, prepare=False) as runtime:
        result = runtime.install_package(args.project, args.spec)
    return _emit_install_result(args, "packages install", result.success, result.message)


def _cmd_packages_uninstall(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    with _runtime_session(args, config, settings, prepare=False) as runtime:
        result = runtime.uninstall_package(args.project, args.name)
    return _emit_install_result(args, "packages uninstall", result.success, result.message)


def _cmd_complete(args: argparse.Namespace) -> int:
    config, settings = _load_settings(args)
    code = _read_source(args)
    with _runtime_session(args, config, settings, prepare=False) as runtime:
        completions = runtime.get_completions(args.project, code, args.line, args.column)

    if _flag(args, "json"):
        _emit_json(
            {"command": "complete", "completions": [item.to_dict() for item in completions]}
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.table(
        ["name", "type", "signature"],
        [[item.name, item.type, item.signature or ""] for item in completions],
    )
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers: runtime session, config
# ---------------------------------------------------------------------------


def _load_settings(args: argparse.Namespace) -> tuple[dict[str, Any], RuntimeSettings]:
    config_path = _optional_str(getattr(args, "config_path", None))
    overrides: dict[str, object] = {"sandbox.backend": getattr(args, "backend", None)}
    try:
        config = load_config(config_path, cli_overrides=overrides)
        settings = RuntimeSettings.from_config(config)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.USAGE_ERROR) from exc
    return config, settings


@contextmanager
def _runtime_session(
    args: argparse.Namespace,
    config: Mapping[str, Any],
    settings: RuntimeSettings,
    *,
    prepare: bool = True,
) -> Iterator[NotebookRuntime]:
    """Open logging plus a runtime; sandboxes created by the command die with it."""

    setup_logging(
        config.get("observability"),
        session_id=generate_ulid(),
        log_to_stderr=_flag(args, "verbose"),
    )
    runtime = NotebookRuntime(settings)
    try:
        if prepare:
            try:
                runtime.prepare_storage()
            except StateDBError as exc:
                raise CLIError(f"state DB unusable: {exc}", exit_code=ExitCode.USAGE_ERROR) from exc
        yield runtime
    finally:
        runtime.teardown_all()
        shutdown_logging()


def _read_source(args: argparse.Namespace) -> str:
    content = getattr(args, "content", None)
    if isinstance(content, str):
        return content
    file_arg = _optional_str(getattr(args, "file", None))
    if file_arg is not None:
        path = Path(file_arg).expanduser()
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CLIError(f"cannot read {path}: {exc}") from exc
    if not sys.stdin.isatty():
        return sys.stdin.read()
    return ""


def _parse_line_range(raw: str) -> tuple[int, int]:
    start, sep, end = raw.partition(":")
    try:
        start_line = int(start)
        end_line = int(end) if sep else start_line
    except ValueError as exc:
        raise CLIError(f"--lines must look like START:END, got {raw!r}") from exc
    return start_line, end_line


# ---------------------------------------------------------------------------
# Helpers: output
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _report_error(args: argparse.Namespace, code: str, message: str, **extra: object) -> None:
    if _flag(args, "json"):
        _emit_json({"error": code, "message": message, **extra})
        return
    print(f"error: {message}", file=sys.stderr)


def _emit_cell_change(args: argparse.Namespace, command: str, cell: Cell, verb: str) -> int:
    if _flag(args, "json"):
        _emit_json({"command": command, "cell": cell.to_dict()})
        return int(ExitCode.SUCCESS)
    _get_renderer(args).text(f"{verb} cell {cell.cell_id} at position {cell.position}")
    return int(ExitCode.SUCCESS)


def _emit_install_result(
    args: argparse.Namespace, command: str, success: bool, message: str
) -> int:
    exit_code = ExitCode.SUCCESS if success else ExitCode.EXECUTION_FAILED
    if _flag(args, "json"):
        _emit_json({"command": command, "success": success, "message": message})
        return int(exit_code)
    renderer = _get_renderer(args)
    if success:
        renderer.ok(message)
    else:
        renderer.fail(message)
    return int(exit_code)


def _render_cell(renderer: CLIRenderer, cell: Cell) -> None:
    renderer.heading(f"{cell.title or cell.cell_id} [{cell.kind.value}]")
    renderer.kv("Position", cell.position)
    renderer.kv("Status", cell.status.value)
    renderer.kv("Execution count", cell.execution_count)
    if cell.locked_by:
        renderer.kv("Locked by", cell.locked_by)
    renderer.section("Source:")
    renderer.code(cell.content)
    _render_outputs(renderer, cell)


def _render_outputs(renderer: CLIRenderer, cell: Cell) -> None:
    if not cell.outputs and not cell.output_refs:
        return
    renderer.section("Outputs:")
    for output in cell.outputs:
        if output.kind is OutputKind.IMAGE:
            renderer.text(f"[image] {output.mime_type or 'image/png'}, {output.byte_size} bytes")
        elif output.kind is OutputKind.ERROR:
            renderer.warning(_truncate(output.content, _INLINE_PREVIEW_CHARS))
        else:
            preview = _truncate(output.content, _INLINE_PREVIEW_CHARS)
            renderer.text(f"[{output.kind.value}] {preview}")
    for ref in cell.output_refs:
        renderer.text(f"[{ref.kind.value} ref] {ref.ref} ({_format_bytes(ref.byte_size)})")


def _format_bytes(value: object) -> str:
    size = float(value) if isinstance(value, (int, float)) else 0.0
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max(0, max_len - 3)] + "..."


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"{name} must be a non-empty string")
    return value.strip()


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
