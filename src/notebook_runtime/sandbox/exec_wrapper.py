"""
notebook-runtime — cell execution wrapper.

File: src/notebook_runtime/sandbox/exec_wrapper.py

Purpose
- Render the script a sandbox interpreter runs for one cell, and turn what it
  leaves behind (outputs file, stdout, stderr, exit code) into an
  ``ExecutionResult``.

Wrapper behaviour
- ``print`` calls become text outputs (and still reach stdout).
- ``display_df``/``display_html``/``display_image`` produce table, html and
  image outputs; ``resolve_dataset_path`` finds a dataset file by name.
- ``pd``/``np`` are pre-imported when available in the sandbox.
- The value of a trailing expression is echoed as an output.
- Uncaught exceptions become one error output carrying the traceback.
- Outputs are written as JSON to ``_outputs_{id}.json`` in the workspace.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import jinja2

from notebook_runtime.domain.models import (
    CellOutput,
    ExecutionResult,
    ExecutionStatus,
    OutputKind,
    outputs_from_json,
)

TABLE_MAX_ROWS: Final[int] = 20
TIMEOUT_MESSAGE: Final[str] = "Execution timed out"

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

_WRAPPER_TEMPLATE: Final[str] = '''\
# Generated by notebook-runtime for a single cell run.
import ast as _nbrt_ast
import base64 as _nbrt_base64
import builtins as _nbrt_builtins
import importlib as _nbrt_importlib
import importlib.util as _nbrt_importlib_util
import io as _nbrt_io
import json as _nbrt_json
import os as _nbrt_os
import sys as _nbrt_sys
import traceback as _nbrt_traceback
from pathlib import Path as _NbrtPath

_SOURCE = {{ code | pyrepr }}
_OUTPUTS_PATH = {{ outputs_path | pyrepr }}
_WORKSPACE = {{ workspace | pyrepr }}
_PACKAGES_DIR = {{ packages_dir | pyrepr }}
_DATASET_DIRS = {{ dataset_dirs | pyrepr }}
_TABLE_MAX_ROWS = {{ table_max_rows }}
_PRELUDE = {{ prelude | pyrepr }}

_outputs = []
_original_print = _nbrt_builtins.print


def print(*args, **kwargs):
    target = kwargs.get("file")
    if target is not None and target is not _nbrt_sys.stdout:
        return _original_print(*args, **kwargs)
    buffer = _nbrt_io.StringIO()
    _original_print(*args, **dict(kwargs, file=buffer))
    _outputs.append({"type": "text", "content": buffer.getvalue()})
    _original_print(*args, **kwargs)


def display_df(df, max_rows=_TABLE_MAX_ROWS):
    """Show a DataFrame as a table output."""
    if not hasattr(df, "to_dict") or not hasattr(df, "columns"):
        print(df)
        return
    columns = [str(column) for column in df.columns]
    rows = df.head(max_rows).to_dict("records")
    _outputs.append({
        "type": "table",
        "content": "DataFrame (%d rows, %d cols)" % (len(df), len(columns)),
        "data": {"columns": columns, "rows": rows},
        "mimeType": "application/json",
    })


def display_html(html):
    _outputs.append({"type": "html", "content": str(html), "mimeType": "text/html"})


def display_image(image):
    """Show a matplotlib figure (anything with ``savefig``) or raw PNG bytes."""
    if hasattr(image, "savefig"):
        buffer = _nbrt_io.BytesIO()
        image.savefig(buffer, format="png", bbox_inches="tight")
        image = buffer.getvalue()
    encoded = _nbrt_base64.b64encode(bytes(image)).decode("ascii")
    _outputs.append({"type": "image", "content": encoded, "mimeType": "image/png"})


def resolve_dataset_path(filename, dataset_id=None):
    """Resolve a dataset file across the workspace copies and the read-only mount."""
    roots = [_NbrtPath(item) for item in _DATASET_DIRS]
    candidates = []
    if dataset_id:
        candidates.extend(root / str(dataset_id) / filename for root in roots)
        suffix = "".join(char for char in str(dataset_id) if char.isalnum())[:8]
        if suffix:
            name = _NbrtPath(filename)
            alias = "%s__%s%s" % (name.stem, suffix, name.suffix)
            candidates.extend(root / alias for root in roots)
    candidates.extend(root / filename for root in roots)
    candidates.append(_NbrtPath(_WORKSPACE) / filename)
    for candidate in candidates:
        if candidate.exists():
            return str(candidate)
    for root in roots:
        if root.exists():
            for match in root.rglob(filename):
                return str(match)
    return str(candidates[0])


def _echo(value):
    if value is None:
        return
    if hasattr(value, "to_dict") and hasattr(value, "columns"):
        display_df(value)
        return
    _outputs.append({"type": "text", "content": repr(value)})


_namespace = {
    "__name__": "__main__",
    "__builtins__": _nbrt_builtins,
    "print": print,
    "display_df": display_df,
    "display_html": display_html,
    "display_image": display_image,
    "resolve_dataset_path": resolve_dataset_path,
}


def _load_prelude():
    for alias, module in _PRELUDE:
        try:
            if _nbrt_importlib_util.find_spec(module) is not None:
                _namespace[alias] = _nbrt_importlib.import_module(module)
        except Exception as exc:
            _original_print("prelude: %s unavailable (%s)" % (module, exc), file=_nbrt_sys.stderr)


def _run():
    _nbrt_os.chdir(_WORKSPACE)
    if _PACKAGES_DIR not in _nbrt_sys.path:
        _nbrt_sys.path.insert(0, _PACKAGES_DIR)
    _load_prelude()
    tree = _nbrt_ast.parse(_SOURCE, filename="<cell>", mode="exec")
    tail = None
    if tree.body and isinstance(tree.body[-1], _nbrt_ast.Expr):
        tail = _nbrt_ast.Expression(tree.body.pop().value)
    exec(compile(tree, "<cell>", "exec"), _namespace)
    if tail is not None:
        _echo(eval(compile(tail, "<cell>", "eval"), _namespace))


try:
    _run()
except SystemExit as exc:
    if exc.code not in (None, 0):
        _outputs.append({"type": "error", "content": "SystemExit: %s" % (exc.code,)})
except BaseException:
    _outputs.append({"type": "error", "content": _nbrt_traceback.format_exc()})
finally:
    with open(_OUTPUTS_PATH, "w", encoding="utf-8") as _handle:
        _nbrt_json.dump(_outputs, _handle, default=str)
'''


@dataclass(frozen=True, slots=True)
class WrapperPaths:
    """Paths as the sandbox interpreter sees them."""

    workspace: str
    packages_dir: str
    dataset_dirs: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ScriptNames:
    script: str
    outputs: str


def _pyrepr(value: object) -> str:
    if isinstance(value, tuple):
        value = list(value)
    return repr(value)


_ENVIRONMENT = jinja2.Environment(
    autoescape=False,
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
)
_ENVIRONMENT.filters["pyrepr"] = _pyrepr


def script_names(execution_id: str | None) -> ScriptNames:
    safe = _UNSAFE_ID_CHARS.sub("", execution_id or "")[:32]
    suffix = f"_{safe}" if safe else ""
    return ScriptNames(script=f"_exec_code{suffix}.py", outputs=f"_outputs{suffix}.json")


def render_wrapper(
    code: str,
    *,
    outputs_path: str,
    paths: WrapperPaths,
    prelude: Sequence[tuple[str, str]] = (("pd", "pandas"), ("np", "numpy")),
) -> str:
    template = _ENVIRONMENT.from_string(_WRAPPER_TEMPLATE)
    return template.render(
        code=code,
        outputs_path=outputs_path,
        workspace=paths.workspace,
        packages_dir=paths.packages_dir,
        dataset_dirs=list(paths.dataset_dirs),
        table_max_rows=TABLE_MAX_ROWS,
        prelude=[list(item) for item in prelude],
    )


def read_outputs(outputs_file: Path, stdout: str) -> tuple[CellOutput, ...]:
    """Outputs recorded by the wrapper; stdout as one text output if the file is missing."""

    try:
        raw = json.loads(outputs_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return (CellOutput.text(stdout),) if stdout.strip() else ()
    if not isinstance(raw, list):
        return (CellOutput.text(stdout),) if stdout.strip() else ()
    return outputs_from_json(raw)


def build_result(
    *,
    returncode: int | None,
    stdout: str,
    stderr: str,
    outputs: Sequence[CellOutput],
    duration_ms: int,
) -> ExecutionResult:
    collected = list(outputs)
    if returncode not in (0, None) and stderr.strip():
        collected.append(CellOutput.error(stderr))
    first_error = next(
        (item.content for item in collected if item.kind is OutputKind.ERROR), None
    )
    failed = returncode != 0 or first_error is not None
    return ExecutionResult(
        status=ExecutionStatus.ERROR if failed else ExecutionStatus.SUCCESS,
        stdout=stdout,
        stderr=stderr if stderr or not failed else (first_error or ""),
        outputs=tuple(collected),
        duration_ms=duration_ms,
        error=(stderr or first_error or f"exit code {returncode}") if failed else None,
    )


def timeout_result(*, stdout: str, stderr: str, timeout_ms: int) -> ExecutionResult:
    return ExecutionResult(
        status=ExecutionStatus.TIMEOUT,
        stdout=stdout,
        stderr=stderr,
        outputs=(CellOutput.error(TIMEOUT_MESSAGE),),
        duration_ms=timeout_ms,
        error=TIMEOUT_MESSAGE,
    )


__all__ = [
    "TABLE_MAX_ROWS",
    "TIMEOUT_MESSAGE",
    "ScriptNames",
    "WrapperPaths",
    "build_result",
    "read_outputs",
    "render_wrapper",
    "script_names",
    "timeout_result",
]
