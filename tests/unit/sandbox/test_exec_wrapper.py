"""
notebook-runtime — unit tests for the cell execution wrapper

File: tests/unit/sandbox/test_exec_wrapper.py

Purpose
- Render the wrapper for representative cells, run it with the current
  interpreter, and check the outputs file it leaves behind.
- Cover result building for exit codes, stderr and timeouts.
"""

from __future__ import annotations

import base64
import json
import subprocess
import sys
from pathlib import Path

import pytest

from notebook_runtime.domain.models import CellOutput, ExecutionStatus, OutputKind
from notebook_runtime.sandbox.exec_wrapper import (
    TIMEOUT_MESSAGE,
    WrapperPaths,
    build_result,
    read_outputs,
    render_wrapper,
    script_names,
    timeout_result,
)


def _run_cell(tmp_path: Path, code: str, *, dataset_dirs: tuple[str, ...] = ()) -> list[dict]:
    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)
    names = script_names("exec-01TEST")
    outputs_path = workspace / names.outputs
    script = render_wrapper(
        code,
        outputs_path=str(outputs_path),
        paths=WrapperPaths(
            workspace=str(workspace),
            packages_dir=str(workspace / ".python"),
            dataset_dirs=dataset_dirs,
        ),
        prelude=(),
    )
    script_path = workspace / names.script
    script_path.write_text(script, encoding="utf-8")
    subprocess.run(
        [sys.executable, str(script_path)],
        cwd=workspace,
        capture_output=True,
        text=True,
        timeout=60,
        check=False,
    )
    return json.loads(outputs_path.read_text(encoding="utf-8"))


def test_script_names_sanitize_execution_id() -> None:
    assert script_names("exec-01ABC/../x") == script_names("exec-01ABCx")
    assert script_names("exec-01ABC").script == "_exec_code_exec-01ABC.py"
    assert script_names(None).outputs == "_outputs.json"


def test_rendered_wrapper_embeds_code_as_literal() -> None:
    code = "print('''tricky {{ braces }} and \"quotes\"''')"

    script = render_wrapper(
        code,
        outputs_path="/workspace/_outputs.json",
        paths=WrapperPaths("/workspace", "/workspace/.python", ("/data",)),
    )

    assert f"_SOURCE = {code!r}" in script
    assert "_DATASET_DIRS = ['/data']" in script
    assert "_PRELUDE = [['pd', 'pandas'], ['np', 'numpy']]" in script
    compile(script, "<wrapper>", "exec")


def test_print_and_trailing_expression_become_text_outputs(tmp_path: Path) -> None:
    outputs = _run_cell(tmp_path, "x = 20\nprint('hello', x)\nx + 22")

    assert outputs == [
        {"type": "text", "content": "hello 20\n"},
        {"type": "text", "content": "42"},
    ]


def test_exception_becomes_single_error_output(tmp_path: Path) -> None:
    outputs = _run_cell(tmp_path, "print('before')\n1 / 0\nprint('after')")

    assert [item["type"] for item in outputs] == ["text", "error"]
    assert "ZeroDivisionError" in outputs[1]["content"]


def test_display_helpers_and_dataset_resolution(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "sales.csv").write_text("a\n1\n", encoding="utf-8")
    code = "\n".join(
        [
            "display_html('<b>hi</b>')",
            "display_image(b'\\x89PNG')",
            "open(resolve_dataset_path('sales.csv')).read().count('\\n')",
        ]
    )

    outputs = _run_cell(tmp_path, code, dataset_dirs=(str(data_dir),))

    assert outputs[0] == {"type": "html", "content": "<b>hi</b>", "mimeType": "text/html"}
    assert base64.b64decode(outputs[1]["content"]) == b"\x89PNG"
    assert outputs[2] == {"type": "text", "content": "2"}


def test_nonzero_system_exit_is_an_error(tmp_path: Path) -> None:
    outputs = _run_cell(tmp_path, "import sys\nsys.exit(3)")

    assert outputs == [{"type": "error", "content": "SystemExit: 3"}]


def test_read_outputs_falls_back_to_stdout(tmp_path: Path) -> None:
    missing = tmp_path / "missing.json"
    garbage = tmp_path / "garbage.json"
    garbage.write_text("{not json", encoding="utf-8")

    assert read_outputs(missing, "raw\n") == (CellOutput.text("raw\n"),)
    assert read_outputs(garbage, "  ") == ()


@pytest.mark.parametrize(
    ("returncode", "stderr", "outputs", "status"),
    [
        (0, "", (CellOutput.text("ok"),), ExecutionStatus.SUCCESS),
        (0, "", (CellOutput.error("Traceback"),), ExecutionStatus.ERROR),
        (1, "Killed\n", (), ExecutionStatus.ERROR),
        (137, "", (), ExecutionStatus.ERROR),
    ],
)
def test_build_result_status(
    returncode: int, stderr: str, outputs: tuple[CellOutput, ...], status: ExecutionStatus
) -> None:
    result = build_result(
        returncode=returncode, stdout="", stderr=stderr, outputs=outputs, duration_ms=7
    )

    assert result.status is status
    assert result.duration_ms == 7
    if status is ExecutionStatus.ERROR:
        assert result.error
    else:
        assert result.error is None


def test_build_result_appends_stderr_on_crash() -> None:
    result = build_result(
        returncode=1, stdout="", stderr="Segmentation fault", outputs=(), duration_ms=1
    )

    assert result.outputs == (CellOutput.error("Segmentation fault"),)
    assert result.error == "Segmentation fault"
    assert build_result(
        returncode=137, stdout="", stderr="", outputs=(), duration_ms=1
    ).error == "exit code 137"


def test_timeout_result() -> None:
    result = timeout_result(stdout="partial", stderr="", timeout_ms=1500)

    assert result.status is ExecutionStatus.TIMEOUT
    assert result.duration_ms == 1500
    assert result.outputs[0].kind is OutputKind.ERROR
    assert result.error == TIMEOUT_MESSAGE
