from __future__ import annotations

import base64
import itertools
from typing import TYPE_CHECKING

import pytest

from notebook_runtime.domain.models import CellOutput, OutputKind
from notebook_runtime.execution.output_classifier import OutputClassifier, extension_for
from tests.unit.persistence import make_store

if TYPE_CHECKING:
    from pathlib import Path

    from notebook_runtime.persistence.cell_store import CellStore


def _store_with_cell(tmp_path: Path) -> tuple[CellStore, str]:
    store = make_store(tmp_path)
    notebook = store.ensure_notebook("proj-outputs")
    return store, store.create_cell(notebook.notebook_id, "x").cell_id


def test_outputs_at_or_below_threshold_stay_inline(tmp_path: Path) -> None:
    store, cell_id = _store_with_cell(tmp_path)
    classifier = OutputClassifier(store, inline_max_bytes=10)
    exact = CellOutput.text("a" * 10)
    over = CellOutput.text("b" * 11)

    result = classifier.classify(cell_id, [exact, over])

    assert result.inline == (exact,)
    assert len(result.refs) == 1
    ref = result.refs[0]
    assert ref.kind is OutputKind.TEXT
    assert ref.mime_type == "text/plain"
    assert ref.byte_size == 11
    assert ref.ref.startswith(f"outputs/{cell_id}/output_1_")
    assert ref.ref.endswith(".txt")
    assert store.resolve_output_ref(ref.ref).read_text(encoding="utf-8") == "b" * 11


def test_threshold_counts_utf8_bytes_not_characters(tmp_path: Path) -> None:
    store, cell_id = _store_with_cell(tmp_path)
    classifier = OutputClassifier(store, inline_max_bytes=4)

    result = classifier.classify(cell_id, [CellOutput.text("ééé")])

    assert result.inline == ()
    assert result.refs[0].byte_size == 6


def test_image_refs_keep_the_size_of_the_base64_output(tmp_path: Path) -> None:
    store, cell_id = _store_with_cell(tmp_path)
    classifier = OutputClassifier(store, inline_max_bytes=10)
    encoded = base64.b64encode(b"\x89PNG\r\n\x1a\n" + bytes(range(192))).decode("ascii")
    outputs = [
        CellOutput(kind=OutputKind.IMAGE, content=encoded),
        CellOutput(kind=OutputKind.IMAGE, content=f"data:image/png;base64,{encoded}"),
    ]

    result = classifier.classify(cell_id, outputs)

    assert result.inline == ()
    assert [ref.mime_type for ref in result.refs] == ["image/png", "image/png"]
    for output, ref in zip(outputs, result.refs, strict=True):
        assert ref.ref.endswith(".png")
        assert ref.byte_size == output.byte_size
        stored = store.resolve_output_ref(ref.ref).read_bytes()
        assert stored == output.content.encode("utf-8")
        assert len(stored) == ref.byte_size


@pytest.mark.parametrize(
    "output",
    [
        CellOutput.text("ü" * 40),
        CellOutput(kind=OutputKind.HTML, content="<p>" + "x" * 40 + "</p>"),
        CellOutput(kind=OutputKind.TABLE, content='{"rows": [' + "1," * 20 + "1]}"),
        CellOutput(kind=OutputKind.IMAGE, content="iVBORw0KGgo" * 8),
    ],
    ids=["text", "html", "table", "image"],
)
def test_every_ref_matches_its_output_byte_size(tmp_path: Path, output: CellOutput) -> None:
    store, cell_id = _store_with_cell(tmp_path)

    (ref,) = OutputClassifier(store, inline_max_bytes=16).classify(cell_id, [output]).refs

    assert ref.byte_size == output.byte_size == len(output.content.encode("utf-8"))


def test_explicit_mime_type_is_preserved(tmp_path: Path) -> None:
    store, cell_id = _store_with_cell(tmp_path)
    classifier = OutputClassifier(store, inline_max_bytes=0)

    result = classifier.classify(
        cell_id, [CellOutput(kind=OutputKind.TABLE, content='{"rows": []}', mime_type="x/rows")]
    )

    assert result.refs[0].mime_type == "x/rows"
    assert result.refs[0].ref.endswith(".json")


def test_stamps_never_collide_within_one_millisecond(tmp_path: Path) -> None:
    store, cell_id = _store_with_cell(tmp_path)
    classifier = OutputClassifier(store, inline_max_bytes=0, clock_ms=lambda: 1_000)

    first = classifier.classify(cell_id, [CellOutput.text("one")])
    second = classifier.classify(cell_id, [CellOutput.text("two")])

    assert first.refs[0].ref != second.refs[0].ref
    assert first.refs[0].ref.endswith("output_0_1000.txt")
    assert second.refs[0].ref.endswith("output_0_1001.txt")


def test_one_stamp_per_classify_call(tmp_path: Path) -> None:
    store, cell_id = _store_with_cell(tmp_path)
    ticks = itertools.count(5_000)
    classifier = OutputClassifier(store, inline_max_bytes=0, clock_ms=lambda: next(ticks))

    result = classifier.classify(
        cell_id, [CellOutput.text("a"), CellOutput(kind=OutputKind.HTML, content="<b>b</b>")]
    )

    names = [ref.ref.rsplit("/", 1)[1] for ref in result.refs]
    assert names == ["output_0_5000.txt", "output_1_5000.html"]


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        (OutputKind.IMAGE, "png"),
        (OutputKind.HTML, "html"),
        (OutputKind.TABLE, "json"),
        (OutputKind.CHART, "json"),
        (OutputKind.TEXT, "txt"),
        (OutputKind.ERROR, "txt"),
    ],
)
def test_extension_for_kind(kind: OutputKind, expected: str) -> None:
    assert extension_for(kind) == expected


def test_negative_threshold_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        OutputClassifier(make_store(tmp_path), inline_max_bytes=-1)
