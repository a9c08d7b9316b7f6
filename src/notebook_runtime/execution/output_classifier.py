"""Split run outputs into inline outputs and stored output references."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Final

import structlog

from notebook_runtime.constants import DEFAULT_INLINE_OUTPUT_MAX_BYTES
from notebook_runtime.domain.models import CellOutput, OutputKind, OutputRef
from notebook_runtime.persistence.cell_store import CellStore

_EXTENSIONS: Final[dict[OutputKind, str]] = {
    OutputKind.IMAGE: "png",
    OutputKind.HTML: "html",
    OutputKind.TABLE: "json",
    OutputKind.CHART: "json",
}

_MIME_TYPES: Final[dict[str, str]] = {
    "png": "image/png",
    "html": "text/html",
    "json": "application/json",
    "txt": "text/plain",
}


@dataclass(frozen=True, slots=True)
class Classification:
    inline: tuple[CellOutput, ...] = ()
    refs: tuple[OutputRef, ...] = ()


def extension_for(kind: OutputKind) -> str:
    return _EXTENSIONS.get(kind, "txt")


class OutputClassifier:
    """Keep small outputs on the cell row; store the rest through the cell store."""

    def __init__(
        self,
        store: CellStore,
        *,
        inline_max_bytes: int = DEFAULT_INLINE_OUTPUT_MAX_BYTES,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        if inline_max_bytes < 0:
            raise ValueError("inline_max_bytes must be >= 0")
        self._store = store
        self._threshold = inline_max_bytes
        self._clock_ms = clock_ms or (lambda: time.time_ns() // 1_000_000)
        self._last_ms = 0
        self._lock = threading.Lock()
        self._logger = structlog.get_logger(__name__)

    @property
    def inline_max_bytes(self) -> int:
        return self._threshold

    def classify(self, cell_id: str, outputs: Sequence[CellOutput]) -> Classification:
        inline: list[CellOutput] = []
        refs: list[OutputRef] = []
        stamp: int | None = None
        for index, output in enumerate(outputs):
            if output.byte_size <= self._threshold:
                inline.append(output)
                continue
            if stamp is None:
                stamp = self._next_stamp()
            ext = extension_for(output.kind)
            # Stored as the UTF-8 content itself (base64 for images), so the
            # ref's byte size is the size the threshold was checked against.
            ref = self._store.save_large_output(
                cell_id,
                f"output_{index}_{stamp}.{ext}",
                output.content.encode("utf-8"),
                kind=output.kind,
                mime_type=output.mime_type or _MIME_TYPES[ext],
            )
            self._logger.info(
                "output_stored",
                cell_id=cell_id,
                output_kind=output.kind.value,
                ref=ref.ref,
                byte_size=ref.byte_size,
            )
            refs.append(ref)
        return Classification(inline=tuple(inline), refs=tuple(refs))

    def _next_stamp(self) -> int:
        # Strictly increasing so two calls within one millisecond never collide.
        with self._lock:
            stamp = max(int(self._clock_ms()), self._last_ms + 1)
            self._last_ms = stamp
            return stamp


__all__ = ["Classification", "OutputClassifier", "extension_for"]
