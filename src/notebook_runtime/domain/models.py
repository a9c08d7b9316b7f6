"""
notebook-runtime — domain models.

File: src/notebook_runtime/domain/models.py

Purpose
- Typed records shared by the sandbox, execution and persistence layers.
- Canonical dict serialization for everything that crosses a storage or
  broadcast boundary (cells, outputs, output refs).

Notes
- Timestamps are timezone-aware UTC and serialize as ISO-8601 with a ``Z``
  suffix.
- Output payloads are JSON-compatible; ``CellOutput.data`` carries the
  structured form of table/chart outputs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn, TypeAlias, TypeVar

from notebook_runtime.errors import ExecutionFailure

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=StrEnum)

PREVIEW_LENGTH = 100


class CellKind(StrEnum):
    CODE = "code"
    MARKDOWN = "markdown"


class CellStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class OutputKind(StrEnum):
    TEXT = "text"
    ERROR = "error"
    TABLE = "table"
    CHART = "chart"
    IMAGE = "image"
    HTML = "html"


class ExecutionStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class SandboxBackendKind(StrEnum):
    LOCAL = "local"
    DOCKER = "docker"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    return value


def _is_path_segment(value: object) -> bool:
    if not isinstance(value, str) or value in {"", ".", ".."}:
        return False
    return "/" not in value and "\\" not in value and "\x00" not in value


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def as_utc_datetime(value: object, path: str = "datetime") -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def datetime_to_iso8601z(value: datetime) -> str:
    normalized = as_utc_datetime(value)
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _optional_iso(value: datetime | None) -> str | None:
    return None if value is None else datetime_to_iso8601z(value)


@dataclass(frozen=True, slots=True)
class CellOutput:
    """One rendered output produced by a cell run."""

    kind: OutputKind
    content: str
    data: JSONValue = None
    mime_type: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(OutputKind, self.kind, "CellOutput.kind"))
        if not isinstance(self.content, str):
            _fail("CellOutput.content", f"expected string, got {type(self.content).__name__}")

    @property
    def byte_size(self) -> int:
        return len(self.content.encode("utf-8"))

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"type": self.kind.value, "content": self.content}
        if self.data is not None:
            payload["data"] = self.data
        if self.mime_type is not None:
            payload["mimeType"] = self.mime_type
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CellOutput:
        raw_kind = data.get("type", data.get("kind"))
        content = data.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        return cls(
            kind=_as_enum(OutputKind, raw_kind, "CellOutput.type"),
            content=content,
            data=data.get("data"),  # type: ignore[arg-type]
            mime_type=_as_optional_str(data.get("mimeType"), "CellOutput.mimeType"),
        )

    @classmethod
    def error(cls, message: str) -> CellOutput:
        return cls(kind=OutputKind.ERROR, content=message)

    @classmethod
    def text(cls, message: str) -> CellOutput:
        return cls(kind=OutputKind.TEXT, content=message)


@dataclass(frozen=True, slots=True)
class OutputRef:
    """Locator for an output payload stored outside the cell row."""

    kind: OutputKind
    ref: str
    mime_type: str
    byte_size: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(OutputKind, self.kind, "OutputRef.kind"))
        _as_int(self.byte_size, "OutputRef.byte_size", minimum=0)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "type": self.kind.value,
            "ref": self.ref,
            "mimeType": self.mime_type,
            "size": self.byte_size,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> OutputRef:
        ref = data.get("ref")
        mime_type = data.get("mimeType")
        if not isinstance(ref, str) or not isinstance(mime_type, str):
            _fail("OutputRef", "ref and mimeType must be strings")
        return cls(
            kind=_as_enum(OutputKind, data.get("type"), "OutputRef.type"),
            ref=ref,
            mime_type=mime_type,
            byte_size=_as_int(data.get("size"), "OutputRef.size", minimum=0),
        )


@dataclass(frozen=True, slots=True)
class Notebook:
    notebook_id: str
    project_id: str
    name: str
    metadata: dict[str, JSONValue] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.notebook_id,
            "projectId": self.project_id,
            "name": self.name,
            "metadata": dict(self.metadata),
            "createdAt": datetime_to_iso8601z(self.created_at),
            "updatedAt": datetime_to_iso8601z(self.updated_at),
        }


@dataclass(frozen=True, slots=True)
class Cell:
    """A notebook cell as persisted by the cell store."""

    cell_id: str
    notebook_id: str
    kind: CellKind
    content: str
    position: int
    title: str | None = None
    execution_count: int = 0
    status: CellStatus = CellStatus.IDLE
    execution_duration_ms: int | None = None
    outputs: tuple[CellOutput, ...] = ()
    output_refs: tuple[OutputRef, ...] = ()
    locked_by: str | None = None
    locked_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(CellKind, self.kind, "Cell.kind"))
        object.__setattr__(self, "status", _as_enum(CellStatus, self.status, "Cell.status"))
        _as_int(self.position, "Cell.position", minimum=0)
        _as_int(self.execution_count, "Cell.execution_count", minimum=0)
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(self, "output_refs", tuple(self.output_refs))

    @property
    def is_code(self) -> bool:
        return self.kind is CellKind.CODE

    def with_updates(self, **changes: object) -> Cell:
        return replace(self, **changes)  # type: ignore[arg-type]

    def summary(self) -> CellSummary:
        return CellSummary(
            cell_id=self.cell_id,
            kind=self.kind,
            title=self.title,
            position=self.position,
            status=self.status,
            execution_count=self.execution_count,
            locked_by=self.locked_by,
            preview=self.content[:PREVIEW_LENGTH],
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.cell_id,
            "notebookId": self.notebook_id,
            "cellType": self.kind.value,
            "title": self.title,
            "content": self.content,
            "position": self.position,
            "executionCount": self.execution_count,
            "executionStatus": self.status.value,
            "executionDurationMs": self.execution_duration_ms,
            "output": [item.to_dict() for item in self.outputs],
            "outputRefs": [item.to_dict() for item in self.output_refs],
            "lockedBy": self.locked_by,
            "lockedAt": _optional_iso(self.locked_at),
            "createdAt": datetime_to_iso8601z(self.created_at),
            "updatedAt": datetime_to_iso8601z(self.updated_at),
        }


@dataclass(frozen=True, slots=True)
class CellSummary:
    cell_id: str
    kind: CellKind
    title: str | None
    position: int
    status: CellStatus
    execution_count: int
    locked_by: str | None
    preview: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.cell_id,
            "cellType": self.kind.value,
            "title": self.title,
            "position": self.position,
            "executionStatus": self.status.value,
            "executionCount": self.execution_count,
            "lockedBy": self.locked_by,
            "preview": self.preview,
        }


@dataclass(frozen=True, slots=True)
class LockStatus:
    locked: bool
    holder: str | None = None
    since: datetime | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {"locked": self.locked, "holder": self.holder, "since": _optional_iso(self.since)}


@dataclass(frozen=True, slots=True)
class DatasetEntry:
    dataset_id: str
    filename: str
    source_path: Path
    project_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_path", Path(self.source_path))
        # Both end up as workspace path segments.
        for label, value in (("dataset_id", self.dataset_id), ("filename", self.filename)):
            if not _is_path_segment(value):
                _fail(f"DatasetEntry.{label}", f"must be a bare path segment, got {value!r}")


@dataclass(frozen=True, slots=True)
class Sandbox:
    """Descriptor of a live per-project sandbox."""

    project_id: str
    sandbox_id: str
    name: str
    backend: SandboxBackendKind
    workspace: Path
    dataset_paths: tuple[Path, ...] = ()
    handle: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    last_used_at: datetime = field(default_factory=utc_now)
    alive: bool = True

    def touched(self, now: datetime | None = None) -> Sandbox:
        return replace(self, last_used_at=now or utc_now())

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "projectId": self.project_id,
            "sandboxId": self.sandbox_id,
            "name": self.name,
            "backend": self.backend.value,
            "workspace": str(self.workspace),
            "datasetPaths": [str(item) for item in self.dataset_paths],
            "handle": self.handle,
            "createdAt": datetime_to_iso8601z(self.created_at),
            "lastUsedAt": datetime_to_iso8601z(self.last_used_at),
            "alive": self.alive,
        }


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    status: ExecutionStatus
    stdout: str = ""
    stderr: str = ""
    outputs: tuple[CellOutput, ...] = ()
    duration_ms: int = 0
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "status", _as_enum(ExecutionStatus, self.status, "ExecutionResult.status")
        )
        object.__setattr__(self, "outputs", tuple(self.outputs))

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS

    @classmethod
    def failure(cls, message: str, *, duration_ms: int = 0) -> ExecutionResult:
        return cls(
            status=ExecutionStatus.ERROR,
            stderr=message,
            outputs=(CellOutput.error(message),),
            duration_ms=duration_ms,
            error=message,
        )

    def raise_for_status(self) -> None:
        """Raise ``ExecutionFailure`` unless the run succeeded."""

        if self.succeeded:
            return
        raise ExecutionFailure(
            self.error or self.status.value,
            timed_out=self.status is ExecutionStatus.TIMEOUT,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "outputs": [item.to_dict() for item in self.outputs],
            "durationMs": self.duration_ms,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class Completion:
    name: str
    complete: str
    type: str
    signature: str | None = None
    docstring: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "complete": self.complete,
            "type": self.type,
            "signature": self.signature,
            "docstring": self.docstring,
        }


@dataclass(frozen=True, slots=True)
class PackageInfo:
    name: str
    version: str
    summary: str = ""
    homepage: str = ""

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "version": self.version,
            "summary": self.summary,
            "homepage": self.homepage,
        }


@dataclass(frozen=True, slots=True)
class InstallResult:
    success: bool
    message: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"success": self.success, "message": self.message}


def outputs_from_json(raw: Sequence[object]) -> tuple[CellOutput, ...]:
    parsed: list[CellOutput] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            _fail(f"outputs[{index}]", f"expected object, got {type(item).__name__}")
        parsed.append(CellOutput.from_dict(item))
    return tuple(parsed)


def refs_from_json(raw: Sequence[object]) -> tuple[OutputRef, ...]:
    parsed: list[OutputRef] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            _fail(f"output_refs[{index}]", f"expected object, got {type(item).__name__}")
        parsed.append(OutputRef.from_dict(item))
    return tuple(parsed)


__all__ = [
    "PREVIEW_LENGTH",
    "Cell",
    "CellKind",
    "CellOutput",
    "CellStatus",
    "CellSummary",
    "Completion",
    "DatasetEntry",
    "ExecutionResult",
    "ExecutionStatus",
    "InstallResult",
    "JSONValue",
    "LockStatus",
    "Notebook",
    "OutputKind",
    "OutputRef",
    "PackageInfo",
    "Sandbox",
    "SandboxBackendKind",
    "as_utc_datetime",
    "datetime_to_iso8601z",
    "outputs_from_json",
    "refs_from_json",
    "utc_now",
]
