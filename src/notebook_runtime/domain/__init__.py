"""
notebook-runtime — domain layer

File: src/notebook_runtime/domain/__init__.py

Purpose
- Domain types shared across layers: Cell, Notebook, Sandbox, outputs,
  execution results and broadcast events.

Non-functional requirements
- Domain layer is free of IO side effects.
"""

from notebook_runtime.domain.events import EventType, NotebookEvent
from notebook_runtime.domain.models import (
    Cell,
    CellKind,
    CellOutput,
    CellStatus,
    CellSummary,
    Completion,
    DatasetEntry,
    ExecutionResult,
    ExecutionStatus,
    InstallResult,
    LockStatus,
    Notebook,
    OutputKind,
    OutputRef,
    PackageInfo,
    Sandbox,
    SandboxBackendKind,
)

__all__ = [
    "Cell",
    "CellKind",
    "CellOutput",
    "CellStatus",
    "CellSummary",
    "Completion",
    "DatasetEntry",
    "EventType",
    "ExecutionResult",
    "ExecutionStatus",
    "InstallResult",
    "LockStatus",
    "Notebook",
    "NotebookEvent",
    "OutputKind",
    "OutputRef",
    "PackageInfo",
    "Sandbox",
    "SandboxBackendKind",
]
