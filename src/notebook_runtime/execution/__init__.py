"""Cell execution: lock protocol, output classification and the run orchestrator."""

from notebook_runtime.execution.locks import CellLockProtocol
from notebook_runtime.execution.orchestrator import (
    ExecutionOrchestrator,
    RunOutcome,
    SandboxRunner,
    WorkspaceSync,
)
from notebook_runtime.execution.output_classifier import (
    Classification,
    OutputClassifier,
    extension_for,
)

__all__ = [
    "CellLockProtocol",
    "Classification",
    "ExecutionOrchestrator",
    "OutputClassifier",
    "RunOutcome",
    "SandboxRunner",
    "WorkspaceSync",
    "extension_for",
]
