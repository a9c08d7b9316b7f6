"""Per-project sandboxes: lifecycle, backends, execution wrapper, packages and dataset sync."""

from notebook_runtime.sandbox.backends import (
    CommandResult,
    DockerBackend,
    LocalBackend,
    SandboxBackend,
    create_backend,
    kill_process_tree,
    run_command,
)
from notebook_runtime.sandbox.exec_wrapper import TIMEOUT_MESSAGE, WrapperPaths, render_wrapper
from notebook_runtime.sandbox.sandbox_manager import SandboxLifecycleManager
from notebook_runtime.sandbox.workspace_sync import (
    CatalogDatasetLocator,
    CatalogLoadError,
    DatasetLocator,
    StaticDatasetLocator,
    SyncReport,
    WorkspaceSynchronizer,
)

__all__ = [
    "CatalogDatasetLocator",
    "CatalogLoadError",
    "CommandResult",
    "DatasetLocator",
    "DockerBackend",
    "LocalBackend",
    "SandboxBackend",
    "SandboxLifecycleManager",
    "StaticDatasetLocator",
    "SyncReport",
    "TIMEOUT_MESSAGE",
    "WorkspaceSynchronizer",
    "WrapperPaths",
    "create_backend",
    "kill_process_tree",
    "render_wrapper",
    "run_command",
]
