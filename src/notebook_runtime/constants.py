"""Stable constants shared across the runtime."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Lock protocol.
DEFAULT_LOCK_STALENESS_SECONDS: Final[float] = 60.0
DEFAULT_AGENT_HOLDER: Final[str] = "ai"

# Output classification.
DEFAULT_INLINE_OUTPUT_MAX_BYTES: Final[int] = 10 * 1024

# Sandbox limits and lifecycle.
DEFAULT_TIMEOUT_MS: Final[int] = 30_000
MAX_TIMEOUT_MS: Final[int] = 300_000
DEFAULT_MEMORY_MB: Final[int] = 2048
DEFAULT_CPU_PERCENT: Final[int] = 100
DEFAULT_TMPFS_MB: Final[int] = 512
DEFAULT_IDLE_TIMEOUT_SECONDS: Final[float] = 30 * 60.0
DEFAULT_REAP_INTERVAL_SECONDS: Final[float] = 5 * 60.0
PACKAGE_INSTALL_TIMEOUT_SECONDS: Final[float] = 120.0
AUXILIARY_TIMEOUT_SECONDS: Final[float] = 15.0
SANDBOX_NAME_PREFIX: Final[str] = "nbrt-exec-"
SANDBOX_MARKER_FILENAME: Final[str] = ".sandbox.json"
DEFAULT_PYTHON_VERSION: Final[str] = "3.11"

# Workspace layout (relative to a sandbox workspace root).
WORKSPACE_DATASETS_DIR: Final[PurePosixPath] = PurePosixPath("datasets")
WORKSPACE_PACKAGES_DIR: Final[PurePosixPath] = PurePosixPath(".python")
WORKSPACE_TMP_DIR: Final[PurePosixPath] = PurePosixPath(".tmp")
WORKSPACE_PIP_CACHE_DIR: Final[PurePosixPath] = PurePosixPath(".cache/pip")
DATASET_MANIFEST_FILENAME: Final[str] = "_manifest.json"

# Packages preinstalled in the runtime image.
DEFAULT_PACKAGES: Final[tuple[str, ...]] = (
    "numpy",
    "pandas",
    "scikit-learn",
    "matplotlib",
    "seaborn",
    "scipy",
    "plotly",
)

__all__ = [
    "AUXILIARY_TIMEOUT_SECONDS",
    "CONFIG_SCHEMA_VERSION",
    "DATASET_MANIFEST_FILENAME",
    "DEFAULT_AGENT_HOLDER",
    "DEFAULT_CPU_PERCENT",
    "DEFAULT_IDLE_TIMEOUT_SECONDS",
    "DEFAULT_INLINE_OUTPUT_MAX_BYTES",
    "DEFAULT_LOCK_STALENESS_SECONDS",
    "DEFAULT_MEMORY_MB",
    "DEFAULT_PACKAGES",
    "DEFAULT_PYTHON_VERSION",
    "DEFAULT_REAP_INTERVAL_SECONDS",
    "DEFAULT_TIMEOUT_MS",
    "DEFAULT_TMPFS_MB",
    "MAX_TIMEOUT_MS",
    "PACKAGE_INSTALL_TIMEOUT_SECONDS",
    "SANDBOX_MARKER_FILENAME",
    "SANDBOX_NAME_PREFIX",
    "STATE_DB_SCHEMA_VERSION",
    "WORKSPACE_DATASETS_DIR",
    "WORKSPACE_PACKAGES_DIR",
    "WORKSPACE_PIP_CACHE_DIR",
    "WORKSPACE_TMP_DIR",
]
