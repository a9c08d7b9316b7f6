"""
notebook-runtime persistence package public API.

File: src/notebook_runtime/persistence/__init__.py

Purpose
- Export the SQLite state DB helper and the notebook/cell store built on it.
"""

from notebook_runtime.persistence.cell_store import (
    DEFAULT_NOTEBOOK_NAME,
    OUTPUT_REF_ROOT,
    CellStore,
)
from notebook_runtime.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
    canonical_json,
)

__all__ = [
    "CellStore",
    "DEFAULT_NOTEBOOK_NAME",
    "OUTPUT_REF_ROOT",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
