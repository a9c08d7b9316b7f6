"""
notebook-runtime — sandboxed execution runtime for notebook cells.

File: src/notebook_runtime/__init__.py

Purpose
- Package root. Exposes the version and the runtime facade.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Heavy submodules load on first attribute access only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

__version__ = "0.1.0"

if TYPE_CHECKING:
    from notebook_runtime.runtime import NotebookRuntime


def __getattr__(name: str) -> Any:
    if name == "NotebookRuntime":
        from notebook_runtime.runtime import NotebookRuntime

        return NotebookRuntime
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["NotebookRuntime", "__version__"]
