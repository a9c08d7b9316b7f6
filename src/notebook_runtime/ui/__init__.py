"""UI package exports for the CLI and its renderer."""

from notebook_runtime.ui.cli import CLIError, build_parser, run_cli
from notebook_runtime.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
