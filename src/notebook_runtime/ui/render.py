"""Human-readable CLI output on top of a ``rich`` console.

File: src/notebook_runtime/ui/render.py

Colour is used only when stdout is a terminal and neither ``NO_COLOR`` nor
``--no-color`` is set. Without colour every method prints plain text, so
output piped into a file or another agent stays greppable.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

from rich import box
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Sequence


def wants_color(no_color_flag: bool) -> bool:
    if no_color_flag or os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


class CLIRenderer:
    def __init__(
        self, *, no_color: bool = False, verbose: bool = False, console: Console | None = None
    ) -> None:
        self.verbose = verbose
        self.color = wants_color(no_color)
        self.console = console or Console(no_color=not self.color, highlight=False, soft_wrap=True)

    def _line(self, *parts: tuple[str, str]) -> None:
        self.console.print(Text.assemble(*parts))

    def heading(self, text: str) -> None:
        self._line((text, "bold"))

    def section(self, title: str) -> None:
        self.console.print()
        self._line((title, "bold underline"))

    def kv(self, key: str, value: object) -> None:
        self._line((f"{key}: ", "bold"), (str(value), ""))

    def text(self, line: str) -> None:
        self._line((line, ""))

    def warning(self, text: str) -> None:
        self._line((f"  Warning: {text}", "yellow"))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._line((f"  {prefix}{entry}", ""))

    def ok(self, label: str) -> None:
        self._line(("  OK  ", "green"), (label, ""))

    def fail(self, label: str) -> None:
        self._line(("  FAIL  ", "red"), (label, ""))

    def table(
        self, headers: Sequence[str], rows: Sequence[Sequence[object]], *, title: str | None = None
    ) -> None:
        """Print ``rows`` under ``headers``; an empty ``rows`` prints nothing."""

        if not rows:
            return
        grid = Table(title=title, box=box.SIMPLE if self.color else box.ASCII2)
        for header in headers:
            grid.add_column(header, overflow="fold")
        for row in rows:
            grid.add_row(*map(str, row))
        self.console.print(grid)

    def code(self, source: str, *, first_line: int = 1) -> None:
        """Cell source with line numbers (the numbers ``notebook edit --lines`` takes)."""

        if self.color:
            self.console.print(
                Syntax(source, "python", line_numbers=True, start_line=first_line, word_wrap=True)
            )
            return
        lines = source.split("\n")
        width = len(str(first_line + len(lines) - 1))
        for number, line in enumerate(lines, start=first_line):
            self._line((f"{number:>{width}} | ", "dim"), (line, ""))


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer", "wants_color"]
