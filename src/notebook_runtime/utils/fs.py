"""
notebook-runtime — filesystem helpers for workspaces and output files.

File: src/notebook_runtime/utils/fs.py

Purpose
- Replace files in one step, so a sandbox or a concurrent reader never sees
  a half-written dataset copy, marker or stored output.
- Delete inside a known root only; sandbox teardown must never follow a
  symlink a cell planted into a host directory.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

PathLike = str | os.PathLike[str]


@contextmanager
def _staged_replacement(target: Path) -> Iterator[Path]:
    """Yield a temp path next to ``target``; move it over ``target`` on success."""

    fd, staged_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    os.close(fd)
    staged = Path(staged_name)
    try:
        yield staged
        os.replace(staged, target)
    finally:
        with suppress(OSError):
            staged.unlink(missing_ok=True)


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Write ``data`` to ``path`` durably (fsync) and atomically.

    The parent directory must already exist (``FileNotFoundError`` otherwise).
    """

    target = Path(path)
    parent = target.parent.resolve(strict=True)
    if not parent.is_dir():
        raise NotADirectoryError(f"{parent} is not a directory")
    payload = data.encode(encoding) if isinstance(data, str) else data
    with _staged_replacement(parent / target.name) as staged, staged.open("wb") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())


def atomic_copy(source: PathLike, destination: PathLike) -> None:
    """Copy ``source`` to ``destination``, creating parent directories."""

    target = Path(destination)
    target.parent.mkdir(parents=True, exist_ok=True)
    with _staged_replacement(target) as staged:
        shutil.copyfile(source, staged)


def is_within(child: PathLike, parent: PathLike) -> bool:
    """True when both paths exist and ``child`` resolves inside directory ``parent``."""

    try:
        outer = Path(parent).resolve(strict=True)
        inner = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False
    return outer.is_dir() and inner.is_relative_to(outer)


def safe_delete(path: PathLike, root: PathLike) -> None:
    """Remove ``path`` (file, tree or symlink) if it lives strictly inside ``root``.

    Missing paths are ignored. A symlink is removed itself; its target is
    never touched. Raises ``ValueError`` for anything outside ``root`` or for
    ``root`` itself.
    """

    boundary = Path(root).resolve(strict=True)
    if not boundary.is_dir():
        raise NotADirectoryError(f"{boundary} is not a directory")

    target = Path(path)
    if not target.is_symlink() and not target.exists():
        return
    # Resolve the parent only: the leaf may be a link pointing anywhere.
    located = target.parent.resolve(strict=True) / target.name
    if located == boundary or not located.is_relative_to(boundary):
        raise ValueError(f"refusing to delete path outside root: {target}")

    if target.is_symlink():
        target.unlink()
    elif not target.resolve(strict=True).is_relative_to(boundary):
        raise ValueError(f"refusing to delete path outside root: {target}")
    elif target.is_dir():
        shutil.rmtree(target)
    else:
        target.unlink()


__all__ = ["atomic_copy", "atomic_write", "is_within", "safe_delete"]
