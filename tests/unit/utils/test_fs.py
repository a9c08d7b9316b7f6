from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from notebook_runtime.utils.fs import atomic_copy, atomic_write, is_within, safe_delete

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_write_replaces_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "manifest.json"

    atomic_write(target, "{}")
    atomic_write(target, b'{"a": 1}')

    assert target.read_bytes() == b'{"a": 1}'
    assert [item.name for item in tmp_path.iterdir()] == ["manifest.json"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "x.txt", "x")


def test_atomic_copy_creates_parents(tmp_path: Path) -> None:
    source = tmp_path / "sales.csv"
    source.write_text("a,b\n1,2\n", encoding="utf-8")

    atomic_copy(source, tmp_path / "ws" / "data" / "sales.csv")

    assert (tmp_path / "ws" / "data" / "sales.csv").read_text(encoding="utf-8") == "a,b\n1,2\n"


def test_is_within(tmp_path: Path) -> None:
    inner = tmp_path / "inner"
    inner.mkdir()
    (inner / "file.txt").write_text("x", encoding="utf-8")

    assert is_within(inner / "file.txt", tmp_path)
    assert not is_within(tmp_path, inner)
    assert not is_within(inner / "missing.txt", tmp_path)


def test_safe_delete_removes_files_and_trees(tmp_path: Path) -> None:
    tree = tmp_path / "tree"
    (tree / "nested").mkdir(parents=True)
    (tree / "nested" / "a.txt").write_text("a", encoding="utf-8")
    single = tmp_path / "single.txt"
    single.write_text("b", encoding="utf-8")

    safe_delete(tree, tmp_path)
    safe_delete(single, tmp_path)
    safe_delete(tmp_path / "never-existed", tmp_path)

    assert not tree.exists()
    assert not single.exists()


def test_safe_delete_refuses_outside_and_root(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside.txt"
    outside.write_text("keep", encoding="utf-8")

    with pytest.raises(ValueError, match="outside root"):
        safe_delete(outside, root)
    with pytest.raises(ValueError, match="outside root"):
        safe_delete(root, root)
    assert outside.exists()


def test_safe_delete_unlinks_symlink_without_following(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    target_dir = tmp_path / "precious"
    target_dir.mkdir()
    (target_dir / "data.txt").write_text("keep", encoding="utf-8")
    link = root / "link"
    os.symlink(target_dir, link)

    safe_delete(link, root)

    assert not link.exists() and not link.is_symlink()
    assert (target_dir / "data.txt").read_text(encoding="utf-8") == "keep"
