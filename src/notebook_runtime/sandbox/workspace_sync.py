"""
notebook-runtime — dataset sync into sandbox workspaces.

File: src/notebook_runtime/sandbox/workspace_sync.py

Purpose
- Make a project's dataset files visible to user code under the names users
  expect, whichever convention their code follows.

Functional requirements
- Each dataset lands at ``datasets/{filename}``, ``datasets/{id}/{filename}``
  and ``{filename}`` at the workspace root.
- Destinations are replaced atomically; a missing source is logged and
  skipped.
- When two datasets share a filename the later one also gets an alias
  ``datasets/{stem}__{idprefix8}{ext}`` and does not take over the flat paths.
- ``datasets/_manifest.json`` lists what was synced and carries no wall-clock
  field, so repeated syncs leave an identical workspace.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
import yaml

from notebook_runtime.constants import DATASET_MANIFEST_FILENAME, WORKSPACE_DATASETS_DIR
from notebook_runtime.domain.models import DatasetEntry
from notebook_runtime.persistence.state_db import canonical_json
from notebook_runtime.utils.fs import atomic_copy, atomic_write

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


@runtime_checkable
class DatasetLocator(Protocol):
    def list_datasets(self, project_id: str) -> list[DatasetEntry]: ...


class StaticDatasetLocator:
    """In-memory locator; mainly for tests and embedding."""

    def __init__(self, entries: Mapping[str, Sequence[DatasetEntry]] | None = None) -> None:
        self._entries: dict[str, list[DatasetEntry]] = {
            key: list(value) for key, value in (entries or {}).items()
        }

    def add(self, entry: DatasetEntry) -> None:
        self._entries.setdefault(entry.project_id, []).append(entry)

    def list_datasets(self, project_id: str) -> list[DatasetEntry]:
        return list(self._entries.get(project_id, ()))


class CatalogLoadError(ValueError):
    """Raised when the dataset catalog YAML is malformed."""


class CatalogDatasetLocator:
    """Read datasets from a YAML catalog.

    Layout::

        projects:
          proj-1:
            - id: ds-1
              filename: sales.csv
              path: data/sales.csv   # optional

    Without ``path`` the file is expected at ``{storage_root}/{id}/{filename}``.
    Relative paths resolve against the catalog file's directory. A missing
    catalog file means no datasets.
    """

    def __init__(self, catalog_path: Path, *, storage_root: Path) -> None:
        self._catalog_path = Path(catalog_path)
        self._storage_root = Path(storage_root)

    def list_datasets(self, project_id: str) -> list[DatasetEntry]:
        if not self._catalog_path.is_file():
            return []
        try:
            document = yaml.safe_load(self._catalog_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise CatalogLoadError(f"invalid dataset catalog {self._catalog_path}: {exc}") from exc
        if not isinstance(document, dict):
            raise CatalogLoadError(f"dataset catalog {self._catalog_path} must be a mapping")
        projects = document.get("projects") or {}
        if not isinstance(projects, dict):
            raise CatalogLoadError("'projects' must be a mapping of project id to dataset list")
        items = projects.get(project_id) or []
        if not isinstance(items, list):
            raise CatalogLoadError(f"datasets of project {project_id!r} must be a list")

        entries: list[DatasetEntry] = []
        for index, item in enumerate(items):
            if not isinstance(item, dict) or "id" not in item or "filename" not in item:
                raise CatalogLoadError(
                    f"projects.{project_id}[{index}] needs 'id' and 'filename' keys"
                )
            dataset_id = str(item["id"])
            filename = str(item["filename"])
            raw_path = item.get("path")
            if raw_path:
                source = Path(str(raw_path)).expanduser()
                if not source.is_absolute():
                    source = self._catalog_path.parent / source
            else:
                source = self._storage_root / dataset_id / filename
            try:
                entry = DatasetEntry(
                    dataset_id=dataset_id,
                    filename=filename,
                    source_path=source,
                    project_id=project_id,
                )
            except ValueError as exc:
                raise CatalogLoadError(f"projects.{project_id}[{index}]: {exc}") from exc
            entries.append(entry)
        return entries


@dataclass(frozen=True, slots=True)
class SyncedDataset:
    dataset_id: str
    filename: str
    alias: str | None
    paths: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "datasetId": self.dataset_id,
            "filename": self.filename,
            "alias": self.alias,
            "paths": list(self.paths),
        }


@dataclass(frozen=True, slots=True)
class SyncReport:
    synced: tuple[SyncedDataset, ...] = ()
    skipped: tuple[str, ...] = ()
    collisions: tuple[str, ...] = ()
    manifest_path: Path | None = field(default=None)


def build_alias(filename: str, dataset_id: str) -> str:
    name = Path(filename)
    return f"{name.stem}__{_NON_ALNUM.sub('', dataset_id)[:8]}{name.suffix}"


def _stays_within(destination: Path, root: Path) -> bool:
    return destination.parent.resolve().is_relative_to(root)


class WorkspaceSynchronizer:
    def __init__(self, locator: DatasetLocator) -> None:
        self._locator = locator
        self._logger = structlog.get_logger(__name__)

    @property
    def locator(self) -> DatasetLocator:
        return self._locator

    def datasets_for(self, project_id: str) -> list[DatasetEntry]:
        return self._locator.list_datasets(project_id)

    def sync(
        self,
        project_id: str,
        workspace: Path,
        entries: Sequence[DatasetEntry] | None = None,
    ) -> SyncReport:
        datasets = list(entries) if entries is not None else self.datasets_for(project_id)
        datasets_dir = workspace / WORKSPACE_DATASETS_DIR
        # The runtime owns datasets/; a link a cell put there is dropped.
        if datasets_dir.is_symlink():
            datasets_dir.unlink()
        datasets_dir.mkdir(parents=True, exist_ok=True)
        root = workspace.resolve()

        seen_filenames: set[str] = set()
        synced: list[SyncedDataset] = []
        skipped: list[str] = []
        collisions: list[str] = []

        for entry in datasets:
            if not entry.source_path.is_file():
                self._logger.warning(
                    "dataset_source_missing",
                    project_id=project_id,
                    dataset_id=entry.dataset_id,
                    source_path=str(entry.source_path),
                )
                skipped.append(entry.dataset_id)
                continue

            relative = [f"{WORKSPACE_DATASETS_DIR}/{entry.dataset_id}/{entry.filename}"]
            alias: str | None = None
            if entry.filename in seen_filenames:
                alias = build_alias(entry.filename, entry.dataset_id)
                relative.append(f"{WORKSPACE_DATASETS_DIR}/{alias}")
            else:
                relative.extend([f"{WORKSPACE_DATASETS_DIR}/{entry.filename}", entry.filename])

            # A cell can plant symlinks in its workspace; never copy through one.
            if not all(_stays_within(workspace / item, root) for item in relative):
                self._logger.warning(
                    "dataset_destination_outside_workspace",
                    project_id=project_id,
                    dataset_id=entry.dataset_id,
                    filename=entry.filename,
                )
                skipped.append(entry.dataset_id)
                continue

            for item in relative:
                atomic_copy(entry.source_path, workspace / item)
            if alias is None:
                seen_filenames.add(entry.filename)
            else:
                collisions.append(entry.filename)
            synced.append(
                SyncedDataset(
                    dataset_id=entry.dataset_id,
                    filename=entry.filename,
                    alias=alias,
                    paths=tuple(relative),
                )
            )

        manifest_path = datasets_dir / DATASET_MANIFEST_FILENAME
        atomic_write(
            manifest_path,
            canonical_json({"projectId": project_id, "datasets": [item.to_dict() for item in synced]})
            + "\n",
        )
        self._logger.info(
            "workspace_synced",
            project_id=project_id,
            synced=len(synced),
            skipped=len(skipped),
            collisions=len(collisions),
        )
        return SyncReport(
            synced=tuple(synced),
            skipped=tuple(skipped),
            collisions=tuple(collisions),
            manifest_path=manifest_path,
        )


__all__ = [
    "CatalogDatasetLocator",
    "CatalogLoadError",
    "DatasetLocator",
    "StaticDatasetLocator",
    "SyncReport",
    "SyncedDataset",
    "WorkspaceSynchronizer",
    "build_alias",
]
