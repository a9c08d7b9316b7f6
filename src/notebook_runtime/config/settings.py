"""Typed, read-only views over a validated config mapping."""

from __future__ import annotations

import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from notebook_runtime.config.schema import assert_valid_config, default_config
from notebook_runtime.domain.models import SandboxBackendKind


@dataclass(frozen=True, slots=True)
class SandboxSettings:
    backend: SandboxBackendKind = SandboxBackendKind.LOCAL
    docker_image: str = "notebook-runtime-sandbox:py{python_version}"
    python_version: str = "3.11"
    network: str = "none"
    memory_mb: int = 2048
    cpu_percent: int = 100
    tmpfs_mb: int = 512
    timeout_ms: int = 30_000
    max_timeout_ms: int = 300_000
    idle_timeout_seconds: float = 1800.0
    reap_interval_seconds: float = 300.0
    name_prefix: str = "nbrt-exec-"
    python_executable: str = field(default_factory=lambda: sys.executable)

    @property
    def resolved_image(self) -> str:
        return self.docker_image.replace("{python_version}", self.python_version)

    def clamp_timeout_ms(self, requested: int | None) -> int:
        value = self.timeout_ms if requested is None else requested
        return max(1, min(int(value), self.max_timeout_ms))


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    state_db: Path
    workspace_root: Path
    output_dir: Path
    dataset_root: Path
    dataset_catalog: Path
    log_dir: Path
    log_level: str = "INFO"
    log_format: str = "json"
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    lock_staleness_seconds: float = 60.0
    agent_holder: str = "ai"
    inline_max_bytes: int = 10 * 1024

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RuntimeSettings:
        validated = assert_valid_config(config)
        paths = validated["paths"]
        sandbox = dict(validated["sandbox"])
        sandbox["backend"] = SandboxBackendKind(sandbox["backend"])
        observability = validated["observability"]
        return cls(
            state_db=Path(paths["state_db"]),
            workspace_root=Path(paths["workspace_root"]),
            output_dir=Path(paths["output_dir"]),
            dataset_root=Path(paths["dataset_root"]),
            dataset_catalog=Path(paths["dataset_catalog"]),
            log_dir=Path(observability["log_dir"]),
            log_level=observability["log_level"],
            log_format=observability["log_format"],
            sandbox=SandboxSettings(**sandbox),
            lock_staleness_seconds=validated["locks"]["staleness_seconds"],
            agent_holder=validated["locks"]["agent_holder"],
            inline_max_bytes=validated["outputs"]["inline_max_bytes"],
        )

    @classmethod
    def for_directory(cls, root: Path, **sandbox_overrides: Any) -> RuntimeSettings:
        """Defaults rooted at ``root``; convenient for tests and one-off CLI use."""

        from notebook_runtime.config.loader import normalize_paths

        config = normalize_paths(default_config(), base_dir=root)
        config["sandbox"].update(sandbox_overrides)
        return cls.from_config(config)


__all__ = ["RuntimeSettings", "SandboxSettings"]
