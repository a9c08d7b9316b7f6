"""
notebook-runtime — configuration schema and validation.

File: src/notebook_runtime/config/schema.py

Purpose
- Own the built-in defaults and the rules every effective config must pass.

Notes
- Rules are declared once per section in ``_SECTIONS``; ``validate_config``
  walks that table and reports every problem it finds as a dotted path plus
  a message, in declaration order, so error output is stable across runs.
- Unknown keys are errors. A misspelt setting must not silently fall back
  to its default.
- ``sandbox.timeout_ms`` may not exceed ``sandbox.max_timeout_ms``.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from notebook_runtime.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_AGENT_HOLDER,
    DEFAULT_CPU_PERCENT,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_INLINE_OUTPUT_MAX_BYTES,
    DEFAULT_LOCK_STALENESS_SECONDS,
    DEFAULT_MEMORY_MB,
    DEFAULT_PYTHON_VERSION,
    DEFAULT_REAP_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_TMPFS_MB,
    MAX_TIMEOUT_MS,
    SANDBOX_NAME_PREFIX,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_NAME_PREFIX_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]*-$")
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "credential", "credentials"}
)
_REDACTED: Final[str] = "<redacted>"

# Settings holding filesystem locations; the loader anchors them at the
# config file's directory.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "workspace_root"),
    ("paths", "output_dir"),
    ("paths", "dataset_root"),
    ("paths", "dataset_catalog"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    state_db: str
    workspace_root: str
    output_dir: str
    dataset_root: str
    dataset_catalog: str


class SandboxConfig(TypedDict):
    backend: Literal["local", "docker"]
    docker_image: str
    python_version: str
    network: str
    memory_mb: int
    cpu_percent: int
    tmpfs_mb: int
    timeout_ms: int
    max_timeout_ms: int
    idle_timeout_seconds: float
    reap_interval_seconds: float
    name_prefix: str
    python_executable: NotRequired[str]


class LocksConfig(TypedDict):
    staleness_seconds: float
    agent_holder: str


class OutputsConfig(TypedDict):
    inline_max_bytes: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str


class RuntimeConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    sandbox: SandboxConfig
    locks: LocksConfig
    outputs: OutputsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[RuntimeConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {
        "state_db": "state/notebook_runtime.sqlite",
        "workspace_root": "workspaces/",
        "output_dir": "outputs/",
        "dataset_root": "datasets/",
        "dataset_catalog": "datasets.yaml",
    },
    "sandbox": {
        "backend": "local",
        "docker_image": "notebook-runtime-sandbox:py{python_version}",
        "python_version": DEFAULT_PYTHON_VERSION,
        "network": "none",
        "memory_mb": DEFAULT_MEMORY_MB,
        "cpu_percent": DEFAULT_CPU_PERCENT,
        "tmpfs_mb": DEFAULT_TMPFS_MB,
        "timeout_ms": DEFAULT_TIMEOUT_MS,
        "max_timeout_ms": MAX_TIMEOUT_MS,
        "idle_timeout_seconds": DEFAULT_IDLE_TIMEOUT_SECONDS,
        "reap_interval_seconds": DEFAULT_REAP_INTERVAL_SECONDS,
        "name_prefix": SANDBOX_NAME_PREFIX,
    },
    "locks": {
        "staleness_seconds": DEFAULT_LOCK_STALENESS_SECONDS,
        "agent_holder": DEFAULT_AGENT_HOLDER,
    },
    "outputs": {"inline_max_bytes": DEFAULT_INLINE_OUTPUT_MAX_BYTES},
    "observability": {"log_level": "INFO", "log_format": "json", "log_dir": "logs/"},
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One failed rule: dotted setting path and what is wrong with it."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Outcome of ``validate_config``; ``config`` is set only when valid."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised by ``assert_valid_config``; carries every issue found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

_Kind = Literal["int", "float", "text", "path", "choice", "prefix", "version"]


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: _Kind
    minimum: float | None = None
    choices: tuple[str, ...] = ()
    optional: bool = False


class _Rejected(Exception):
    """Internal signal: the value under inspection broke its rule."""


_SECTIONS: Final[dict[str, dict[str, _Rule]]] = {
    "meta": {"schema_version": _Rule("version")},
    "paths": {
        "dataset_catalog": _Rule("path"),
        "dataset_root": _Rule("path"),
        "output_dir": _Rule("path"),
        "state_db": _Rule("path"),
        "workspace_root": _Rule("path"),
    },
    "sandbox": {
        "backend": _Rule("choice", choices=("docker", "local")),
        "memory_mb": _Rule("int", minimum=64),
        "cpu_percent": _Rule("int", minimum=1),
        "tmpfs_mb": _Rule("int", minimum=16),
        "timeout_ms": _Rule("int", minimum=100),
        "max_timeout_ms": _Rule("int", minimum=100),
        "idle_timeout_seconds": _Rule("float", minimum=1.0),
        "reap_interval_seconds": _Rule("float", minimum=1.0),
        "docker_image": _Rule("text"),
        "network": _Rule("text"),
        "python_version": _Rule("text"),
        "name_prefix": _Rule("prefix"),
        "python_executable": _Rule("path", optional=True),
    },
    "locks": {
        "staleness_seconds": _Rule("float", minimum=1.0),
        "agent_holder": _Rule("text"),
    },
    "outputs": {"inline_max_bytes": _Rule("int", minimum=0)},
    "observability": {
        "log_level": _Rule("choice", choices=("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_format": _Rule("choice", choices=("json", "text")),
        "log_dir": _Rule("path"),
    },
}


def default_config() -> RuntimeConfig:
    """Fresh, independently mutable copy of ``DEFAULT_CONFIG``."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Explain how to resolve a ``meta.schema_version`` mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade notebook_runtime.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the notebook-runtime package"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is mutated.

    Nested mappings merge key by key; any other overlay value replaces the
    base value outright.
    """

    merged = _plain_copy(base)
    _overlay(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues: list[ConfigValidationIssue] = []
    if not isinstance(config, Mapping):
        issues.append(ConfigValidationIssue("<root>", _type_message("object", config)))
        return ConfigValidationResult(config=None, issues=tuple(issues))

    checked: dict[str, Any] = {}
    _flag_unknown(config, _SECTIONS, "", issues)
    for section, rules in _SECTIONS.items():
        if section not in config:
            issues.append(ConfigValidationIssue(section, "missing required field"))
            continue
        body = config[section]
        if not isinstance(body, Mapping):
            issues.append(ConfigValidationIssue(section, _type_message("object", body)))
            continue
        checked[section] = _check_section(section, body, rules, issues)

    sandbox = checked.get("sandbox", {})
    if sandbox.get("timeout_ms", 0) > sandbox.get("max_timeout_ms", math.inf):
        issues.append(
            ConfigValidationIssue("sandbox.timeout_ms", "must be <= sandbox.max_timeout_ms")
        )

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=checked, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return the cleaned config or raise ``ConfigValidationError``."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` safe to log: secret-looking keys are masked."""

    if not isinstance(config, Mapping):
        return {}
    return {key: _mask(key, config[key]) for key in sorted(config) if isinstance(key, str)}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_section(
    section: str,
    body: Mapping[object, object],
    rules: Mapping[str, _Rule],
    issues: list[ConfigValidationIssue],
) -> dict[str, Any]:
    _flag_unknown(body, rules, section, issues)
    cleaned: dict[str, Any] = {}
    for name, rule in rules.items():
        where = f"{section}.{name}"
        if name not in body:
            if not rule.optional:
                issues.append(ConfigValidationIssue(where, "missing required field"))
            continue
        try:
            cleaned[name] = _apply(rule, body[name])
        except _Rejected as exc:
            issues.append(ConfigValidationIssue(where, str(exc)))
    return cleaned


def _flag_unknown(
    body: Mapping[object, object],
    known: Mapping[str, object],
    section: str,
    issues: list[ConfigValidationIssue],
) -> None:
    where = section or "<root>"
    for key in body:
        if not isinstance(key, str):
            issues.append(
                ConfigValidationIssue(where, f"object key must be string, got {type(key).__name__}")
            )
    for key in sorted(k for k in body if isinstance(k, str) and k not in known):
        issues.append(ConfigValidationIssue(f"{section}.{key}" if section else key, "unknown field"))


def _apply(rule: _Rule, value: object) -> object:
    if rule.kind in ("int", "version"):
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Rejected(_type_message("integer", value))
        if rule.kind == "version" and value != ConfigSchemaVersion:
            raise _Rejected(migration_guidance(value))
        _enforce_minimum(rule, value)
        return value

    if rule.kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _Rejected(_type_message("number", value))
        number = float(value)
        if not math.isfinite(number):
            raise _Rejected("must be finite")
        _enforce_minimum(rule, number)
        return number

    if not isinstance(value, str):
        raise _Rejected(_type_message("string", value))
    text = value.strip()
    if not text:
        raise _Rejected("must not be empty")
    if rule.kind == "path" and "\x00" in text:
        raise _Rejected("must not contain NUL bytes")
    if rule.kind == "choice" and text not in rule.choices:
        raise _Rejected(
            f"invalid value {text!r}; expected one of: {', '.join(sorted(rule.choices))}"
        )
    if rule.kind == "prefix" and not _NAME_PREFIX_PATTERN.fullmatch(text):
        raise _Rejected("must be lowercase alphanumerics ending in '-' (example: nbrt-exec-)")
    return text


def _enforce_minimum(rule: _Rule, value: float) -> None:
    if rule.minimum is not None and value < rule.minimum:
        bound = int(rule.minimum) if rule.kind == "int" else rule.minimum
        raise _Rejected(f"must be >= {bound}")


def _type_message(expected: str, value: object) -> str:
    return f"expected {expected}, got {type(value).__name__}"


def _plain_copy(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain_copy(value[key]) for key in sorted(value) if isinstance(key, str)}
    if isinstance(value, list):
        return [_plain_copy(item) for item in value]
    return copy.deepcopy(value)


def _overlay(target: dict[str, Any], patch: Mapping[str, object]) -> None:
    for key in sorted(patch):
        incoming = patch[key]
        current = target.get(key)
        if isinstance(incoming, Mapping) and isinstance(current, dict):
            _overlay(current, incoming)
        else:
            target[key] = _plain_copy(incoming)


def _mask(key: str, value: object) -> object:
    words = re.split(r"[^a-z0-9]+", key.lower())
    if _SECRET_WORDS.intersection(words):
        return _REDACTED
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_mask(key, item) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "RuntimeConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
