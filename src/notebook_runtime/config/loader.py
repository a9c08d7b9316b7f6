"""
notebook-runtime — runtime config loader.

File: src/notebook_runtime/config/loader.py

Purpose
- Build the effective runtime config by stacking four layers: built-in
  defaults, the ``notebook_runtime.toml`` file, ``NBRT_*`` environment
  variables and CLI flags. Later layers win.

Notes
- Environment variables are derived from the default document, so every
  scalar setting is reachable as ``NBRT_<SECTION>_<KEY>`` without a
  hand-maintained table. Settings whose default is ``None`` are listed in
  ``_NULLABLE_SETTINGS`` with the type they accept.
- Relative paths are anchored at the directory holding the config file (or
  the working directory when no file exists).
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from notebook_runtime.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "notebook_runtime.toml"
ENV_PREFIX: Final[str] = "NBRT_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

SettingPath = tuple[str, ...]
Coercer = Callable[[str], object]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(text)


# type -> (parser, human description used in error messages)
_PARSERS: Final[dict[type, tuple[Coercer, str]]] = {
    bool: (_parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
    int: (int, "an integer"),
    float: (float, "a number"),
    str: (str, "a string"),
}

_NULLABLE_SETTINGS: Final[dict[SettingPath, type]] = {
    ("sandbox", "python_executable"): str,
}


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    An explicit ``config_path`` must exist; the implicit
    ``./notebook_runtime.toml`` is optional. ``environ`` defaults to
    ``os.environ`` and exists so tests can pass an isolated mapping.
    """

    source = _locate(config_path)
    file_layer = _read_toml(source, must_exist=config_path is not None)

    # The file layer is checked on its own first so a typo in the file is
    # reported against the file, not against a later override.
    config = assert_valid_config(merge_config(default_config(), file_layer))

    env_layer = _env_layer(config, os.environ if environ is None else environ)
    cli_layer = _cli_layer(cli_overrides or {})
    for layer in (env_layer, cli_layer):
        config = merge_config(config, layer)

    config = assert_valid_config(config)
    return assert_valid_config(normalize_paths(config, base_dir=source.parent))


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy of ``config`` with every path setting made absolute.

    ``~`` and ``$VARS`` are expanded; relative values are resolved against
    ``base_dir``. Unset (non-string) path settings are left alone.
    """

    rebased = merge_config({}, config)
    for setting in PATH_FIELDS:
        section = rebased
        for key in setting[:-1]:
            section = section.get(key)
            if not isinstance(section, dict):
                break
        else:
            raw = section.get(setting[-1])
            if isinstance(raw, str):
                section[setting[-1]] = _absolute_posix(raw, base_dir)
    return rebased


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Serialize the redacted config as compact, key-sorted JSON."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_var_for(setting: SettingPath) -> str:
    """``("sandbox", "timeout_ms")`` -> ``NBRT_SANDBOX_TIMEOUT_MS``."""

    return ENV_PREFIX + "_".join(part.upper() for part in setting)


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


def _locate(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(source: Path, *, must_exist: bool) -> dict[str, Any]:
    if not source.exists():
        if must_exist:
            raise ConfigLoadError(f"config file not found: {source}")
        return {}
    try:
        return tomllib.loads(source.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {source}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {source}: {exc}") from exc


def _env_layer(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for setting, expected in sorted(_settable_types(config).items()):
        name = env_var_for(setting)
        raw = environ.get(name)
        if raw is None:
            continue
        parser, description = _PARSERS[expected]
        try:
            value = parser(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(
                f"{name} -> {'.'.join(setting)} must be {description}"
            ) from exc
        _assign(layer, setting, value)
    return layer


def _settable_types(config: Mapping[str, object]) -> dict[SettingPath, type]:
    found = dict(_NULLABLE_SETTINGS)
    for setting, value in _walk_leaves(config):
        # bool before int: bool is an int subclass
        for candidate in (bool, int, float, str):
            if isinstance(value, candidate):
                found[setting] = candidate
                break
    return found


def _walk_leaves(
    node: Mapping[str, object], prefix: SettingPath = ()
) -> Iterator[tuple[SettingPath, object]]:
    for key, value in node.items():
        here = (*prefix, key)
        if isinstance(value, Mapping):
            yield from _walk_leaves(value, here)
        else:
            yield here, value


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in sorted(overrides.items()):
        if value is None:
            continue
        setting = tuple(part for part in dotted.split(".") if part)
        if not setting:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        _assign(layer, setting, value)
    return layer


def _assign(target: dict[str, Any], setting: SettingPath, value: object) -> None:
    *parents, leaf = setting
    for key in parents:
        child = target.get(key)
        if not isinstance(child, dict):
            child = target[key] = {}
        target = child
    target[leaf] = value


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_var_for",
    "load_config",
    "normalize_paths",
]
