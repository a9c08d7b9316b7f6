"""
notebook-runtime — pip helpers for per-sandbox package management.

File: src/notebook_runtime/sandbox/packages.py

Purpose
- Turn free-form user input ("pandas, pytorch>=2") into pip requirements.
- Build the pip / introspection argv run inside a sandbox interpreter.
- Map pip failure output to short messages a notebook user can act on.

Notes
- Packages install into the workspace ``.python`` target so they survive
  across runs of the same sandbox but never touch the host interpreter.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Final

from notebook_runtime.domain.models import Completion, PackageInfo

PACKAGE_ALIASES: Final[dict[str, str]] = {"pytorch": "torch"}

_REQUIREMENT_HEAD = re.compile(r"^([A-Za-z0-9._-]+)(.*)$")
_DIST_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_MISSING_BINARY_MARKERS: Final[tuple[str, ...]] = (
    "No matching distribution found",
    "Could not find a version that satisfies",
    "No compatible wheels",
)
_DISK_FULL_MARKERS: Final[tuple[str, ...]] = ("No space left on device", "Errno 28")
_NATIVE_BUILD_MARKERS: Final[tuple[str, ...]] = (
    "subprocess-exited-with-error",
    "Failed building wheel",
)

LIST_PACKAGES_SCRIPT: Final[str] = "\n".join(
    [
        "import importlib.metadata as m",
        "import json",
        "packages = []",
        "for dist in m.distributions():",
        "    meta = dist.metadata",
        "    name = meta.get('Name') or ''",
        "    if not name:",
        "        continue",
        "    packages.append({",
        "        'name': name,",
        "        'version': dist.version or '',",
        "        'summary': meta.get('Summary') or '',",
        "        'homepage': meta.get('Home-page') or meta.get('Home-Page') or '',",
        "    })",
        "print(json.dumps(packages))",
    ]
)

COMPLETIONS_SCRIPT: Final[str] = "\n".join(
    [
        "import json, sys",
        "import jedi",
        "request = json.loads(sys.stdin.read())",
        "script = jedi.Script(request['code'])",
        "items = []",
        "for item in script.complete(request['line'], request['column']):",
        "    signatures = item.get_signatures()",
        "    items.append({",
        "        'name': item.name,",
        "        'complete': item.complete or '',",
        "        'type': item.type,",
        "        'signature': signatures[0].to_string() if signatures else None,",
        "        'docstring': item.docstring(raw=True)[:500] or None,",
        "    })",
        "print(json.dumps(items[:50]))",
    ]
)


@dataclass(frozen=True, slots=True)
class NormalizedRequest:
    requirements: tuple[str, ...]
    alias_notice: str = ""


def normalize_package_input(raw: str) -> NormalizedRequest:
    """Split comma/whitespace separated input and apply known install aliases."""

    tokens = [token for chunk in raw.strip().split(",") for token in chunk.split() if token]
    notices: list[str] = []
    requirements: list[str] = []
    for token in tokens:
        match = _REQUIREMENT_HEAD.match(token)
        if match is None:
            requirements.append(token)
            continue
        base, suffix = match.group(1), match.group(2)
        alias = PACKAGE_ALIASES.get(base.lower().replace("_", "-"))
        if alias is None:
            requirements.append(token)
            continue
        notice = f'"{base}" installs as "{alias}".'
        if notice not in notices:
            notices.append(notice)
        requirements.append(f"{alias}{suffix}")
    alias_notice = f"Note: {' '.join(notices)} " if notices else ""
    return NormalizedRequest(requirements=tuple(requirements), alias_notice=alias_notice)


def is_missing_binary_error(details: str) -> bool:
    return any(marker in details for marker in _MISSING_BINARY_MARKERS)


def missing_binary_message(requirements: tuple[str, ...]) -> str:
    return f"No compatible binary wheels found for {', '.join(requirements)} on this runtime."


def format_install_error(details: str, requirements: tuple[str, ...]) -> str:
    if not details.strip():
        return f"Failed to install {', '.join(requirements)}."
    if any(marker in details for marker in _DISK_FULL_MARKERS):
        return (
            "Install ran out of disk space in the runtime."
            " Increase sandbox.tmpfs_mb or clean up runtime storage and try again."
        )
    if any(marker in details for marker in _NATIVE_BUILD_MARKERS):
        return (
            "Package requires a native build step that failed in this runtime."
            " Consider using a package with prebuilt wheels or extend the runtime image"
            " with build tools."
        )
    if is_missing_binary_error(details):
        return missing_binary_message(requirements)
    return " ".join(details.strip().splitlines()[-6:])


def pip_install_args(
    target: str, requirements: tuple[str, ...], *, binary_only: bool
) -> list[str]:
    args = [
        "-m",
        "pip",
        "install",
        "--disable-pip-version-check",
        "--prefer-binary",
        "--no-cache-dir",
        "--target",
        target,
    ]
    if binary_only:
        args.extend(["--only-binary", ":all:"])
    args.extend(requirements)
    return args


def pip_uninstall_args(name: str) -> list[str]:
    return ["-m", "pip", "uninstall", "--disable-pip-version-check", "-y", name]


def validate_distribution_name(name: str) -> str:
    cleaned = name.strip()
    if not _DIST_NAME.fullmatch(cleaned):
        raise ValueError(f"invalid package name: {name!r}")
    return cleaned


def parse_package_listing(stdout: str) -> list[PackageInfo]:
    """Parse ``LIST_PACKAGES_SCRIPT`` output; de-duplicated and sorted case-insensitively."""

    raw = json.loads(stdout.strip().splitlines()[-1])
    if not isinstance(raw, list):
        return []
    seen: dict[str, PackageInfo] = {}
    for item in raw:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        info = PackageInfo(
            name=str(item["name"]),
            version=str(item.get("version") or ""),
            summary=str(item.get("summary") or ""),
            homepage=str(item.get("homepage") or ""),
        )
        # First hit wins; the workspace target is first on sys.path.
        seen.setdefault(info.name.lower(), info)
    return sorted(seen.values(), key=lambda info: info.name.lower())


def parse_completions(stdout: str) -> list[Completion]:
    raw = json.loads(stdout.strip().splitlines()[-1])
    if not isinstance(raw, list):
        return []
    completions: list[Completion] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        completions.append(
            Completion(
                name=str(item["name"]),
                complete=str(item.get("complete") or ""),
                type=str(item.get("type") or ""),
                signature=item.get("signature") or None,
                docstring=item.get("docstring") or None,
            )
        )
    return completions


__all__ = [
    "COMPLETIONS_SCRIPT",
    "LIST_PACKAGES_SCRIPT",
    "NormalizedRequest",
    "PACKAGE_ALIASES",
    "format_install_error",
    "is_missing_binary_error",
    "missing_binary_message",
    "normalize_package_input",
    "parse_completions",
    "parse_package_listing",
    "pip_install_args",
    "pip_uninstall_args",
    "validate_distribution_name",
]
