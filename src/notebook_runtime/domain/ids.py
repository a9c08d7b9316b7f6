"""
Identifiers for notebooks, cells, sandboxes and executions.

Every entity id is ``<prefix>-<ULID>``. ULIDs (48-bit millisecond timestamp
followed by 80 random bits, Crockford Base32) sort by creation time, which
keeps ``ORDER BY id`` meaningful in the state DB and in log files.

Sandbox names use ``short_id``: the last eight ULID characters lowercased,
which come from the random part and so differ between sandboxes created in
the same millisecond.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = 2**48 - 1

NOTEBOOK_ID_PREFIX: Final[str] = "nb"
CELL_ID_PREFIX: Final[str] = "cell"
SANDBOX_ID_PREFIX: Final[str] = "sbx"
EXECUTION_ID_PREFIX: Final[str] = "exec"

_SEP: Final[str] = "-"
_DIGIT_OF: Final[dict[str, int]] = {c: i for i, c in enumerate(CROCKFORD_BASE32_ALPHABET)}

_RandBytes = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    """New 26-character ULID; both sources are injectable for tests."""

    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(stamp, int) or not 0 <= stamp <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {stamp!r}"
        )
    entropy = bytes((randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES))
    if len(entropy) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = stamp << 80 | int.from_bytes(entropy, "big")
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        value, low = divmod(value, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[low])
    return "".join(reversed(digits))


def validate_ulid(s: str) -> None:
    """Raise ``ValueError`` naming the first problem with ``s``."""

    if not isinstance(s, str):
        raise ValueError(f"ulid must be a string, got {type(s).__name__}")
    if len(s) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(s)}")
    bad = next(((i, c) for i, c in enumerate(s) if c.upper() not in _DIGIT_OF), None)
    if bad is not None:
        raise ValueError(f"invalid ULID character {bad[1]!r} at index {bad[0]}")
    # 26 base32 digits carry 130 bits; a ULID may only use 128.
    if _DIGIT_OF[s[0].upper()] > 7:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None
) -> str:
    _check_prefix(prefix)
    return prefix + _SEP + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    lead = expected_prefix + _SEP
    if not id_str.startswith(lead):
        raise ValueError(f"expected prefix '{lead}'")
    try:
        validate_ulid(id_str.removeprefix(lead))
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def short_id(id_str: str) -> str:
    if not isinstance(id_str, str) or len(id_str) < 8:
        raise ValueError(f"id must be a string of at least 8 characters, got {id_str!r}")
    return id_str[-8:].lower()


def generate_notebook_id() -> str:
    return generate_prefixed_id(NOTEBOOK_ID_PREFIX)


def generate_cell_id() -> str:
    return generate_prefixed_id(CELL_ID_PREFIX)


def generate_sandbox_id() -> str:
    return generate_prefixed_id(SANDBOX_ID_PREFIX)


def generate_execution_id() -> str:
    return generate_prefixed_id(EXECUTION_ID_PREFIX)


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _SEP in prefix:
        raise ValueError(f"prefix must not contain '{_SEP}'")


__all__ = [
    "CELL_ID_PREFIX",
    "EXECUTION_ID_PREFIX",
    "NOTEBOOK_ID_PREFIX",
    "SANDBOX_ID_PREFIX",
    "ULID_LENGTH",
    "generate_cell_id",
    "generate_execution_id",
    "generate_notebook_id",
    "generate_prefixed_id",
    "generate_sandbox_id",
    "generate_ulid",
    "short_id",
    "validate_prefixed_id",
    "validate_ulid",
]
