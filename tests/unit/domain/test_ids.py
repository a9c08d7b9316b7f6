from __future__ import annotations

import pytest

from notebook_runtime.domain import ids


def _fixed_bytes(value: int) -> ids._RandBytes:
    return lambda size: bytes([value]) * size


def test_generate_ulid_is_deterministic_with_injected_sources() -> None:
    first = ids.generate_ulid(timestamp_ms=1_700_000_000_000, randbytes=_fixed_bytes(7))
    second = ids.generate_ulid(timestamp_ms=1_700_000_000_000, randbytes=_fixed_bytes(7))

    assert first == second
    assert len(first) == ids.ULID_LENGTH
    ids.validate_ulid(first)


def test_ulids_sort_by_timestamp() -> None:
    earlier = ids.generate_ulid(timestamp_ms=1_000, randbytes=_fixed_bytes(255))
    later = ids.generate_ulid(timestamp_ms=1_001, randbytes=_fixed_bytes(0))

    assert earlier < later


@pytest.mark.parametrize(
    ("generator", "prefix"),
    [
        (ids.generate_notebook_id, "nb"),
        (ids.generate_cell_id, "cell"),
        (ids.generate_sandbox_id, "sbx"),
        (ids.generate_execution_id, "exec"),
    ],
)
def test_entity_ids_carry_their_prefix(generator: object, prefix: str) -> None:
    value = generator()  # type: ignore[operator]

    ids.validate_prefixed_id(value, prefix)
    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_prefixed_id(value, "other")


def test_short_id_is_last_eight_lowercased() -> None:
    value = ids.generate_prefixed_id("sbx", timestamp_ms=0, randbytes=_fixed_bytes(1))

    assert ids.short_id(value) == value[-8:].lower()
    assert ids.short_id("sbx-01HZZABCDEFGH") == "abcdefgh"
    with pytest.raises(ValueError):
        ids.short_id("short")


@pytest.mark.parametrize(
    ("candidate", "message"),
    [
        ("0" * 25, "length"),
        ("0" * 25 + "U", "invalid ULID character"),
        ("8" + "0" * 25, "overflow"),
    ],
)
def test_validate_ulid_errors(candidate: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ids.validate_ulid(candidate)


def test_invalid_inputs_are_rejected() -> None:
    with pytest.raises(ValueError, match="must not contain"):
        ids.generate_prefixed_id("a-b")
    with pytest.raises(ValueError, match="out of range"):
        ids.generate_ulid(timestamp_ms=-1)
    with pytest.raises(ValueError, match="exactly"):
        ids.generate_ulid(randbytes=lambda size: b"\x00")
