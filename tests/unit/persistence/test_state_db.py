"""State DB migration, pragmas, transaction and error-mapping tests."""

from __future__ import annotations

import sqlite3
import threading
import time
from typing import TYPE_CHECKING

import pytest

from notebook_runtime.constants import STATE_DB_SCHEMA_VERSION
from notebook_runtime.persistence.state_db import (
    StateDB,
    StateDBError,
    StateDBMigrationError,
    canonical_json,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_migration_idempotence_schema_version_and_pragmas(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "nbrt.sqlite3", busy_timeout_ms=4_321)

    version_first = db.migrate()
    version_second = db.migrate()

    assert version_first == STATE_DB_SCHEMA_VERSION
    assert version_second == STATE_DB_SCHEMA_VERSION

    with db.connection() as conn:
        tables = {
            str(row[0])
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
            ).fetchall()
        }
        assert {"schema_versions", "notebooks", "cells", "cell_outputs"}.issubset(tables)

        index_names = {
            str(row[0])
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index' ORDER BY name"
            ).fetchall()
        }
        assert "idx_cells_notebook_position" in index_names

        pragma_fk = conn.execute("PRAGMA foreign_keys").fetchone()
        pragma_journal = conn.execute("PRAGMA journal_mode").fetchone()
        pragma_busy_timeout = conn.execute("PRAGMA busy_timeout").fetchone()
        assert int(pragma_fk[0]) == 1
        assert str(pragma_journal[0]).lower() == "wal"
        assert int(pragma_busy_timeout[0]) == 4_321

        migration_rows = conn.execute(
            "SELECT version, name, checksum FROM schema_versions ORDER BY version"
        ).fetchall()
        assert len(migration_rows) == STATE_DB_SCHEMA_VERSION


def test_checksum_mismatch_is_rejected(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "nbrt.sqlite3")
    db.migrate()
    db.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("0" * 64,))

    with pytest.raises(StateDBMigrationError, match="checksum mismatch"):
        db.migrate()


def test_newer_schema_is_rejected(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "nbrt.sqlite3")
    db.migrate()
    db.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (STATE_DB_SCHEMA_VERSION + 1, "future", "f" * 64, "2030-01-01T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer"):
        db.migrate()


def test_schema_version_of_unmigrated_db_raises_state_db_error(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "empty.sqlite3")

    with pytest.raises(StateDBError):
        db.schema_version()


def test_transaction_rolls_back_on_exception(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "nbrt.sqlite3")
    db.migrate()

    with pytest.raises(RuntimeError, match="boom"):
        with db.transaction() as tx:
            db.execute(
                """
                INSERT INTO notebooks (id, project_id, name, metadata_json, created_at, updated_at)
                VALUES ('nb-1', 'p1', 'N', '{}', 'x', 'x')
                """,
                conn=tx,
            )
            raise RuntimeError("boom")

    assert db.query_one("SELECT id FROM notebooks WHERE id = 'nb-1'") is None


def test_nested_transaction_uses_savepoint(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "nbrt.sqlite3")
    db.migrate()
    insert = """
        INSERT INTO notebooks (id, project_id, name, metadata_json, created_at, updated_at)
        VALUES (?, ?, 'N', '{}', 'x', 'x')
    """

    with db.transaction() as outer:
        db.execute(insert, ("nb-outer", "p-outer"), conn=outer)
        with pytest.raises(ValueError):
            with db.transaction(conn=outer) as inner:
                db.execute(insert, ("nb-inner", "p-inner"), conn=inner)
                raise ValueError("inner only")

    ids = {row["id"] for row in db.query_all("SELECT id FROM notebooks")}
    assert ids == {"nb-outer"}


def test_integrity_violation_propagates_as_sqlite_error(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "nbrt.sqlite3")
    db.migrate()

    with pytest.raises((sqlite3.IntegrityError, StateDBError)):
        db.execute(
            """
            INSERT INTO cells (id, notebook_id, cell_type, content, position,
                execution_count, execution_status, output_json, output_refs_json,
                created_at, updated_at)
            VALUES ('cell-x', 'nb-missing', 'code', '', 0, 0, 'idle', '[]', '[]', 'x', 'x')
            """
        )


def test_wal_allows_reader_during_open_writer_transaction(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "nbrt.sqlite3")
    db.migrate()
    db.execute(
        """
        INSERT INTO notebooks (id, project_id, name, metadata_json, created_at, updated_at)
        VALUES ('nb-1', 'p1', 'N', '{}', 'x', 'x')
        """
    )

    writer_conn = db.connect()
    writer_started = threading.Event()
    reader_finished = threading.Event()
    errors: list[str] = []

    def writer() -> None:
        try:
            writer_conn.execute("BEGIN IMMEDIATE")
            writer_conn.execute("UPDATE notebooks SET name = 'changed' WHERE id = 'nb-1'")
            writer_started.set()
            if not reader_finished.wait(timeout=2.0):
                errors.append("reader did not finish while writer transaction was open")
            writer_conn.execute("ROLLBACK")
        except Exception as exc:  # noqa: BLE001
            errors.append(f"writer failed: {exc}")

    thread = threading.Thread(target=writer)
    thread.start()
    assert writer_started.wait(timeout=2.0)

    started = time.perf_counter()
    row = db.query_one("SELECT name FROM notebooks WHERE id = 'nb-1'")
    elapsed = time.perf_counter() - started
    reader_finished.set()
    thread.join(timeout=2.0)
    writer_conn.close()

    assert errors == []
    assert row is not None and row["name"] == "N"
    assert elapsed < 1.0


def test_canonical_json_is_key_sorted_and_compact() -> None:
    assert canonical_json({"b": 1, "a": [1, {"d": 2, "c": "é"}]}) == (
        '{"a":[1,{"c":"é","d":2}],"b":1}'
    )


def test_integrity_check_is_empty_for_a_healthy_file(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "nbrt.sqlite3")
    db.migrate()
    db.execute(
        "INSERT INTO notebooks (id, project_id, name, created_at, updated_at)"
        " VALUES (?, ?, ?, ?, ?)",
        ("nb-1", "proj-1", "Notebook", "t", "t"),
    )

    assert db.integrity_check() == ()
    with pytest.raises(ValueError):
        db.integrity_check(max_errors=0)
