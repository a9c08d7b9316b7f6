"""
notebook-runtime — SQLite state database.

File: src/notebook_runtime/persistence/state_db.py

Purpose
- Own the on-disk schema for notebooks, cells and stored output files, and
  hand out configured SQLite connections.

Behaviour
- Every connection runs in WAL mode with foreign keys on, so readers are
  never blocked by the writer that is persisting a finished cell run.
- ``execute`` returns the affected row count. A single
  ``UPDATE ... WHERE locked_by IS NULL`` is therefore a compare-and-set,
  which is what the cell lock protocol builds on.
- Statements that fail with SQLITE_BUSY are retried with exponential
  backoff before surfacing as ``StateDBBusyError``.
- Migrations are recorded with a SHA-256 of their SQL; editing an applied
  migration is detected on the next ``migrate()``.

Connections are opened per call, so one ``StateDB`` may be shared by any
number of threads.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from notebook_runtime.constants import STATE_DB_SCHEMA_VERSION
from notebook_runtime.domain.models import CellKind, CellStatus

RowValue = str | int | float | bytes | None
Row = dict[str, RowValue]
Params = Sequence[RowValue]


def _one_of(enum_type: type[CellKind] | type[CellStatus]) -> str:
    return ", ".join(f"'{member.value}'" for member in sorted(enum_type, key=str))


_VERSIONS_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

# Positions are kept dense by CellStore rather than a UNIQUE constraint:
# reorders rewrite them one row at a time inside a transaction.
_NOTEBOOK_CELLS_DDL: Final[tuple[str, ...]] = (
    _VERSIONS_DDL,
    """
    CREATE TABLE IF NOT EXISTS notebooks (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        metadata_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS cells (
        id TEXT PRIMARY KEY,
        notebook_id TEXT NOT NULL,
        cell_type TEXT NOT NULL CHECK (cell_type IN ({_one_of(CellKind)})),
        title TEXT,
        content TEXT NOT NULL DEFAULT '',
        position INTEGER NOT NULL CHECK (position >= 0),
        execution_count INTEGER NOT NULL DEFAULT 0 CHECK (execution_count >= 0),
        execution_status TEXT NOT NULL DEFAULT 'idle'
            CHECK (execution_status IN ({_one_of(CellStatus)})),
        execution_duration_ms INTEGER,
        output_json TEXT NOT NULL DEFAULT '[]',
        output_refs_json TEXT NOT NULL DEFAULT '[]',
        locked_by TEXT,
        locked_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY(notebook_id) REFERENCES notebooks(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cell_outputs (
        cell_id TEXT NOT NULL,
        filename TEXT NOT NULL,
        output_type TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        byte_size INTEGER NOT NULL CHECK (byte_size >= 0),
        created_at TEXT NOT NULL,
        PRIMARY KEY (cell_id, filename),
        FOREIGN KEY(cell_id) REFERENCES cells(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cells_notebook_position ON cells(notebook_id, position)",
    "CREATE INDEX IF NOT EXISTS idx_cells_locked_by ON cells(locked_by)",
)


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str = field(init=False)

    def __post_init__(self) -> None:
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            # Trailing whitespace and indentation-only edits do not count.
            lines = (line.rstrip() for line in statement.strip().splitlines())
            digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
        object.__setattr__(self, "checksum", digest.hexdigest())


MIGRATIONS: Final[tuple[Migration, ...]] = (
    Migration(1, "notebook_cells", _NOTEBOOK_CELLS_DDL),
)


class StateDBError(RuntimeError):
    """Any failure talking to the state database."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be brought to the version this code expects."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a damaged or foreign database file."""


_BUSY_CODES: Final[frozenset[int]] = frozenset(
    getattr(sqlite3, name)
    for name in (
        "SQLITE_BUSY",
        "SQLITE_BUSY_RECOVERY",
        "SQLITE_BUSY_SNAPSHOT",
        "SQLITE_LOCKED",
        "SQLITE_LOCKED_SHAREDCACHE",
    )
    if hasattr(sqlite3, name)
)
_CORRUPT_CODES: Final[frozenset[int]] = frozenset(
    getattr(sqlite3, name) for name in ("SQLITE_CORRUPT", "SQLITE_NOTADB") if hasattr(sqlite3, name)
)
_BUSY_HINTS: Final[tuple[str, ...]] = ("is locked",)
_CORRUPT_HINTS: Final[tuple[str, ...]] = ("malformed", "file is not a database")


def _looks_like(exc: sqlite3.Error, codes: frozenset[int], hints: tuple[str, ...]) -> bool:
    if getattr(exc, "sqlite_errorcode", None) in codes:
        return True
    text = str(exc).lower()
    return any(hint in text for hint in hints)


class StateDB:
    """Thread-shareable handle on the runtime's SQLite file."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = 5_000,
        busy_retry_limit: int = 4,
        busy_retry_backoff_ms: int = 25,
    ) -> None:
        for label, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{label} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._retries = busy_retry_limit
        self._backoff_s = busy_retry_backoff_ms / 1000.0
        self._savepoints = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    # -- connections -------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection; the caller closes it."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        (mode,) = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if str(mode).lower() != "wal":
            conn.close()
            raise StateDBError(f"journal_mode must be WAL, got {mode!r}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, *, conn: sqlite3.Connection | None = None, immediate: bool = True
    ) -> Iterator[sqlite3.Connection]:
        """All-or-nothing block.

        Without ``conn`` a private connection is opened for the block. Inside
        an already open transaction a SAVEPOINT is used, so an inner failure
        undoes only the inner work.
        """

        if conn is None:
            with self.connection() as owned:
                with self.transaction(conn=owned, immediate=immediate) as tx:
                    yield tx
            return

        if conn.in_transaction:
            name = f"sp_{next(self._savepoints)}"
            begin, commit = f"SAVEPOINT {name}", f"RELEASE SAVEPOINT {name}"
            rollback: tuple[str, ...] = (f"ROLLBACK TO SAVEPOINT {name}", commit)
        else:
            begin, commit = ("BEGIN IMMEDIATE" if immediate else "BEGIN"), "COMMIT"
            rollback = ("ROLLBACK",)

        self._run(conn, begin)
        try:
            yield conn
        except BaseException:
            for statement in rollback:
                self._run(conn, statement)
            raise
        self._run(conn, commit)

    # -- statements --------------------------------------------------------

    def execute(
        self, sql: str, params: Params = (), *, conn: sqlite3.Connection | None = None
    ) -> int:
        """Run one statement and return ``rowcount``; autocommits without ``conn``."""

        if conn is not None:
            return self._run(conn, sql, params).rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params).rowcount

    def query_all(
        self, sql: str, params: Params = (), *, conn: sqlite3.Connection | None = None
    ) -> list[Row]:
        if conn is not None:
            return [dict(row) for row in self._run(conn, sql, params).fetchall()]
        with self.connection() as owned:
            return [dict(row) for row in self._run(owned, sql, params).fetchall()]

    def query_one(
        self, sql: str, params: Params = (), *, conn: sqlite3.Connection | None = None
    ) -> Row | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    # -- schema ------------------------------------------------------------

    def migrate(self) -> int:
        """Bring the schema up to date and return its version. Safe to repeat."""

        with self.connection() as conn:
            self._run(conn, _VERSIONS_DDL)
            recorded = {
                int(row["version"]): str(row["checksum"])
                for row in self._run(conn, "SELECT version, checksum FROM schema_versions")
            }
            newest = max(recorded, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"database schema {newest} is newer than this package supports "
                    f"({STATE_DB_SCHEMA_VERSION})"
                )

            for migration in MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    break
                known = recorded.get(migration.version)
                if known == migration.checksum:
                    continue
                if known is not None:
                    raise StateDBMigrationError(
                        f"migration {migration.version} checksum mismatch: "
                        f"db={known} code={migration.checksum}"
                    )
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._run(tx, statement)
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, _now_iso()),
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        return int(row["version"]) if row is not None and row["version"] is not None else 0

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """SQLite ``integrity_check`` findings; empty when the file is healthy."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({int(max_errors)})")
        findings = tuple(str(next(iter(row.values()), "")) for row in rows)
        return () if findings == ("ok",) else findings

    # -- internals ---------------------------------------------------------

    def _run(self, conn: sqlite3.Connection, sql: str, params: Params = ()) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                busy = _looks_like(exc, _BUSY_CODES, _BUSY_HINTS)
                if busy and attempt < self._retries:
                    time.sleep(self._backoff_s * 2**attempt)
                    attempt += 1
                    continue
                summary = " ".join(sql.split())[:60]
                if _looks_like(exc, _CORRUPT_CODES, _CORRUPT_HINTS):
                    raise StateDBCorruptionError(
                        f"{self._path} looks damaged ({exc}); run integrity_check() and "
                        "restore from a backup"
                    ) from exc
                if busy:
                    raise StateDBBusyError(
                        f"{self._path} still locked after {attempt + 1} attempt(s): {summary}"
                    ) from exc
                raise StateDBError(f"{summary!r} failed on {self._path}: {exc}") from exc


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Key-sorted compact JSON used for every persisted payload column."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "MIGRATIONS",
    "Migration",
    "RowValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
