"""
notebook-runtime — structured logging.

File: src/notebook_runtime/observability/logging.py

Purpose
- One logging session per process: records from stdlib loggers and from
  ``structlog.get_logger`` go through a bounded in-memory queue to a
  background listener that writes ``<log_dir>/<session_id>/runtime.jsonl``
  and, optionally, stderr.

Record shape (file sink, one JSON object per line)
- ``timestamp`` (UTC, millisecond ``Z`` form), ``level``, ``logger``,
  ``message``.
- Correlation ids (``session_id``, ``project_id``, ``cell_id`` ...) as
  top-level keys, taken from ``correlation_scope`` and from ``extra``.
- Everything else passed via ``extra`` (or as structlog key/values) under
  ``fields``.
- ``exception`` when the record carried ``exc_info``.

Secrets are scrubbed before anything is written: values under secret-looking
keys are replaced, and ``token=...`` / ``Bearer ...`` fragments in free text
are masked. Emitting threads never block: when the queue is full the record is
dropped and counted.
"""

from __future__ import annotations

import atexit
import contextvars
import copy
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

MASK: Final[str] = "***REDACTED***"

CORRELATION_KEYS: Final[frozenset[str]] = frozenset(
    {"session_id", "project_id", "notebook_id", "cell_id", "sandbox_id", "execution_id"}
)

_SECRET_KEY_FRAGMENTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b(\s*[:=]\s*)[^\s,;]+"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_BUILTINS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_TRACEBACKS: Final[logging.Formatter] = logging.Formatter()

_correlation: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "notebook_runtime_correlation", default={}
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Knobs for one logging session. Only ``session_id`` is required."""

    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = "notebook_runtime"
    level: int | str = "INFO"
    log_format: str = "json"
    queue_size: int = 4096
    log_filename: str = "runtime.jsonl"
    log_to_stderr: bool = True
    max_bytes: int = 10_000_000
    backup_count: int = 5
    redactor: LogRedactor | None = None


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Attach correlation ids to every record logged inside the block.

    Scopes nest; a ``None`` value removes an id bound by an outer scope.
    """

    merged = dict(_correlation.get())
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[_non_blank(key, "correlation key")] = _non_blank(value, "correlation value")
    token = _correlation.set(merged)
    try:
        yield
    finally:
        _correlation.reset(token)


# ---------------------------------------------------------------------------
# Redaction and JSON coercion
# ---------------------------------------------------------------------------


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask secrets anywhere in a JSON-shaped value."""

    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}{MASK}", value)
        return _BEARER.sub(f"Bearer {MASK}", masked)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: MASK if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS)


def _jsonable(value: object) -> JSONValue:
    match value:
        case None | bool() | int() | str():
            return value
        case float():
            return value if math.isfinite(value) else str(value)
        case datetime():
            aware = value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
            return aware.isoformat(timespec="microseconds").replace("+00:00", "Z")
        case Path():
            return str(value)
        case bytes():
            return value.decode("utf-8", errors="replace")
        case Mapping():
            return {str(key): _jsonable(item) for key, item in value.items()}
        case list() | tuple():
            return [_jsonable(item) for item in value]
        case set() | frozenset():
            return sorted((_jsonable(item) for item in value), key=_canonical)
        case _:
            return repr(value)


def _canonical(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _as_text(value: JSONValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return _canonical(value)


# ---------------------------------------------------------------------------
# Handlers and formatters
# ---------------------------------------------------------------------------


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller; counts records that did not fit."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._drops = 0
        self._drops_lock = threading.Lock()

    @property
    def drops(self) -> int:
        with self._drops_lock:
            return self._drops

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see this thread's contextvars.
        # Tracebacks are rendered here: the listener gets text, not frames.
        prepared = copy.copy(record)
        prepared.message = prepared.msg = record.getMessage()
        prepared.args = None
        if record.exc_info and not record.exc_text:
            prepared.exc_text = _TRACEBACKS.formatException(record.exc_info)
        prepared.exc_info = None
        bound = _correlation.get()
        if bound:
            prepared.correlation = dict(bound)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._drops_lock:
                self._drops += 1


def _split_record(record: logging.LogRecord) -> tuple[dict[str, str], dict[str, JSONValue]]:
    """Return (correlation ids, remaining extra fields) carried by ``record``."""

    ids: dict[str, str] = {}
    extras: dict[str, JSONValue] = {}
    scoped = getattr(record, "correlation", None)
    if isinstance(scoped, Mapping):
        ids.update((k, v.strip()) for k, v in scoped.items() if isinstance(v, str) and v.strip())
    for key, value in vars(record).items():
        if key in _RECORD_BUILTINS or key.startswith("_"):
            continue
        if key in CORRELATION_KEYS:
            if isinstance(value, str) and value.strip():
                ids[key] = value.strip()
            continue
        extras[key] = _jsonable(value)
    return ids, extras


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, redactor: LogRedactor, session_id: str) -> None:
        super().__init__()
        self._redact = redactor
        self._session_id = session_id

    def format(self, record: logging.LogRecord) -> str:
        ids, extras = _split_record(record)
        stamp = datetime.fromtimestamp(record.created, tz=UTC)
        line: dict[str, JSONValue] = {
            "timestamp": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redact(record.getMessage())),
            "session_id": self._session_id,
            **ids,
        }
        if extras:
            line["fields"] = self._redact(extras)
        if record.exc_text:
            line["exception"] = _as_text(self._redact(record.exc_text))
        return _canonical(line)


class _ConsoleFormatter(logging.Formatter):
    def __init__(self, redactor: LogRedactor) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        ids, extras = _split_record(record)
        pairs = sorted({**ids, **extras}.items())
        tail = " ".join(f"{key}={_as_text(self._redact(value))}" for key, value in pairs)
        head = super().format(record)
        return f"{head} {tail}" if tail else head


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class StructuredLoggingHandle:
    """A running logging session; ``shutdown`` drains the queue and closes files."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        log_queue: queue.Queue[object],
        entry: _DroppingQueueHandler,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue = log_queue
        self._entry = entry
        self._sinks = sinks
        self._listener = logging.handlers.QueueListener(
            log_queue, *sinks, respect_handler_level=True
        )
        self._closed = threading.Event()
        self._close_lock = threading.Lock()

    @property
    def dropped_records(self) -> int:
        return self._entry.drops

    @property
    def is_shutdown(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        self.logger.addHandler(self._entry)
        self._listener.start()

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._entry)
            self._entry.close()
            for sink in self._sinks:
                sink.close()
            self._closed.set()


class _Session:
    """Tracks the one active handle per process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        self._hooked = False

    def current(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def replace(self, handle: StructuredLoggingHandle | None) -> None:
        with self._lock:
            previous, self._handle = self._handle, handle
            if not self._hooked:
                atexit.register(shutdown_logging)
                self._hooked = True
        if previous is not None and previous is not handle:
            previous.shutdown()

    def forget(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_SESSION = _Session()


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start a logging session, replacing any session already running.

    Raises ``ValueError`` for a blank session id or logger name, a
    non-positive queue size, a log filename containing a directory part, or
    an unknown level name.
    """

    session_id = _non_blank(config.session_id, "session_id")
    filename = _non_blank(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)
    logger = logging.getLogger(_non_blank(config.logger_name, "logger_name"))

    _SESSION.replace(None)

    log_path = Path(config.base_log_dir) / session_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    redactor = config.redactor or default_log_redactor

    # The file is always JSON lines; log_format only affects the console.
    to_file = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=max(1, config.max_bytes),
        backupCount=max(1, config.backup_count),
        encoding="utf-8",
    )
    to_file.setFormatter(_JsonLinesFormatter(redactor, session_id))
    sinks: list[logging.Handler] = [to_file]
    if config.log_to_stderr:
        to_console = logging.StreamHandler()
        to_console.setFormatter(
            _ConsoleFormatter(redactor)
            if config.log_format == "text"
            else _JsonLinesFormatter(redactor, session_id)
        )
        sinks.append(to_console)
    for sink in sinks:
        sink.setLevel(level)

    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
    entry = _DroppingQueueHandler(log_queue)
    entry.setLevel(level)
    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        log_queue=log_queue,
        entry=entry,
        sinks=tuple(sinks),
    )
    handle.start()
    _SESSION.replace(handle)
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = "notebook_runtime",
    log_to_stderr: bool = True,
) -> logging.Logger:
    """Start a session from the ``[observability]`` config section.

    Also points ``structlog`` at the same stdlib logger tree, so
    ``structlog.get_logger(__name__).info("event", key=value)`` ends up in the
    session file with ``key`` under ``fields``.
    """

    section = observability_config or {}
    level = section.get("log_level", "INFO")
    log_format = section.get("log_format", "json")
    target = log_dir if log_dir is not None else section.get("log_dir", "logs")
    handle = setup_structured_logging(
        LoggingConfig(
            session_id=session_id,
            base_log_dir=target if isinstance(target, (str, Path)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (str, int)) else "INFO",
            log_format=log_format if isinstance(log_format, str) else "json",
            log_to_stderr=log_to_stderr,
        )
    )
    configure_structlog()
    return handle.logger


def configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain and close ``handle`` (default: the active session). Idempotent."""

    target = handle or _SESSION.current()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    _SESSION.forget(target)


def _non_blank(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{label} must not be empty")
    return text


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelNamesMapping().get(level.strip().upper())
    if resolved is None:
        raise ValueError(f"unsupported logging level {level!r}")
    return resolved


__all__ = [
    "CORRELATION_KEYS",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
