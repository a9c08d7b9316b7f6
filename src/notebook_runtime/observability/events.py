"""In-process notebook event broadcaster with replay and failure capture."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final, Protocol, runtime_checkable

import structlog

from notebook_runtime.domain.events import EventType, NotebookEvent
from notebook_runtime.domain.models import JSONValue, as_utc_datetime

_DEFAULT_ERROR_BUFFER: Final[int] = 1024


@runtime_checkable
class BroadcastSink(Protocol):
    """Receiver of notebook events, e.g. a websocket fan-out."""

    def notify(self, notebook_id: str, event: dict[str, JSONValue]) -> None: ...


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Sink failure captured without interrupting publishers."""

    notebook_id: str
    event_type: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class BroadcastRecord:
    notebook_id: str
    event: NotebookEvent


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    notebook_id: str | None
    sink: BroadcastSink


class CallbackSink:
    """Adapt a plain ``callable(notebook_id, payload)`` to ``BroadcastSink``."""

    __slots__ = ("_callback",)

    def __init__(self, callback: Callable[[str, dict[str, JSONValue]], object]) -> None:
        self._callback = callback

    def notify(self, notebook_id: str, event: dict[str, JSONValue]) -> None:
        self._callback(notebook_id, event)

    def __repr__(self) -> str:
        return f"CallbackSink({_callable_name(self._callback)})"


class LoggingSink:
    """Write every event to the decision log; used by ``serve`` when nothing else listens."""

    __slots__ = ("_logger",)

    def __init__(self, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def notify(self, notebook_id: str, event: dict[str, JSONValue]) -> None:
        self._logger.info(
            "notebook_event",
            notebook_id=notebook_id,
            event_type=event.get("type"),
            cell_ref=event.get("cellId"),
        )


class EventBroadcaster:
    """Fan notebook events out to subscribed sinks; never raises on sink failure."""

    def __init__(self, *, buffer_size: int = 512) -> None:
        if not isinstance(buffer_size, int) or isinstance(buffer_size, bool):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")

        self._buffer = deque[BroadcastRecord](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()
        self._logger = structlog.get_logger(__name__)

    def subscribe(self, sink: BroadcastSink, *, notebook_id: str | None = None) -> int:
        """Subscribe ``sink`` to one notebook, or to all notebooks when ``notebook_id`` is None."""

        if not callable(getattr(sink, "notify", None)):
            raise ValueError("sink must provide a callable notify(notebook_id, event)")
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(
                token=token, notebook_id=notebook_id, sink=sink
            )
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def notify(self, notebook_id: str, event: NotebookEvent) -> tuple[DispatchError, ...]:
        """Record ``event`` and deliver its payload to every matching sink."""

        if not isinstance(event, NotebookEvent):
            raise TypeError(f"event must be NotebookEvent, got {type(event).__name__}")
        payload = event.to_payload()
        with self._lock:
            self._buffer.append(BroadcastRecord(notebook_id=notebook_id, event=event))
            subscriptions = tuple(self._subscriptions.values())

        errors: list[DispatchError] = []
        for subscription in subscriptions:
            if subscription.notebook_id is not None and subscription.notebook_id != notebook_id:
                continue
            try:
                subscription.sink.notify(notebook_id, dict(payload))
            except Exception as exc:  # noqa: BLE001
                error = DispatchError(
                    notebook_id=notebook_id,
                    event_type=event.event_type.value,
                    target=repr(subscription.sink),
                    error_type=type(exc).__name__,
                    message=str(exc),
                )
                errors.append(error)
                self._logger.warning(
                    "broadcast_sink_failed",
                    notebook_id=notebook_id,
                    event_type=event.event_type.value,
                    target=error.target,
                    error_type=error.error_type,
                    error=error.message,
                )

        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)
        return tuple(errors)

    def replay(
        self,
        *,
        notebook_id: str | None = None,
        since: datetime | str | None = None,
        event_type: str | EventType | None = None,
        limit: int | None = None,
    ) -> tuple[BroadcastRecord, ...]:
        """Replay buffered events in publish order."""

        since_dt = None if since is None else as_utc_datetime(since, "since")
        type_filter = None if event_type is None else EventType(event_type)

        with self._lock:
            records = tuple(self._buffer)

        filtered = [
            record
            for record in records
            if (notebook_id is None or record.notebook_id == notebook_id)
            and (type_filter is None or record.event.event_type is type_filter)
            and (since_dt is None or record.event.timestamp >= since_dt)
        ]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        """Return recorded sink failures."""

        with self._lock:
            errors = tuple(self._dispatch_errors)
        if limit is None:
            return errors
        if limit <= 0:
            return ()
        return errors[-limit:]


def _callable_name(callback: Callable[..., object]) -> str:
    module = getattr(callback, "__module__", None)
    qualname = getattr(callback, "__qualname__", None) or type(callback).__name__
    return f"{module}.{qualname}" if module else str(qualname)


__all__ = [
    "BroadcastRecord",
    "BroadcastSink",
    "CallbackSink",
    "DispatchError",
    "EventBroadcaster",
    "LoggingSink",
]
