"""Public observability primitives: structured logging and notebook event broadcasting."""

from notebook_runtime.observability.events import (
    BroadcastRecord,
    BroadcastSink,
    CallbackSink,
    DispatchError,
    EventBroadcaster,
    LoggingSink,
)
from notebook_runtime.observability.logging import (
    LoggingConfig,
    LogRedactor,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "BroadcastRecord",
    "BroadcastSink",
    "CallbackSink",
    "DispatchError",
    "EventBroadcaster",
    "LogRedactor",
    "LoggingConfig",
    "LoggingSink",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
