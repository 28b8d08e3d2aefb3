"""Session log, correlation tags and secret redaction."""

from messenger_runtime.observability.logging import (
    CORRELATION_FIELDS,
    REDACTED,
    ROOT_LOGGER_NAME,
    LogRedactor,
    SessionLog,
    SessionLogOptions,
    correlation_fields,
    correlation_scope,
    open_session_log,
    redact,
)

__all__ = [
    "CORRELATION_FIELDS",
    "REDACTED",
    "ROOT_LOGGER_NAME",
    "LogRedactor",
    "SessionLog",
    "SessionLogOptions",
    "correlation_fields",
    "correlation_scope",
    "open_session_log",
    "redact",
]
