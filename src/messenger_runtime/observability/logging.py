"""
messenger-runtime — per-session JSON-lines log.

File: src/messenger_runtime/observability/logging.py

Purpose
- Write every record of one client session to ``<log_dir>/<session_id>/runtime.jsonl``
  through a queue, so service threads never block on file I/O.
- Keep account secrets out of the log: passwords, PINs, key material,
  serialized protocol records and full phone numbers.

Functional requirements
- ``correlation_scope(account=..., slot=..., store=...)`` tags records logged
  inside it; tags are captured on the thread that emits the record.
- A full queue drops records and counts them instead of blocking the caller.
- ``SessionLog.close()`` drains the queue and restores the logger it took over.
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import sys
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from messenger_runtime.constants import LOG_DIR

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

ROOT_LOGGER_NAME: Final[str] = "messenger_runtime"
REDACTED: Final[str] = "***REDACTED***"
CORRELATION_FIELDS: Final[tuple[str, ...]] = ("account", "slot", "store")

# Short names are matched whole: "pin" must not hit "mapping", "record" not "recorder".
_SECRET_KEY: Final[re.Pattern[str]] = re.compile(
    r"^(?:pin|record|registration_lock)$"
    r"|password|passphrase|secret|token|authorization|credential"
    r"|(?:private|identity|profile|master|pack|sender|storage)_?key"
)
_SECRET_ASSIGNMENT: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(password|pin|secret|token|authorization|(?:profile|master|private|identity)[_-]?key)"
    r"\b\s*([:=])\s*((?:basic|bearer)\s+)?[^\s,;]+"
)
_BASIC_AUTH: Final[re.Pattern[str]] = re.compile(r"(?i)\bbasic\s+[A-Za-z0-9+/]+=*")
_E164: Final[re.Pattern[str]] = re.compile(r"(?<![\w+])\+[1-9]\d{5,13}(\d{2})\b")

# Attributes every LogRecord carries; anything else on a record came from ``extra=``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "messenger_runtime_correlation", default=()
)

_open_logs_lock = threading.Lock()
_open_logs: dict[str, SessionLog] = {}


@dataclass(frozen=True, slots=True)
class SessionLogOptions:
    level: int | str = "INFO"
    log_dir: Path | str = Path(LOG_DIR)
    redact_secrets: bool = True
    echo_to_stderr: bool = False
    queue_size: int = 4096
    filename: str = "runtime.jsonl"


def correlation_fields() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Tag records logged in this scope; ``None`` removes a tag set by an outer scope."""

    state = correlation_fields()
    for key, value in fields.items():
        if value is None:
            state.pop(key, None)
        elif isinstance(value, str) and value.strip():
            state[key] = value.strip()
        else:
            raise ValueError(f"correlation field {key!r} must be a non-empty string")
    token = _correlation.set(tuple(state.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


def redact(value: JSONValue) -> JSONValue:
    """Return ``value`` with account secrets masked, recursing into lists and dicts."""

    if isinstance(value, str):
        return _redact_text(value)
    if isinstance(value, list):
        return [redact(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _SECRET_KEY.search(key.lower()) else redact(item)
            for key, item in value.items()
        }
    return value


def _redact_text(text: str) -> str:
    text = _SECRET_ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
    text = _BASIC_AUTH.sub(f"Basic {REDACTED}", text)
    # The last two digits keep different numbers distinguishable.
    return _E164.sub(lambda m: f"+***{m.group(1)}", text)


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        # Raw bytes here are key material or message content.
        return REDACTED
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json(item) for item in value]
        return items if isinstance(value, (list, tuple)) else sorted(items, key=repr)
    return repr(value)


def _unredacted(value: JSONValue) -> JSONValue:
    return value


class _SessionRecordFormatter(logging.Formatter):
    def __init__(self, session_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._session_id = session_id
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "session": self._session_id,
            "msg": self._redactor(record.getMessage()),
        }
        correlation = getattr(record, "correlation", {})
        for key in CORRELATION_FIELDS:
            if key in correlation:
                event[key] = self._redactor(correlation[key])
        extras = {
            key: _to_json(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        if extras:
            event["fields"] = self._redactor(extras)
        if record.exc_info:
            event["error"] = self._redactor(self.formatException(record.exc_info))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class _SessionQueueHandler(logging.handlers.QueueHandler):
    """Enqueues without blocking; correlation tags are read on the caller's thread."""

    def __init__(
        self, log_queue: queue.Queue[logging.LogRecord], on_drop: Callable[[], None]
    ) -> None:
        super().__init__(log_queue)
        self._on_drop = on_drop

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        record.correlation = correlation_fields()
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self._on_drop()


class SessionLog:
    """The JSON-lines log of one running client session."""

    def __init__(
        self,
        session_id: str,
        path: Path,
        logger: logging.Logger,
        *,
        level: int,
        sinks: tuple[logging.Handler, ...],
        queue_size: int,
    ) -> None:
        self.session_id = session_id
        self.path = path
        self.logger = logger
        self._sinks = sinks
        self._dropped = 0
        self._lock = threading.Lock()
        self._closed = False

        self._previous = (logger.level, logger.propagate)
        for stale in list(logger.handlers):
            logger.removeHandler(stale)
            stale.close()
        log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=queue_size)
        self._handler = _SessionQueueHandler(log_queue, self._count_drop)
        self._listener = logging.handlers.QueueListener(log_queue, *sinks)
        self._listener.start()
        logger.setLevel(level)
        logger.propagate = False
        logger.addHandler(self._handler)

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def _count_drop(self) -> None:
        with self._lock:
            self._dropped += 1

    def close(self) -> None:
        """Write out queued records, then hand the logger back as it was found."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.logger.removeHandler(self._handler)
        self._listener.stop()
        self._handler.close()
        for sink in self._sinks:
            sink.close()
        self.logger.setLevel(self._previous[0])
        self.logger.propagate = self._previous[1]
        with _open_logs_lock:
            if _open_logs.get(self.logger.name) is self:
                del _open_logs[self.logger.name]

    def __enter__(self) -> SessionLog:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()


def open_session_log(
    session_id: str,
    options: SessionLogOptions | None = None,
    *,
    logger_name: str = ROOT_LOGGER_NAME,
) -> SessionLog:
    """Route ``logger_name`` (and its children) into a new session log.

    A session log already open on the same logger is closed first.
    """

    options = options or SessionLogOptions()
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValueError("session_id must be a non-empty string")
    session_id = session_id.strip()
    if not options.filename or Path(options.filename).name != options.filename:
        raise ValueError(f"filename must be a bare file name, got {options.filename!r}")
    if options.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _resolve_level(options.level)

    with _open_logs_lock:
        previous = _open_logs.pop(logger_name, None)
    if previous is not None:
        previous.close()

    session_dir = Path(options.log_dir) / session_id
    session_dir.mkdir(parents=True, exist_ok=True)
    path = session_dir / options.filename

    formatter = _SessionRecordFormatter(
        session_id, redact if options.redact_secrets else _unredacted
    )
    sinks: list[logging.Handler] = [logging.FileHandler(path, encoding="utf-8")]
    if options.echo_to_stderr:
        sinks.append(logging.StreamHandler(sys.stderr))
    for sink in sinks:
        sink.setFormatter(formatter)

    session_log = SessionLog(
        session_id,
        path,
        logging.getLogger(logger_name),
        level=level,
        sinks=tuple(sinks),
        queue_size=options.queue_size,
    )
    with _open_logs_lock:
        _open_logs[logger_name] = session_log
    return session_log


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    try:
        return logging.getLevelNamesMapping()[str(level).strip().upper()]
    except KeyError:
        raise ValueError(f"unsupported log level {level!r}") from None


__all__ = [
    "CORRELATION_FIELDS",
    "REDACTED",
    "ROOT_LOGGER_NAME",
    "JSONValue",
    "LogRedactor",
    "SessionLog",
    "SessionLogOptions",
    "correlation_fields",
    "correlation_scope",
    "open_session_log",
    "redact",
]
