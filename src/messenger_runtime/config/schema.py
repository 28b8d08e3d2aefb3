"""
messenger-runtime — configuration schema and validation.

File: src/messenger_runtime/config/schema.py

Purpose
- Define the built-in defaults of ``messenger.toml`` and validate merged
  payloads into a frozen ``RuntimeConfig``.

Functional requirements
- Report every invalid field at once, each with its dotted path.
- Reject unknown sections and keys so typos never pass silently.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from messenger_runtime.constants import ACCOUNT_DB_FILENAME, DATA_DIR, LOG_DIR
from messenger_runtime.runtime.dependencies import CONFIG_VIOLATION_POLICIES
from messenger_runtime.storage.database import (
    DEFAULT_BUSY_RETRY_LIMIT,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_POOL_SIZE,
    MAX_POOL_SIZE,
)

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("storage", "database_path"),
    ("logging", "log_dir"),
)

_DEFAULTS: Final[dict[str, dict[str, object]]] = {
    "storage": {
        "database_path": (DATA_DIR / ACCOUNT_DB_FILENAME).as_posix(),
        "pool_size": DEFAULT_POOL_SIZE,
        "busy_timeout_ms": DEFAULT_BUSY_TIMEOUT_MS,
        "busy_retry_limit": DEFAULT_BUSY_RETRY_LIMIT,
    },
    "logging": {
        "level": "INFO",
        "log_dir": LOG_DIR.as_posix(),
        "redact_secrets": True,
    },
    "registry": {
        "allow_stories": True,
        "config_violation_policy": "warn",
    },
}


@dataclass(frozen=True, slots=True)
class StorageSettings:
    database_path: Path
    pool_size: int
    busy_timeout_ms: int
    busy_retry_limit: int


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str
    log_dir: Path
    redact_secrets: bool


@dataclass(frozen=True, slots=True)
class RegistrySettings:
    allow_stories: bool
    config_violation_policy: str


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    storage: StorageSettings
    logging: LoggingSettings
    registry: RegistrySettings


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when a merged config payload fails validation."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered or 'unknown validation failure'}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)


def default_config() -> dict[str, Any]:
    """Return a deep copy of the built-in defaults."""
    return copy.deepcopy(_DEFAULTS)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base`` without mutating either."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        existing = merged.get(key)
        if isinstance(value, Mapping) and isinstance(existing, Mapping):
            merged[key] = merge_config(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(payload: Mapping[str, object]) -> RuntimeConfig:
    issues = _IssueCollector()
    _reject_unknown_keys(payload, set(_DEFAULTS), "", issues)

    storage = _section(payload, "storage", issues)
    logging_section = _section(payload, "logging", issues)
    registry = _section(payload, "registry", issues)

    database_path = _as_path(storage.get("database_path"), "storage.database_path", issues)
    pool_size = _as_int(storage.get("pool_size"), "storage.pool_size", issues, minimum=1)
    if pool_size is not None and pool_size > MAX_POOL_SIZE:
        issues.add("storage.pool_size", f"must be <= {MAX_POOL_SIZE}")
        pool_size = None
    busy_timeout_ms = _as_int(
        storage.get("busy_timeout_ms"), "storage.busy_timeout_ms", issues, minimum=0
    )
    busy_retry_limit = _as_int(
        storage.get("busy_retry_limit"), "storage.busy_retry_limit", issues, minimum=0
    )

    level = _as_enum(
        str(logging_section.get("level", "")).upper() or None,
        "logging.level",
        issues,
        allowed=LOG_LEVELS,
    )
    log_dir = _as_path(logging_section.get("log_dir"), "logging.log_dir", issues)
    redact_secrets = _as_bool(
        logging_section.get("redact_secrets"), "logging.redact_secrets", issues
    )

    allow_stories = _as_bool(registry.get("allow_stories"), "registry.allow_stories", issues)
    policy = _as_enum(
        registry.get("config_violation_policy"),
        "registry.config_violation_policy",
        issues,
        allowed=CONFIG_VIOLATION_POLICIES,
    )

    if issues.items():
        raise ConfigValidationError(issues.items())

    assert database_path is not None and pool_size is not None
    assert busy_timeout_ms is not None and busy_retry_limit is not None
    assert level is not None and log_dir is not None and redact_secrets is not None
    assert allow_stories is not None and policy is not None
    return RuntimeConfig(
        storage=StorageSettings(
            database_path=database_path,
            pool_size=pool_size,
            busy_timeout_ms=busy_timeout_ms,
            busy_retry_limit=busy_retry_limit,
        ),
        logging=LoggingSettings(level=level, log_dir=log_dir, redact_secrets=redact_secrets),
        registry=RegistrySettings(allow_stories=allow_stories, config_violation_policy=policy),
    )


def _section(
    payload: Mapping[str, object], name: str, issues: _IssueCollector
) -> Mapping[str, object]:
    value = payload.get(name)
    if not isinstance(value, Mapping):
        issues.add(name, f"expected table, got {type(value).__name__}")
        return {}
    _reject_unknown_keys(value, set(_DEFAULTS[name]), name, issues)
    return value


def _reject_unknown_keys(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(f"{path}.{key}" if path else key, "unknown field")


def _as_path(value: object, path: str, issues: _IssueCollector) -> Path | None:
    if not isinstance(value, (str, Path)) or not str(value).strip():
        issues.add(path, "expected a non-empty path")
        return None
    if "\x00" in str(value):
        issues.add(path, "must not contain NUL bytes")
        return None
    return Path(value)


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object, path: str, issues: _IssueCollector, *, minimum: int | None = None
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object, path: str, issues: _IssueCollector, *, allowed: tuple[str, ...]
) -> str | None:
    if not isinstance(value, str) or value not in allowed:
        issues.add(path, f"invalid value {value!r}; expected one of: {', '.join(allowed)}")
        return None
    return value


__all__ = [
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "LoggingSettings",
    "RegistrySettings",
    "RuntimeConfig",
    "StorageSettings",
    "default_config",
    "merge_config",
    "validate_config",
]
