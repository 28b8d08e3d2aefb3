"""
messenger-runtime — runtime config loader.

File: src/messenger_runtime/config/loader.py

Purpose
- Load the effective runtime config from defaults, ``messenger.toml``,
  ``MESSENGER_`` environment variables and CLI overrides.

Functional requirements
- Precedence: CLI > env > file > defaults.
- Relative paths resolve against the directory of the config file.
- Every failure surfaces as ``ConfigLoadError`` naming the offending source.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final, Literal

from messenger_runtime.config.schema import (
    PATH_FIELDS,
    ConfigValidationError,
    RuntimeConfig,
    default_config,
    merge_config,
    validate_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "messenger.toml"
ENV_PREFIX: Final[str] = "MESSENGER_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

_ValueKind = Literal["str", "int", "bool"]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded, coerced or validated."""


def load_config(
    config_path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    cli_overrides: Mapping[str, object] | None = None,
) -> RuntimeConfig:
    """Load effective config with precedence CLI > env > file > defaults.

    ``cli_overrides`` keys are dotted paths such as ``"storage.pool_size"``.
    A missing default ``messenger.toml`` is fine; a missing explicit path is not.
    """

    resolved_path = _resolve_config_path(config_path)
    env_map = dict(os.environ if environ is None else environ)

    merged = merge_config(
        default_config(), _load_toml_file(resolved_path, required=config_path is not None)
    )
    merged = merge_config(merged, _collect_env_overrides(env_map))
    merged = merge_config(merged, _materialize_cli_overrides(cli_overrides or {}))
    merged = _normalize_paths(merged, base_dir=resolved_path.parent)

    try:
        return validate_config(merged)
    except ConfigValidationError as exc:
        raise ConfigLoadError(f"{resolved_path}: {exc}") from exc


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _collect_env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for path, kind in _env_bindings().items():
        env_name = _env_name_for_path(path)
        raw = environ.get(env_name)
        if raw is None:
            continue
        _set_nested(overrides, path, _coerce_env(raw, kind, env_name))
    return overrides


def _env_bindings() -> dict[tuple[str, str], _ValueKind]:
    bindings: dict[tuple[str, str], _ValueKind] = {}
    for section, values in default_config().items():
        for key, value in values.items():
            if isinstance(value, bool):
                kind: _ValueKind = "bool"
            elif isinstance(value, int):
                kind = "int"
            else:
                kind = "str"
            bindings[(section, key)] = kind
    return bindings


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _coerce_env(raw: str, kind: _ValueKind, env_name: str) -> object:
    value = raw.strip()
    if kind == "str":
        return value
    if kind == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be an integer, got {raw!r}") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off)")


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        path = tuple(part for part in key.split(".") if part)
        if len(path) != 2:
            raise ConfigLoadError(f"invalid CLI override key {key!r}; expected 'section.key'")
        _set_nested(payload, path, cli_overrides[key])
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[path[-1]] = value


def _normalize_paths(config: dict[str, Any], *, base_dir: Path) -> dict[str, Any]:
    for section, key in PATH_FIELDS:
        table = config.get(section)
        if not isinstance(table, dict):
            continue
        raw = table.get(key)
        if isinstance(raw, str) and raw.strip():
            candidate = Path(os.path.expandvars(raw)).expanduser()
            if not candidate.is_absolute():
                candidate = base_dir / candidate
            table[key] = Path(os.path.normpath(candidate)).as_posix()
    return config


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ConfigLoadError",
    "load_config",
]
