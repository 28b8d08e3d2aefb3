"""Stable constants shared across the storage and runtime layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema version compiled into this build for the per-account store.
ACCOUNT_DB_SCHEMA_VERSION: Final[int] = 9

# Default runtime paths (relative to the data directory unless overridden by config).
DATA_DIR: Final[PurePosixPath] = PurePosixPath("data")
ACCOUNT_DB_FILENAME: Final[str] = "account.db"
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Service limits handed to the messaging library.
AUTOMATIC_NETWORK_RETRY: Final[bool] = True
GROUP_MAX_SIZE: Final[int] = 1001
MAX_ENVELOPE_SIZE: Final[int] = 0
KEY_BACKUP_MAX_TRIES: Final[int] = 10

DEFAULT_DEVICE_ID: Final[int] = 1

__all__ = [
    "ACCOUNT_DB_FILENAME",
    "ACCOUNT_DB_SCHEMA_VERSION",
    "AUTOMATIC_NETWORK_RETRY",
    "DATA_DIR",
    "DEFAULT_DEVICE_ID",
    "GROUP_MAX_SIZE",
    "KEY_BACKUP_MAX_TRIES",
    "LOG_DIR",
    "MAX_ENVELOPE_SIZE",
]
