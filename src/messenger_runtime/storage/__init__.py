"""
messenger-runtime — storage layer.

Purpose
- Local store handle, versioned schema migrator, and the account schema catalogue.

Functional requirements
- A store is handed to entity stores only after its migration run committed.
- Stores written by a newer build are never opened.
"""

from messenger_runtime.storage.account_db import AccountDatabase
from messenger_runtime.storage.database import (
    StoreBusyError,
    StoreCorruptionError,
    StoreError,
    StoreHandle,
)
from messenger_runtime.storage.migrator import (
    CreationStep,
    IncompatibleVersionError,
    MigrationError,
    MigrationReport,
    MigrationStep,
    migrate,
    open_store,
    open_store_async,
)

__all__ = [
    "AccountDatabase",
    "CreationStep",
    "IncompatibleVersionError",
    "MigrationError",
    "MigrationReport",
    "MigrationStep",
    "StoreBusyError",
    "StoreCorruptionError",
    "StoreError",
    "StoreHandle",
    "migrate",
    "open_store",
    "open_store_async",
]
