"""Per-account local store: key material, sessions, groups and the send log."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from messenger_runtime.constants import ACCOUNT_DB_SCHEMA_VERSION
from messenger_runtime.observability.logging import correlation_scope
from messenger_runtime.storage import schema
from messenger_runtime.storage.database import StoreHandle
from messenger_runtime.storage.migrator import MigrationReport, StepCallback, migrate


class AccountDatabase(StoreHandle):
    """Store handle whose schema is guaranteed current once ``init`` returns."""

    def __init__(self, path: str | Path, **handle_options: Any) -> None:
        super().__init__(path, **handle_options)
        self._migration_report: MigrationReport | None = None

    @property
    def migration_report(self) -> MigrationReport | None:
        return self._migration_report

    @classmethod
    def init(
        cls,
        path: str | Path,
        *,
        on_step: StepCallback | None = None,
        **handle_options: Any,
    ) -> AccountDatabase:
        """Open the account store, creating or upgrading it to ``ACCOUNT_DB_SCHEMA_VERSION``."""

        database = cls(path, **handle_options)
        try:
            with correlation_scope(store=database.path.name or None):
                database._migration_report = migrate(
                    database,
                    ACCOUNT_DB_SCHEMA_VERSION,
                    schema.creation_steps(),
                    schema.upgrade_steps(),
                    on_step=on_step,
                )
        except BaseException:
            database.close()
            raise
        return database


__all__ = ["AccountDatabase"]
