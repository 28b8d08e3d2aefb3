"""
messenger-runtime — versioned schema migrator.

File: src/messenger_runtime/storage/migrator.py

Purpose
- Bring a local store from its persisted schema version to the version compiled
  into this build, in one all-or-nothing transaction.

Functional requirements
- Fresh stores run every creation step and are stamped with the target version.
- Existing stores run every upgrade step whose threshold exceeds the persisted
  version, ascending by threshold, author order within a threshold.
- Stores newer than this build are rejected without any write.

Non-functional requirements
- Per-step diagnostics are observability only and never change the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from messenger_runtime.storage.database import StoreError, StoreHandle

logger = logging.getLogger(__name__)

StepCallback = Callable[["MigrationStep"], object]
H = TypeVar("H", bound=StoreHandle)


@dataclass(frozen=True, slots=True)
class CreationStep:
    """Table creation for one entity store against the current schema."""

    entity: str
    statements: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class MigrationStep:
    """Schema change applied once to stores whose persisted version is below ``threshold``."""

    threshold: int
    entity: str
    name: str
    statements: tuple[str, ...]

    @property
    def label(self) -> str:
        return f"v{self.threshold}:{self.entity}:{self.name}"


@dataclass(frozen=True, slots=True)
class MigrationReport:
    path: Path
    previous_version: int
    version: int
    created: bool
    applied: tuple[MigrationStep, ...]

    @property
    def changed(self) -> bool:
        return self.created or bool(self.applied)


class MigrationError(StoreError):
    """Raised when a migration cannot be applied; the store is left at its prior version."""

    def __init__(
        self,
        message: str,
        *,
        threshold: int | None = None,
        entity: str | None = None,
        step: str | None = None,
    ) -> None:
        super().__init__(message)
        self.threshold = threshold
        self.entity = entity
        self.step = step


class IncompatibleVersionError(StoreError):
    """Raised when the store was written by a newer build than this one."""

    def __init__(self, *, path: Path, persisted_version: int, target_version: int) -> None:
        super().__init__(
            "store schema is newer than supported by this build "
            f"(path={path}, store={persisted_version}, build={target_version}); "
            "refusing to downgrade"
        )
        self.path = path
        self.persisted_version = persisted_version
        self.target_version = target_version


def order_upgrade_steps(steps: Iterable[MigrationStep]) -> tuple[MigrationStep, ...]:
    """Sort steps by threshold; ``sorted`` is stable so author order is kept within one."""

    return tuple(sorted(steps, key=lambda step: step.threshold))


def pending_steps(
    steps: Iterable[MigrationStep],
    *,
    current_version: int,
    target_version: int,
) -> tuple[MigrationStep, ...]:
    """Return the ordered steps an upgrade from ``current_version`` would apply."""

    return tuple(
        step
        for step in order_upgrade_steps(steps)
        if current_version < step.threshold <= target_version
    )


def validate_steps(
    target_version: int,
    creation_steps: Sequence[CreationStep],
    upgrade_steps: Sequence[MigrationStep],
) -> None:
    if isinstance(target_version, bool) or not isinstance(target_version, int):
        raise MigrationError(f"target schema version must be an integer, got {target_version!r}")
    if target_version < 1:
        raise MigrationError(f"target schema version must be >= 1, got {target_version}")
    if not creation_steps:
        raise MigrationError("at least one creation step is required")
    for creation in creation_steps:
        if not creation.statements:
            raise MigrationError(f"creation step for {creation.entity!r} has no statements")
    for step in upgrade_steps:
        if step.threshold < 1:
            raise MigrationError(
                f"upgrade step {step.label} has threshold < 1", threshold=step.threshold
            )
        if step.threshold > target_version:
            raise MigrationError(
                f"upgrade step {step.label} exceeds target schema version {target_version}",
                threshold=step.threshold,
                entity=step.entity,
                step=step.name,
            )
        if not step.statements:
            raise MigrationError(
                f"upgrade step {step.label} has no statements", threshold=step.threshold
            )


def migrate(
    handle: StoreHandle,
    target_version: int,
    creation_steps: Sequence[CreationStep],
    upgrade_steps: Sequence[MigrationStep],
    *,
    on_step: StepCallback | None = None,
) -> MigrationReport:
    """Create or upgrade ``handle``'s schema to ``target_version``."""

    validate_steps(target_version, creation_steps, upgrade_steps)

    # Read-only check first: acquiring a pooled connection switches the file to WAL.
    _reject_newer(handle, handle.persisted_version(), target_version)

    with handle.connection() as conn:
        persisted = handle.user_version(conn=conn)
        _reject_newer(handle, persisted, target_version)
        if persisted == target_version:
            logger.debug("store %s already at schema version %d", handle.path, persisted)
            return MigrationReport(handle.path, persisted, persisted, created=False, applied=())

        applied: tuple[MigrationStep, ...] = ()
        try:
            with handle.transaction(conn=conn, mode="exclusive") as tx:
                # Another process may have migrated between the first read and the lock.
                persisted = handle.user_version(conn=tx)
                _reject_newer(handle, persisted, target_version)
                if persisted == target_version:
                    return MigrationReport(
                        handle.path, persisted, persisted, created=False, applied=()
                    )

                if persisted == 0:
                    _create(handle, tx, target_version, creation_steps)
                else:
                    applied = _upgrade(handle, tx, persisted, target_version, upgrade_steps)
                handle.set_user_version(target_version, conn=tx)
        except (MigrationError, IncompatibleVersionError):
            raise
        except StoreError as exc:
            last = pending_steps(
                upgrade_steps, current_version=persisted, target_version=target_version
            )
            raise MigrationError(
                f"migrating {handle.path} to schema version {target_version} failed: {exc}",
                threshold=last[-1].threshold if last and persisted else None,
            ) from exc

    report = MigrationReport(
        handle.path,
        persisted,
        target_version,
        created=persisted == 0,
        applied=applied,
    )
    logger.info(
        "store %s migrated from schema version %d to %d",
        handle.path,
        report.previous_version,
        report.version,
        extra={"store_created": report.created, "applied_steps": [s.label for s in applied]},
    )
    if on_step is not None:
        _notify(on_step, applied)
    return report


def open_store(
    location: str | Path,
    target_version: int,
    creation_steps: Sequence[CreationStep],
    upgrade_steps: Sequence[MigrationStep],
    *,
    on_step: StepCallback | None = None,
    handle_factory: Callable[..., H] = StoreHandle,  # type: ignore[assignment]
    **handle_options: Any,
) -> H:
    """Open the store at ``location`` and return it only once its schema is current."""

    handle = handle_factory(location, **handle_options)
    try:
        migrate(handle, target_version, creation_steps, upgrade_steps, on_step=on_step)
    except BaseException:
        handle.close()
        raise
    return handle


async def open_store_async(
    location: str | Path,
    target_version: int,
    creation_steps: Sequence[CreationStep],
    upgrade_steps: Sequence[MigrationStep],
    **options: Any,
) -> StoreHandle:
    return await asyncio.to_thread(
        open_store, location, target_version, creation_steps, upgrade_steps, **options
    )


def _reject_newer(handle: StoreHandle, persisted: int, target_version: int) -> None:
    if persisted > target_version:
        raise IncompatibleVersionError(
            path=handle.path,
            persisted_version=persisted,
            target_version=target_version,
        )


def _create(
    handle: StoreHandle,
    conn: sqlite3.Connection,
    target_version: int,
    creation_steps: Sequence[CreationStep],
) -> None:
    logger.info("creating store %s at schema version %d", handle.path, target_version)
    for creation in creation_steps:
        try:
            for statement in creation.statements:
                handle.execute(statement, conn=conn)
        except (StoreError, sqlite3.Error) as exc:
            raise MigrationError(
                f"creating tables for {creation.entity!r} failed for {handle.path}: {exc}",
                entity=creation.entity,
            ) from exc


def _upgrade(
    handle: StoreHandle,
    conn: sqlite3.Connection,
    persisted: int,
    target_version: int,
    upgrade_steps: Sequence[MigrationStep],
) -> tuple[MigrationStep, ...]:
    steps = pending_steps(upgrade_steps, current_version=persisted, target_version=target_version)
    for step in steps:
        logger.debug(
            "updating store %s: %s",
            handle.path,
            step.name,
            extra={"threshold": step.threshold, "entity": step.entity, "step": step.name},
        )
        try:
            for statement in step.statements:
                handle.execute(statement, conn=conn)
        except (StoreError, sqlite3.Error) as exc:
            raise MigrationError(
                f"upgrade step {step.label} failed for {handle.path} "
                f"(store left at schema version {persisted}): {exc}",
                threshold=step.threshold,
                entity=step.entity,
                step=step.name,
            ) from exc
    return steps


def _notify(callback: StepCallback, steps: Sequence[MigrationStep]) -> None:
    for step in steps:
        try:
            callback(step)
        except Exception:  # noqa: BLE001
            logger.warning("migration step callback failed for %s", step.label, exc_info=True)


__all__ = [
    "CreationStep",
    "IncompatibleVersionError",
    "MigrationError",
    "MigrationReport",
    "MigrationStep",
    "StepCallback",
    "migrate",
    "open_store",
    "open_store_async",
    "order_upgrade_steps",
    "pending_steps",
    "validate_steps",
]
