"""Shared helpers for storage tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

from messenger_runtime.storage.migrator import CreationStep, MigrationStep

if TYPE_CHECKING:
    from messenger_runtime.storage.database import StoreHandle

ColumnShape = tuple[str, str, int, object, int]


def schema_shape(handle: StoreHandle) -> dict[str, tuple[ColumnShape, ...]]:
    """Tables mapped to their column definitions, in declaration order."""

    shape: dict[str, tuple[ColumnShape, ...]] = {}
    for table in handle.table_names():
        rows = handle.query_all(f'PRAGMA table_info("{table}")')
        shape[table] = tuple(
            (
                str(row["name"]),
                str(row["type"]).upper(),
                int(row["notnull"] or 0),
                row["dflt_value"],
                int(row["pk"] or 0),
            )
            for row in rows
        )
    return shape


def index_names(handle: StoreHandle) -> frozenset[str]:
    rows = handle.query_all(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%'"
    )
    return frozenset(str(row["name"]) for row in rows)


def notes_creation() -> tuple[CreationStep, ...]:
    """A small two-entity catalogue for exercising the migrator directly."""

    return (
        CreationStep(
            entity="note",
            statements=("CREATE TABLE note (_id INTEGER PRIMARY KEY, body TEXT, pinned BOOLEAN)",),
        ),
        CreationStep(
            entity="tag",
            statements=("CREATE TABLE tag (_id INTEGER PRIMARY KEY, label TEXT)",),
        ),
    )


def notes_upgrades() -> tuple[MigrationStep, ...]:
    return (
        MigrationStep(
            threshold=3,
            entity="note",
            name="add pinned",
            statements=("ALTER TABLE note ADD COLUMN pinned BOOLEAN",),
        ),
        MigrationStep(
            threshold=2,
            entity="tag",
            name="create tag table",
            statements=("CREATE TABLE tag (_id INTEGER PRIMARY KEY, label TEXT)",),
        ),
    )


NOTES_BASELINE: tuple[CreationStep, ...] = (
    CreationStep(
        entity="note",
        statements=("CREATE TABLE note (_id INTEGER PRIMARY KEY, body TEXT)",),
    ),
)
