"""
messenger-runtime — migrate the account store schema.

Purpose
- Create or upgrade an account store to the schema version of this build.
- Report per-step status for both apply and dry-run flows.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


def _ensure_src_path() -> None:
    if str(SRC_PATH) not in sys.path:
        sys.path.insert(0, str(SRC_PATH))


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create, upgrade or inspect an account store schema.",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("data") / "account.db",
        help="Path to the account SQLite database.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show migration status without touching the target database.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON output.",
    )
    return parser.parse_args(argv)


def _read_persisted_version(db_path: Path) -> int:
    """Read the schema version without creating or converting the store."""

    _ensure_src_path()
    from messenger_runtime.storage import StoreHandle

    return StoreHandle(db_path).persisted_version()


def _status_rows(*, persisted_version: int, target_version: int) -> list[dict[str, JSONValue]]:
    _ensure_src_path()
    from messenger_runtime.storage import schema
    from messenger_runtime.storage.migrator import order_upgrade_steps

    rows: list[dict[str, JSONValue]] = []
    for step in order_upgrade_steps(schema.upgrade_steps()):
        if persisted_version == 0:
            # Fresh stores are created at the target shape and skip upgrade steps.
            status = "superseded"
        elif step.threshold <= persisted_version:
            status = "applied"
        elif step.threshold <= target_version:
            status = "pending"
        else:
            status = "unknown"
        rows.append(
            {
                "threshold": step.threshold,
                "entity": step.entity,
                "name": step.name,
                "status": status,
            }
        )
    return rows


def _emit_json(payload: Mapping[str, JSONValue]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _emit_text(payload: Mapping[str, JSONValue]) -> None:
    print(f"db_path: {payload['db_path']}")
    print(f"dry_run: {payload['dry_run']}")
    print(f"schema_version: {payload['schema_version']}")
    print(f"target_schema_version: {payload['target_schema_version']}")
    print(f"up_to_date: {payload['up_to_date']}")
    print("migrations:")

    steps = payload.get("migrations")
    for row in steps if isinstance(steps, list) else []:
        if isinstance(row, Mapping):
            print(f"  v{row['threshold']}: {row['status']} ({row['entity']}: {row['name']})")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    resolved_db_path = args.db.expanduser().resolve()
    existed_before = resolved_db_path.exists()

    _ensure_src_path()
    from messenger_runtime.constants import ACCOUNT_DB_SCHEMA_VERSION
    from messenger_runtime.storage import AccountDatabase

    try:
        if args.dry_run:
            current_version = _read_persisted_version(resolved_db_path)
        else:
            resolved_db_path.parent.mkdir(parents=True, exist_ok=True)
            with AccountDatabase.init(resolved_db_path) as database:
                current_version = database.user_version()

        rows = _status_rows(
            persisted_version=current_version, target_version=ACCOUNT_DB_SCHEMA_VERSION
        )
        pending = sum(1 for row in rows if row["status"] == "pending")
        payload: dict[str, JSONValue] = {
            "db_path": resolved_db_path.as_posix(),
            "dry_run": bool(args.dry_run),
            "db_existed": existed_before,
            "schema_version": current_version,
            "target_schema_version": ACCOUNT_DB_SCHEMA_VERSION,
            "up_to_date": current_version == ACCOUNT_DB_SCHEMA_VERSION,
            "pending_migrations": pending,
            "migrations": list(rows),
        }

        if args.json:
            _emit_json(payload)
        else:
            _emit_text(payload)
        return 0 if current_version <= ACCOUNT_DB_SCHEMA_VERSION else 1
    except Exception as exc:  # noqa: BLE001
        if args.json:
            _emit_json(
                {
                    "db_path": resolved_db_path.as_posix(),
                    "dry_run": bool(args.dry_run),
                    "error": str(exc),
                }
            )
        else:
            print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
