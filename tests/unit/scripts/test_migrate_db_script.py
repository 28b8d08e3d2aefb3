"""
messenger-runtime — migrate_db script subprocess smoke tests

Purpose
- Keep the migration entrypoint executable at a smoke-test level.
- Verify `--help`, `--json` output structure, and `--dry-run` non-destructive safety behavior.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[3]
SRC_PATH = REPO_ROOT / "src"
TARGET_VERSION = 9


def _run_script(*args: str) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    return subprocess.run(
        [sys.executable, "scripts/migrate_db.py", *args],
        cwd=REPO_ROOT,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def _render_failure(label: str, completed: subprocess.CompletedProcess[str]) -> str:
    return (
        f"{label} failed with exit code {completed.returncode}\n"
        f"stdout:\n{completed.stdout}\n"
        f"stderr:\n{completed.stderr}\n"
    )


@pytest.mark.unit
def test_migrate_db_help_smoke() -> None:
    result = _run_script("--help")

    assert result.returncode == 0, _render_failure("migrate_db --help", result)
    lowered_output = result.stdout.lower()
    assert "usage" in lowered_output
    assert "--db" in lowered_output
    assert "--dry-run" in lowered_output


@pytest.mark.unit
def test_migrate_db_dry_run_does_not_create_database(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "account.db"

    result = _run_script("--db", str(db_path), "--dry-run", "--json")

    assert result.returncode == 0, _render_failure("migrate_db --dry-run", result)
    payload = json.loads(result.stdout)
    assert payload["dry_run"] is True
    assert payload["db_existed"] is False
    assert payload["schema_version"] == 0
    assert payload["target_schema_version"] == TARGET_VERSION
    assert payload["up_to_date"] is False
    assert payload["pending_migrations"] == 0
    assert {row["status"] for row in payload["migrations"]} == {"superseded"}
    assert not db_path.exists()
    assert not db_path.parent.exists()


@pytest.mark.unit
def test_migrate_db_apply_then_dry_run_reports_applied(tmp_path: Path) -> None:
    db_path = tmp_path / "account.db"

    applied = _run_script("--db", str(db_path), "--json")
    assert applied.returncode == 0, _render_failure("migrate_db apply", applied)
    payload = json.loads(applied.stdout)
    assert payload["schema_version"] == TARGET_VERSION
    assert payload["up_to_date"] is True
    assert db_path.exists()

    inspected = _run_script("--db", str(db_path), "--dry-run")
    assert inspected.returncode == 0, _render_failure("migrate_db --dry-run", inspected)
    assert f"schema_version: {TARGET_VERSION}" in inspected.stdout
    assert "v9: applied (message_send_log: add urgent field)" in inspected.stdout
    assert "pending" not in inspected.stdout


@pytest.mark.unit
def test_migrate_db_refuses_newer_store(tmp_path: Path) -> None:
    import sqlite3

    db_path = tmp_path / "future.db"
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(f"PRAGMA user_version = {TARGET_VERSION + 1}")
        conn.commit()
    finally:
        conn.close()

    result = _run_script("--db", str(db_path))

    assert result.returncode == 1
    assert "refusing to downgrade" in result.stderr
