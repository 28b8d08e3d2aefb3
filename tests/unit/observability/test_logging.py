"""
messenger-runtime — unit tests for the session log

Purpose
- Validate JSON-lines output, redaction of credentials, key material and phone
  numbers, correlation tags, and queue-backed close behavior.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest

from messenger_runtime.observability.logging import (
    REDACTED,
    SessionLogOptions,
    correlation_fields,
    correlation_scope,
    open_session_log,
    redact,
)

if TYPE_CHECKING:
    from pathlib import Path


def _logger_name() -> str:
    return f"messenger_runtime.tests.logging.{uuid4().hex}"


def _events(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_session_log_redacts_secrets_and_keeps_correlation(tmp_path: Path) -> None:
    name = _logger_name()
    with open_session_log(
        "session-1", SessionLogOptions(log_dir=tmp_path), logger_name=name
    ) as session_log:
        with correlation_scope(account="aci-42", slot="message_sender"):
            logging.getLogger(name).info(
                "registering +15551234567 with password=hunter2",
                extra={"nested": {"profile_key": "cHJvZmlsZQ==", "safe": "ok"}, "pin": "1234"},
            )

    assert session_log.path == tmp_path / "session-1" / "runtime.jsonl"
    [event] = _events(session_log.path)
    assert event["session"] == "session-1"
    assert event["account"] == "aci-42"
    assert event["slot"] == "message_sender"
    assert event["level"] == "INFO"
    assert event["msg"] == f"registering +***67 with password={REDACTED}"
    assert event["fields"] == {
        "nested": {"profile_key": REDACTED, "safe": "ok"},
        "pin": REDACTED,
    }


def test_bytes_values_never_reach_the_log(tmp_path: Path) -> None:
    name = _logger_name()
    options = SessionLogOptions(log_dir=tmp_path, redact_secrets=False)
    with open_session_log("session-bytes", options, logger_name=name) as session_log:
        logging.getLogger(name).warning("stored", extra={"blob": b"\x00secret-bytes"})

    [event] = _events(session_log.path)
    assert event["fields"] == {"blob": REDACTED}


def test_redaction_matches_short_key_names_whole() -> None:
    assert redact(
        {
            "pin": "0000",
            "mapping": "visible",
            "record": "opaque",
            "recorder": "visible",
            "identityKey": "k",
            "storage_key": "k",
        }
    ) == {
        "pin": REDACTED,
        "mapping": "visible",
        "record": REDACTED,
        "recorder": "visible",
        "identityKey": REDACTED,
        "storage_key": REDACTED,
    }


def test_redaction_masks_phone_numbers_and_basic_auth_in_text() -> None:
    assert redact(["to +4915112345678", "Authorization: Basic dXNlcjpwYXNz"]) == [
        "to +***78",
        f"Authorization:{REDACTED}",
    ]


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    name = _logger_name()
    options = SessionLogOptions(log_dir=tmp_path, redact_secrets=False, level="debug")
    with open_session_log("session-raw", options, logger_name=name) as session_log:
        logging.getLogger(name).debug("number +15551234567")

    [event] = _events(session_log.path)
    assert event["msg"] == "number +15551234567"


def test_child_loggers_below_the_level_are_filtered(tmp_path: Path) -> None:
    name = _logger_name()
    with open_session_log(
        "session-level", SessionLogOptions(log_dir=tmp_path, level="WARNING"), logger_name=name
    ) as session_log:
        child = logging.getLogger(f"{name}.storage.migrator")
        child.info("creating store")
        child.warning("rolling back transaction left open")

    assert [event["logger"] for event in _events(session_log.path)] == [
        f"{name}.storage.migrator"
    ]


def test_correlation_tags_are_captured_per_thread(tmp_path: Path) -> None:
    name = _logger_name()
    logger = logging.getLogger(name)
    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        with correlation_scope(slot=f"slot-{thread_idx}"):
            for i in range(per_thread):
                logger.info("thread=%d index=%d password=pw-%d", thread_idx, i, i)

    with open_session_log(
        "session-threads", SessionLogOptions(log_dir=tmp_path), logger_name=name
    ) as session_log:
        threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    events = _events(session_log.path)
    assert len(events) == total_threads * per_thread
    for event in events:
        message = str(event["msg"])
        assert "pw-" not in message
        assert event["slot"] == f"slot-{message.split()[0].split('=')[1]}"


def test_close_drains_the_queue_and_restores_the_logger(tmp_path: Path) -> None:
    name = _logger_name()
    logger = logging.getLogger(name)
    session_log = open_session_log(
        "session-close", SessionLogOptions(log_dir=tmp_path, queue_size=10_000), logger_name=name
    )
    assert any(isinstance(h, logging.handlers.QueueHandler) for h in logger.handlers)
    assert logger.propagate is False

    for i in range(300):
        logger.info("message %s", i)
    session_log.close()
    session_log.close()

    assert session_log.closed
    assert session_log.dropped_records == 0
    assert len(_events(session_log.path)) == 300
    assert logger.handlers == []
    assert logger.propagate is True
    assert logger.level == logging.NOTSET


def test_reopening_a_logger_closes_the_previous_session_log(tmp_path: Path) -> None:
    name = _logger_name()
    first = open_session_log("first", SessionLogOptions(log_dir=tmp_path), logger_name=name)
    logging.getLogger(name).info("one")
    with open_session_log(
        "second", SessionLogOptions(log_dir=tmp_path), logger_name=name
    ) as second:
        logging.getLogger(name).info("two")

    assert first.closed
    assert [event["msg"] for event in _events(first.path)] == ["one"]
    assert [event["msg"] for event in _events(second.path)] == ["two"]


def test_correlation_scope_nests_and_resets() -> None:
    with correlation_scope(account="aci-1"):
        with correlation_scope(slot="cipher"):
            assert correlation_fields() == {"account": "aci-1", "slot": "cipher"}
        with correlation_scope(account=None):
            assert correlation_fields() == {}
        assert correlation_fields() == {"account": "aci-1"}
    assert correlation_fields() == {}

    with pytest.raises(ValueError):
        with correlation_scope(slot="   "):
            pass


@pytest.mark.parametrize(
    ("session_id", "options"),
    [
        ("   ", SessionLogOptions()),
        ("s", SessionLogOptions(filename="nested/runtime.jsonl")),
        ("s", SessionLogOptions(queue_size=0)),
        ("s", SessionLogOptions(level="CHATTY")),
    ],
)
def test_invalid_session_log_options_are_rejected(
    tmp_path: Path, session_id: str, options: SessionLogOptions
) -> None:
    with pytest.raises(ValueError):
        open_session_log(
            session_id,
            SessionLogOptions(
                level=options.level,
                log_dir=tmp_path,
                queue_size=options.queue_size,
                filename=options.filename,
            ),
            logger_name=_logger_name(),
        )


def test_bare_basic_credentials_are_masked() -> None:
    assert redact("sent header basic dXNlcjpwYXNz") == f"sent header Basic {REDACTED}"
