from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from glpinotifier.logging_setup import sanitize_text, setup_logging


@pytest.fixture(autouse=True)
def _close_root_handlers():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)


def test_setup_logging_creates_text_and_json_logs(tmp_path: Path) -> None:
    base_log = tmp_path / "logs" / "glpinotifier.log"

    setup_logging(str(base_log), app_version="1.2.3", log_console_enabled=False)

    assert base_log.exists()
    assert (tmp_path / "logs" / "glpinotifier.jsonl").exists()
    assert logging.getLogger("urllib3").level == logging.WARNING
    assert logging.getLogger("PIL").level == logging.WARNING
    handlers = logging.getLogger().handlers
    assert len([handler for handler in handlers if isinstance(handler, RotatingFileHandler)]) == 2


def test_setup_logging_caps_retention(tmp_path: Path) -> None:
    setup_logging(str(tmp_path / "app.log"), log_backup_count=12, log_console_enabled=False)

    rotating = [
        handler
        for handler in logging.getLogger().handlers
        if isinstance(handler, RotatingFileHandler)
    ]
    assert rotating
    assert all(handler.backupCount == 5 for handler in rotating)


def test_setup_logging_falls_back_to_stream_when_path_unusable(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")

    setup_logging(str(blocker / "logs" / "app.log"), log_console_enabled=False)

    handlers = logging.getLogger().handlers
    assert handlers
    assert not any(isinstance(handler, RotatingFileHandler) for handler in handlers)


def test_sanitize_text_redacts_glpi_credentials() -> None:
    message = (
        "headers={'Session-Token': 'abc123', 'App-Token': 'app999'} "
        '{"session_token": "s3cr3t"} Authorization: user_token u-42 password=hunter2'
    )

    sanitized = sanitize_text(message)

    for secret in ("abc123", "app999", "s3cr3t", "u-42", "hunter2"):
        assert secret not in sanitized
    assert "<redacted>" in sanitized


def test_json_log_contains_context_and_redacts(tmp_path: Path) -> None:
    base_log = tmp_path / "logs" / "glpinotifier.log"
    setup_logging(str(base_log), app_version="9.9.9", log_console_enabled=False)

    logging.getLogger("glpinotifier.test").info(
        "login with session_token=%s", "topsecret", extra={"category": "session"}
    )
    for handler in logging.getLogger().handlers:
        handler.flush()

    line = (tmp_path / "logs" / "glpinotifier.jsonl").read_text(encoding="utf-8").splitlines()[-1]
    payload = json.loads(line)
    assert payload["category"] == "session"
    assert payload["app_version"] == "9.9.9"
    assert payload["session_id"]
    assert set(payload) >= {"timestamp", "level", "logger", "location", "pid"}
    assert "hostname" not in payload
    assert "topsecret" not in payload["message"]
    assert "topsecret" not in base_log.read_text(encoding="utf-8")
