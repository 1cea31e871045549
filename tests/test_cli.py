from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from threading import Event

import pytest

from glpinotifier import cli, toast
from glpinotifier.config import ConfigError, get_user_data_dir
from glpinotifier.engine import CycleResult


@pytest.fixture(autouse=True)
def _close_root_handlers():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)


@pytest.fixture
def glpi_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    monkeypatch.setenv("GLPI_BASE_URL", "https://glpi.example.com/apirest.php")
    monkeypatch.setenv("GLPI_USER_TOKEN", "user-tok")
    monkeypatch.setenv("TOAST_COMMAND", "notify-send")
    monkeypatch.setenv("LOG_CONSOLE_ENABLED", "false")
    return monkeypatch


class FakeEngine:
    def __init__(self, *, result: CycleResult | None = None, error: Exception | None = None) -> None:
        self.result = result or CycleResult(ok=True, new_count=0)
        self.error = error
        self.closed = False
        self.loop_event: Event | None = None
        self.sessions = self

    def run_cycle(self) -> CycleResult:
        if self.error is not None:
            raise self.error
        return self.result

    def run_forever(self, stop_event: Event) -> None:
        self.loop_event = stop_event
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        self.closed = True


def _install_engine(monkeypatch: pytest.MonkeyPatch, engine: FakeEngine) -> None:
    monkeypatch.setattr(cli, "build_engine", lambda config: engine)


def test_test_toast_needs_no_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def _run(args, **kwargs):
        calls.append(args)
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    monkeypatch.setenv("TOAST_COMMAND", "notify-send")
    monkeypatch.setenv("LOG_CONSOLE_ENABLED", "false")
    monkeypatch.setattr(toast.subprocess, "run", _run)

    assert cli.main(["--test-toast"]) == cli.EXIT_OK
    assert calls
    assert "GLPI: New ticket #12345" in calls[0]
    assert "Notification test\nBy: Example User" in calls[0]


def test_test_toast_links_sample_ticket_when_configured(
    glpi_env: pytest.MonkeyPatch,
) -> None:
    calls: list[list[str]] = []

    def _run(args, **kwargs):
        calls.append(args)
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    glpi_env.setattr(toast.subprocess, "run", _run)

    assert cli.main(["--test-toast"]) == cli.EXIT_OK
    assert calls[0][-1].endswith("https://glpi.example.com/front/ticket.form.php?id=12345")


def test_test_toast_failure_exit_code(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("TOAST_COMMAND", "notify-send")
    monkeypatch.setenv("LOG_CONSOLE_ENABLED", "false")
    monkeypatch.setattr(
        toast.subprocess,
        "run",
        lambda args, **kwargs: subprocess.CompletedProcess(args, 1, stdout="", stderr="no bus"),
    )

    assert cli.main(["--test-toast"]) == cli.EXIT_FAILED
    assert "Toast error" in capsys.readouterr().err


def test_missing_credentials_exit_with_config_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["--once"]) == cli.EXIT_CONFIG_ERROR
    assert "GLPI_BASE_URL" in capsys.readouterr().err


def test_once_reports_cycle_health(glpi_env: pytest.MonkeyPatch) -> None:
    healthy = FakeEngine(result=CycleResult(ok=True, new_count=1, notified_ids=[3]))
    _install_engine(glpi_env, healthy)
    assert cli.main(["--once"]) == cli.EXIT_OK
    assert healthy.closed is True

    failing = FakeEngine(result=CycleResult(ok=False, new_count=0))
    _install_engine(glpi_env, failing)
    assert cli.main(["--once"]) == cli.EXIT_FAILED
    assert failing.closed is True


def test_configuration_error_during_cycle_exits_with_code_2(
    glpi_env: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    engine = FakeEngine(error=ConfigError("initSession redirected twice"))
    _install_engine(glpi_env, engine)

    assert cli.main(["--once"]) == cli.EXIT_CONFIG_ERROR
    assert engine.closed is True
    assert "redirected twice" in capsys.readouterr().err


def test_daemon_mode_runs_loop_with_signal_handlers(glpi_env: pytest.MonkeyPatch) -> None:
    installed: list[int] = []
    glpi_env.setattr(cli.signal, "signal", lambda signum, handler: installed.append(signum))
    engine = FakeEngine()
    _install_engine(glpi_env, engine)

    assert cli.main([]) == cli.EXIT_OK
    assert engine.loop_event is not None
    assert cli.signal.SIGINT in installed


def test_signal_handler_sets_stop_event(monkeypatch: pytest.MonkeyPatch) -> None:
    handlers: dict[int, object] = {}
    monkeypatch.setattr(
        cli.signal, "signal", lambda signum, handler: handlers.__setitem__(signum, handler)
    )
    stop_event = Event()

    cli._install_signal_handlers(stop_event)
    handlers[cli.signal.SIGINT](cli.signal.SIGINT, None)

    assert stop_event.is_set()


def test_once_and_test_toast_are_exclusive() -> None:
    with pytest.raises(SystemExit):
        cli.main(["--once", "--test-toast"])


def test_settings_sources_reach_the_log_file(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    env_file = tmp_path / "glpi.env"
    env_file.write_text("TOAST_COMMAND=notify-send\nLOG_CONSOLE_ENABLED=false\n", encoding="utf-8")
    monkeypatch.setattr(
        toast.subprocess,
        "run",
        lambda args, **kwargs: subprocess.CompletedProcess(args, 0, stdout="", stderr=""),
    )

    assert cli.main(["--test-toast", "--env-file", str(env_file)]) == cli.EXIT_OK
    for handler in logging.getLogger().handlers:
        handler.flush()

    log_text = (get_user_data_dir() / "logs" / "glpinotifier.log").read_text(encoding="utf-8")
    assert f"Loaded settings from {env_file}" in log_text
