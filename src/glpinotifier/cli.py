from __future__ import annotations

import argparse
import logging
import signal
import sys
from threading import Event

from .config import AppConfig, ConfigError, load_config
from .engine import build_engine
from .logging_setup import setup_logging
from .tickets import Ticket
from .toast import DispatchError, build_dispatcher, build_notification, resolve_logo_path
from . import __version_label__

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

SAMPLE_TICKET_ID = 12345


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="glpi-notifier",
        description="Show a desktop notification for every new GLPI ticket.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--test-toast",
        action="store_true",
        help="Show one sample notification and exit.",
    )
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle and exit.",
    )
    parser.add_argument("--env-file", help="Path to the .env file to load.")
    parser.add_argument("--config", help="Path to an optional YAML settings file.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version_label__}")
    return parser


def _setup_logging(config: AppConfig) -> None:
    setup_logging(
        config.log_file,
        log_level=config.log_level,
        log_console_level=config.log_console_level,
        log_console_enabled=config.log_console_enabled,
        log_max_bytes=config.log_max_bytes,
        log_backup_count=config.log_backup_count,
        app_version=__version_label__,
    )


def _install_signal_handlers(stop_event: Event) -> None:
    def _handle(signum: int, _frame: object) -> None:
        LOGGER.info(
            "Signal %s received; stopping after the current cycle",
            signum,
            extra={"category": "shutdown"},
        )
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle)


def run_test_toast(config: AppConfig) -> int:
    ticket = Ticket(
        id=SAMPLE_TICKET_ID,
        name="Notification test",
        status="1",
        requester="Example User",
        url=config.ticket_url(SAMPLE_TICKET_ID) if config.base_url else "",
    )
    notification = build_notification(ticket, image_path=resolve_logo_path(config.logo_path))
    try:
        build_dispatcher(config).dispatch(notification)
    except DispatchError as exc:
        LOGGER.error("Toast error: %s", exc, extra={"category": "notify"})
        sys.stderr.write(f"Toast error: {exc}\n")
        return EXIT_FAILED
    LOGGER.info("Test notification dispatched", extra={"category": "notify"})
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        config = load_config(
            env_file=args.env_file,
            config_path=args.config,
            require_credentials=not args.test_toast,
        )
    except ConfigError as exc:
        sys.stderr.write(f"Configuration error: {exc}\n")
        return EXIT_CONFIG_ERROR
    _setup_logging(config)
    for source in config.sources:
        LOGGER.info("Loaded settings from %s", source, extra={"category": "config"})

    if args.test_toast:
        return run_test_toast(config)

    LOGGER.info(
        "GLPI notifier %s starting (interval: %ss)",
        __version_label__,
        config.poll_seconds,
        extra={"category": "startup"},
    )
    engine = build_engine(config)
    try:
        if args.once:
            try:
                result = engine.run_cycle()
            finally:
                engine.sessions.close()
            return EXIT_OK if result.ok else EXIT_FAILED

        stop_event = Event()
        _install_signal_handlers(stop_event)
        engine.run_forever(stop_event)
    except ConfigError as exc:
        LOGGER.error("Configuration error: %s", exc, extra={"category": "config"})
        sys.stderr.write(f"Configuration error: {exc}\n")
        return EXIT_CONFIG_ERROR
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
