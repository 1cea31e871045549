import json
import logging
import re
import sys
import threading
import warnings
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from uuid import uuid4

MAX_LOG_FILES = 5

TEXT_FORMAT = "%(asctime)s %(levelname)s %(category)s %(name)s %(filename)s:%(lineno)d %(message)s"

# GLPI credentials as they appear in headers, JSON bodies and reprs
HEADER_TOKEN_RE = re.compile(
    r"(?i)\b(session-token|app-token|session_token|app_token|user_token)([\"']?\s*[:=]?\s*[\"']?)[A-Za-z0-9._\-]+"
)
TOKEN_RE = re.compile(
    r"(?i)\b(bearer|token|apikey|api_key|secret|password)\s*[:=]\s*[^\s,;]+"
)

QUIET_LOGGERS = ("urllib3", "PIL")


def sanitize_text(value: str) -> str:
    """Mask GLPI credentials and generic secrets in log text."""
    if not value:
        return value
    sanitized = HEADER_TOKEN_RE.sub(r"\1\2<redacted>", value)
    return TOKEN_RE.sub(r"\1=<redacted>", sanitized)


class CategoryFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "category"):
            record.category = "general"
        return True


class ContextFilter(logging.Filter):
    """Stamps every record with the run id and version."""

    def __init__(self, *, session_id: str, app_version: str) -> None:
        super().__init__()
        self._session_id = session_id
        self._app_version = app_version

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = getattr(record, "session_id", self._session_id)
        record.app_version = getattr(record, "app_version", self._app_version)
        return True


class RedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = sanitize_text(record.getMessage())
        record.args = ()
        return True


class SanitizingFormatter(logging.Formatter):
    def formatException(self, ei) -> str:
        return sanitize_text(super().formatException(ei))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "category": getattr(record, "category", "general"),
            "logger": record.name,
            "message": sanitize_text(record.getMessage()),
            "location": f"{record.filename}:{record.lineno}",
            "session_id": getattr(record, "session_id", ""),
            "app_version": getattr(record, "app_version", ""),
            "pid": record.process,
        }
        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False)


def _install_exception_hooks() -> None:
    logger = logging.getLogger(__name__)

    def _log_unhandled(exc_type, exc, tb) -> None:
        if issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
            logger.info("Shutdown requested", extra={"category": "shutdown"})
            return
        logger.critical(
            "Unhandled exception",
            exc_info=(exc_type, exc, tb),
            extra={"category": "fatal"},
        )

    sys.excepthook = _log_unhandled
    threading.excepthook = lambda args: _log_unhandled(
        args.exc_type, args.exc_value, args.exc_traceback
    )


def _resolve_level(level: str, default: int) -> int:
    return logging.getLevelNamesMapping().get(str(level).upper(), default)


def _prepare(
    handler: logging.Handler,
    formatter: logging.Formatter,
    level: int,
    context: ContextFilter,
) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.setLevel(level)
    for log_filter in (CategoryFilter(), RedactionFilter(), context):
        handler.addFilter(log_filter)
    return handler


def _file_handlers(base_path: Path, *, max_bytes: int, backup_count: int) -> list[RotatingFileHandler]:
    """Text log plus a JSON-lines twin next to it."""
    base_path.parent.mkdir(parents=True, exist_ok=True)
    return [
        RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        for path in (base_path, base_path.with_suffix(".jsonl"))
    ]


def setup_logging(
    log_file: str,
    *,
    log_level: str = "INFO",
    log_console_level: str = "WARNING",
    log_console_enabled: bool = True,
    log_max_bytes: int = 5_000_000,
    log_backup_count: int = 3,
    app_version: str | None = None,
) -> None:
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    base_path = Path(log_file)
    if not base_path.suffix:
        base_path = base_path.with_suffix(".log")

    session_id = uuid4().hex
    context = ContextFilter(session_id=session_id, app_version=str(app_version or ""))
    text_formatter = SanitizingFormatter(TEXT_FORMAT)
    level = _resolve_level(log_level, logging.INFO)

    handlers: list[logging.Handler] = []
    file_error: OSError | None = None
    try:
        text_handler, json_handler = _file_handlers(
            base_path,
            max_bytes=log_max_bytes,
            backup_count=min(MAX_LOG_FILES, max(0, log_backup_count)),
        )
        handlers.append(_prepare(text_handler, text_formatter, level, context))
        handlers.append(_prepare(json_handler, JsonFormatter(), level, context))
    except OSError as exc:
        file_error = exc
        handlers.append(_prepare(logging.StreamHandler(), text_formatter, level, context))

    if log_console_enabled:
        console_level = _resolve_level(log_console_level, logging.WARNING)
        handlers.append(_prepare(logging.StreamHandler(), text_formatter, console_level, context))

    root_logger.setLevel(level)
    for handler in handlers:
        root_logger.addHandler(handler)

    # routes urllib3's InsecureRequestWarning (VERIFY_SSL=false) into the log
    warnings.simplefilter("default")
    logging.captureWarnings(True)
    _install_exception_hooks()
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if file_error is not None:
        logger.warning(
            "Failed to initialize file logging, using stderr: %s",
            file_error,
            extra={"category": "startup"},
        )
    logger.info(
        "Logging initialized (%s, session %s)",
        base_path,
        session_id,
        extra={"category": "startup"},
    )
