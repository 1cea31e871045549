from __future__ import annotations

import logging
import subprocess
import webbrowser
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .config import AppConfig, get_project_root, get_user_data_dir
from .tickets import Ticket

LOGGER = logging.getLogger(__name__)

APP_ID = "GlpiNotifier"

LOGO_MAX_PIXELS = 1024
LOGO_MAX_BYTES = 200 * 1024

# SnoreToast exit codes that mean the toast was shown.
SNORETOAST_RESULTS = {
    0: "Success",
    1: "Hidden",
    2: "Dismissed",
    3: "TimedOut",
    4: "ButtonPressed",
    5: "TextEntered",
}
SNORETOAST_BUTTON_PRESSED = 4


class DispatchError(RuntimeError):
    """Raised when a notification could not be shown."""


@dataclass(frozen=True)
class Notification:
    ticket_id: int
    title: str
    body: str
    image_path: str | None = None
    action_url: str | None = None


def build_notification(ticket: Ticket, *, image_path: str | None = None) -> Notification:
    lines = [ticket.name or "New ticket"]
    if ticket.requester:
        lines.append(f"By: {ticket.requester}")
    return Notification(
        ticket_id=ticket.id,
        title=f"GLPI: New ticket #{ticket.id}",
        body="\n".join(lines),
        image_path=image_path,
        action_url=ticket.url or None,
    )


def _check_logo(path: Path) -> bool:
    try:
        with Image.open(path) as image:
            width, height = image.size
    except (OSError, UnidentifiedImageError) as exc:
        LOGGER.warning(
            "Logo %s is not a readable image, skipping it: %s",
            path,
            exc,
            extra={"category": "notify"},
        )
        return False
    if width > LOGO_MAX_PIXELS or height > LOGO_MAX_PIXELS:
        LOGGER.warning(
            "Logo %s is %sx%s px; toasts may crop images above %sx%s",
            path,
            width,
            height,
            LOGO_MAX_PIXELS,
            LOGO_MAX_PIXELS,
            extra={"category": "notify"},
        )
    size = path.stat().st_size
    if size > LOGO_MAX_BYTES:
        LOGGER.warning(
            "Logo %s is %s bytes; toasts may drop images above %s bytes",
            path,
            size,
            LOGO_MAX_BYTES,
            extra={"category": "notify"},
        )
    return True


def resolve_logo_path(configured: str = "") -> str | None:
    """Pick the toast image: configured path, bundled asset, then data dir."""
    candidates: list[Path] = []
    if configured:
        candidates.append(Path(configured).expanduser())
    candidates.append(get_project_root() / "assets" / "logo.png")
    candidates.append(get_user_data_dir() / "logo.png")
    for candidate in candidates:
        if candidate.is_file() and _check_logo(candidate):
            return str(candidate)
    if configured:
        LOGGER.warning(
            "GLPI_LOGO_PATH %s not usable; no image attached",
            configured,
            extra={"category": "notify"},
        )
    return None


def _is_snoretoast(command: str) -> bool:
    return "snoretoast" in Path(command).name.lower()


class ToastDispatcher:
    def __init__(self, command: str, *, timeout_seconds: float = 30, app_id: str = APP_ID) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.app_id = app_id

    def build_args(self, notification: Notification) -> list[str]:
        if _is_snoretoast(self.command):
            args = [
                self.command,
                "-appID",
                self.app_id,
                "-id",
                str(notification.ticket_id),
                "-t",
                notification.title,
                "-m",
                notification.body,
                "-d",
                "short",
            ]
            if notification.image_path:
                args.extend(["-p", notification.image_path])
            if notification.action_url:
                args.extend(["-b", "Open"])
            return args

        body = notification.body
        if notification.action_url:
            body = f"{body}\n{notification.action_url}"
        args = [self.command, f"--app-name={self.app_id}"]
        if notification.image_path:
            args.extend(["-i", notification.image_path])
        args.extend([notification.title, body])
        return args

    def dispatch(self, notification: Notification) -> None:
        args = self.build_args(notification)
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise DispatchError(
                f"{Path(self.command).name} did not return within {self.timeout_seconds}s"
            ) from exc
        except OSError as exc:
            raise DispatchError(f"cannot run {self.command}: {exc}") from exc
        except ValueError as exc:
            # e.g. an embedded NUL in the ticket title
            raise DispatchError(f"invalid toast arguments: {exc}") from exc

        code = completed.returncode
        if _is_snoretoast(self.command):
            if code not in SNORETOAST_RESULTS:
                raise DispatchError(
                    f"snoretoast failed (code {code}). STDOUT: {completed.stdout.strip()} "
                    f"STDERR: {completed.stderr.strip()}"
                )
            LOGGER.debug("SnoreToast: %s", SNORETOAST_RESULTS[code], extra={"category": "notify"})
            if code == SNORETOAST_BUTTON_PRESSED and notification.action_url:
                self._open_url(notification.action_url)
            return
        if code != 0:
            raise DispatchError(
                f"{Path(self.command).name} failed (code {code}): {completed.stderr.strip()}"
            )

    def _open_url(self, url: str) -> None:
        try:
            opened = webbrowser.open(url)
        except webbrowser.Error as exc:
            LOGGER.warning("Failed to open ticket URL: %s", exc, extra={"category": "notify"})
            return
        if not opened:
            LOGGER.warning("No browser available to open %s", url, extra={"category": "notify"})


def build_dispatcher(config: AppConfig) -> ToastDispatcher:
    return ToastDispatcher(config.toast_command, timeout_seconds=config.dispatch_timeout_seconds)
