from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Any


class CorruptFileError(ValueError):
    """Raised when a file exists but its content cannot be decoded."""


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write to a temp file beside ``path`` and swap it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_name = f".{path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp"
    temp_path = path.with_name(temp_name)
    try:
        with temp_path.open("w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass


def atomic_write_json(path: Path, payload: Any, *, indent: int | None = 2) -> None:
    atomic_write_text(path, json.dumps(payload, ensure_ascii=True, indent=indent))


def read_json(path: Path, *, default: Any = None) -> Any:
    """Return the decoded JSON in ``path``.

    A missing file yields ``default``. A file that exists but cannot be read or
    parsed raises ``CorruptFileError`` so callers can log and recover.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except (OSError, UnicodeDecodeError) as exc:
        raise CorruptFileError(f"unreadable file {path}: {exc}") from exc
    if not text.strip():
        raise CorruptFileError(f"empty file {path}")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise CorruptFileError(f"invalid JSON in {path}: {exc}") from exc

