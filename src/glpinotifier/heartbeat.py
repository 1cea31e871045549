from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .io_utils import atomic_write_json

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Heartbeat:
    ts: int
    ok: bool
    new: int

    def to_payload(self) -> dict[str, Any]:
        return {"ts": self.ts, "ok": self.ok, "new": self.new}


@dataclass
class HeartbeatWriter:
    path: Path
    write_errors: int = 0

    def write(self, heartbeat: Heartbeat) -> bool:
        """Overwrite the heartbeat file; failures are logged, never raised."""
        try:
            atomic_write_json(self.path, heartbeat.to_payload(), indent=None)
        except OSError as exc:
            self.write_errors += 1
            LOGGER.warning(
                "Heartbeat write failed: %s",
                exc,
                extra={"category": "heartbeat"},
            )
            return False
        return True
