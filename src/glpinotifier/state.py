from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, cast

from .io_utils import CorruptFileError, atomic_write_json, read_json

LOGGER = logging.getLogger(__name__)


class PersistError(RuntimeError):
    """Raised when the seen-ticket state could not be written."""


class SeenSet:
    """Insertion-ordered, append-only set of notified ticket IDs."""

    def __init__(self, ticket_ids: Iterable[int] = ()) -> None:
        self._ids: dict[int, None] = {}
        self.update(ticket_ids)

    def __contains__(self, ticket_id: object) -> bool:
        return ticket_id in self._ids

    def __iter__(self) -> Iterator[int]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, ticket_id: int) -> bool:
        if ticket_id in self._ids:
            return False
        self._ids[ticket_id] = None
        return True

    def update(self, ticket_ids: Iterable[int]) -> int:
        return sum(1 for ticket_id in ticket_ids if self.add(ticket_id))

    def to_list(self) -> list[int]:
        return list(self._ids)


def _parse_ids(data: object) -> list[int]:
    raw = data
    if isinstance(data, dict):
        raw = cast(dict[str, object], data).get("seen_ticket_ids")
    if not isinstance(raw, list):
        raise CorruptFileError("seen_ticket_ids must be a list")
    ids: list[int] = []
    for item in cast(list[object], raw):
        # bool is an int subclass; reject it explicitly
        if isinstance(item, bool) or not isinstance(item, int):
            raise CorruptFileError(f"invalid ticket id {item!r}")
        ids.append(item)
    return ids


@dataclass
class StateStore:
    path: Path

    def load(self) -> SeenSet:
        try:
            data = read_json(self.path, default=None)
            if data is None:
                return SeenSet()
            return SeenSet(_parse_ids(data))
        except CorruptFileError as exc:
            LOGGER.warning(
                "State file unusable, starting fresh: %s",
                exc,
                extra={"category": "state"},
            )
            return SeenSet()

    def save(self, seen: SeenSet) -> None:
        try:
            atomic_write_json(self.path, {"seen_ticket_ids": seen.to_list()})
        except OSError as exc:
            raise PersistError(f"failed to write {self.path}: {exc}") from exc
        LOGGER.debug(
            "Persisted %s seen ticket id(s)",
            len(seen),
            extra={"category": "state"},
        )
