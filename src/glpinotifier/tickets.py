from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, cast

from .session import AuthError, FetchError, Session, SessionManager

LOGGER = logging.getLogger(__name__)

STATUS_NEW = 1

UID_ID = "Ticket.id"
UID_NAME = "Ticket.name"
UID_STATUS = "Ticket.status"
UID_REQUESTER = "Ticket._users_id_recipient"

REQUIRED_UIDS = (UID_ID, UID_NAME, UID_STATUS)

DEBUG_LIST_LIMIT = 10


@dataclass(frozen=True)
class Ticket:
    id: int
    name: str
    status: str
    requester: str
    url: str


@dataclass(frozen=True)
class FieldIds:
    id: int
    name: int
    status: int
    requester: int | None = None


def _extract_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _extract_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        # multi-valued columns (several requesters)
        return ", ".join(part for part in (_extract_text(v) for v in value) if part)
    return str(value).strip()


def is_new_status(value: str) -> bool:
    """GLPI returns the raw status code, or a localized label when display values are on.

    Labels ("New", "Novo", "Nouveau") cannot be compared portably, so only a
    numeric code other than New is rejected.
    """
    code = _extract_int(value)
    return code is None or code == STATUS_NEW


def parse_search_options(options: Any) -> FieldIds:
    if not isinstance(options, dict):
        raise FetchError("listSearchOptions/Ticket returned an unexpected payload")
    found: dict[str, int] = {}
    for key, option in cast(dict[str, Any], options).items():
        field_id = _extract_int(key)
        if field_id is None or not isinstance(option, dict):
            continue
        uid = option.get("uid")
        if isinstance(uid, str) and uid not in found:
            found[uid] = field_id
    missing = [uid for uid in REQUIRED_UIDS if uid not in found]
    if missing:
        raise FetchError(f"search options not found: {', '.join(missing)}")
    return FieldIds(
        id=found[UID_ID],
        name=found[UID_NAME],
        status=found[UID_STATUS],
        requester=found.get(UID_REQUESTER),
    )


def _iter_rows(data: Any) -> Iterable[Any]:
    if isinstance(data, list):
        return cast(list[Any], data)
    if isinstance(data, dict):
        return cast(dict[str, Any], data).values()
    return []


def parse_ticket_rows(
    data: Any,
    fields: FieldIds,
    url_for: Callable[[int], str],
) -> list[Ticket]:
    """Turn search rows into tickets, dropping rows without a usable id."""
    tickets: list[Ticket] = []
    for row in _iter_rows(data):
        if not isinstance(row, dict):
            LOGGER.warning("Dropping malformed ticket row: %r", row, extra={"category": "fetch"})
            continue
        row_map = cast(dict[str, Any], row)
        ticket_id = _extract_int(row_map.get(str(fields.id)))
        if ticket_id is None:
            LOGGER.warning(
                "Dropping ticket row without a valid id: %r",
                row_map,
                extra={"category": "fetch"},
            )
            continue
        requester = ""
        if fields.requester is not None:
            requester = _extract_text(row_map.get(str(fields.requester)))
        tickets.append(
            Ticket(
                id=ticket_id,
                name=_extract_text(row_map.get(str(fields.name))),
                status=_extract_text(row_map.get(str(fields.status))),
                requester=requester,
                url=url_for(ticket_id),
            )
        )
    return tickets


class TicketFetcher:
    def __init__(
        self,
        sessions: SessionManager,
        url_for: Callable[[int], str],
        *,
        max_rows: int = 200,
        debug_list: bool = False,
    ) -> None:
        self._sessions = sessions
        self._url_for = url_for
        self._max_rows = max_rows
        self._debug_list = debug_list
        self._fields: FieldIds | None = None

    def resolve_fields(self, session: Session) -> FieldIds:
        if self._fields is None:
            options = self._sessions.get(session, "listSearchOptions/Ticket")
            self._fields = parse_search_options(options)
            LOGGER.info(
                "Resolved ticket search fields: %s",
                self._fields,
                extra={"category": "fetch"},
            )
        return self._fields

    def _search_params(self, fields: FieldIds, *, new_only: bool, rows: int) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        if new_only:
            params.extend(
                [
                    ("criteria[0][field]", str(fields.status)),
                    ("criteria[0][searchtype]", "equals"),
                    ("criteria[0][value]", str(STATUS_NEW)),
                ]
            )
        params.extend(
            [
                ("sort", str(fields.id)),
                # newest first: a backlog beyond the range must not hide new arrivals
                ("order", "DESC"),
                ("range", f"0-{rows - 1}"),
                ("forcedisplay[0]", str(fields.id)),
                ("forcedisplay[1]", str(fields.name)),
                ("forcedisplay[2]", str(fields.status)),
            ]
        )
        if fields.requester is not None:
            params.append(("forcedisplay[3]", str(fields.requester)))
        return params

    def fetch_new_tickets(self, session: Session) -> list[Ticket]:
        fields = self.resolve_fields(session)
        payload = self._sessions.get(
            session,
            "search/Ticket",
            self._search_params(fields, new_only=True, rows=self._max_rows),
        )
        if not isinstance(payload, dict):
            raise FetchError("search/Ticket returned an unexpected payload")
        # fetched newest first; hand them on oldest first
        rows = parse_ticket_rows(payload.get("data"), fields, self._url_for)[::-1]
        total = _extract_int(payload.get("totalcount"))
        if total is not None and total > self._max_rows:
            LOGGER.warning(
                "%s tickets are in New; only the newest %s are checked",
                total,
                self._max_rows,
                extra={"category": "fetch"},
            )

        if self._debug_list:
            LOGGER.info(
                "DEBUG: totalcount(status=New) = %s, %s row(s) parsed",
                payload.get("totalcount"),
                len(rows),
                extra={"category": "fetch"},
            )
            for ticket in rows:
                LOGGER.info(
                    "DEBUG: #%s %s (by %s) status=%s",
                    ticket.id,
                    ticket.name,
                    ticket.requester or "?",
                    ticket.status,
                    extra={"category": "fetch"},
                )

        tickets: list[Ticket] = []
        for ticket in rows:
            if not is_new_status(ticket.status):
                LOGGER.debug(
                    "Skipping ticket #%s with status %s",
                    ticket.id,
                    ticket.status,
                    extra={"category": "fetch"},
                )
                continue
            tickets.append(ticket)

        if self._debug_list and not tickets:
            self._log_recent(session, fields)
        return tickets

    def _log_recent(self, session: Session, fields: FieldIds) -> None:
        try:
            payload = self._sessions.get(
                session,
                "search/Ticket",
                self._search_params(fields, new_only=False, rows=DEBUG_LIST_LIMIT),
            )
        except (AuthError, FetchError) as exc:
            LOGGER.info(
                "DEBUG: recent ticket query failed: %s",
                exc,
                extra={"category": "fetch"},
            )
            return
        data = payload.get("data") if isinstance(payload, dict) else None
        recent = parse_ticket_rows(data, fields, self._url_for)
        LOGGER.info(
            "DEBUG: recent tickets (any status): %s",
            len(recent),
            extra={"category": "fetch"},
        )
        for ticket in recent:
            LOGGER.info(
                "DEBUG: recent #%s %s status=%s",
                ticket.id,
                ticket.name,
                ticket.status,
                extra={"category": "fetch"},
            )
