from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, TypeVar
from urllib.parse import urljoin

import requests

from .config import AppConfig, ConfigError
from . import __version_label__

LOGGER = logging.getLogger(__name__)

USER_AGENT = f"glpi-notifier/{__version_label__}"

T = TypeVar("T")


class AuthError(RuntimeError):
    """Login failed or the session was rejected by the service."""


class FetchError(RuntimeError):
    """An authenticated call failed for a reason other than authorization."""


@dataclass(frozen=True)
class Session:
    base_url: str
    session_token: str
    issued_at: float


def _is_redirect(response: requests.Response) -> bool:
    return 300 <= response.status_code < 400


def _is_success(response: requests.Response) -> bool:
    return 200 <= response.status_code < 300


def _body_excerpt(response: requests.Response, limit: int = 300) -> str:
    text = " ".join((response.text or "").split())
    return text[:limit]


def _corrected_base_url(request_url: str, location: str) -> str:
    target = urljoin(request_url, location).split("?", 1)[0].rstrip("/")
    if target.endswith("/initSession"):
        target = target[: -len("/initSession")]
    return target.rstrip("/")


class SessionManager:
    """Single owner of the GLPI REST session.

    Redirects are never followed by ``requests``. A login answered with a 3xx is
    followed once and the new location replaces ``base_url`` for the rest of the
    process; a second redirect in the same attempt is a configuration error.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        http: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = config.base_url.rstrip("/")
        self._app_token = config.app_token
        self._user_token = config.user_token
        self._timeout = config.request_timeout_seconds
        self._clock = clock
        self._http = http if http is not None else requests.Session()
        self._http.verify = config.verify_ssl
        self._session: Session | None = None
        if not config.verify_ssl:
            LOGGER.warning(
                "TLS certificate verification is DISABLED for %s (VERIFY_SSL=false)",
                self.base_url,
                extra={"category": "session"},
            )

    @property
    def session(self) -> Session | None:
        return self._session

    def _headers(self, session: Session | None = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self._app_token:
            headers["App-Token"] = self._app_token
        if session is not None:
            headers["Session-Token"] = session.session_token
        return headers

    def _login_request(self, url: str) -> requests.Response:
        headers = self._headers()
        headers["Authorization"] = f"user_token {self._user_token}"
        try:
            return self._http.get(
                url,
                headers=headers,
                timeout=self._timeout,
                allow_redirects=False,
            )
        except requests.Timeout as exc:
            raise AuthError(f"initSession timed out after {self._timeout}s") from exc
        except requests.RequestException as exc:
            raise AuthError(f"initSession request failed: {exc}") from exc

    def init_session(self) -> Session:
        self._session = None
        url = f"{self.base_url}/initSession"
        response = self._login_request(url)

        if _is_redirect(response):
            location = response.headers.get("Location")
            if not location:
                raise AuthError(
                    f"initSession answered {response.status_code} without a Location header"
                )
            corrected = _corrected_base_url(url, location)
            if corrected == self.base_url:
                raise ConfigError(f"initSession redirects to itself ({location})")
            LOGGER.warning(
                "initSession redirected (%s); using corrected base URL %s",
                response.status_code,
                corrected,
                extra={"category": "session"},
            )
            self.base_url = corrected
            url = f"{self.base_url}/initSession"
            response = self._login_request(url)
            if _is_redirect(response):
                raise ConfigError(
                    "initSession redirected twice "
                    f"(second Location: {response.headers.get('Location', '')}); "
                    "check GLPI_BASE_URL"
                )

        if not _is_success(response):
            raise AuthError(
                f"initSession failed: {response.status_code} | body: {_body_excerpt(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("initSession returned a non-JSON body") from exc
        token = payload.get("session_token") if isinstance(payload, dict) else None
        if not token:
            raise AuthError("initSession response has no session token")

        self._session = Session(
            base_url=self.base_url,
            session_token=str(token),
            issued_at=self._clock(),
        )
        LOGGER.info("GLPI session established", extra={"category": "session"})
        return self._session

    def ensure_session(self) -> Session:
        if self._session is None:
            return self.init_session()
        return self._session

    def invalidate(self) -> None:
        self._session = None

    def get(
        self,
        session: Session,
        path: str,
        params: Mapping[str, Any] | list[tuple[str, Any]] | None = None,
    ) -> Any:
        """Authenticated GET returning the decoded JSON body."""
        url = f"{session.base_url}/{path.lstrip('/')}"
        try:
            response = self._http.get(
                url,
                headers=self._headers(session),
                params=params,
                timeout=self._timeout,
                allow_redirects=False,
            )
        except requests.Timeout as exc:
            raise FetchError(f"{path} timed out after {self._timeout}s") from exc
        except requests.RequestException as exc:
            raise FetchError(f"{path} request failed: {exc}") from exc

        body = _body_excerpt(response)
        if response.status_code == 401 or (
            response.status_code == 400 and "ERROR_SESSION_TOKEN_INVALID" in body
        ):
            raise AuthError(f"{path} rejected the session: {response.status_code} | body: {body}")
        if not _is_success(response):
            raise FetchError(f"{path} failed: {response.status_code} | body: {body}")
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(f"{path} returned a non-JSON body") from exc

    def call(self, operation: Callable[[Session], T]) -> T:
        """Run ``operation`` with a valid session, re-authenticating once."""
        session = self.ensure_session()
        try:
            return operation(session)
        except AuthError as exc:
            LOGGER.warning(
                "Session rejected (%s); re-authenticating",
                exc,
                extra={"category": "session"},
            )
            self.invalidate()
        session = self.init_session()
        return operation(session)

    def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None:
            try:
                self._http.get(
                    f"{session.base_url}/killSession",
                    headers=self._headers(session),
                    timeout=self._timeout,
                    allow_redirects=False,
                )
                LOGGER.info("GLPI session closed", extra={"category": "session"})
            except requests.RequestException as exc:
                LOGGER.warning(
                    "killSession failed: %s",
                    exc,
                    extra={"category": "session"},
                )
        self._http.close()
