"""Double-submit cookie CSRF protection."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from starlette.responses import Response

from tracas_guard.core.errors import CsrfError
from tracas_guard.core.security import constant_time_equals
from tracas_guard.core.settings import Settings
from tracas_guard.services.keystore import KeyMaterialStore

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(frozen=True)
class CsrfIssue:
    """A token handed to a client plus whether the cookie still needs setting."""

    token: str
    session_id: str
    is_new: bool


class CsrfGuard:
    """Issues and checks anti-forgery tokens bound to a session and user agent."""

    def __init__(
        self,
        keystore: KeyMaterialStore,
        *,
        cookie_name: str = "csrf_token",
        header_name: str = "X-CSRF-Token",
        session_cookie_name: str = "session_id",
        max_age_seconds: int = 86_400,
        secure_cookie: bool = False,
        exempt_paths: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._keystore = keystore
        self.cookie_name = cookie_name
        self.header_name = header_name
        self.session_cookie_name = session_cookie_name
        self.max_age_seconds = max_age_seconds
        self.secure_cookie = secure_cookie
        self.exempt_paths = tuple(exempt_paths)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        keystore: KeyMaterialStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> CsrfGuard:
        return cls(
            keystore,
            cookie_name=settings.csrf_cookie_name,
            header_name=settings.csrf_header_name,
            session_cookie_name=settings.session_cookie_name,
            max_age_seconds=settings.csrf_cookie_max_age_seconds,
            secure_cookie=settings.is_production,
            exempt_paths=settings.csrf_exempt_paths,
            clock=clock,
        )

    def generate_token(
        self, session_id: str, user_agent: str | None, issued_at: float | None = None
    ) -> str:
        """Return the keyed hash of the session, issuance time and user agent."""
        timestamp = int(self._clock() if issued_at is None else issued_at)
        return self._keystore.mac(f"{session_id}:{timestamp}:{user_agent or ''}")

    def issue(self, cookies: Mapping[str, str], user_agent: str | None) -> CsrfIssue:
        """Reuse the session's token when the client already holds one."""
        session_id = cookies.get(self.session_cookie_name) or secrets.token_hex(16)
        existing = cookies.get(self.cookie_name)
        if existing:
            return CsrfIssue(token=existing, session_id=session_id, is_new=False)
        return CsrfIssue(
            token=self.generate_token(session_id, user_agent),
            session_id=session_id,
            is_new=True,
        )

    def attach(self, response: Response, issued: CsrfIssue) -> None:
        """Set the cookie once per session and echo the token in a header."""
        if issued.is_new:
            response.set_cookie(
                self.cookie_name,
                issued.token,
                max_age=self.max_age_seconds,
                httponly=True,
                secure=self.secure_cookie,
                samesite="strict",
            )
            response.set_cookie(
                self.session_cookie_name,
                issued.session_id,
                max_age=self.max_age_seconds,
                httponly=True,
                secure=self.secure_cookie,
                samesite="strict",
            )
        response.headers[self.header_name] = issued.token

    def is_exempt(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.exempt_paths)

    def verify(self, method: str, cookie_token: str | None, header_token: str | None) -> None:
        """Reject state-changing requests whose header and cookie tokens differ.

        Raises:
            CsrfError: With code ``CSRF_TOKEN_MISSING`` or ``CSRF_TOKEN_INVALID``.
        """
        if method.upper() in SAFE_METHODS:
            return
        if not cookie_token or not header_token:
            raise CsrfError("CSRF token missing.", code="CSRF_TOKEN_MISSING")
        if not constant_time_equals(cookie_token, header_token):
            raise CsrfError("CSRF token invalid.", code="CSRF_TOKEN_INVALID")
