# tests/services/test_csrf.py
"""Tests for the double-submit CSRF guard."""

from __future__ import annotations

import pytest
from starlette.responses import Response

from tracas_guard.core.errors import CsrfError
from tracas_guard.services.csrf import CsrfGuard
from tracas_guard.services.keystore import ROLE_MAC, KeyMaterialStore


@pytest.fixture()
def csrf(keystore: KeyMaterialStore, clock) -> CsrfGuard:
    return CsrfGuard(keystore, exempt_paths=["/api/children"], clock=clock)


@pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
def test_safe_methods_pass_without_tokens(csrf: CsrfGuard, method: str) -> None:
    csrf.verify(method, None, None)


@pytest.mark.parametrize(
    ("cookie", "header"),
    [(None, None), ("token", None), (None, "token"), ("", "")],
)
def test_missing_token(csrf: CsrfGuard, cookie, header) -> None:
    with pytest.raises(CsrfError) as exc_info:
        csrf.verify("POST", cookie, header)

    assert exc_info.value.code == "CSRF_TOKEN_MISSING"
    assert exc_info.value.status_code == 403


def test_mismatched_token(csrf: CsrfGuard) -> None:
    with pytest.raises(CsrfError) as exc_info:
        csrf.verify("DELETE", "a" * 64, "b" * 64)

    assert exc_info.value.code == "CSRF_TOKEN_INVALID"


def test_matching_token_passes(csrf: CsrfGuard) -> None:
    token = csrf.generate_token("session-1", "Mozilla/5.0")

    csrf.verify("PUT", token, token)


def test_token_binds_session_time_and_user_agent(csrf: CsrfGuard, clock) -> None:
    token = csrf.generate_token("session-1", "Mozilla/5.0")

    assert token == csrf.generate_token("session-1", "Mozilla/5.0")
    assert token != csrf.generate_token("session-2", "Mozilla/5.0")
    assert token != csrf.generate_token("session-1", "curl/8.0")
    clock.advance(1)
    assert token != csrf.generate_token("session-1", "Mozilla/5.0")


def test_token_changes_with_mac_key(csrf: CsrfGuard, keystore: KeyMaterialStore) -> None:
    before = csrf.generate_token("session-1", None)
    keystore.rotate(ROLE_MAC)

    assert csrf.generate_token("session-1", None) != before


def test_issue_reuses_the_existing_cookie(csrf: CsrfGuard) -> None:
    issued = csrf.issue({"csrf_token": "existing", "session_id": "abc"}, "ua")

    assert issued == type(issued)(token="existing", session_id="abc", is_new=False)


def test_issue_creates_a_session_when_missing(csrf: CsrfGuard) -> None:
    issued = csrf.issue({}, "ua")

    assert issued.is_new
    assert len(issued.session_id) == 32
    assert len(issued.token) == 64


def test_attach_sets_strict_http_only_cookies(csrf: CsrfGuard) -> None:
    response = Response()
    issued = csrf.issue({}, "ua")

    csrf.attach(response, issued)

    cookies = response.headers.getlist("set-cookie")
    assert any(cookie.startswith(f"csrf_token={issued.token}") for cookie in cookies)
    assert any(cookie.startswith(f"session_id={issued.session_id}") for cookie in cookies)
    for cookie in cookies:
        assert "HttpOnly" in cookie
        assert "SameSite=strict" in cookie
    assert response.headers["X-CSRF-Token"] == issued.token


def test_attach_only_echoes_the_header_for_known_tokens(csrf: CsrfGuard) -> None:
    response = Response()

    csrf.attach(response, csrf.issue({"csrf_token": "existing"}, None))

    assert response.headers.getlist("set-cookie") == []
    assert response.headers["X-CSRF-Token"] == "existing"


def test_exempt_paths(csrf: CsrfGuard) -> None:
    assert csrf.is_exempt("/api/children/42/location")
    assert not csrf.is_exempt("/api/v1/auth/login")
