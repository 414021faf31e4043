"""Shared API dependencies for token verification, roles and the second-factor gate."""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Request, Response

from tracas_guard.api.middleware import client_address
from tracas_guard.core.errors import TwoFactorRequiredError
from tracas_guard.services.orchestrator import GuardedRequest, Principal, SecurityOrchestrator
from tracas_guard.services.tokens import TokenPair

TOKEN_SOURCE_HEADER = "header"
TOKEN_SOURCE_COOKIE = "cookie"


def get_guard(request: Request) -> SecurityOrchestrator:
    """Return the orchestrator attached to the application."""
    return request.app.state.guard


GuardDep = Annotated[SecurityOrchestrator, Depends(get_guard)]


def guarded_view(request: Request) -> GuardedRequest:
    """Describe ``request`` for audit events raised from route dependencies."""
    return GuardedRequest(
        address=client_address(request),
        method=request.method,
        path=request.url.path,
        headers=request.headers,
        cookies=request.cookies,
    )


def extract_token(request: Request, cookie_name: str) -> tuple[str | None, str | None]:
    """Find the access token: Authorization bearer, then X-Access-Token, then cookie."""
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip(), TOKEN_SOURCE_HEADER
    header_token = request.headers.get("x-access-token")
    if header_token:
        return header_token, TOKEN_SOURCE_HEADER
    cookie_token = request.cookies.get(cookie_name)
    if cookie_token:
        return cookie_token, TOKEN_SOURCE_COOKIE
    return None, None


def set_token_cookies(response: Response, guard: SecurityOrchestrator, pair: TokenPair) -> None:
    settings = guard.settings
    response.set_cookie(
        settings.token_cookie_name,
        pair.access_token,
        max_age=settings.access_token_expire_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        pair.refresh_token,
        max_age=settings.refresh_token_expire_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )


def get_current_principal(request: Request, response: Response, guard: GuardDep) -> Principal:
    """Verify the caller's access token.

    When the token is close to expiry and a refresh token is available from the
    ``refresh_token`` cookie or ``X-Refresh-Token`` header, replacement tokens
    are returned in ``X-New-Token``/``X-New-Refresh-Token`` (and refreshed
    cookies when the access token came from a cookie).
    """
    token, source = extract_token(request, guard.settings.token_cookie_name)
    principal = guard.authenticate(token, request=guarded_view(request))

    refresh_token = request.cookies.get(guard.settings.refresh_cookie_name) or request.headers.get(
        "x-refresh-token"
    )
    pair = guard.tokens.maybe_refresh(principal.claims, refresh_token)
    if pair is not None:
        response.headers["X-New-Token"] = pair.access_token
        response.headers["X-New-Refresh-Token"] = pair.refresh_token
        if source == TOKEN_SOURCE_COOKIE:
            set_token_cookies(response, guard, pair)

    request.state.principal = principal
    return principal


CurrentPrincipalDep = Annotated[Principal, Depends(get_current_principal)]


def require_role(*roles: str) -> Callable[..., Principal]:
    """Build a dependency that admits only principals holding one of ``roles``."""

    def dependency(request: Request, principal: CurrentPrincipalDep, guard: GuardDep) -> Principal:
        guard.require_role(principal, roles, request=guarded_view(request))
        return principal

    return dependency


def require_two_factor() -> Callable[..., Principal]:
    """Build a dependency demanding a fresh in-session second factor for privileged roles."""

    def dependency(request: Request, principal: CurrentPrincipalDep, guard: GuardDep) -> Principal:
        manager = guard.two_factor
        if manager.requires_second_factor(principal.role) and not manager.is_session_verified(
            request.session, principal.subject
        ):
            raise TwoFactorRequiredError(detail={"subject": principal.subject})
        return principal

    return dependency


def require_enrolled_confirmation(
    request: Request, principal: CurrentPrincipalDep, guard: GuardDep
) -> Principal:
    """Admit enrolled accounts only once this session has confirmed their second factor.

    Guards changes to the second factor itself, so an access token alone can never
    replace or remove it, whatever the caller's role.
    """
    manager = guard.two_factor
    if manager.is_enabled(principal.subject) and not manager.is_session_verified(
        request.session, principal.subject
    ):
        raise TwoFactorRequiredError(detail={"subject": principal.subject})
    return principal


EnrolledPrincipalDep = Annotated[Principal, Depends(require_enrolled_confirmation)]
