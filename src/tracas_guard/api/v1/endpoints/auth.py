# src/tracas_guard/api/v1/endpoints/auth.py
"""Authentication endpoints owned by the security layer."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Body, Request, Response, status

from tracas_guard.api.dependencies import (
    CurrentPrincipalDep,
    EnrolledPrincipalDep,
    GuardDep,
    guarded_view,
    set_token_cookies,
)
from tracas_guard.core.errors import InvalidTwoFactorCodeError, MissingCredentialsError
from tracas_guard.schemas.auth import (
    BackupCodeRequest,
    CsrfResponse,
    LoginRequest,
    LoginResponse,
    RefreshRequest,
    TokenResponse,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
)
from tracas_guard.services.two_factor import SESSION_KEY, TwoFactorAccount

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.get("/csrf", response_model=CsrfResponse)
async def issue_csrf_token(request: Request, response: Response, guard: GuardDep) -> CsrfResponse:
    """Set the CSRF cookie for this session and echo its value."""
    issued = guard.csrf.issue(request.cookies, request.headers.get("user-agent"))
    guard.csrf.attach(response, issued)
    return CsrfResponse(csrf_token=issued.token)


@router.post("/login", response_model=LoginResponse)
def login(
    payload: LoginRequest, request: Request, response: Response, guard: GuardDep
) -> LoginResponse:
    """Exchange account credentials for a device-bound token pair."""
    device_id = payload.device_id or request.headers.get(guard.settings.device_header_name)
    result = guard.login(
        payload.account_id,
        payload.password,
        device_id=device_id,
        request=guarded_view(request),
    )
    set_token_cookies(response, guard, result.tokens)
    # A new sign-in never inherits an earlier second-factor confirmation.
    request.session.pop(SESSION_KEY, None)
    return LoginResponse(**result.tokens.as_dict(), two_factor_required=result.two_factor_required)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    request: Request,
    response: Response,
    guard: GuardDep,
    payload: Annotated[RefreshRequest | None, Body()] = None,
) -> TokenResponse:
    """Trade a refresh token (body, cookie or X-Refresh-Token header) for a new pair."""
    refresh_token = (
        (payload.refresh_token if payload is not None else None)
        or request.cookies.get(guard.settings.refresh_cookie_name)
        or request.headers.get("x-refresh-token")
    )
    if not refresh_token:
        raise MissingCredentialsError("Refresh token not provided.")
    pair = guard.refresh(refresh_token)
    set_token_cookies(response, guard, pair)
    return TokenResponse(**pair.as_dict())


@router.post("/2fa/setup", response_model=TwoFactorSetupResponse)
def setup_two_factor(principal: EnrolledPrincipalDep, guard: GuardDep) -> TwoFactorSetupResponse:
    """Enrol the caller in TOTP, replacing any earlier secret and backup codes.

    Re-enrolment needs a second factor confirmed in this session first.
    """
    setup = guard.two_factor.generate_secret(
        TwoFactorAccount(account_id=principal.subject, label=principal.subject)
    )
    return TwoFactorSetupResponse(
        secret=setup.secret,
        provisioning_uri=setup.provisioning_uri,
        qr_code=setup.qr_code,
        backup_codes=setup.backup_codes,
    )


@router.post("/2fa/verify", response_model=TwoFactorVerifyResponse)
def verify_two_factor(
    payload: TwoFactorVerifyRequest,
    request: Request,
    principal: CurrentPrincipalDep,
    guard: GuardDep,
) -> TwoFactorVerifyResponse:
    """Confirm a TOTP code and mark the session as second-factor verified."""
    if not guard.two_factor.verify_account(payload.code, principal.subject):
        guard.record_auth_failure(guarded_view(request), principal.subject, "invalid_totp")
        raise InvalidTwoFactorCodeError()
    guard.two_factor.mark_session_verified(request.session, principal.subject)
    return TwoFactorVerifyResponse(verified=True)


@router.post("/2fa/backup", response_model=TwoFactorVerifyResponse)
def recover_with_backup_code(
    payload: BackupCodeRequest,
    request: Request,
    principal: CurrentPrincipalDep,
    guard: GuardDep,
) -> TwoFactorVerifyResponse:
    """Consume a backup code in place of a TOTP code."""
    if not guard.two_factor.verify_backup_code(payload.code, principal.subject):
        guard.record_auth_failure(guarded_view(request), principal.subject, "invalid_backup_code")
        raise InvalidTwoFactorCodeError("Invalid or already used backup code.")
    guard.two_factor.mark_session_verified(request.session, principal.subject)
    return TwoFactorVerifyResponse(
        verified=True,
        remaining_backup_codes=guard.two_factor.remaining_backup_codes(principal.subject),
    )


@router.delete("/2fa", status_code=status.HTTP_204_NO_CONTENT)
def disable_two_factor(
    request: Request, principal: EnrolledPrincipalDep, guard: GuardDep
) -> None:
    """Remove the caller's TOTP secret and backup codes."""
    guard.two_factor.disable(principal.subject)
    request.session.pop(SESSION_KEY, None)
