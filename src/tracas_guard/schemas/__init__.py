"""Pydantic schemas for the security endpoints."""

from .auth import (
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
from .security import (
    AllowedCountriesRequest,
    BanEntryResponse,
    BanRequest,
    KeyRotationRequest,
    KeyRotationResponse,
    WafRuleRequest,
)

__all__ = [
    "AllowedCountriesRequest",
    "BackupCodeRequest",
    "BanEntryResponse",
    "BanRequest",
    "CsrfResponse",
    "KeyRotationRequest",
    "KeyRotationResponse",
    "LoginRequest",
    "LoginResponse",
    "RefreshRequest",
    "TokenResponse",
    "TwoFactorSetupResponse",
    "TwoFactorVerifyRequest",
    "TwoFactorVerifyResponse",
    "WafRuleRequest",
]
