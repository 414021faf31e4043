"""Authentication and second-factor schemas."""

from pydantic import BaseModel, Field


class CsrfResponse(BaseModel):
    """CSRF token echoed for header replay."""

    csrf_token: str = Field(..., description="Value to send back in the CSRF header")


class LoginRequest(BaseModel):
    """Account credentials presented at sign-in."""

    account_id: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)
    device_id: str | None = Field(
        None,
        min_length=8,
        max_length=128,
        description="Device the issued tokens are bound to",
    )


class TokenResponse(BaseModel):
    """Access/refresh token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Access token lifetime in seconds")


class LoginResponse(TokenResponse):
    """Token pair plus whether a second factor must still be confirmed."""

    two_factor_required: bool = False


class RefreshRequest(BaseModel):
    """Refresh token exchanged for a new pair."""

    refresh_token: str = Field(..., min_length=1)


class TwoFactorSetupResponse(BaseModel):
    """Enrolment material shown once to the account holder."""

    secret: str = Field(..., description="Base32 secret for manual entry")
    provisioning_uri: str
    qr_code: str = Field(..., description="SVG QR code as a data URL")
    backup_codes: list[str]


class TwoFactorVerifyRequest(BaseModel):
    """Six digit code from an authenticator app."""

    code: str = Field(..., pattern=r"^\d{6}$")


class BackupCodeRequest(BaseModel):
    """Single-use recovery code."""

    code: str = Field(..., min_length=4, max_length=32)


class TwoFactorVerifyResponse(BaseModel):
    verified: bool
    remaining_backup_codes: int | None = None
