"""Exception taxonomy for the security pipeline.

Every rejection the pipeline produces is a ``SecurityError`` carrying the HTTP
status, a stable machine-readable ``code`` and a caller-safe ``message``. The
``detail`` mapping is for audit events only and is never rendered to callers.
"""

from __future__ import annotations

from typing import Any


class SecurityError(Exception):
    """Base class for rejections surfaced to callers."""

    status_code: int = 403
    code: str = "FORBIDDEN"
    message: str = "Access denied."

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        detail: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.detail = detail or {}
        self.headers = headers or {}
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON body sent to the caller."""
        return {"success": False, "message": self.message, "code": self.code}


class MissingCredentialsError(SecurityError):
    status_code = 401
    code = "NO_TOKEN"
    message = "Access denied. Token not provided."


class InvalidTokenError(SecurityError):
    status_code = 401
    code = "INVALID_TOKEN"
    message = "Invalid token. Please sign in again."


class TokenExpiredError(SecurityError):
    status_code = 401
    code = "TOKEN_EXPIRED"
    message = "Token has expired. Please sign in again."


class DeviceMismatchError(SecurityError):
    status_code = 403
    code = "INVALID_DEVICE"
    message = "Token is not valid for this device."


class InvalidCredentialsError(SecurityError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid account or password."


class InsufficientRoleError(SecurityError):
    code = "FORBIDDEN"
    message = "Access denied. Insufficient permissions."


class TwoFactorRequiredError(SecurityError):
    code = "TWO_FACTOR_REQUIRED"
    message = "Two-factor authentication required."


class InvalidTwoFactorCodeError(SecurityError):
    status_code = 401
    code = "INVALID_TWO_FACTOR_CODE"
    message = "Invalid two-factor code."


class CsrfError(SecurityError):
    code = "CSRF_TOKEN_INVALID"
    message = "CSRF token invalid."


class WafBlockedError(SecurityError):
    code = "WAF_BLOCKED"
    message = "Request blocked by the application firewall."


class PayloadTooLargeError(SecurityError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"
    message = "Request body is too large."


class IpBlockedError(SecurityError):
    code = "IP_BLOCKED"
    message = "Access from your address is blocked. Please contact an administrator."


class InvalidHeadersError(SecurityError):
    code = "INVALID_HEADERS"
    message = "Request headers rejected."


class RateLimitExceededError(SecurityError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    message = "Too many requests, please try again later."


class KeyManagementError(RuntimeError):
    """Raised when key material cannot be generated or persisted."""


class DecryptionError(ValueError):
    """Raised when an envelope fails authentication or cannot be decrypted."""
