"""Device-bound bearer token issuance and verification."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import serialization
from jose import ExpiredSignatureError, JWTError, jwt

from tracas_guard.core.errors import (
    DeviceMismatchError,
    InvalidTokenError,
    SecurityError,
    TokenExpiredError,
)
from tracas_guard.core.security import constant_time_equals
from tracas_guard.core.settings import Settings
from tracas_guard.services.keystore import ROLE_TOKEN_SIGNING, KeyMaterialStore, KeyRecord

logger = logging.getLogger(__name__)

TOKEN_KIND_ACCESS = "access"
TOKEN_KIND_REFRESH = "refresh"

# Claims that belong to a particular issuance and must not leak into a reissue.
_ISSUANCE_CLAIMS = ("iat", "exp", "nbf", "kind", "fingerprint", "iss", "aud")

# Tolerance for issuer/verifier clock skew on ``iat``.
_IAT_LEEWAY_SECONDS = 60


@dataclass(frozen=True)
class TokenPair:
    """Short-lived access token plus the refresh token that renews it."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenService:
    """Mints and validates JWTs signed with the key store's token-signing material."""

    def __init__(
        self,
        keystore: KeyMaterialStore,
        *,
        fingerprint_secret: str,
        issuer: str | None = None,
        audience: str | None = None,
        access_lifetime: int = 3600,
        refresh_lifetime: int = 7 * 24 * 3600,
        refresh_threshold: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keystore = keystore
        self._fingerprint_secret = fingerprint_secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_lifetime = access_lifetime
        self.refresh_lifetime = refresh_lifetime
        self.refresh_threshold = refresh_threshold
        self._clock = clock
        self._public_keys: dict[str, str] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        keystore: KeyMaterialStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> TokenService:
        # Issuer and audience are only enforced outside local development.
        scoped = not settings.is_local
        return cls(
            keystore,
            fingerprint_secret=settings.fingerprint_secret,
            issuer=settings.token_issuer if scoped else None,
            audience=settings.token_audience if scoped else None,
            access_lifetime=settings.access_token_expire_seconds,
            refresh_lifetime=settings.refresh_token_expire_seconds,
            refresh_threshold=settings.token_refresh_threshold_seconds,
            clock=clock,
        )

    def device_fingerprint(self, device_id: str, subject_id: str) -> str:
        """Return the keyed hash binding a token to a device/account pair."""
        payload = f"{device_id}:{subject_id}".encode()
        return hmac.new(self._fingerprint_secret, payload, hashlib.sha256).hexdigest()

    def issue(
        self,
        claims: Mapping[str, Any],
        lifetime: int | None = None,
        bind_to_device: bool = True,
    ) -> str:
        """Sign ``claims`` into a token valid for ``lifetime`` seconds.

        Args:
            claims: Caller claims; ``sub`` is required, ``device_id`` enables binding.
            lifetime: Seconds until expiry, defaults to the access lifetime.
            bind_to_device: Embed a device fingerprint when a device id is present.

        Returns:
            The compact JWT.
        """
        if not claims.get("sub"):
            raise ValueError("Token claims require a subject")
        payload = dict(claims)
        payload["sub"] = str(payload["sub"])
        if bind_to_device and payload.get("device_id"):
            payload["fingerprint"] = self.device_fingerprint(
                str(payload["device_id"]), payload["sub"]
            )

        now = int(self._clock())
        payload["iat"] = now
        payload["exp"] = now + int(self.access_lifetime if lifetime is None else lifetime)
        if self.issuer:
            payload["iss"] = self.issuer
        if self.audience:
            payload["aud"] = self.audience

        record = self.keystore.active(ROLE_TOKEN_SIGNING)
        return jwt.encode(
            payload,
            self._signing_key(record),
            algorithm=record.algorithm,
            headers={"kid": record.id},
        )

    def verify(self, token: str) -> dict[str, Any]:
        """Validate ``token`` and return its claims.

        Raises:
            TokenExpiredError: The signature is fine but ``exp`` has passed.
            InvalidTokenError: Malformed token, unknown key, bad signature or claims.
            DeviceMismatchError: The embedded fingerprint does not match its device.
        """
        if not token:
            raise InvalidTokenError()
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as err:
            raise InvalidTokenError(detail={"reason": "malformed"}) from err

        record = self._verification_record(header.get("kid"))
        if record is None:
            raise InvalidTokenError(detail={"reason": "unknown_key"})

        options = {"verify_aud": self.audience is not None}
        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                self._verification_key(record),
                algorithms=[record.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options=options,
            )
        except ExpiredSignatureError as err:
            raise TokenExpiredError() from err
        except JWTError as err:
            raise InvalidTokenError(detail={"reason": str(err)}) from err

        issued_at = claims.get("iat")
        if isinstance(issued_at, (int, float)) and issued_at > self._clock() + _IAT_LEEWAY_SECONDS:
            raise InvalidTokenError(detail={"reason": "issued_in_future"})

        fingerprint = claims.get("fingerprint")
        if fingerprint is None:
            return claims
        device_id = claims.get("device_id")
        expected = (
            self.device_fingerprint(str(device_id), str(claims.get("sub")))
            if device_id
            else None
        )
        if not constant_time_equals(str(fingerprint), expected):
            raise DeviceMismatchError(
                detail={"subject": claims.get("sub"), "device_id": device_id}
            )
        return claims

    def issue_pair(self, claims: Mapping[str, Any]) -> TokenPair:
        """Issue an access token and a longer-lived refresh token."""
        base = {key: value for key, value in claims.items() if key not in _ISSUANCE_CLAIMS}
        access = self.issue({**base, "kind": TOKEN_KIND_ACCESS}, self.access_lifetime)
        refresh = self.issue({**base, "kind": TOKEN_KIND_REFRESH}, self.refresh_lifetime)
        return TokenPair(access_token=access, refresh_token=refresh, expires_in=self.access_lifetime)

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a fresh pair.

        The presented refresh token is not recorded as consumed; it stays usable
        until it expires.
        """
        claims = self.verify(refresh_token)
        if claims.get("kind") != TOKEN_KIND_REFRESH:
            raise InvalidTokenError("Invalid token type.", detail={"kind": claims.get("kind")})
        return self.issue_pair(claims)

    def remaining_lifetime(self, claims: Mapping[str, Any], now: float | None = None) -> float | None:
        expires_at = claims.get("exp")
        if not isinstance(expires_at, (int, float)):
            return None
        current = self._clock() if now is None else now
        return float(expires_at) - current

    def maybe_refresh(
        self, claims: Mapping[str, Any], refresh_token: str | None
    ) -> TokenPair | None:
        """Return replacement tokens when ``claims`` is close to expiry.

        Failures are logged and reported as ``None`` so the caller's primary
        response is never interrupted.
        """
        remaining = self.remaining_lifetime(claims)
        if remaining is None or remaining >= self.refresh_threshold or not refresh_token:
            return None
        try:
            pair = self.refresh(refresh_token)
        except SecurityError as err:
            logger.warning("Token auto-refresh failed for %s: %s", claims.get("sub"), err.code)
            return None
        logger.info("Issued replacement tokens for %s (%.0fs left)", claims.get("sub"), remaining)
        return pair

    # --- keys -----------------------------------------------------------------------
    def _verification_record(self, key_id: Any) -> KeyRecord | None:
        if not isinstance(key_id, str):
            return None
        for record in self.keystore.verification_keys(ROLE_TOKEN_SIGNING):
            if record.id == key_id:
                return record
        return None

    @staticmethod
    def _signing_key(record: KeyRecord) -> str | bytes:
        if record.is_asymmetric:
            return record.material.decode("ascii")
        return record.material

    def _verification_key(self, record: KeyRecord) -> str | bytes:
        if not record.is_asymmetric:
            return record.material
        cached = self._public_keys.get(record.id)
        if cached is None:
            private_key = serialization.load_pem_private_key(record.material, password=None)
            cached = (
                private_key.public_key()
                .public_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PublicFormat.SubjectPublicKeyInfo,
                )
                .decode("ascii")
            )
            self._public_keys[record.id] = cached
        return cached
