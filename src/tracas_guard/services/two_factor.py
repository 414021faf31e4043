"""Two-factor authentication: TOTP enrolment, verification and backup-code recovery."""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import logging
import secrets
import time
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

import pyotp
import qrcode
import qrcode.image.svg
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from tracas_guard.core.errors import DecryptionError
from tracas_guard.core.security import constant_time_equals
from tracas_guard.core.settings import Settings
from tracas_guard.models import BackupCode, TwoFactorSecret
from tracas_guard.services.audit import AuditSink, SecurityEvent

logger = logging.getLogger(__name__)

SECRET_FORMAT_VERSION = "v1"
SECRET_NONCE_BYTES = 12
BACKUP_CODE_GROUPS = 3
BACKUP_CODE_GROUP_BYTES = 2
SESSION_KEY = "two_factor"


@dataclass(frozen=True)
class TwoFactorAccount:
    """Minimal account view needed to label a provisioning URI."""

    account_id: str
    label: str


@dataclass(frozen=True)
class TwoFactorSetup:
    """Result of enrolment.

    ``secret`` is shown to the account holder once for manual entry and is
    never persisted; only ``encrypted_secret`` is stored.
    """

    secret: str
    provisioning_uri: str
    qr_code: str
    encrypted_secret: str
    backup_codes: list[str] = field(default_factory=list)


class TwoFactorManager:
    """TOTP secrets encrypted at rest plus single-use recovery codes."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        master_key: str,
        issuer: str = "TRACAS Admin",
        privileged_roles: Iterable[str] = ("admin",),
        session_ttl_seconds: int = 12 * 3600,
        backup_code_count: int = 10,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._master_key = master_key.encode("utf-8")
        self.issuer = issuer
        self.privileged_roles = frozenset(privileged_roles)
        self.session_ttl_seconds = session_ttl_seconds
        self.backup_code_count = backup_code_count
        self._audit = audit
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> TwoFactorManager:
        master_key = settings.two_factor_master_key
        if not master_key:
            logger.warning("SECRET_ENCRYPTION_KEY not set; deriving 2FA keys from SECRET_KEY")
            master_key = settings.secret_key
        return cls(
            session_factory,
            master_key=master_key,
            issuer=settings.two_factor_issuer,
            privileged_roles=settings.two_factor_roles,
            session_ttl_seconds=settings.two_factor_session_ttl_seconds,
            backup_code_count=settings.backup_code_count,
            audit=audit,
            clock=clock,
        )

    # --- secret at rest -------------------------------------------------------------
    def _account_key(self, account_id: str) -> bytes:
        return HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b"tracas-2fa:" + account_id.encode("utf-8"),
        ).derive(self._master_key)

    def encrypt_secret(self, secret: str, account_id: str) -> str:
        """Encrypt a base32 TOTP secret under a key derived for ``account_id``."""
        nonce = secrets.token_bytes(SECRET_NONCE_BYTES)
        sealed = AESGCM(self._account_key(account_id)).encrypt(
            nonce, secret.encode("utf-8"), account_id.encode("utf-8")
        )
        return ":".join(
            (
                SECRET_FORMAT_VERSION,
                base64.b64encode(nonce).decode("ascii"),
                base64.b64encode(sealed).decode("ascii"),
            )
        )

    def decrypt_secret(self, encrypted_secret: str, account_id: str) -> str:
        """Reverse :meth:`encrypt_secret`; raises DecryptionError on any mismatch."""
        try:
            version, nonce_b64, sealed_b64 = encrypted_secret.split(":")
            if version != SECRET_FORMAT_VERSION:
                raise ValueError(f"unsupported secret format {version!r}")
            plaintext = AESGCM(self._account_key(account_id)).decrypt(
                base64.b64decode(nonce_b64, validate=True),
                base64.b64decode(sealed_b64, validate=True),
                account_id.encode("utf-8"),
            )
        except (InvalidTag, ValueError, binascii.Error) as err:
            raise DecryptionError("Failed to decrypt 2FA secret") from err
        return plaintext.decode("utf-8")

    # --- enrolment ------------------------------------------------------------------
    def generate_secret(self, account: TwoFactorAccount) -> TwoFactorSetup:
        """Create a TOTP secret, its QR code, and a fresh set of backup codes.

        The encrypted secret is persisted for the account, replacing any
        previous enrolment.
        """
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=account.label, issuer_name=self.issuer)
        encrypted = self.encrypt_secret(secret, account.account_id)
        self.store_secret(account.account_id, encrypted)
        codes = self.generate_backup_codes(account.account_id)
        self._emit("two_factor_setup", "info", {"account_id": account.account_id})
        return TwoFactorSetup(
            secret=secret,
            provisioning_uri=uri,
            qr_code=self.render_qr_code(uri),
            encrypted_secret=encrypted,
            backup_codes=codes,
        )

    @staticmethod
    def render_qr_code(uri: str) -> str:
        """Return ``uri`` rendered as an SVG QR code data URL."""
        image = qrcode.make(uri, image_factory=qrcode.image.svg.SvgPathImage)
        buffer = io.BytesIO()
        image.save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"

    def store_secret(self, account_id: str, encrypted_secret: str) -> None:
        with self._session_factory() as db:
            row = db.get(TwoFactorSecret, account_id)
            if row is None:
                db.add(
                    TwoFactorSecret(
                        owner_id=account_id,
                        encrypted_secret=encrypted_secret,
                        created_at=self._clock(),
                    )
                )
            else:
                row.encrypted_secret = encrypted_secret
                row.created_at = self._clock()
            db.commit()

    def get_encrypted_secret(self, account_id: str) -> str | None:
        with self._session_factory() as db:
            row = db.get(TwoFactorSecret, account_id)
            return row.encrypted_secret if row is not None else None

    def is_enabled(self, account_id: str) -> bool:
        return self.get_encrypted_secret(account_id) is not None

    # --- verification ---------------------------------------------------------------
    def verify(self, code: str, encrypted_secret: str, account_id: str) -> bool:
        """Check a TOTP code, tolerating one time step of clock drift either way."""
        try:
            secret = self.decrypt_secret(encrypted_secret, account_id)
        except DecryptionError as err:
            logger.error("Error verifying 2FA token for %s: %s", account_id, err)
            return False
        verified = pyotp.TOTP(secret).verify(
            str(code).strip(), for_time=int(self._clock()), valid_window=1
        )
        self._emit(
            "two_factor_verification",
            "info" if verified else "medium",
            {"account_id": account_id, "method": "totp", "success": verified},
        )
        return verified

    def verify_account(self, code: str, account_id: str) -> bool:
        """Verify ``code`` against the secret stored for ``account_id``."""
        encrypted = self.get_encrypted_secret(account_id)
        if encrypted is None:
            return False
        return self.verify(code, encrypted, account_id)

    # --- backup codes ---------------------------------------------------------------
    @staticmethod
    def _normalize_code(code: str) -> str:
        return code.strip().lower()

    @staticmethod
    def _hash_code(code: str, account_id: str, salt: str) -> str:
        return hashlib.sha256(f"{salt}:{code}:{account_id}".encode()).hexdigest()

    def _code_matches(self, stored: str, code: str, account_id: str) -> bool:
        salt, _, expected = stored.partition("$")
        return constant_time_equals(self._hash_code(code, account_id, salt), expected)

    def generate_backup_codes(self, account_id: str, count: int | None = None) -> list[str]:
        """Replace the account's recovery codes with ``count`` new ones.

        Codes look like ``1a2b-3c4d-5e6f``; only salted hashes are stored.
        """
        total = self.backup_code_count if count is None else count
        codes = [
            "-".join(
                secrets.token_hex(BACKUP_CODE_GROUP_BYTES) for _ in range(BACKUP_CODE_GROUPS)
            )
            for _ in range(total)
        ]
        with self._session_factory() as db:
            db.execute(delete(BackupCode).where(BackupCode.owner_id == account_id))
            for code in codes:
                salt = secrets.token_hex(8)
                db.add(
                    BackupCode(
                        owner_id=account_id,
                        code_hash=f"{salt}${self._hash_code(code, account_id, salt)}",
                    )
                )
            db.commit()
        self._emit("two_factor_backup_codes_generated", "info", {"account_id": account_id, "count": total})
        return codes

    def verify_backup_code(self, code: str, account_id: str) -> bool:
        """Accept a recovery code once; the matching hash is deleted on success."""
        candidate = self._normalize_code(code)
        with self._session_factory() as db:
            rows = db.scalars(select(BackupCode).where(BackupCode.owner_id == account_id)).all()
            for row in rows:
                if not self._code_matches(row.code_hash, candidate, account_id):
                    continue
                result = db.execute(delete(BackupCode).where(BackupCode.id == row.id))
                db.commit()
                # A concurrent request that consumed the same row first wins.
                consumed = result.rowcount == 1
                self._emit(
                    "two_factor_backup_code",
                    "info" if consumed else "medium",
                    {"account_id": account_id, "success": consumed},
                )
                return consumed
        self._emit(
            "two_factor_backup_code", "medium", {"account_id": account_id, "success": False}
        )
        return False

    def remaining_backup_codes(self, account_id: str) -> int:
        with self._session_factory() as db:
            return len(
                db.scalars(select(BackupCode.id).where(BackupCode.owner_id == account_id)).all()
            )

    def disable(self, account_id: str) -> bool:
        """Discard the account's backup codes and stored secret."""
        with self._session_factory() as db:
            db.execute(delete(BackupCode).where(BackupCode.owner_id == account_id))
            db.execute(delete(TwoFactorSecret).where(TwoFactorSecret.owner_id == account_id))
            db.commit()
        self._emit("two_factor_disabled", "info", {"account_id": account_id})
        return True

    # --- session gate ---------------------------------------------------------------
    def requires_second_factor(self, role: str | None) -> bool:
        return role in self.privileged_roles

    def mark_session_verified(self, session: MutableMapping[str, Any], subject: str) -> None:
        session[SESSION_KEY] = {"sub": subject, "verified_at": self._clock()}

    def is_session_verified(self, session: Mapping[str, Any], subject: str) -> bool:
        """Return True if ``session`` holds a fresh confirmation for ``subject``."""
        marker = session.get(SESSION_KEY)
        if not isinstance(marker, Mapping) or marker.get("sub") != subject:
            return False
        verified_at = marker.get("verified_at")
        if not isinstance(verified_at, (int, float)):
            return False
        return self._clock() - verified_at <= self.session_ttl_seconds

    def _emit(self, kind: str, severity: str, detail: dict[str, Any]) -> None:
        if self._audit is not None:
            self._audit.emit(SecurityEvent(event_kind=kind, severity=severity, detail=detail))
