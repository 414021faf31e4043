"""Key material lifecycle: generation, persistence, rotation and AEAD helpers.

Each key role has exactly one active record persisted as
``<keys_dir>/<role>-key.json``. Rotation writes the replacement durably, archives
the outgoing record next to it as ``<role>-key.<id>.backup.json`` and only then
promotes the new record, so a crash mid-rotation leaves the old key in place.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import re
import secrets
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tracas_guard.core.errors import DecryptionError, KeyManagementError
from tracas_guard.core.settings import Settings

logger = logging.getLogger(__name__)

ROLE_ENCRYPTION = "encryption"
ROLE_MAC = "mac"
ROLE_PASSWORD_KDF = "password_kdf"
ROLE_TOKEN_SIGNING = "token_signing"

# role -> (material length in bytes, algorithm)
KEY_ROLES: dict[str, tuple[int, str]] = {
    ROLE_ENCRYPTION: (32, "aes-256-gcm"),
    ROLE_MAC: (64, "hmac-sha256"),
    ROLE_PASSWORD_KDF: (64, "pbkdf2"),
    ROLE_TOKEN_SIGNING: (64, "ES256"),
}

ENCRYPTION_ALGORITHM = "aes-256-gcm"
GCM_NONCE_BYTES = 12
GCM_TAG_BYTES = 16
KEY_ID_BYTES = 8
SECONDS_PER_DAY = 86_400

_KEY_ID_RE = re.compile(r"^[0-9a-f]{16}$")


@dataclass(frozen=True)
class KeyRecord:
    """One generation of key material for a role."""

    id: str
    role: str
    algorithm: str
    material: bytes
    created_at: float
    rotated_at: float | None
    bit_length: int

    @property
    def is_asymmetric(self) -> bool:
        return self.algorithm == "ES256"

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["material"] = self.material.hex()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KeyRecord:
        rotated_at = data.get("rotated_at")
        return cls(
            id=str(data["id"]),
            role=str(data["role"]),
            algorithm=str(data["algorithm"]),
            material=bytes.fromhex(str(data["material"])),
            created_at=float(data["created_at"]),
            rotated_at=float(rotated_at) if rotated_at is not None else None,
            bit_length=int(data["bit_length"]),
        )


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Authenticated ciphertext plus the metadata needed to open it."""

    data: str
    iv: str
    tag: str
    key_id: str
    algorithm: str = ENCRYPTION_ALGORITHM

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> EncryptedEnvelope:
        try:
            payload = json.loads(raw)
            return cls(
                data=str(payload["data"]),
                iv=str(payload["iv"]),
                tag=str(payload["tag"]),
                key_id=str(payload["key_id"]),
                algorithm=str(payload.get("algorithm", ENCRYPTION_ALGORITHM)),
            )
        except (TypeError, KeyError, json.JSONDecodeError) as err:
            raise DecryptionError("Malformed encrypted envelope") from err


def _canonical_aad(associated_data: Mapping[str, Any] | None) -> bytes | None:
    if not associated_data:
        return None
    return json.dumps(associated_data, sort_keys=True, separators=(",", ":")).encode("utf-8")


class KeyMaterialStore:
    """Owns the active and recently retired key records for every role."""

    def __init__(
        self,
        keys_dir: str | os.PathLike[str],
        *,
        max_age_days: int = 90,
        overlap_seconds: int = 7 * SECONDS_PER_DAY,
        signing_algorithm: str = "ES256",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keys_dir = Path(keys_dir)
        self.max_age_days = max_age_days
        self.overlap_seconds = overlap_seconds
        self.signing_algorithm = signing_algorithm
        self._clock = clock
        self._lock = threading.RLock()
        self._active: dict[str, KeyRecord] = {}
        self._previous: dict[str, KeyRecord] = {}
        self._archive: dict[tuple[str, str], KeyRecord] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> KeyMaterialStore:
        return cls(
            settings.keys_dir,
            max_age_days=settings.key_max_age_days,
            overlap_seconds=settings.key_rotation_overlap_seconds,
            signing_algorithm=settings.token_algorithm,
            clock=clock,
        )

    # --- lifecycle ------------------------------------------------------------------
    def initialize(self) -> None:
        """Load or create the active record for every role."""
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.keys_dir, 0o700)
        except OSError:  # pragma: no cover - filesystem without chmod support
            logger.warning("Could not restrict permissions on %s", self.keys_dir)
        for role, (length, _algorithm) in KEY_ROLES.items():
            self.load_or_create(role, length)

    def load_or_create(self, role: str, length: int) -> KeyRecord:
        """Return the persisted record for ``role`` or generate ``length`` fresh bytes."""
        if role not in KEY_ROLES:
            raise KeyManagementError(f"Unknown key role: {role}")
        path = self._active_path(role)
        with self._lock:
            if path.exists():
                try:
                    record = KeyRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
                    if record.role != role:
                        raise ValueError(f"key file holds role {record.role!r}")
                except (OSError, ValueError, KeyError, TypeError) as err:
                    logger.error("Error loading %s key, generating a new one: %s", role, err)
                else:
                    self._active[role] = record
                    self._restore_previous(role)
                    logger.info(
                        "Loaded %s key %s created at %s",
                        role,
                        record.id,
                        time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created_at)),
                    )
                    return record

            record = self._generate(role, length)
            try:
                self._write_json(path, record.to_dict())
            except OSError as err:
                # Keep serving with in-memory material; persistence is retried on rotation.
                logger.error("Could not persist new %s key: %s", role, err)
            self._active[role] = record
            logger.info("Generated new %s key (%d bits)", role, record.bit_length)
            return record

    def rotate(self, role: str) -> KeyRecord:
        """Replace the active record for ``role`` and archive the outgoing one.

        Raises:
            KeyManagementError: If the replacement could not be written durably.
                The previous record stays active in that case.
        """
        with self._lock:
            outgoing = self._active.get(role)
            if outgoing is None:
                return self.load_or_create(role, KEY_ROLES[role][0])

            incoming = self._generate(role, KEY_ROLES[role][0])
            archived = replace(outgoing, rotated_at=self._clock())
            backup_path = self._backup_path(role, outgoing.id)
            try:
                self._write_json(backup_path, archived.to_dict())
                self._write_json(self._active_path(role), incoming.to_dict())
            except OSError as err:
                logger.error("Error rotating %s key: %s", role, err, exc_info=True)
                # A backup of the still-active key would read as the previous key on restart.
                backup_path.unlink(missing_ok=True)
                raise KeyManagementError(f"Failed to rotate {role} key") from err

            self._active[role] = incoming
            self._previous[role] = archived
            self._archive[(role, archived.id)] = archived
            logger.info("Rotated %s key %s -> %s", role, outgoing.id, incoming.id)
            return incoming

    def is_rotation_needed(self, role: str, now: float | None = None) -> bool:
        record = self._active.get(role)
        if record is None:
            return False
        current = self._clock() if now is None else now
        return record.age_seconds(current) > self.max_age_days * SECONDS_PER_DAY

    def rotate_if_needed(self) -> list[str]:
        """Rotate every role past its maximum age; failures are logged and retried later."""
        rotated: list[str] = []
        for role in list(self._active):
            if not self.is_rotation_needed(role):
                continue
            logger.info("Rotating %s key due to age", role)
            try:
                self.rotate(role)
            except KeyManagementError:
                continue
            rotated.append(role)
        return rotated

    # --- lookup ---------------------------------------------------------------------
    def active(self, role: str) -> KeyRecord:
        record = self._active.get(role)
        if record is None:
            return self.load_or_create(role, KEY_ROLES[role][0])
        return record

    def previous(self, role: str) -> KeyRecord | None:
        return self._previous.get(role)

    def find(self, role: str, key_id: str) -> KeyRecord | None:
        """Return the record with ``key_id`` from active, previous or archived material."""
        active = self._active.get(role)
        if active is not None and active.id == key_id:
            return active
        previous = self._previous.get(role)
        if previous is not None and previous.id == key_id:
            return previous
        cached = self._archive.get((role, key_id))
        if cached is not None:
            return cached
        if not _KEY_ID_RE.match(key_id):
            return None
        path = self._backup_path(role, key_id)
        if not path.exists():
            return None
        try:
            record = KeyRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as err:
            logger.error("Error loading archived %s key %s: %s", role, key_id, err)
            return None
        self._archive[(role, key_id)] = record
        return record

    def verification_keys(self, role: str, now: float | None = None) -> list[KeyRecord]:
        """Return the records a signature may validate under right now.

        The immediately-prior record is included only while its retirement is
        younger than the overlap window.
        """
        current = self._clock() if now is None else now
        records = [self.active(role)]
        previous = self._previous.get(role)
        if (
            previous is not None
            and previous.rotated_at is not None
            and current - previous.rotated_at <= self.overlap_seconds
        ):
            records.append(previous)
        return records

    # --- symmetric crypto -----------------------------------------------------------
    def encrypt(
        self, data: bytes | str, associated_data: Mapping[str, Any] | None = None
    ) -> EncryptedEnvelope:
        """Encrypt ``data`` with AES-256-GCM under the active encryption key."""
        record = self.active(ROLE_ENCRYPTION)
        plaintext = data.encode("utf-8") if isinstance(data, str) else data
        nonce = secrets.token_bytes(GCM_NONCE_BYTES)
        sealed = AESGCM(record.material).encrypt(nonce, plaintext, _canonical_aad(associated_data))
        ciphertext, tag = sealed[:-GCM_TAG_BYTES], sealed[-GCM_TAG_BYTES:]
        return EncryptedEnvelope(
            data=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(nonce).decode("ascii"),
            tag=base64.b64encode(tag).decode("ascii"),
            key_id=record.id,
        )

    def decrypt(
        self, envelope: EncryptedEnvelope, associated_data: Mapping[str, Any] | None = None
    ) -> bytes:
        """Open ``envelope``; any tampering or context mismatch raises DecryptionError."""
        if envelope.algorithm != ENCRYPTION_ALGORITHM:
            raise DecryptionError("Algorithm mismatch")
        record = self.find(ROLE_ENCRYPTION, envelope.key_id)
        if record is None:
            raise DecryptionError("Unknown encryption key")
        try:
            ciphertext = base64.b64decode(envelope.data, validate=True)
            nonce = base64.b64decode(envelope.iv, validate=True)
            tag = base64.b64decode(envelope.tag, validate=True)
            if len(tag) != GCM_TAG_BYTES:
                raise ValueError("authentication tag has the wrong length")
            return AESGCM(record.material).decrypt(
                nonce, ciphertext + tag, _canonical_aad(associated_data)
            )
        except (InvalidTag, ValueError, binascii.Error) as err:
            logger.warning("Decryption failed for key %s: %s", envelope.key_id, type(err).__name__)
            raise DecryptionError(
                "Decryption failed, data may be tampered with or key is invalid"
            ) from err

    def mac(self, data: bytes | str) -> str:
        """Return the hex HMAC-SHA256 of ``data`` under the active MAC key."""
        payload = data.encode("utf-8") if isinstance(data, str) else data
        return hmac.new(self.active(ROLE_MAC).material, payload, hashlib.sha256).hexdigest()

    @staticmethod
    def generate_token(length: int = 32) -> str:
        return secrets.token_hex(length)

    @staticmethod
    def generate_nonce(length: int = 16) -> str:
        return base64.b64encode(secrets.token_bytes(length)).decode("ascii")

    def status(self) -> dict[str, dict[str, Any]]:
        """Describe active records without exposing material."""
        now = self._clock()
        summary: dict[str, dict[str, Any]] = {}
        for role, record in self._active.items():
            previous = self._previous.get(role)
            summary[role] = {
                "id": record.id,
                "algorithm": record.algorithm,
                "bit_length": record.bit_length,
                "created_at": record.created_at,
                "age_days": round(record.age_seconds(now) / SECONDS_PER_DAY, 2),
                "previous_id": previous.id if previous else None,
            }
        return summary

    # --- internals ------------------------------------------------------------------
    def _generate(self, role: str, length: int) -> KeyRecord:
        algorithm = KEY_ROLES[role][1]
        if role == ROLE_TOKEN_SIGNING:
            return self._generate_signing_key(length)
        return KeyRecord(
            id=secrets.token_hex(KEY_ID_BYTES),
            role=role,
            algorithm=algorithm,
            material=secrets.token_bytes(length),
            created_at=self._clock(),
            rotated_at=None,
            bit_length=length * 8,
        )

    def _generate_signing_key(self, length: int) -> KeyRecord:
        if self.signing_algorithm == "ES256":
            try:
                private_key = ec.generate_private_key(ec.SECP256R1())
                pem = private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                )
            except (UnsupportedAlgorithm, ValueError) as err:
                logger.error("Error generating EC signing key, falling back to HMAC: %s", err)
            else:
                return KeyRecord(
                    id=secrets.token_hex(KEY_ID_BYTES),
                    role=ROLE_TOKEN_SIGNING,
                    algorithm="ES256",
                    material=pem,
                    created_at=self._clock(),
                    rotated_at=None,
                    bit_length=private_key.curve.key_size,
                )
        return KeyRecord(
            id=secrets.token_hex(KEY_ID_BYTES),
            role=ROLE_TOKEN_SIGNING,
            algorithm="HS256",
            material=secrets.token_bytes(length),
            created_at=self._clock(),
            rotated_at=None,
            bit_length=length * 8,
        )

    def _restore_previous(self, role: str) -> None:
        """Recover the most recently retired record so overlap survives a restart."""
        newest: KeyRecord | None = None
        for path in self.keys_dir.glob(f"{role}-key.*.backup.json"):
            try:
                record = KeyRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError):
                logger.warning("Skipping unreadable key backup %s", path.name)
                continue
            if record.rotated_at is None:
                continue
            if newest is None or record.rotated_at > (newest.rotated_at or 0.0):
                newest = record
        if newest is not None:
            self._previous[role] = newest
            self._archive[(role, newest.id)] = newest

    def _active_path(self, role: str) -> Path:
        return self.keys_dir / f"{role}-key.json"

    def _backup_path(self, role: str, key_id: str) -> Path:
        return self.keys_dir / f"{role}-key.{key_id}.backup.json"

    def _write_json(self, path: Path, payload: dict[str, Any]) -> None:
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        os.chmod(path, 0o600)


class KeyRotationWorker:
    """Periodically rotates key material that has outlived its maximum age."""

    def __init__(self, store: KeyMaterialStore, interval_seconds: float = SECONDS_PER_DAY) -> None:
        self.store = store
        self.interval_seconds = max(0.1, float(interval_seconds))
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background rotation loop."""
        if not self.running:
            self._stopping = asyncio.Event()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background rotation loop."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            else:
                return
            rotated = await asyncio.to_thread(self.store.rotate_if_needed)
            if rotated:
                logger.info("Key rotation tick rotated: %s", ", ".join(rotated))
