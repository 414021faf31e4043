"""Password hashing utilities built on PBKDF2-HMAC-SHA512."""
from __future__ import annotations

import hashlib
import hmac
import json
import secrets

PBKDF2_DIGEST = "sha512"
PBKDF2_ITERATIONS = 100_000
PBKDF2_KEY_LENGTH = 64
SALT_BYTES = 16


def _keyed_password(password: str, pepper: bytes | None) -> bytes:
    raw = password.encode("utf-8")
    if pepper is None:
        return raw
    return hmac.new(pepper, raw, hashlib.sha512).digest()


def hash_password(
    password: str,
    *,
    pepper: bytes | None = None,
    pepper_id: str | None = None,
    iterations: int = PBKDF2_ITERATIONS,
) -> str:
    """Derive a salted, optionally peppered hash of ``password``.

    Args:
        password: Plaintext password supplied by the account holder.
        pepper: Server-side secret mixed in before derivation.
        pepper_id: Identifier of the pepper so verification can find it after rotation.
        iterations: PBKDF2 iteration count.

    Returns:
        A JSON document holding the hash and every parameter needed to verify it.
    """
    salt = secrets.token_bytes(SALT_BYTES)
    derived = hashlib.pbkdf2_hmac(
        PBKDF2_DIGEST,
        _keyed_password(password, pepper),
        salt,
        iterations,
        PBKDF2_KEY_LENGTH,
    )
    return json.dumps(
        {
            "hash": derived.hex(),
            "salt": salt.hex(),
            "iterations": iterations,
            "key_length": PBKDF2_KEY_LENGTH,
            "digest": PBKDF2_DIGEST,
            "pepper_id": pepper_id,
        }
    )


def parse_password_hash(stored: str) -> dict[str, object]:
    """Return the parameters of a stored hash, raising ValueError when malformed."""
    try:
        data = json.loads(stored)
    except (TypeError, json.JSONDecodeError) as err:
        raise ValueError("Stored password hash is not valid JSON") from err
    if not isinstance(data, dict) or "hash" not in data or "salt" not in data:
        raise ValueError("Stored password hash is missing fields")
    return data


def verify_password(password: str, stored: str, *, pepper: bytes | None = None) -> bool:
    """Verify ``password`` against a hash produced by :func:`hash_password`.

    Returns False for malformed stored values instead of raising.
    """
    try:
        data = parse_password_hash(stored)
        expected = bytes.fromhex(str(data["hash"]))
        derived = hashlib.pbkdf2_hmac(
            str(data.get("digest", PBKDF2_DIGEST)),
            _keyed_password(password, pepper),
            bytes.fromhex(str(data["salt"])),
            int(data.get("iterations", PBKDF2_ITERATIONS)),  # type: ignore[arg-type]
            int(data.get("key_length", PBKDF2_KEY_LENGTH)),  # type: ignore[arg-type]
        )
    except (ValueError, TypeError):
        return False
    return hmac.compare_digest(derived, expected)


def constant_time_equals(left: str | bytes | None, right: str | bytes | None) -> bool:
    """Compare two secrets byte-for-byte in constant time; None never matches."""
    if left is None or right is None:
        return False
    left_bytes = left.encode("utf-8") if isinstance(left, str) else left
    right_bytes = right.encode("utf-8") if isinstance(right, str) else right
    return hmac.compare_digest(left_bytes, right_bytes)
