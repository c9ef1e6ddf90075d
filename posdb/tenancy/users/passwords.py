"""Password hashing (bcrypt with SHA-256 pre-hash).

Bcrypt truncates inputs at 72 bytes; pre-hashing with SHA-256 yields a
fixed-length input so long passwords are not silently truncated. Hashes
written before the pre-hash was adopted are bcrypt over the raw password;
verify_password accepts both.
"""

import base64
import hashlib

import bcrypt

DEFAULT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 6


def _prehash(password: str) -> bytes:
    return base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest())


def hash_password(password: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return the bcrypt hash of password."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_prehash(password), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Return True if plain_password matches hashed_password."""
    if not plain_password or not hashed_password:
        return False
    hashed = hashed_password.encode("utf-8")
    try:
        if bcrypt.checkpw(_prehash(plain_password), hashed):
            return True
        raw = plain_password.encode("utf-8")
        return len(raw) <= 72 and bcrypt.checkpw(raw, hashed)
    except (ValueError, TypeError):
        return False
