"""
Password policy and bcrypt hashing.
"""

from __future__ import annotations

import bcrypt

from backend.errors import ValidationError

# bcrypt only looks at the first 72 bytes of its input.
BCRYPT_MAX_BYTES = 72


def validate_password(password: str, min_length: int = 8) -> None:
    if not password or not password.strip():
        raise ValidationError("Password must not be empty")
    if len(password) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationError(
            f"Password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded"
        )


def hash_password(password: str, rounds: int = 12) -> str:
    """Salted adaptive hash; the salt and cost live inside the returned string."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage.
        return False
