"""
auth/passwords.py -- One-way password hashing (bcrypt, direct usage).

bcrypt only looks at the first 72 bytes of its input; bcrypt 4.x+ raises on
longer input instead. Neither is acceptable: long passphrases must neither be
rejected nor silently truncated. The plaintext is therefore reduced to
base64(SHA-256(plaintext)) -- 44 ASCII bytes, no NUL -- before bcrypt sees it.
bcrypt still supplies the per-hash salt and the cost factor.

Hashing the same plaintext twice yields different strings (fresh salt);
verification is deterministic against the stored hash.

Plaintext passwords are never logged.
"""

from __future__ import annotations

import base64
import hashlib

import bcrypt


def _prehash(plain: str) -> bytes:
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the plaintext. Empty strings are allowed."""
    return bcrypt.hashpw(_prehash(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext matches the stored hash.

    A None hash (externally authenticated user) never matches. A malformed
    hash is treated as a mismatch rather than an error.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_prehash(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at import so the first login is not measurably slower than
# later ones. Login runs verify_password() against this when the email is
# unknown, so response time does not reveal whether an account exists.
DUMMY_HASH: str = hash_password("tenantauth_timing_dummy")
