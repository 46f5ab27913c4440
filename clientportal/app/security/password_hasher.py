"""
security/password_hasher.py — One-way password hashing (bcrypt).

The plaintext is first reduced to a base64-encoded SHA-256 digest (44 bytes)
and only that digest goes through bcrypt. This keeps the input below bcrypt's
72-byte limit, so long passphrases are neither truncated nor rejected, and
makes verification cost independent of the supplied plaintext length.

bcrypt.checkpw compares digests in constant time.
Raw passwords are never stored and never logged.
"""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache

import bcrypt


def _prehash(plaintext: str) -> bytes:
    # JSON can carry lone surrogates; they must hash, not raise.
    digest = hashlib.sha256(plaintext.encode("utf-8", "surrogatepass")).digest()
    return base64.b64encode(digest)


def hash_password(plaintext: str, rounds: int = 12) -> str:
    """Returns a salted bcrypt hash (text) for `plaintext`."""
    return bcrypt.hashpw(_prehash(plaintext), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plaintext: str, password_hash: str | None) -> bool:
    """
    True if `plaintext` matches `password_hash`.

    Federated-only accounts carry an empty hash; that and any malformed
    stored value verify as False instead of raising.
    """
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(_prehash(plaintext), password_hash.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> bytes:
    return bcrypt.hashpw(b"clientportal-dummy-password", bcrypt.gensalt(rounds=rounds))


def dummy_verify(plaintext: str, rounds: int = 12) -> None:
    """
    Spends one bcrypt verification at the configured cost without a real
    account behind it, so unknown-email logins take as long as real ones.
    """
    bcrypt.checkpw(_prehash(plaintext), _dummy_hash(rounds))
