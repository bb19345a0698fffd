"""
auth/passwords.py -- Password hashing and verification.

Argon2id via argon2-cffi. Argon2 is memory-hard: each guess costs RAM as well
as CPU, which blunts GPU/ASIC brute force against a leaked users table. The
salt is random per hash and embedded in the encoded string.

The _DUMMY_HASH constant enables timing equalization: callers that find no
account still run verify_password() against it, so response time does not
reveal whether an email is registered [C1].

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

_hasher = PasswordHasher(type=Type.ID)


def hash_password(plain: str) -> str:
    """Return an argon2id hash of the given plaintext password."""
    return _hasher.hash(plain)


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the hash.

    argon2's verify compares digests in constant time. A None hash (account
    without a local password) or a malformed one never matches.
    """
    if not hashed:
        equalize_timing(plain)
        return False
    try:
        return _hasher.verify(hashed, plain)
    except (VerificationError, InvalidHash):
        return False


def needs_rehash(hashed: str) -> bool:
    """True when the hash was made with weaker parameters than the current ones."""
    try:
        return _hasher.check_needs_rehash(hashed)
    except InvalidHash:
        return True


# Computed once at module load so the first failed login is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Burn one verification's worth of work for a login with no account [C1]."""
    verify_password(plain, _DUMMY_HASH)
