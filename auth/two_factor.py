"""
auth/two_factor.py -- One-time 6-digit access codes for two-factor sign-in.

Codes are stored as bcrypt hashes under "access_code:{email}" in the shared
KeyValueCache, so a dump of the store does not reveal live codes. A low cost
factor is enough: the code only lives for the confirmation-token lifetime and
the sign-in routes are rate limited.

Single use: a successful validate() removes the entry with pop_if(), which
only deletes the exact hash that was checked. Two concurrent validations of
the same code cannot both succeed, and a code replaced by a newer sign-in is
never deleted by a validation of the old one. A failed validation leaves the
entry in place.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import secrets

import bcrypt

from cache.store import KeyValueCache

logger = logging.getLogger("authgate.auth.two_factor")

_KEY_PREFIX = "access_code:"
_CODE_LENGTH = 6
_BCRYPT_ROUNDS = 5


def generate_code() -> str:
    """Return a uniformly random 6-digit string (leading zeros allowed)."""
    return "".join(str(secrets.randbelow(10)) for _ in range(_CODE_LENGTH))


def _check(code: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(code.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


class TwoFactorCodeStore:
    def __init__(self, cache: KeyValueCache, ttl: int) -> None:
        self._cache = cache
        self._ttl = ttl

    def create(self, email: str, code: str) -> None:
        """Store hash(code) for email, replacing any previous code."""
        hashed = bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")
        self._cache.set(_KEY_PREFIX + email, hashed, self._ttl)

    def validate(self, email: str, code: str) -> bool:
        """Return True and consume the code if it matches the stored one."""
        key = _KEY_PREFIX + email
        hashed = self._cache.get(key)
        if hashed is None or not _check(code, hashed):
            return False
        if not self._cache.pop_if(key, hashed):
            logger.info("Access code consumed concurrently")
            return False
        return True
