"""
auth/revocation.py -- Denylist of spent refresh-token ids.

Entries live in the shared KeyValueCache under "blacklist:{token_id}" with a
TTL equal to the token's remaining lifetime, so the denylist never holds an
entry for a token that would fail verification anyway.

Race: two requests presenting the same refresh token could both pass an
is_revoked() check before either writes. Rotation and sign-out therefore use
revoke_if_absent(), a single conditional insert, and only the caller that
inserted the row proceeds.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import time

from cache.store import KeyValueCache

_KEY_PREFIX = "blacklist:"


def _remaining_ttl(expires_at: int) -> int:
    return max(int(expires_at - time.time()), 1)


class SessionRevocationStore:
    def __init__(self, cache: KeyValueCache) -> None:
        self._cache = cache

    def revoke(self, token_id: str, user_id: int, expires_at: int) -> None:
        """Add token_id to the denylist. Idempotent."""
        self._cache.add(_KEY_PREFIX + token_id, str(user_id), _remaining_ttl(expires_at))

    def revoke_if_absent(self, token_id: str, user_id: int, expires_at: int) -> bool:
        """Atomically revoke token_id. Returns False if it was already revoked."""
        return self._cache.add(_KEY_PREFIX + token_id, str(user_id), _remaining_ttl(expires_at))

    def is_revoked(self, token_id: str) -> bool:
        return self._cache.exists(_KEY_PREFIX + token_id)
