"""
cache/store.py -- Shared key/value store with per-entry TTL.

Backs the refresh-token denylist, the two-factor access codes and the OAuth
CSRF states. Every service instance points at the same SQL database, so the
state is shared and the API processes stay stateless.

Atomicity:
  add()    -- insert-if-absent. Relies on the primary key: a second writer gets
              IntegrityError and the method returns False. Used for "revoke if
              not already revoked" so a refresh token rotates at most once.
  pop()    -- single consumer. Only the caller whose DELETE removed the row gets
              the value back. Used for CSRF states.
  pop_if() -- compare-and-delete. Removes the entry only while it still holds
              the expected value, so a newer value written in between survives.
              Used for one-shot access codes.

Expired rows are invisible to get()/pop() and are removed lazily on access and
in bulk by purge_expired() (the API lifespan runs it periodically).

Usage:
    cache = KeyValueCache("sqlite:///authgate.db")
    cache.add("blacklist:abc", "42", ttl=3600)   # True
    cache.add("blacklist:abc", "42", ttl=3600)   # False
    cache.pop("access_code:a@x.com")             # value or None
"""

from __future__ import annotations

import time
from typing import Optional

from sqlalchemy import Column, Float, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

_metadata = MetaData()

_cache_entries = Table(
    "cache_entries",
    _metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),  # epoch seconds
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class KeyValueCache:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def get(self, key: str) -> Optional[str]:
        """Return the value for key if it exists and hasn't expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _cache_entries.select().where(
                    (_cache_entries.c.key == key) & (_cache_entries.c.expires_at > time.time())
                )
            ).fetchone()
        return row.value if row is not None else None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, value: str, ttl: int) -> None:
        """Store value under key for ttl seconds, replacing any existing entry."""
        expires_at = time.time() + ttl
        if self._update_entry(key, value, expires_at):
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(_cache_entries.insert().values(key=key, value=value, expires_at=expires_at))
        except IntegrityError:
            # A concurrent set() inserted the row first; last writer wins.
            self._update_entry(key, value, expires_at)

    def add(self, key: str, value: str, ttl: int) -> bool:
        """Store value only if no live entry exists. Returns False if one does."""
        now = time.time()
        self._delete_expired_key(key, now)
        try:
            with self.engine.begin() as conn:
                conn.execute(_cache_entries.insert().values(key=key, value=value, expires_at=now + ttl))
        except IntegrityError:
            return False
        return True

    def pop(self, key: str) -> Optional[str]:
        """Remove key and return its value. Concurrent callers: at most one wins."""
        now = time.time()
        with self.engine.begin() as conn:
            row = conn.execute(_cache_entries.select().where(_cache_entries.c.key == key)).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _cache_entries.delete().where(
                    (_cache_entries.c.key == key) & (_cache_entries.c.expires_at == row.expires_at)
                )
            )
        if result.rowcount != 1 or row.expires_at <= now:
            return None
        return row.value

    def pop_if(self, key: str, expected: str) -> bool:
        """Remove key only while it still holds expected. True if this caller removed it."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _cache_entries.delete().where(
                    (_cache_entries.c.key == key)
                    & (_cache_entries.c.value == expected)
                    & (_cache_entries.c.expires_at > time.time())
                )
            )
        return result.rowcount == 1

    def delete(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_cache_entries.delete().where(_cache_entries.c.key == key))

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_cache_entries.delete().where(_cache_entries.c.expires_at <= time.time()))
        return result.rowcount

    def _update_entry(self, key: str, value: str, expires_at: float) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _cache_entries.update()
                .where(_cache_entries.c.key == key)
                .values(value=value, expires_at=expires_at)
            )
        return result.rowcount

    def _delete_expired_key(self, key: str, now: float) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _cache_entries.delete().where((_cache_entries.c.key == key) & (_cache_entries.c.expires_at <= now))
            )

    def close(self) -> None:
        self.engine.dispose()
