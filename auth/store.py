"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_link are the mappers. Service code never touches SQL.

Transactions:
  create_user() inserts the user row and its first oauth_providers row in one
  transaction, so an account never exists without the link that decides
  whether local sign-in needs a second factor.

Optimistic concurrency:
  update_user(user, expected_version=v) only writes when the row still has
  version v. AuthService uses it for every version bump, so a confirmation or
  reset token can drive at most one mutation even under concurrent requests.

Timestamps:
  There are no ORM hooks. touch(record) stamps updated_at and AuthService calls
  it explicitly before each persist call.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import OAuthProvider, OAuthProviderLink, User

_DEFAULT_DB_URL = "sqlite:///authgate.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(200), nullable=False, unique=True),
    Column("username", String(110), nullable=False, unique=True),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("date_of_birth", Date, nullable=False),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(20), nullable=False, server_default="user"),
    Column("confirmed", Boolean, nullable=False, server_default="0"),
    Column("suspended", Boolean, nullable=False, server_default="0"),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("picture", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_oauth_providers = Table(
    "oauth_providers",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "user_email",
        String(200),
        ForeignKey("users.email", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    ),
    Column("provider", String(20), nullable=False),
    Column("two_factor", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("user_email", "provider", name="uq_oauth_providers_email_provider"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys for SQLite connections.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_Record = TypeVar("_Record", User, OAuthProviderLink)

_SLUG_SEPARATORS = re.compile(r"[^\w]+")
_USERNAME_ATTEMPTS = 3


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def touch(record: _Record) -> _Record:
    """Stamp updated_at (and created_at on first persist). Returns the record."""
    now = _now_iso()
    if record.created_at is None:
        record.created_at = now
    record.updated_at = now
    return record


def _point_slug(full_name: str) -> str:
    return _SLUG_SEPARATORS.sub(".", full_name.strip().lower()).strip(".")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and OAuthProviderLink entities.

    Usage:
        store = UserStore("sqlite:///authgate.db")
        user = store.create_user(touch(User(...)), OAuthProvider.local, two_factor=True)
        store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User, provider: OAuthProvider, two_factor: bool) -> User:
        """Insert user plus its first provider link in one transaction.

        The username is derived from the full name ("jane.doe", then
        "jane.doe.2", ...). user.id and user.username are filled in on the
        returned record. A username taken by a concurrent insert is retried
        with the next free suffix.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        link = touch(OAuthProviderLink(user_email=user.email, provider=provider.value, two_factor=two_factor))
        for _ in range(_USERNAME_ATTEMPTS - 1):
            try:
                return self._insert_user(user, link)
            except IntegrityError:
                if self.get_by_email(user.email) is not None:
                    raise
        return self._insert_user(user, link)

    def _insert_user(self, user: User, link: OAuthProviderLink) -> User:
        with self.engine.begin() as conn:
            user.username = self._create_username(conn, user.full_name)
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    username=user.username,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    date_of_birth=user.date_of_birth,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    confirmed=user.confirmed,
                    suspended=user.suspended,
                    version=user.version,
                    picture=user.picture,
                    created_at=user.created_at,
                    updated_at=user.updated_at,
                )
            )
            user.id = result.inserted_primary_key[0]
            conn.execute(
                _oauth_providers.insert().values(
                    user_email=link.user_email,
                    provider=link.provider,
                    two_factor=link.two_factor,
                    created_at=link.created_at,
                    updated_at=link.updated_at,
                )
            )
        return user

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email. Emails are stored lower-cased."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_version(self, user_id: int, version: int) -> User | None:
        """Return the user only if its current version equals version."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.id == user_id) & (_users.c.version == version))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user: User, expected_version: int | None = None) -> bool:
        """Write the mutable fields of user.

        With expected_version, the write only happens if the stored version
        still equals it. Returns True if a row was updated.
        """
        condition = _users.c.id == user.id
        if expected_version is not None:
            condition = condition & (_users.c.version == expected_version)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(condition)
                .values(
                    first_name=user.first_name,
                    last_name=user.last_name,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    confirmed=user.confirmed,
                    suspended=user.suspended,
                    version=user.version,
                    picture=user.picture,
                    updated_at=user.updated_at,
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Provider links
    # ------------------------------------------------------------------

    def get_provider(self, email: str, provider: OAuthProvider) -> OAuthProviderLink | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _oauth_providers.select().where(
                    (_oauth_providers.c.user_email == email.lower()) & (_oauth_providers.c.provider == provider.value)
                )
            ).fetchone()
        return _row_to_link(row) if row is not None else None

    def create_provider(self, link: OAuthProviderLink) -> OAuthProviderLink:
        """Insert a provider link. Raises IntegrityError if the pair exists."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _oauth_providers.insert().values(
                    user_email=link.user_email,
                    provider=link.provider,
                    two_factor=link.two_factor,
                    created_at=link.created_at,
                    updated_at=link.updated_at,
                )
            )
        link.id = result.inserted_primary_key[0]
        return link

    def update_provider(self, link: OAuthProviderLink) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _oauth_providers.update()
                .where(_oauth_providers.c.id == link.id)
                .values(two_factor=link.two_factor, updated_at=link.updated_at)
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _create_username(conn: Connection, full_name: str) -> str:
        slug = _point_slug(full_name) or "user"
        taken = set(
            conn.execute(
                select(_users.c.username).where(
                    (_users.c.username == slug) | _users.c.username.like(f"{slug}.%")
                )
            ).scalars()
        )
        if slug not in taken:
            return slug
        suffix = 2
        while f"{slug}.{suffix}" in taken:
            suffix += 1
        return f"{slug}.{suffix}"


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        first_name=row.first_name,
        last_name=row.last_name,
        date_of_birth=row.date_of_birth,
        hashed_password=row.hashed_password,
        role=row.role,
        confirmed=bool(row.confirmed),
        suspended=bool(row.suspended),
        version=row.version,
        picture=row.picture,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_link(row) -> OAuthProviderLink:
    return OAuthProviderLink(
        id=row.id,
        user_email=row.user_email,
        provider=row.provider,
        two_factor=bool(row.two_factor),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
