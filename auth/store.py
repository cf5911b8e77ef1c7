"""
auth/store.py -- SQLAlchemy Core persistence layer for users.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route, resolver and session code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Uniqueness:
  UNIQUE(google_id) is enforced in SQL. google_id is NOT NULL, so the SQLite
  NULL-distinctness caveat does not apply. A violation surfaces as
  DuplicateIdentity so the resolver can re-read the winning row; every other
  database failure surfaces as StorageError.

TLS:
  PostgreSQL URLs get sslmode=require (encrypted, certificate not checked)
  or sslmode=verify-full when DATABASE_SSL_VERIFY=true. SQLite ignores TLS.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import DuplicateIdentity, StorageError
from auth.models import Profile, User

logger = logging.getLogger("thalexa.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

# Existing deployments created this as unquoted Users, which PostgreSQL
# folds to users. A quoted "Users" here would be a different table.
users_table = Table(
    "users",
    metadata,
    Column("user_id", Integer, primary_key=True, autoincrement=True),
    Column("google_id", String(255), nullable=False, unique=True),
    Column("email", String(320)),
    Column("name", Text),
    Column("profile_picture_url", Text),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def build_engine(db_url: str, ssl_verify: bool = False) -> Engine:
    """Create an Engine with driver-specific connect arguments."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    elif db_url.startswith("postgresql"):
        connect_args["sslmode"] = "verify-full" if ssl_verify else "require"
    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures into StorageError, keeping the cause chained."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s: %s", operation, exc.__class__.__name__)
        raise StorageError(f"{operation} failed") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///./thalexa.db")
        user = store.create_user(Profile("g-123", "a@x.com", "Ana", ""))
        same = store.get_by_external_id("g-123")
        store.close()
    """

    def __init__(self, db_url: str, ssl_verify: bool = False) -> None:
        self.engine: Engine = build_engine(db_url, ssl_verify)
        with storage_errors("schema creation"):
            metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_external_id(self, external_id: str) -> User | None:
        """Look up a user by provider subject. Returns None if not found."""
        with storage_errors("user lookup"), self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.google_id == external_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with storage_errors("user lookup"), self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.user_id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def create_user(self, profile: Profile) -> User:
        """Insert a row for a first-time identity and return the stored User.

        Raises DuplicateIdentity when another request already inserted the
        same google_id, StorageError for any other database failure.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    users_table.insert().values(
                        google_id=profile.external_id,
                        email=profile.email,
                        name=profile.display_name,
                        profile_picture_url=profile.avatar_url,
                    )
                )
                conn.commit()
                user_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateIdentity(profile.external_id) from exc
        except SQLAlchemyError as exc:
            logger.error("Storage failure during user insert: %s", exc.__class__.__name__)
            raise StorageError("user insert failed") from exc
        return User(
            user_id=user_id,
            external_id=profile.external_id,
            email=profile.email,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
        )

    def count_users(self) -> int:
        with storage_errors("user count"), self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users_table)).scalar()
        return result or 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        external_id=row.google_id,
        email=row.email or "",
        display_name=row.name or "",
        avatar_url=row.profile_picture_url or "",
    )
