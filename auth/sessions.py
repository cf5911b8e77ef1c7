"""
auth/sessions.py -- Opaque session tokens and the stores that hold them.

The client only ever holds a random token. The server maps token -> user_id
and loads the User by primary key on every request, so nothing in the cookie
is trusted beyond its role as a lookup key.

Backends:
  InMemorySessionStore -- process-lifetime dict. Default. Sessions are lost
                          on restart and are not shared between workers.
  DatabaseSessionStore -- sessions table on the user database. Survives
                          restarts and works with several workers.

SessionCodec.resolve() fails closed: a storage failure is logged at WARNING
and the request continues as anonymous. An unknown token is logged at DEBUG
only, so the two cases are distinguishable in the operator log.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from sqlalchemy import Column, Float, Integer, MetaData, String, Table
from sqlalchemy.engine import Engine

from auth.errors import SessionNotFound, StorageError
from auth.models import User
from auth.store import UserStore, storage_errors

logger = logging.getLogger("thalexa.auth.sessions")

SESSION_COOKIE = "session_id"

Clock = Callable[[], float]


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class SessionStore(ABC):
    """Maps session tokens to user ids with a per-entry expiry."""

    @abstractmethod
    def put(self, token: str, user_id: int, ttl_seconds: int) -> None:
        """Store user_id under token for ttl_seconds."""

    @abstractmethod
    def get(self, token: str) -> int | None:
        """Return the user_id for token, or None if unknown or expired."""

    @abstractmethod
    def delete(self, token: str) -> None:
        """Remove token. Unknown tokens are ignored."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""

    def close(self) -> None:
        pass


class InMemorySessionStore(SessionStore):
    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}
        # Route handlers run in a threadpool; the lock keeps the
        # check-then-delete in get() consistent.
        self._lock = threading.Lock()

    def put(self, token: str, user_id: int, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[token] = (user_id, self._clock() + ttl_seconds)

    def get(self, token: str) -> int | None:
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            user_id, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[token]
                return None
            return user_id

    def delete(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [token for token, (_, expires_at) in self._entries.items() if now >= expires_at]
            for token in expired:
                del self._entries[token]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


_session_metadata = MetaData()

sessions_table = Table(
    "sessions",
    _session_metadata,
    Column("token", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("expires_at", Float, nullable=False),
)


class DatabaseSessionStore(SessionStore):
    """Session map persisted in the sessions table.

    Shares the UserStore engine; the engine's lifetime belongs to the
    UserStore, so close() here does nothing.
    """

    def __init__(self, engine: Engine, clock: Clock = time.time) -> None:
        self.engine = engine
        self._clock = clock
        with storage_errors("session schema creation"):
            _session_metadata.create_all(engine)

    def put(self, token: str, user_id: int, ttl_seconds: int) -> None:
        with storage_errors("session insert"), self.engine.connect() as conn:
            conn.execute(
                sessions_table.insert().values(token=token, user_id=user_id, expires_at=self._clock() + ttl_seconds)
            )
            conn.commit()

    def get(self, token: str) -> int | None:
        with storage_errors("session lookup"), self.engine.connect() as conn:
            row = conn.execute(sessions_table.select().where(sessions_table.c.token == token)).fetchone()
            if row is None:
                return None
            if self._clock() >= row.expires_at:
                conn.execute(sessions_table.delete().where(sessions_table.c.token == token))
                conn.commit()
                return None
        return row.user_id

    def delete(self, token: str) -> None:
        with storage_errors("session delete"), self.engine.connect() as conn:
            conn.execute(sessions_table.delete().where(sessions_table.c.token == token))
            conn.commit()

    def purge_expired(self) -> int:
        with storage_errors("session purge"), self.engine.connect() as conn:
            result = conn.execute(sessions_table.delete().where(sessions_table.c.expires_at <= self._clock()))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class SessionCodec:
    """Turns a User into a session token and a token back into a User.

    Usage:
        codec = SessionCodec(InMemorySessionStore(), user_store, ttl_seconds=3600)
        token = codec.issue(user)
        codec.resolve(token)   # -> User
        codec.destroy(token)
        codec.resolve(token)   # -> None
    """

    def __init__(self, store: SessionStore, user_store: UserStore, ttl_seconds: int) -> None:
        self.store = store
        self._users = user_store
        self.ttl_seconds = ttl_seconds

    def issue(self, user: User) -> str:
        """Create a session for user and return its token.

        Raises StorageError if the backend cannot record the session; the
        login must then be aborted.
        """
        token = secrets.token_urlsafe(32)
        self.store.put(token, user.user_id, self.ttl_seconds)
        logger.info("Session issued (user_id=%s)", user.user_id)
        return token

    def resolve(self, token: str | None) -> User | None:
        """Return the User bound to token, or None for anonymous requests."""
        if not token:
            return None
        try:
            user = self._load(token)
        except SessionNotFound:
            logger.debug("Session cookie did not match a live session")
            return None
        except StorageError:
            logger.warning("Session lookup failed on storage; treating request as anonymous")
            return None
        return user

    def _load(self, token: str) -> User:
        user_id = self.store.get(token)
        if user_id is None:
            raise SessionNotFound()
        user = self._users.get_by_id(user_id)
        if user is None:
            # Row is gone; drop the orphaned session so it stops resolving.
            logger.info("Session pointed at missing user_id=%s; discarding", user_id)
            self.store.delete(token)
            raise SessionNotFound()
        return user

    def destroy(self, token: str | None) -> None:
        """End the session for token. Never raises."""
        if not token:
            return
        try:
            self.store.delete(token)
        except StorageError:
            logger.warning("Session delete failed on storage; cookie will still be cleared")


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, max_age: int, secure: bool) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie.
    samesite="lax": sent on top-level navigations, which the provider's
        redirect back to the callback is, but not on cross-site POST.
    max_age: matches the server-side session TTL so both expire together.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE, httponly=True, samesite="lax")
