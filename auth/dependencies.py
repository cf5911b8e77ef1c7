"""
auth/dependencies.py -- Per-request authentication state and FastAPI Depends() helpers.

Every request is in exactly one of two states:
  AUTHENTICATED -- the session_id cookie resolves to a stored User.
  ANONYMOUS     -- no cookie, an unknown or expired token, a deleted user,
                   or session storage unavailable.

try_get_current_user() is the soft variant (returns None when anonymous).
get_current_user() wraps it and raises HTTP 401 for JSON routes. The web
routes redirect to the login page instead (see web/routes.py).

Layer rule: no imports from web/ or core/.
  auth/dependencies.py may import from fastapi because this module is part of
  the FastAPI dependency injection system.
"""

from __future__ import annotations

from enum import Enum

from fastapi import HTTPException, Request

from auth.models import User
from auth.sessions import SESSION_COOKIE, SessionCodec


class AuthState(str, Enum):
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


def get_auth_state(request: Request) -> AuthState:
    """Resolve the session cookie and attach the User to request.state.user.

    The result is memoized on request.state so a route and its template can
    both ask without a second store round-trip.
    """
    if hasattr(request.state, "auth_state"):
        return request.state.auth_state

    codec: SessionCodec = request.app.state.sessions
    user = codec.resolve(request.cookies.get(SESSION_COOKIE))
    state = AuthState.AUTHENTICATED if user is not None else AuthState.ANONYMOUS
    request.state.user = user
    request.state.auth_state = state
    return state


def try_get_current_user(request: Request) -> User | None:
    """Return the authenticated User, or None. Never raises."""
    get_auth_state(request)
    return request.state.user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is anonymous.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
