"""
api/routes/v1/auth.py -- Session introspection REST endpoint.

Routes:
  GET /api/v1/auth/me  -- current user info (requires auth)

Sign-in and sign-out are browser redirects and live in web/routes.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import UserResponse
from auth.dependencies import get_current_user
from auth.models import User

router = APIRouter()


@router.get("/auth/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)) -> UserResponse:
    """Return the user bound to the session cookie. 401 when anonymous."""
    return UserResponse.from_user(user)
