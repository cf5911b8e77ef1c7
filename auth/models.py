"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store, resolver and routes do the work.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class User:
    """One persisted identity, created on first Google login.

    Fields are written once at creation and never refreshed, so email,
    display_name and avatar_url may be stale relative to the provider.

    Column mapping (see auth/store.py): external_id -> google_id,
    display_name -> name, avatar_url -> profile_picture_url.
    """

    user_id: int
    external_id: str  # provider's stable subject ("sub")
    email: str
    display_name: str
    avatar_url: str


@dataclass(frozen=True)
class Profile:
    """Identity data returned by the provider exchange."""

    external_id: str
    email: str
    display_name: str
    avatar_url: str = ""
