"""
auth/errors.py -- Error taxonomy for the sign-in flow.

Stores and the session codec raise these; route handlers translate every one
of them into a redirect to the login page. None of the messages are ever
rendered to the browser.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every sign-in failure."""


class StorageError(AuthError):
    """The database could not complete a lookup or insert."""


class DuplicateIdentity(StorageError):
    """An insert lost the race against a concurrent first login.

    Raised by UserStore.create_user() when the UNIQUE(google_id) constraint
    rejects the row. IdentityResolver handles it by re-reading the winner.
    """

    def __init__(self, external_id: str) -> None:
        super().__init__(f"user with external id {external_id!r} already exists")
        self.external_id = external_id


class ProviderAuthError(AuthError):
    """The OAuth exchange failed or the user denied consent.

    code is a short machine-readable reason, safe to log.
    """

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code


class SessionNotFound(AuthError):
    """A session cookie did not map to a live session (stale or forged)."""
