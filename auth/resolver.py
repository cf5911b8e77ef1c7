"""
auth/resolver.py -- Find-or-create a User from a provider profile.

The lookup and the insert are two separate statements with no lock between
them. Two first logins for the same identity can both miss the lookup; the
UNIQUE(google_id) constraint lets exactly one insert win and the loser gets
DuplicateIdentity, which is resolved here by re-reading the winner's row.

Existing rows are returned as stored. Profile changes on the provider side
(new email, new name, new avatar) are not copied back.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging

from auth.errors import DuplicateIdentity, StorageError
from auth.models import Profile, User
from auth.store import UserStore

logger = logging.getLogger("thalexa.auth.resolver")


class IdentityResolver:
    def __init__(self, user_store: UserStore) -> None:
        self._store = user_store

    def resolve(self, profile: Profile) -> User:
        """Return the User for profile.external_id, creating it on first login.

        Raises StorageError if the database cannot complete the lookup or the
        insert. The caller must abort the login on that error.
        """
        user = self._store.get_by_external_id(profile.external_id)
        if user is not None:
            logger.info("User already exists (user_id=%s)", user.user_id)
            return user

        try:
            user = self._store.create_user(profile)
        except DuplicateIdentity:
            logger.info("Concurrent first login for external id %r; re-reading row", profile.external_id)
            user = self._store.get_by_external_id(profile.external_id)
            if user is None:
                raise StorageError(
                    f"insert for {profile.external_id!r} reported a duplicate but no row was found"
                ) from None
            return user

        logger.info("New user created (user_id=%s)", user.user_id)
        return user
