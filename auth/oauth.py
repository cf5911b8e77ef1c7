"""
auth/oauth.py -- Authlib Google OIDC client and the code exchange.

create_oauth() builds the registry from Settings; the app lifespan stores it
on app.state.oauth so tests can swap in a mock.

exchange() completes the authorization-code flow and returns an
ExchangeResult instead of raising. The callback route branches on
result.ok, so every provider-side failure (user denied consent, bad state,
network error, unusable userinfo) takes the same explicit path back to the
login page.

OAuth state parameter (CSRF protection) is handled by authlib via Starlette
SessionMiddleware: the state is stored in the signed session cookie between
the authorization redirect and the callback.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.starlette_client import OAuth

from auth.errors import ProviderAuthError
from auth.models import Profile
from core.config import Settings

logger = logging.getLogger("thalexa.auth.oauth")

PROVIDER = "google"
GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
# openid is needed for the id_token; profile and email are the scopes the
# login actually uses.
GOOGLE_SCOPES = "openid email profile"


def create_oauth(settings: Settings) -> OAuth:
    """Return an OAuth registry with the Google client registered."""
    oauth = OAuth()
    oauth.register(
        name=PROVIDER,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        server_metadata_url=GOOGLE_DISCOVERY_URL,
        client_kwargs={"scope": GOOGLE_SCOPES},
    )
    logger.info("Google OAuth provider registered")
    return oauth


@dataclass(frozen=True)
class ExchangeResult:
    """Outcome of the callback exchange: exactly one of profile / error is set."""

    profile: Profile | None = None
    error: ProviderAuthError | None = None

    @property
    def ok(self) -> bool:
        return self.profile is not None


async def exchange(client, request) -> ExchangeResult:
    """Exchange the callback's authorization code for a Profile.

    Args:
        client:  The authlib client for the provider.
        request: The Starlette request hitting the callback route.

    Returns:
        ExchangeResult with profile on success, error otherwise. Never raises
        for provider-side failures.
    """
    denied = request.query_params.get("error")
    if denied:
        return ExchangeResult(error=ProviderAuthError("provider_denied", f"provider returned error={denied}"))

    try:
        token = await client.authorize_access_token(request)
        userinfo = token.get("userinfo")
        if not userinfo:
            userinfo = await client.userinfo(token=token)
    except AuthlibBaseError as exc:
        # OAuthError (bad state, token endpoint refusal) and JoseError
        # (id_token failed validation) share this base.
        return ExchangeResult(error=ProviderAuthError("exchange_failed", str(exc)))
    except httpx.HTTPError as exc:
        return ExchangeResult(error=ProviderAuthError("provider_unreachable", str(exc)))

    try:
        profile = profile_from_userinfo(userinfo)
    except ProviderAuthError as exc:
        return ExchangeResult(error=exc)
    return ExchangeResult(profile=profile)


def profile_from_userinfo(userinfo) -> Profile:
    """Map OIDC userinfo claims onto a Profile.

    sub and email are required. name falls back to the email address and
    picture to an empty string.

    Raises:
        ProviderAuthError: If sub or email is missing.
    """
    subject = userinfo.get("sub") if userinfo else None
    email = userinfo.get("email") if userinfo else None
    if not subject or not email:
        raise ProviderAuthError("incomplete_profile", "missing sub or email claim in userinfo")
    return Profile(
        external_id=str(subject),
        email=str(email),
        display_name=str(userinfo.get("name") or email),
        avatar_url=str(userinfo.get("picture") or ""),
    )
