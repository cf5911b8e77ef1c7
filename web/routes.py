"""
web/routes.py -- Jinja2 template routes for the Thalexa web UI.

Routes:
  GET /                       -- login page (redirects to /dashboard when signed in)
  GET /auth/google            -- OAuth redirect to Google
  GET /auth/google/callback   -- OAuth callback: resolve user, issue session
  GET /dashboard              -- protected page (auth required)
  GET /logout                 -- destroy session, redirect /

Every failure path ends in a redirect to / with a whitelisted ?error= code.
Diagnostic detail goes to the thalexa.web logger only.
"""

import logging
from pathlib import Path
from typing import Optional

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.dependencies import AuthState, get_auth_state, try_get_current_user
from auth.errors import StorageError
from auth.oauth import PROVIDER, exchange
from auth.resolver import IdentityResolver
from auth.sessions import SESSION_COOKIE, SessionCodec, clear_session_cookie, set_session_cookie
from core.config import get_settings
from core.limiter import limiter

logger = logging.getLogger("thalexa.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

LOGIN_PATH = "/"
DASHBOARD_PATH = "/dashboard"

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on the login page.
# The raw query param is NEVER passed to templates -- only the message from
# this dict is.
_ERROR_MESSAGES: dict[str, str] = {
    "oauth_failed": "Google sign-in failed. Please try again.",
    "login_failed": "We could not sign you in right now. Please try again shortly.",
    "rate_limited": "Too many sign-in attempts. Please wait a minute and try again.",
}


def _login_redirect(error: Optional[str] = None) -> RedirectResponse:
    url = f"{LOGIN_PATH}?error={error}" if error else LOGIN_PATH
    return RedirectResponse(url, status_code=302)


def _require_auth(request: Request) -> Optional[RedirectResponse]:
    """Check if the current request is authenticated.

    Returns a RedirectResponse to the login page if anonymous, None if OK.
    Call at the top of protected route handlers:
        if redirect := _require_auth(request):
            return redirect
    """
    if get_auth_state(request) is AuthState.ANONYMOUS:
        return _login_redirect()
    return None


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


# ---------------------------------------------------------------------------
# Login page
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def login_page(request: Request) -> HTMLResponse:
    """Render the login page with the Google sign-in button."""
    if try_get_current_user(request) is not None:
        return RedirectResponse(DASHBOARD_PATH, status_code=302)

    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""))
    return templates.TemplateResponse(request, "login.html", {"error_msg": error_msg})


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/google")
@limiter.limit(_login_rate_limit)
async def oauth_redirect(request: Request) -> RedirectResponse:
    """Redirect the browser to Google's consent page (scopes: profile, email)."""
    client = request.app.state.oauth.create_client(PROVIDER)
    redirect_uri = str(request.url_for("oauth_callback"))
    try:
        return await client.authorize_redirect(request, redirect_uri)
    except (OAuthError, httpx.HTTPError):
        logger.exception("Could not start OAuth redirect for %r", PROVIDER)
        return _login_redirect("oauth_failed")


@router.get("/auth/google/callback", name="oauth_callback")
async def oauth_callback(request: Request) -> RedirectResponse:
    """Handle the Google callback and issue a session cookie.

    Flow:
      1. Exchange the authorization code for a profile (authlib checks state).
      2. Find or create the User for the profile's subject.
      3. Issue a session, set the cookie, redirect to /dashboard.
    A failure at any step redirects to the login page without a session.
    """
    client = request.app.state.oauth.create_client(PROVIDER)

    # Step 1: provider exchange
    result = await exchange(client, request)
    if not result.ok:
        logger.warning("OAuth login rejected (%s): %s", result.error.code, result.error)
        return _login_redirect("oauth_failed")

    # Steps 2-3: provision and open the session
    resolver: IdentityResolver = request.app.state.resolver
    sessions: SessionCodec = request.app.state.sessions
    try:
        user = resolver.resolve(result.profile)
        token = sessions.issue(user)
    except StorageError:
        logger.exception("Login aborted: storage failure while provisioning %r", result.profile.external_id)
        return _login_redirect("login_failed")

    settings = get_settings()
    resp = RedirectResponse(DASHBOARD_PATH, status_code=302)
    set_session_cookie(resp, token, max_age=sessions.ttl_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Protected page
# ---------------------------------------------------------------------------


@router.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request) -> HTMLResponse:
    """Show the signed-in user's name. Anonymous requests go to the login page."""
    if redirect := _require_auth(request):
        return redirect
    resp = templates.TemplateResponse(request, "dashboard.html", {"user": request.state.user})
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


@router.get("/logout")
def logout(request: Request) -> RedirectResponse:
    """Destroy the server-side session, clear the cookie, redirect to /.

    Succeeds whether or not a session existed.
    """
    sessions: SessionCodec = request.app.state.sessions
    sessions.destroy(request.cookies.get(SESSION_COOKIE))
    resp = RedirectResponse(LOGIN_PATH, status_code=302)
    clear_session_cookie(resp)
    # authlib's state cookie is not needed once signed out.
    request.session.clear()
    return resp
