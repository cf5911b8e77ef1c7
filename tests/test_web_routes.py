"""
tests/test_web_routes.py -- Integration tests for the sign-in flow through the real ASGI stack.

Uses the web_client fixture (follow_redirects=False) so redirect Location
headers stay visible. The authlib registry on app.state is a MagicMock; each
test decides what the Google client returns.

Coverage:
  - Anonymous /dashboard -> 302 /, never the dashboard content
  - Callback success -> user row, session cookie, 302 /dashboard
  - Callback provider failure -> 302 /?error=oauth_failed, no session
  - Callback storage failure -> 302 /?error=login_failed, no session
  - Logout destroys the session server-side and clears the cookie
  - Login page error messages come from a whitelist only
  - Exceeding the login rate limit redirects to the login page with a message
"""

from __future__ import annotations

from unittest.mock import patch

from authlib.integrations.starlette_client import OAuthError
from authlib.jose.errors import InvalidClaimError
from fastapi.testclient import TestClient

from auth.errors import StorageError
from auth.sessions import SESSION_COOKIE
from core.config import get_settings

USERINFO = {
    "sub": "g-123",
    "email": "a@x.com",
    "email_verified": True,
    "name": "Ana",
    "picture": "http://img.example/a.png",
}


def _login(client: TestClient, make_google_client, userinfo: dict = USERINFO):
    client.app.state.oauth.create_client.return_value = make_google_client(userinfo=userinfo)
    return client.get("/auth/google/callback", params={"code": "abc", "state": "xyz"})


def _set_cookie_headers(resp) -> list[str]:
    return [v for k, v in resp.headers.multi_items() if k.lower() == "set-cookie"]


class TestRouteGate:
    def test_anonymous_dashboard_redirects_to_login(self, web_client: TestClient) -> None:
        resp = web_client.get("/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert "Welcome" not in resp.text

    def test_forged_cookie_redirects_to_login(self, web_client: TestClient) -> None:
        web_client.cookies.set(SESSION_COOKIE, "forged-token")
        resp = web_client.get("/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_storage_outage_during_gate_is_anonymous(self, web_client: TestClient, make_google_client) -> None:
        _login(web_client, make_google_client)
        codec = web_client.app.state.sessions
        with patch.object(codec.store, "get", side_effect=StorageError("down")):
            resp = web_client.get("/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_authenticated_dashboard_shows_display_name(self, web_client: TestClient, make_google_client) -> None:
        _login(web_client, make_google_client)
        resp = web_client.get("/dashboard")
        assert resp.status_code == 200
        assert "Welcome to your dashboard, Ana!" in resp.text
        assert resp.headers["cache-control"] == "no-store"

    def test_display_name_is_html_escaped(self, web_client: TestClient, make_google_client) -> None:
        _login(web_client, make_google_client, {**USERINFO, "name": "<script>x</script>"})
        resp = web_client.get("/dashboard")
        assert resp.status_code == 200
        assert "<script>x</script>" not in resp.text
        assert "&lt;script&gt;" in resp.text


class TestLoginPage:
    def test_login_page_renders(self, web_client: TestClient) -> None:
        resp = web_client.get("/")
        assert resp.status_code == 200
        assert 'href="/auth/google"' in resp.text

    def test_known_error_code_shows_message(self, web_client: TestClient) -> None:
        resp = web_client.get("/", params={"error": "oauth_failed"})
        assert "Google sign-in failed" in resp.text

    def test_unknown_error_code_is_not_reflected(self, web_client: TestClient) -> None:
        resp = web_client.get("/", params={"error": "<b>pwned</b>"})
        assert resp.status_code == 200
        assert "pwned" not in resp.text

    def test_signed_in_user_is_sent_to_dashboard(self, web_client: TestClient, make_google_client) -> None:
        _login(web_client, make_google_client)
        resp = web_client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"

    def test_auth_google_redirects_to_provider(self, web_client: TestClient, make_google_client) -> None:
        client = make_google_client(userinfo=USERINFO)
        web_client.app.state.oauth.create_client.return_value = client
        resp = web_client.get("/auth/google")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://accounts.google.com/")
        redirect_uri = client.authorize_redirect.await_args.args[1]
        assert redirect_uri.endswith("/auth/google/callback")


    def test_login_rate_limit_sends_browser_back_with_message(
        self, web_client: TestClient, make_google_client
    ) -> None:
        web_client.app.state.oauth.create_client.return_value = make_google_client(userinfo=USERINFO)
        limit = int(get_settings().login_rate_limit.split("/")[0])
        for _ in range(limit):
            resp = web_client.get("/auth/google")
            assert resp.headers["location"].startswith("https://accounts.google.com/")

        resp = web_client.get("/auth/google")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?error=rate_limited"
        assert "429" not in resp.text

        page = web_client.get(resp.headers["location"])
        assert page.status_code == 200
        assert "Too many sign-in attempts" in page.text


class TestCallback:
    def test_success_creates_user_and_session(self, web_client: TestClient, make_google_client) -> None:
        resp = _login(web_client, make_google_client)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"
        token = resp.cookies.get(SESSION_COOKIE)
        assert token

        user = web_client.app.state.sessions.resolve(token)
        assert user is not None
        assert user.external_id == "g-123"
        assert web_client.app.state.user_store.count_users() == 1

        cookie = next(h for h in _set_cookie_headers(resp) if h.startswith(f"{SESSION_COOKIE}="))
        assert "httponly" in cookie.lower()
        assert "samesite=lax" in cookie.lower()

    def test_second_login_reuses_row_without_refresh(self, web_client: TestClient, make_google_client) -> None:
        _login(web_client, make_google_client)
        resp = _login(web_client, make_google_client, {**USERINFO, "name": "Ana Maria"})
        user = web_client.app.state.sessions.resolve(resp.cookies.get(SESSION_COOKIE))
        assert user.display_name == "Ana"
        assert web_client.app.state.user_store.count_users() == 1

    def test_provider_error_redirects_without_session(self, web_client: TestClient, make_google_client) -> None:
        web_client.app.state.oauth.create_client.return_value = make_google_client(
            exchange_error=OAuthError(error="mismatching_state")
        )
        resp = web_client.get("/auth/google/callback", params={"code": "abc", "state": "forged"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?error=oauth_failed"
        assert SESSION_COOKIE not in resp.cookies
        assert web_client.app.state.user_store.count_users() == 0

    def test_rejected_id_token_redirects_without_session(self, web_client: TestClient, make_google_client) -> None:
        web_client.app.state.oauth.create_client.return_value = make_google_client(
            exchange_error=InvalidClaimError("iss")
        )
        resp = web_client.get("/auth/google/callback", params={"code": "abc", "state": "xyz"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?error=oauth_failed"
        assert SESSION_COOKIE not in resp.cookies
        assert web_client.app.state.user_store.count_users() == 0

    def test_user_denial_redirects_without_session(self, web_client: TestClient, make_google_client) -> None:
        web_client.app.state.oauth.create_client.return_value = make_google_client(userinfo=USERINFO)
        resp = web_client.get("/auth/google/callback", params={"error": "access_denied"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?error=oauth_failed"
        assert SESSION_COOKIE not in resp.cookies

    def test_storage_failure_aborts_login(self, web_client: TestClient, make_google_client) -> None:
        store = web_client.app.state.user_store
        with patch.object(store, "get_by_external_id", side_effect=StorageError("down")):
            resp = _login(web_client, make_google_client)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?error=login_failed"
        assert SESSION_COOKIE not in resp.cookies
        assert "down" not in resp.text


class TestLogout:
    def test_logout_destroys_session(self, web_client: TestClient, make_google_client) -> None:
        token = _login(web_client, make_google_client).cookies.get(SESSION_COOKIE)
        resp = web_client.get("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert web_client.app.state.sessions.resolve(token) is None
        assert any(h.startswith(f"{SESSION_COOKIE}=") for h in _set_cookie_headers(resp))

    def test_old_cookie_is_rejected_after_logout(self, web_client: TestClient, make_google_client) -> None:
        token = _login(web_client, make_google_client).cookies.get(SESSION_COOKIE)
        web_client.get("/logout")
        web_client.cookies.set(SESSION_COOKIE, token)
        resp = web_client.get("/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_logout_without_session_succeeds(self, web_client: TestClient) -> None:
        resp = web_client.get("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
