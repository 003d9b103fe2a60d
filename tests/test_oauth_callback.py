"""
tests/test_oauth_callback.py -- Integration tests for the browser login flow.

These tests exercise the OAuth round trip and the guarded landing page
end-to-end through the real ASGI stack using the web_client fixture
(follow_redirects=False). We assert on redirect Location headers directly --
following the redirect would hide them. Providers are FakeProvider instances,
so no network is involved.

Coverage:
  - /login/oauth/{provider} -> 302 to consent URL carrying a random state
  - callback success -> session cookie, cached identity, redirect to target
  - callback with bad state, missing code, provider failure -> /login?error=auth_failed
  - Apple-style form_post callback
  - /dashboard guard: 302 /login?next=/dashboard, stale cookie dropped
  - POST /logout clears everything and redirects to /login
  - /login never echoes an arbitrary ?error= value [M3]
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from auth.errors import ProviderExchangeFailed
from auth.sessions import SESSION_COOKIE
from core.config import get_settings


def _start(client: TestClient, provider: str = "google") -> str:
    """Begin the OAuth flow and return the state the provider would echo back."""
    resp = client.get(f"/login/oauth/{provider}")
    assert resp.status_code == 302
    query = parse_qs(urlparse(resp.headers["location"]).query)
    return query["state"][0]


def _deleted_cookies(resp) -> list[str]:
    return [
        v
        for k, v in resp.headers.multi_items()
        if k.lower() == "set-cookie" and ("max-age=0" in v.lower() or "expires=" in v.lower())
    ]


class TestOAuthRedirect:
    def test_redirects_to_provider_with_state(self, web_client) -> None:
        client, _, _ = web_client
        resp = client.get("/login/oauth/google")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.netloc == "google.example"
        query = parse_qs(location.query)
        assert len(query["state"][0]) >= 32
        assert query["redirect_uri"][0].endswith("/auth/callback/google")

    def test_each_attempt_gets_a_fresh_state(self, web_client) -> None:
        client, _, _ = web_client
        assert _start(client) != _start(client)

    def test_unknown_provider_goes_back_to_login(self, web_client) -> None:
        client, _, _ = web_client
        resp = client.get("/login/oauth/github")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=auth_failed"


class TestOAuthCallback:
    def test_success_issues_session_and_redirects_to_default(self, web_client) -> None:
        client, store, providers = web_client
        state = _start(client)

        resp = client.get(f"/auth/callback/google?code=auth-code&state={state}")

        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"
        assert resp.headers["cache-control"] == "no-store"
        assert SESSION_COOKIE in resp.cookies
        assert providers["google"].exchanged_codes == ["auth-code"]
        assert providers["google"].last_nonce
        account = store.get_by_social("google", "g-123")
        assert account is not None and account.role == "sponsor"

    def test_landing_page_shows_cached_identity(self, web_client) -> None:
        client, _, _ = web_client
        state = _start(client)
        client.get(f"/auth/callback/google?code=auth-code&state={state}")

        resp = client.get("/dashboard")
        assert resp.status_code == 200
        body = resp.json()
        assert body["account"]["email"] == "ann@example.com"
        assert body["session_role"] == "sponsor"

    def test_repeat_login_resolves_to_same_account(self, web_client) -> None:
        client, store, _ = web_client
        client.get(f"/auth/callback/google?code=c1&state={_start(client)}")
        first = client.get("/dashboard").json()["account"]["id"]
        client.post("/logout")
        client.get(f"/auth/callback/google?code=c2&state={_start(client)}")
        second = client.get("/dashboard").json()["account"]["id"]
        assert first == second

    def test_redirects_to_captured_target(self, web_client, monkeypatch) -> None:
        client, _, _ = web_client
        monkeypatch.setattr(get_settings(), "default_redirect_path", "/home")

        denied = client.get("/dashboard")
        assert denied.status_code == 302

        resp = client.get(f"/auth/callback/google?code=auth-code&state={_start(client)}")
        assert resp.headers["location"] == "/dashboard"

        # The marker is one-shot: the next login lands on the default path.
        client.post("/logout")
        resp = client.get(f"/auth/callback/google?code=auth-code&state={_start(client)}")
        assert resp.headers["location"] == "/home"

    def test_state_mismatch_is_rejected(self, web_client) -> None:
        client, store, providers = web_client
        _start(client)
        resp = client.get("/auth/callback/google?code=auth-code&state=forged")
        assert resp.headers["location"] == "/login?error=auth_failed"
        assert providers["google"].exchanged_codes == []
        assert store.has_accounts() is False

    def test_callback_without_prior_redirect_is_rejected(self, web_client) -> None:
        client, _, _ = web_client
        resp = client.get("/auth/callback/google?code=auth-code&state=anything")
        assert resp.headers["location"] == "/login?error=auth_failed"

    def test_state_is_single_use(self, web_client) -> None:
        client, _, _ = web_client
        state = _start(client)
        client.get(f"/auth/callback/google?code=auth-code&state={state}")
        replay = client.get(f"/auth/callback/google?code=auth-code&state={state}")
        assert replay.headers["location"] == "/login?error=auth_failed"

    def test_missing_code_fails(self, web_client) -> None:
        client, _, _ = web_client
        state = _start(client)
        resp = client.get(f"/auth/callback/google?error=access_denied&state={state}")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=auth_failed"
        assert SESSION_COOKIE not in resp.cookies

    def test_provider_failure_fails(self, web_client) -> None:
        client, store, providers = web_client
        providers["google"].error = ProviderExchangeFailed("token endpoint returned 500")
        state = _start(client)
        resp = client.get(f"/auth/callback/google?code=auth-code&state={state}")
        assert resp.headers["location"] == "/login?error=auth_failed"
        assert store.has_accounts() is False

    def test_apple_form_post_callback(self, web_client) -> None:
        client, store, _ = web_client
        state = _start(client, "apple")
        resp = client.post("/auth/callback/apple", data={"code": "apple-code", "state": state})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"
        assert store.get_by_social("apple", "a-999").email == "bob@example.com"


class TestDashboardGuard:
    def test_unauthenticated_redirects_to_login_with_next(self, web_client) -> None:
        client, _, _ = web_client
        resp = client.get("/dashboard")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.path == "/login"
        assert parse_qs(location.query)["next"] == ["/dashboard"]

    def test_rejected_cookie_is_deleted(self, web_client) -> None:
        client, _, _ = web_client
        resp = client.get("/dashboard", cookies={SESSION_COOKIE: "garbage"})
        assert resp.status_code == 302
        assert any(SESSION_COOKIE in h for h in _deleted_cookies(resp))

    def test_superseded_session_is_sent_to_login(self, web_client) -> None:
        client, _, _ = web_client
        client.get(f"/auth/callback/google?code=c1&state={_start(client)}")
        old_token = client.cookies.get(SESSION_COOKIE)
        client.get(f"/auth/callback/google?code=c2&state={_start(client)}")

        client.cookies.clear()
        resp = client.get("/dashboard", headers={"Authorization": f"Bearer {old_token}"})
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/login?next=")


class TestLogoutAndLoginPage:
    def test_logout_clears_session(self, web_client) -> None:
        client, _, _ = web_client
        client.get(f"/auth/callback/google?code=auth-code&state={_start(client)}")
        assert client.get("/dashboard").status_code == 200

        resp = client.post("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
        assert any(SESSION_COOKIE in h for h in _deleted_cookies(resp))

        assert client.get("/dashboard").status_code == 302

    def test_login_page_maps_known_errors(self, web_client) -> None:
        client, _, _ = web_client
        body = client.get("/login?error=auth_failed").json()
        assert body["error"] == "Login could not be completed. Please try again."
        assert isinstance(body["providers"], list)

    def test_login_page_never_echoes_unknown_errors(self, web_client) -> None:
        client, _, _ = web_client
        body = client.get("/login?error=<script>alert(1)</script>").json()
        assert body["error"] is None

    def test_authenticated_user_skips_login_page(self, web_client) -> None:
        client, _, _ = web_client
        client.get(f"/auth/callback/google?code=auth-code&state={_start(client)}")
        resp = client.get("/login")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"
