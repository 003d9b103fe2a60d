"""
web/routes.py -- Browser-facing routes: social login redirects and guarded pages.

These routes share app.state with the API routes (same account store, session
manager and OAuth coordinator) but answer with redirects instead of error
envelopes. Rendering is left to the frontend; page routes return JSON.

Route registration order: /login/oauth/{provider} must be registered before
GET /login so FastAPI never treats "oauth" as part of a /login sub-path.

Routes:
  GET       /login/oauth/{provider}     -- redirect to provider consent, state in client session
  GET|POST  /auth/callback/{provider}   -- provider callback (Apple uses form_post)
  GET       /login                      -- login page data: providers + whitelisted error
  GET       /dashboard                  -- guarded landing page (redirects to /login)
  POST      /logout                     -- invalidate session, clear cache, redirect /login

Security:
  [C2] Post-login redirect targets are relative paths only (safe_relative_path).
  [M3] ?error= on /login is mapped through a whitelist, never echoed.
  [M5] Cache-Control: no-store on every response that sets a session.
  CSRF on the OAuth round trip: random `state` (and OIDC `nonce`) stored in the
       signed client session, compared with hmac.compare_digest on callback
       and removed on first use.
"""

import hmac
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from auth.client_cache import ClientAuthCache
from auth.dependencies import client_cache_for, session_token
from auth.errors import AuthError
from auth.guard import AccessGuard
from auth.oauth import OAuthFlowCoordinator, get_enabled_providers
from auth.sessions import SessionManager, clear_session_cookie, set_session_cookie
from auth.store import AccountStore
from core.config import get_settings

logger = logging.getLogger("sponsorlink.web")

router = APIRouter()

_OAUTH_STATE_KEY = "oauth_state"
_OAUTH_NONCE_KEY = "oauth_nonce"
_OAUTH_PROVIDER_KEY = "oauth_provider"

# Whitelist mapping for ?error= query params on /login [M3].
_ERROR_MESSAGES: dict[str, str] = {
    "auth_failed": "Login could not be completed. Please try again.",
    "session_expired": "Your session has ended. Please log in again.",
}

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------


# Login page: anonymous viewing allowed, no redirect capture.
_ANONYMOUS_GUARD = AccessGuard(redirect_if_unauthenticated=False)


def _page_guard() -> AccessGuard:
    return AccessGuard(redirect_if_unauthenticated=True, login_path=get_settings().login_path)


def _require_auth(request: Request) -> Optional[RedirectResponse]:
    """Check if the current request is authenticated.

    Returns a RedirectResponse to the login page if not, None if OK. On
    success the validated AccountRef is left on request.state.account.
    Call at the top of protected route handlers:
        if redirect := _require_auth(request):
            return redirect
    """
    sessions: SessionManager = request.app.state.sessions
    decision = _page_guard().evaluate(
        sessions,
        session_token(request),
        request.url.path,
        client_cache_for(request),
    )
    if decision.admitted:
        request.state.account = decision.account
        return None

    resp = RedirectResponse(decision.redirect_url, status_code=302)
    if decision.failure:
        # Drop the rejected cookie so the next request is plainly anonymous.
        clear_session_cookie(resp)
    return resp


def _login_failed() -> RedirectResponse:
    resp = RedirectResponse(f"{get_settings().login_path}?error=auth_failed", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/login/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the OAuth provider's authorization page.

    Validates the provider name against the enabled providers before
    redirecting, so a spoofed name never reaches the OAuth client.
    """
    coordinator: OAuthFlowCoordinator = request.app.state.oauth
    try:
        client = coordinator.provider(provider)
    except AuthError as exc:
        logger.warning("OAuth redirect refused: %s", exc)
        return _login_failed()

    state = secrets.token_urlsafe(32)
    nonce = secrets.token_urlsafe(32)
    request.session[_OAUTH_STATE_KEY] = state
    request.session[_OAUTH_NONCE_KEY] = nonce
    request.session[_OAUTH_PROVIDER_KEY] = provider

    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return RedirectResponse(await client.authorization_url(redirect_uri, state=state, nonce=nonce), status_code=302)


@router.api_route("/auth/callback/{provider}", methods=["GET", "POST"], name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback, issue a session and redirect.

    Flow:
      1. Read code/state from the query (Google) or the form body (Apple form_post).
      2. Check state against the value stored by oauth_redirect (CSRF).
      3. Exchange the code and resolve the profile to one account.
      4. Issue the session, set the cookie, cache the identity.
      5. Redirect to the captured target, or the default landing path.

    Every failure ends at /login?error=auth_failed; the reason is logged.
    """
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})

    expected_state = request.session.pop(_OAUTH_STATE_KEY, None)
    nonce = request.session.pop(_OAUTH_NONCE_KEY, None)
    expected_provider = request.session.pop(_OAUTH_PROVIDER_KEY, None)
    received_state = params.get("state") or ""
    if (
        not expected_state
        or expected_provider != provider
        or not hmac.compare_digest(expected_state.encode(), received_state.encode())
    ):
        logger.warning("OAuth callback for %r rejected: state mismatch", provider)
        return _login_failed()

    if params.get("error"):
        logger.info("OAuth provider %r returned error=%r", provider, params["error"][:64])

    coordinator: OAuthFlowCoordinator = request.app.state.oauth
    sessions: SessionManager = request.app.state.sessions
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    try:
        attempt = coordinator.start(provider, redirect_uri)
        social_user = await coordinator.complete(attempt, params.get("code"), nonce=nonce)
        session = sessions.issue(social_user.account)
    except AuthError as exc:
        logger.info("OAuth callback for %r ended in %s", provider, exc.code)
        return _login_failed()

    cache = ClientAuthCache(request.session)
    cache.cache_identity(social_user.account)
    target = cache.consume_redirect_target(get_settings().default_redirect_path)  # [C2]

    resp = RedirectResponse(target, status_code=302)
    set_session_cookie(resp, session, secure=get_settings().secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


@router.get("/login")
def login_page(request: Request):
    """Return what the login page needs: enabled providers and an error message.

    Already-authenticated users go straight to the default landing path. The
    client cache is not touched here, so a captured redirect target survives
    until login completes.
    """
    decision = _ANONYMOUS_GUARD.evaluate(request.app.state.sessions, session_token(request), request.url.path)
    if decision.admitted:
        return RedirectResponse(get_settings().default_redirect_path, status_code=302)

    # Map ?error= query param through whitelist [M3]
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""))
    return JSONResponse(
        {
            "providers": get_enabled_providers(get_settings()),
            "error": error_msg,
        }
    )


@router.get("/dashboard")
def dashboard(request: Request):
    """Guarded landing page. Unauthenticated visitors are sent to /login?next=/dashboard."""
    if redirect := _require_auth(request):
        return redirect

    account_ref = request.state.account
    cache = ClientAuthCache(request.session)
    identity = cache.cached_identity()
    if identity is None or identity.id != account_ref.account_id:
        store: AccountStore = request.app.state.account_store
        identity = store.get_by_id(account_ref.account_id)
        if identity is None:
            return _login_failed()
        cache.cache_identity(identity)

    resp = JSONResponse({"account": identity.to_dict(), "session_role": account_ref.role})
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """End the session, clear the client cache and cookie, redirect to the login page."""
    sessions: SessionManager = request.app.state.sessions
    sessions.invalidate(session_token(request))
    ClientAuthCache(request.session).clear()

    resp = RedirectResponse(get_settings().login_path, status_code=302)
    clear_session_cookie(resp)
    return resp
