"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session token is read in priority order:
  1. "access_token" httpOnly cookie -- set by the login/register/OAuth flows.
  2. Authorization: Bearer <token> header -- API clients.

Everything converges on AccessGuard.evaluate(), so the API (401) and the web
pages (302 to login) apply the same session rules.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.
require_role() wraps get_current_account() and raises HTTP 403 on a role mismatch.
require_owner_or_role() admits the resource owner or one of the given roles (403 otherwise).

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.client_cache import ClientAuthCache
from auth.errors import SessionError
from auth.guard import AccessGuard, check_resource_authorization
from auth.models import AccountRef
from auth.sessions import SESSION_COOKIE, SessionManager

_API_GUARD = AccessGuard(redirect_if_unauthenticated=False)


def session_token(request: Request) -> str | None:
    """Return the raw session token from cookie or Bearer header, if any."""
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def client_cache_for(request: Request) -> ClientAuthCache | None:
    """ClientAuthCache over the signed-cookie session, when SessionMiddleware is installed."""
    if "session" not in request.scope:
        return None
    return ClientAuthCache(request.session)


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.sessions


def try_get_current_account(request: Request) -> AccountRef | None:
    """Validate the request's session. Returns the AccountRef, or None.

    Never raises for a bad token -- callers that need a hard 401 should use
    get_current_account(). On failure the client cache is cleared so a stale
    mirror is not served after the server-side session is gone.
    """
    decision = _API_GUARD.evaluate(
        get_session_manager(request),
        session_token(request),
        request.url.path,
        client_cache_for(request),
    )
    return decision.account if decision.admitted else None


def get_current_account(request: Request) -> AccountRef:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: AccountRef = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": SessionError.code, "message": SessionError.public_message},
        )
    return account


def require_role(*roles: str) -> Callable[[Request], AccountRef]:
    """Dependency factory: admit only sessions issued with one of `roles`.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(account: AccountRef = Depends(require_role("admin"))): ...
    """

    def dependency(request: Request) -> AccountRef:
        account = get_current_account(request)
        if account.role not in roles:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You do not have access to this resource."},
            )
        return account

    return dependency


def require_owner_or_role(owner_id_getter: Callable[[Request], str | None], *roles: str) -> Callable[[Request], AccountRef]:
    """Dependency factory: admit the resource owner, or a session with one of `roles`.

    owner_id_getter reads the owning account id from the request (usually a
    path parameter, or a lookup keyed on one).

    Use as a FastAPI dependency:
        @router.get("/accounts/{account_id}")
        async def route(account: AccountRef = Depends(
            require_owner_or_role(lambda r: r.path_params["account_id"], "admin"))): ...
    """

    def dependency(request: Request) -> AccountRef:
        account = get_current_account(request)
        access = check_resource_authorization(account, owner_id_getter(request))
        if not access.can_edit and account.role not in roles:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You do not have access to this resource."},
            )
        return account

    return dependency
