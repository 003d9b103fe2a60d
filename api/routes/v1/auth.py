"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST  /api/v1/auth/login                        -- password login; sets session cookie
  POST  /api/v1/auth/register                     -- self-registration; sets session cookie
  POST  /api/v1/auth/logout                       -- invalidates session, clears cookie + client cache
  GET   /api/v1/auth/me                           -- current account (requires auth)
  GET   /api/v1/auth/providers                    -- enabled OAuth providers (public)
  GET   /api/v1/auth/accounts/{id}                -- one account (owner or admin)
  PATCH /api/v1/auth/accounts/{id}/role           -- change an account's role (admin only)

Security:
  [H2] POST /login and /register are rate-limited per IP.
  [C1] verify_credentials() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a session.
  Failures are raised as AuthError and rendered by the handler in api/main.py,
  so the 401 body is identical for unknown email and wrong password.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    OAuthProviderInfo,
    RegisterRequest,
    RoleUpdate,
    SessionInfoResponse,
    SessionStartResponse,
)
from auth.credentials import register_account, verify_credentials
from auth.dependencies import (
    client_cache_for,
    get_current_account,
    require_owner_or_role,
    require_role,
    session_token,
)
from auth.models import AccountIdentity, AccountRef
from auth.oauth import get_enabled_providers
from auth.sessions import SessionManager, clear_session_cookie, set_session_cookie
from auth.store import AccountStore
from core.config import get_settings

# Auth policy:
# - POST  /auth/login:                  public -- login endpoint must be unauthenticated
# - POST  /auth/register:               public
# - POST  /auth/logout:                 public -- ending an unknown session is a no-op
# - GET   /auth/providers:              public -- login page renders OAuth buttons from it
# - GET   /auth/me:                     requires auth (get_current_account)
# - GET   /auth/accounts/{id}:          requires owner or admin (require_owner_or_role)
# - PATCH /auth/accounts/{id}/role:     requires admin (require_role("admin"))
router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _register_limit() -> str:
    return get_settings().register_rate_limit


def _path_account_id(request: Request) -> str | None:
    return request.path_params.get("account_id")


def _start_session(request: Request, account: AccountIdentity, status_code: int, include_token: bool) -> JSONResponse:
    """Issue a session for `account`, mirror it into the client cache, set the cookie."""
    sessions: SessionManager = request.app.state.sessions
    session = sessions.issue(account)

    settings = get_settings()
    redirect_to = settings.default_redirect_path
    cache = client_cache_for(request)
    if cache is not None:
        cache.cache_identity(account)
        # One-shot: the guard's marker must not outlive this login.
        redirect_to = cache.consume_redirect_target(redirect_to)

    if include_token:
        body = LoginResponse(
            **account.to_dict(),
            redirect_to=redirect_to,
            access_token=session.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=session.expires_at - session.issued_at,
        )
    else:
        body = SessionStartResponse(**account.to_dict(), redirect_to=redirect_to)

    resp = JSONResponse(status_code=status_code, content=body.model_dump())
    set_session_cookie(resp, session, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Any failure raises InvalidCredentials -> 401 invalid_credentials.
    """
    store: AccountStore = request.app.state.account_store
    account = verify_credentials(store, body.email, body.password)
    return _start_session(request, account, 200, include_token=True)


@limiter.limit(_register_limit)  # [H2]
@router.post("/auth/register", response_model=SessionStartResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a sponsor account and log it in.

    400 invalid_email / weak_credential, 409 email_already_used.
    """
    store: AccountStore = request.app.state.account_store
    account = register_account(
        store,
        body.email,
        body.password,
        name=body.name,
        preferred_language=body.preferred_language,
        min_length=get_settings().min_password_length,
    )
    return _start_session(request, account, 201, include_token=False)


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request) -> JSONResponse:
    """End the session server-side, delete the cookie, clear the client cache."""
    sessions: SessionManager = request.app.state.sessions
    sessions.invalidate(session_token(request))

    cache = client_cache_for(request)
    if cache is not None:
        cache.clear()

    resp = JSONResponse(content=LogoutResponse(success=True).model_dump())
    clear_session_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty list if none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(get_settings())]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=SessionInfoResponse)
def me(request: Request, current: AccountRef = Depends(get_current_account)) -> SessionInfoResponse:
    """Return the current account and the role its session was issued with.

    session_role can lag account.role after a role change until the next login.
    """
    store: AccountStore = request.app.state.account_store
    account = store.get_by_id(current.account_id)
    if account is None:
        # Deleted between validation and this read.
        raise HTTPException(
            status_code=401,
            detail={"code": "session_invalid", "message": "Please log in again."},
        )
    return SessionInfoResponse(
        account=AccountResponse.from_identity(account),
        session_role=current.role,
        expires_at=current.expires_at,
    )


@router.get("/auth/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    request: Request,
    account_id: str,
    current: AccountRef = Depends(require_owner_or_role(_path_account_id, "admin")),
) -> AccountResponse:
    """Return one account. The owner and admins only."""
    store: AccountStore = request.app.state.account_store
    account = store.get_by_id(account_id)
    if account is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Account not found."},
        )
    return AccountResponse.from_identity(account)


@router.patch("/auth/accounts/{account_id}/role", response_model=AccountResponse)
def update_role(
    request: Request,
    account_id: str,
    body: RoleUpdate,
    current: AccountRef = Depends(require_role("admin")),
) -> AccountResponse:
    """Change an account's role. Admin only.

    Live sessions keep their issued role; the new role applies from the
    account's next login.
    """
    store: AccountStore = request.app.state.account_store
    if not store.update_account(account_id, role=body.role):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Account not found."},
        )
    updated = store.get_by_id(account_id)
    return AccountResponse.from_identity(updated)
