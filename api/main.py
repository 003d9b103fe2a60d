"""
api/main.py -- FastAPI application entry point for SponsorLink identity.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed-cookie client storage behind ClientAuthCache
                              and the OAuth state/nonce
  5. migrate_client_cache  -- copies the legacy cached-user key forward

Request logging (@app.middleware) wraps all of the above.

Lifespan builds the account store, session manager and OAuth coordinator at
startup and disposes of the store at shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.client_cache import ClientAuthCache
from auth.errors import AuthError, ProviderExchangeFailed, SessionError, StorageUnavailable
from auth.oauth import OAuthFlowCoordinator, build_providers
from auth.sessions import SessionManager
from auth.store import AccountStore
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sponsorlink.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build shared resources on startup; release them on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The account store is the only shared mutable resource.
    """
    logger.info("SponsorLink identity API starting up")
    store = AccountStore(_settings.database_url)
    app.state.account_store = store
    app.state.sessions = SessionManager(store, _settings.secret_key, _settings.session_ttl_seconds)
    providers = build_providers(_settings)
    app.state.oauth = OAuthFlowCoordinator(store, providers, timeout_seconds=_settings.oauth_timeout_seconds)
    logger.info("Auth initialized (oauth_providers=%s)", sorted(providers) or "none")

    yield

    store.close()
    logger.info("SponsorLink identity API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SponsorLink Identity API",
    description="Account, session and social-login core for the SponsorLink marketplace.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() (and @app.middleware, which calls it) wraps the existing
# stack, so the LAST registration ends up outermost. Registered
# innermost-first: cache migration -> Session -> SlowAPI -> CORS ->
# TrustedHost -> request logging.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def migrate_client_cache(request: Request, call_next):
    """One-way legacy-key migration of the client cache, on every request.

    A no-op once the current key exists. Must stay inside SessionMiddleware
    so request.session is populated.
    """
    if "session" in request.scope:
        ClientAuthCache(request.session).migrate_legacy_format()
    return await call_next(request)


app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="sponsorlink_client",
    same_site=_settings.client_session_same_site,
    https_only=_settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
# Web router (OAuth redirects, guarded landing page) is mounted by asgi.py.


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves the API as {"error": {"code", "message"[, "detail"]}}.
# Only validation and rate-limit errors carry a detail; nothing internal does.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render identity-core failures.

    The body only ever contains exc.code and exc.user_message(); the internal
    reason (str(exc)) goes to the log. Operational kinds are logged at ERROR so
    operators can tell a provider or database outage from bad input.
    """
    if isinstance(exc, (StorageUnavailable, ProviderExchangeFailed)):
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    elif isinstance(exc, SessionError):
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    else:
        logger.info("%s on %s %s", exc.code, request.method, request.url.path)
    return _error_response(exc.status_code, exc.code, exc.user_message(), headers={"Cache-Control": "no-store"})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 for login/register floods [H2]."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    return _error_response(
        429,
        "rate_limited",
        "Too many attempts. Please wait and try again.",
        detail=str(exc.detail),
        headers={"Retry-After": "60"},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 for malformed bodies. Field names and reasons only, never the input."""
    reasons = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
    return _error_response(422, "validation_error", "Request validation failed.", detail=reasons)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Pass route-raised {"code", "message"} details through unchanged.

    Plain string details (404 from the router, 405, ...) are wrapped as http_<status>.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. The traceback goes to the log, never to the response."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No rate limit --
# load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and database reachability."""
    db_ok = request.app.state.account_store.ping()
    return HealthResponse(
        status="healthy",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
