"""
auth/oauth.py -- Social login: provider adapters and the login-attempt state machine.

Two halves:

  AuthlibProvider -- wraps one authlib Starlette OAuth client and reduces the
       provider to two calls: authorization_url() and exchange(code). Which
       providers exist is decided by configuration (client id AND secret set),
       the same way get_enabled_providers() reports them to the login page.

  OAuthFlowCoordinator -- drives one login attempt through

         STARTED -> CODE_RECEIVED -> PROFILE_EXCHANGED -> IDENTITY_RESOLVED -> COMPLETED
                 any non-terminal state -> FAILED

       and maps the provider profile onto exactly one internal account.

Identity resolution order:
  1. (provider, provider_id) -- immutable at the provider, always wins.
  2. email                    -- link a new SocialIdentity to the existing
                                 (e.g. password) account. Intentional: the
                                 same person may arrive by either path.
  3. neither                  -- provision account + SocialIdentity in one
                                 transaction, role DEFAULT_ROLE.

  Steps 2 and 3 trust the email, so a profile the provider does not mark
  email_verified fails the exchange before resolution runs.

  A concurrent first login for the same user can lose the race on a UNIQUE
  constraint; the lookup is then re-run once and the winner's record used.

Failures are never retried here: a provider error or timeout fails the
attempt with ProviderExchangeFailed and the caller restarts the flow.

CSRF: the web layer generates `state` (and an OIDC `nonce`), stores them in
the client session before redirecting, and compares on callback.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError
from authlib.jose.errors import JoseError
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AuthError,
    MissingAuthorizationCode,
    ProviderExchangeFailed,
    UnsupportedProvider,
)
from auth.models import DEFAULT_ROLE, SocialIdentity, SocialProfile, SocialUser

if TYPE_CHECKING:
    from auth.models import AccountIdentity
    from auth.store import AccountStore
    from core.config import Settings

logger = logging.getLogger("sponsorlink.auth.oauth")

_PROVIDER_LABELS: dict[str, str] = {"google": "Google", "apple": "Apple"}
_PROFILE_KEYS = ("picture", "locale", "given_name", "family_name", "is_private_email")


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every provider with both client id and secret set."""
    providers: list[dict] = []
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": _PROVIDER_LABELS["google"]})
    if settings.apple_client_id and settings.apple_client_secret:
        providers.append({"name": "apple", "label": _PROVIDER_LABELS["apple"]})
    return providers


def build_oauth_registry(settings: Settings) -> OAuth:
    """Register an authlib client for every enabled provider.

    timeout goes straight to the underlying httpx client, so a hung token or
    userinfo endpoint turns into httpx.TimeoutException in exchange().
    """
    oauth = OAuth()
    timeout = settings.oauth_timeout_seconds

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile", "timeout": timeout},
        )
        logger.info("Google OAuth provider registered")

    if settings.apple_client_id and settings.apple_client_secret:
        oauth.register(
            name="apple",
            client_id=settings.apple_client_id,
            client_secret=settings.apple_client_secret,
            server_metadata_url="https://appleid.apple.com/.well-known/openid-configuration",
            # Apple only returns email/name scopes to a form_post callback.
            authorize_params={"response_mode": "form_post"},
            client_kwargs={"scope": "openid email name", "timeout": timeout},
        )
        logger.info("Apple OAuth provider registered")

    return oauth


def build_providers(settings: Settings) -> dict[str, AuthlibProvider]:
    registry = build_oauth_registry(settings)
    return {p["name"]: AuthlibProvider(p["name"], registry.create_client(p["name"])) for p in get_enabled_providers(settings)}


# ---------------------------------------------------------------------------
# Provider adapter
# ---------------------------------------------------------------------------


class OAuthProvider(Protocol):
    name: str

    async def authorization_url(self, redirect_uri: str, state: str, nonce: str) -> str: ...

    async def exchange(self, code: str, redirect_uri: str, nonce: str | None = None) -> SocialProfile: ...


class AuthlibProvider:
    """One configured provider, reduced to consent URL + code exchange."""

    def __init__(self, name: str, client) -> None:
        self.name = name
        self._client = client

    async def authorization_url(self, redirect_uri: str, state: str, nonce: str) -> str:
        rv = await self._client.create_authorization_url(redirect_uri, state=state, nonce=nonce)
        return rv["url"]

    async def exchange(self, code: str, redirect_uri: str, nonce: str | None = None) -> SocialProfile:
        """Trade an authorization code for a normalized SocialProfile.

        Google: access token -> OIDC userinfo endpoint.
        Apple:  no userinfo endpoint; claims come from the signed id_token.

        Raises ProviderExchangeFailed on any provider, network or token error.
        """
        try:
            token = await self._client.fetch_access_token(redirect_uri=redirect_uri, code=code)
            if self.name == "google":
                claims = await self._client.userinfo(token=token)
            else:
                claims = await self._client.parse_id_token(token, nonce=nonce)
        except (OAuthError, JoseError, httpx.HTTPError, KeyError, ValueError) as exc:
            raise ProviderExchangeFailed(f"{self.name} code exchange failed: {exc!r}") from exc
        return _profile_from_claims(self.name, dict(claims or {}))


def _claim_is_true(value) -> bool:
    """Apple sends boolean claims as the strings "true" / "false"."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _profile_from_claims(provider: str, claims: dict) -> SocialProfile:
    """Normalize provider claims into a SocialProfile.

    [H1] The email is only trusted when email_verified is true. A missing
    claim counts as unverified: an unconfirmed address must never be linked
    to an existing account that happens to own it.
    """
    subject = claims.get("sub")
    email = claims.get("email")
    if not subject or not email:
        raise ProviderExchangeFailed(f"{provider} profile is missing sub or email")
    if not _claim_is_true(claims.get("email_verified")):
        raise ProviderExchangeFailed(f"{provider} email is not verified by the provider")
    name = claims.get("name") or " ".join(
        part for part in (claims.get("given_name"), claims.get("family_name")) if part
    )
    return SocialProfile(
        provider_id=str(subject),
        email=email,
        name=name or None,
        profile_data={k: claims[k] for k in _PROFILE_KEYS if k in claims},
        email_verified=True,
    )


# ---------------------------------------------------------------------------
# Login attempt state machine
# ---------------------------------------------------------------------------


class OAuthState(str, Enum):
    STARTED = "started"
    CODE_RECEIVED = "code_received"
    PROFILE_EXCHANGED = "profile_exchanged"
    IDENTITY_RESOLVED = "identity_resolved"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[OAuthState, set[OAuthState]] = {
    OAuthState.STARTED: {OAuthState.CODE_RECEIVED, OAuthState.FAILED},
    OAuthState.CODE_RECEIVED: {OAuthState.PROFILE_EXCHANGED, OAuthState.FAILED},
    OAuthState.PROFILE_EXCHANGED: {OAuthState.IDENTITY_RESOLVED, OAuthState.FAILED},
    OAuthState.IDENTITY_RESOLVED: {OAuthState.COMPLETED, OAuthState.FAILED},
}


@dataclass
class OAuthLoginAttempt:
    provider: str
    redirect_uri: str
    state: OAuthState = OAuthState.STARTED
    profile: SocialProfile | None = None
    result: SocialUser | None = None
    error: AuthError | None = field(default=None, repr=False)

    @property
    def finished(self) -> bool:
        return self.state in (OAuthState.COMPLETED, OAuthState.FAILED)

    def advance(self, new_state: OAuthState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal OAuth transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def fail(self, error: AuthError) -> None:
        self.advance(OAuthState.FAILED)
        self.error = error


class OAuthFlowCoordinator:
    """Exchange a provider code for a profile and resolve it to one account.

    Session issue and client-cache writes are the caller's job.

    Usage:
        attempt = coordinator.start("google", redirect_uri)
        social_user = await coordinator.complete(attempt, code)
    """

    def __init__(
        self,
        store: AccountStore,
        providers: Mapping[str, OAuthProvider],
        timeout_seconds: float = 10.0,
    ) -> None:
        self._store = store
        self._providers = providers
        self._timeout = timeout_seconds

    def provider(self, name: str) -> OAuthProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise UnsupportedProvider(f"provider {name!r} is not enabled") from None

    def start(self, provider: str, redirect_uri: str) -> OAuthLoginAttempt:
        self.provider(provider)
        return OAuthLoginAttempt(provider=provider, redirect_uri=redirect_uri)

    async def complete(self, attempt: OAuthLoginAttempt, code: str | None, nonce: str | None = None) -> SocialUser:
        """Run the attempt from STARTED to COMPLETED, or to FAILED and re-raise."""
        try:
            if not code:
                raise MissingAuthorizationCode()
            attempt.advance(OAuthState.CODE_RECEIVED)

            attempt.profile = await self._exchange(attempt, code, nonce)
            attempt.advance(OAuthState.PROFILE_EXCHANGED)

            social_user = self.resolve_identity(attempt.provider, attempt.profile)
            attempt.advance(OAuthState.IDENTITY_RESOLVED)

            attempt.result = social_user
            attempt.advance(OAuthState.COMPLETED)
        except AuthError as exc:
            attempt.fail(exc)
            logger.warning("OAuth login via %s failed: %s (%s)", attempt.provider, exc.code, exc)
            raise
        return social_user

    async def _exchange(self, attempt: OAuthLoginAttempt, code: str, nonce: str | None) -> SocialProfile:
        provider = self.provider(attempt.provider)
        try:
            profile = await asyncio.wait_for(
                provider.exchange(code, attempt.redirect_uri, nonce=nonce),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderExchangeFailed(f"{attempt.provider} exchange timed out after {self._timeout}s") from exc
        if not profile.provider_id or not profile.email:
            raise ProviderExchangeFailed(f"{attempt.provider} returned an incomplete profile")
        if not profile.email_verified:
            raise ProviderExchangeFailed(f"{attempt.provider} returned an unverified email")
        return profile

    # ------------------------------------------------------------------
    # Identity resolution
    # ------------------------------------------------------------------

    def resolve_identity(self, provider: str, profile: SocialProfile) -> SocialUser:
        try:
            return self._resolve_once(provider, profile)
        except IntegrityError:
            # A concurrent attempt inserted the same email or social pair first.
            logger.info("Concurrent %s login for the same identity; re-resolving", provider)
            return self._resolve_once(provider, profile)

    def _resolve_once(self, provider: str, profile: SocialProfile) -> SocialUser:
        account = self._store.get_by_social(provider, profile.provider_id)
        if account is not None:
            return self._social_user(account, is_new=False)

        existing = self._store.get_by_email(profile.email)
        identity = SocialIdentity(
            provider=provider,
            provider_id=profile.provider_id,
            email=profile.email,
            account_id=existing.id if existing is not None else "",
            profile_data=dict(profile.profile_data),
        )

        if existing is not None:
            self._store.link_social(identity)
            if not existing.email_verified:
                self._store.update_account(existing.id, email_verified=True)
            logger.info("Linked %s identity to existing account %s", provider, existing.id)
            return self._social_user(self._store.get_by_id(existing.id) or existing, is_new=False)

        account = self._store.create_account(
            profile.email,
            role=DEFAULT_ROLE.value,
            name=profile.name,
            email_verified=True,
            social=identity,
        )
        logger.info("Provisioned account %s from first %s login", account.id, provider)
        return self._social_user(account, is_new=True)

    def _social_user(self, account: AccountIdentity, is_new: bool) -> SocialUser:
        self._store.update_last_login(account.id)
        return SocialUser(
            account=account,
            social_identities=self._store.list_social_identities(account.id),
            email_verified=True,
            is_new_account=is_new,
        )
