"""
auth/guard.py -- Gate for protected surfaces.

A guard decision moves through three states:

  LOADING          -- validation not finished. No side effects, nothing to show.
  AUTHENTICATED    -- admit; decision.account is the validated AccountRef.
  UNAUTHENTICATED  -- the client cache is cleared when it holds a stale
                      identity or a token was rejected, and, when the
                      surface requires login, the current path
                      is captured as the post-login redirect target and
                      decision.redirect_url points at the login page.

Surfaces that allow anonymous viewing construct the guard with
redirect_if_unauthenticated=False and simply render the anonymous variant.

The redirect itself is terminal: the login page is not guarded, so the guard
is never re-entered for the same navigation.

check_resource_authorization() answers the per-resource question once a
session is admitted: everyone authenticated may view, only the owner may edit.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from urllib.parse import quote

from auth.client_cache import safe_relative_path
from auth.errors import SessionError

if TYPE_CHECKING:
    from auth.client_cache import ClientAuthCache
    from auth.models import AccountRef
    from auth.sessions import SessionManager

logger = logging.getLogger("sponsorlink.auth.guard")


class GuardState(str, Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


@dataclass
class GuardDecision:
    state: GuardState = GuardState.LOADING
    account: AccountRef | None = None
    redirect_url: str | None = None
    failure: str | None = None  # SessionError subclass name, for logs only

    @property
    def admitted(self) -> bool:
        return self.state is GuardState.AUTHENTICATED


class AccessGuard:
    """Decide whether a request may proceed, based on Session Manager state.

    Usage:
        guard = AccessGuard(redirect_if_unauthenticated=True)
        decision = guard.evaluate(sessions, token, request.url.path, cache)
        if decision.redirect_url:
            return RedirectResponse(decision.redirect_url, status_code=302)
    """

    def __init__(self, redirect_if_unauthenticated: bool = True, login_path: str = "/login") -> None:
        self.redirect_if_unauthenticated = redirect_if_unauthenticated
        self.login_path = login_path

    def evaluate(
        self,
        sessions: SessionManager,
        token: str | None,
        path: str,
        client_cache: ClientAuthCache | None = None,
    ) -> GuardDecision:
        decision = GuardDecision()

        if token:
            try:
                decision.account = sessions.validate(token)
            except SessionError as exc:
                decision.failure = type(exc).__name__
                logger.info("Session rejected on %s (%s)", path, decision.failure)
            else:
                decision.state = GuardState.AUTHENTICATED
                return decision

        decision.state = GuardState.UNAUTHENTICATED
        # A rejected token or a leftover identity means the mirror is stale.
        # With neither, there is nothing to clear and a pending redirect
        # marker must survive until login completes.
        if client_cache is not None and (token or client_cache.cached_identity() is not None):
            client_cache.clear()

        if self.redirect_if_unauthenticated:
            # Only the path is ever echoed back, never the full URL [C2].
            target = safe_relative_path(path) or "/"
            if client_cache is not None:
                client_cache.capture_redirect_target(target)
            decision.redirect_url = f"{self.login_path}?next={quote(target, safe='/')}"
        return decision


# ---------------------------------------------------------------------------
# Resource ownership
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceAccess:
    is_authenticated: bool = False
    is_owner: bool = False
    can_view: bool = False
    can_edit: bool = False


def check_resource_authorization(account: AccountRef | None, owner_id: str | int | None) -> ResourceAccess:
    """What `account` may do with a resource owned by `owner_id`.

    Every authenticated account can view; only the owner can edit. A missing
    owner id means nobody owns the resource, so nobody edits it through this
    check. Role-based overrides (admins) are the caller's decision.
    """
    if account is None:
        return ResourceAccess()
    is_owner = owner_id is not None and str(owner_id) != "" and account.account_id == str(owner_id)
    return ResourceAccess(is_authenticated=True, is_owner=is_owner, can_view=True, can_edit=is_owner)
