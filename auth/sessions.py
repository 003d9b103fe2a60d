"""
auth/sessions.py -- Session issue, validation and invalidation.

Security design decisions:
  Token format: python-jose HS256 JWT signed with SECRET_KEY, carrying
       sub (account id), role, jti (session id), iat and exp. The token is
       opaque to clients; only this module reads it.

  Server-side truth: a signed token alone is not enough. Each account has at
       most one row in the `sessions` table and the token's jti must match it.
       That is what makes logout effective and what makes a new login
       supersede the previous one (single active session per account, last
       write wins).

  Expiry: checked here against exp with `now >= exp`, not by jose. jose
       accepts a token whose exp equals the current second, so a 0-second
       horizon would otherwise validate once.

  Hostile input: validate() raises only SessionError subclasses for anything
       wrong with the token itself -- bad base64, bad signature, missing or
       mistyped claims. StorageUnavailable still propagates.

  Role: the role embedded at issue time is what validate() reports. A role
       change on the account takes effect on the next issue().

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from jose import jwt
from jose.exceptions import JOSEError

from auth.errors import SessionExpired, SessionMalformed, SessionUnknown
from auth.models import AccountRef, Session

if TYPE_CHECKING:
    from auth.models import AccountIdentity
    from auth.store import AccountStore

logger = logging.getLogger("sponsorlink.auth.sessions")

_ALGORITHM = "HS256"
SESSION_COOKIE = "access_token"


class SessionManager:
    """The single server-side answer to "is this request authenticated".

    Usage:
        sessions = SessionManager(store, settings.secret_key, settings.session_ttl_seconds)
        session = sessions.issue(account)
        ref = sessions.validate(session.token)      # raises SessionError subclasses
        sessions.invalidate(session.token)          # idempotent
    """

    def __init__(
        self,
        store: AccountStore,
        secret_key: str,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, identity: AccountIdentity, ttl_seconds: int | None = None) -> Session:
        """Create a session bound to identity.id and identity.role.

        Replaces any prior session for the account. ttl_seconds=None uses the
        configured horizon; 0 is accepted and yields an already-expired
        session.
        """
        duration = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if duration < 0:
            raise ValueError("ttl_seconds must be >= 0")

        issued_at = int(self._clock())
        expires_at = issued_at + duration
        session_id = secrets.token_hex(16)
        payload = {
            "sub": identity.id,
            "role": identity.role,
            "jti": session_id,
            "iat": issued_at,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        self._store.replace_session(identity.id, session_id, identity.role, issued_at, expires_at)
        logger.info("Session issued (account_id=%s, role=%s, ttl=%ds)", identity.id, identity.role, duration)
        return Session(
            account_id=identity.id,
            role=identity.role,
            session_id=session_id,
            issued_at=issued_at,
            expires_at=expires_at,
            token=token,
        )

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def _decode(self, token) -> dict:
        """Verify the signature and claim shapes. Expiry is NOT checked here."""
        if not isinstance(token, str) or not token:
            raise SessionMalformed("empty or non-string token")
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except (JOSEError, ValueError, TypeError) as exc:
            raise SessionMalformed(f"undecodable token: {exc}") from exc

        sub = payload.get("sub")
        role = payload.get("role")
        jti = payload.get("jti")
        exp = payload.get("exp")
        if not (isinstance(sub, str) and sub and isinstance(role, str) and isinstance(jti, str) and jti):
            raise SessionMalformed("missing or mistyped identity claims")
        if isinstance(exp, bool) or not isinstance(exp, int):
            raise SessionMalformed("missing or mistyped exp claim")
        return payload

    def validate(self, token: str) -> AccountRef:
        """Return the AccountRef a token proves, or raise a SessionError subclass.

        SessionMalformed -- token cannot be parsed or verified
        SessionExpired   -- now >= exp
        SessionUnknown   -- account no longer exists, or this session was
                            superseded by a newer login or logged out
        """
        payload = self._decode(token)
        if self._clock() >= payload["exp"]:
            raise SessionExpired(f"expired at {payload['exp']}")

        account = self._store.get_by_id(payload["sub"])
        if account is None:
            raise SessionUnknown("account does not exist")

        live = self._store.get_session(account.id)
        if live is None or not hmac.compare_digest(live.session_id, payload["jti"]):
            raise SessionUnknown("session superseded or invalidated")

        return AccountRef(
            account_id=account.id,
            role=payload["role"],
            session_id=payload["jti"],
            expires_at=payload["exp"],
        )

    # ------------------------------------------------------------------
    # Invalidate
    # ------------------------------------------------------------------

    def invalidate(self, token: str | None) -> None:
        """End the session a token refers to. Unknown or garbage tokens are a no-op.

        Expired tokens with a valid signature still remove their row, so a
        logout after expiry leaves no stale server state behind.
        """
        try:
            payload = self._decode(token)
        except SessionMalformed:
            logger.debug("Ignoring invalidate() for an unparseable token")
            return
        if self._store.delete_session(payload["sub"], payload["jti"]):
            logger.info("Session invalidated (account_id=%s)", payload["sub"])


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, session: Session, secure: bool = False) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    max_age: matches the session horizon so both expire together.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=session.token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max(session.expires_at - session.issued_at, 0),
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
