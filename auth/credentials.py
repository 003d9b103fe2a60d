"""
auth/credentials.py -- Password login and self-registration.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute force of low-entropy secrets expensive. Only the derived hash is
       stored; the plaintext never leaves this module and is never logged.

  72-byte limit: bcrypt only looks at the first 72 bytes and current bcrypt
       releases raise on longer input. We truncate explicitly in one place
       (_secret_bytes) so hashing and checking always see the same bytes.
       The API layer caps passwords at 255 chars.

  Enumeration resistance [C1]: verify_credentials() raises the same
       InvalidCredentials for "no such email", "account has no password"
       (OAuth-only) and "wrong password", and runs bcrypt against
       _DUMMY_HASH when there is nothing real to compare, so neither the
       error nor the response time tells an attacker whether an email is
       registered. The reason is logged at DEBUG for operators.

  Atomic registration: account row + credential row are inserted in one
       transaction by AccountStore.create_account(). The pre-check for an
       existing email is only a fast path; the UNIQUE constraint is the final
       arbiter and its IntegrityError is reported as EmailAlreadyUsed too.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth.errors import EmailAlreadyUsed, InvalidCredentials, InvalidEmail, WeakCredential
from auth.models import DEFAULT_ROLE
from auth.store import normalize_email

if TYPE_CHECKING:
    from auth.models import AccountIdentity
    from auth.store import AccountStore

logger = logging.getLogger("sponsorlink.auth.credentials")

MIN_PASSWORD_LENGTH = 8

_BCRYPT_MAX_BYTES = 72
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _secret_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_secret_bytes(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A corrupt stored hash counts as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(_secret_bytes(plain), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("sponsorlink_timing_dummy")


# ---------------------------------------------------------------------------
# Credential Verifier
# ---------------------------------------------------------------------------


def verify_credentials(store: AccountStore, email: str, secret: str) -> AccountIdentity:
    """Authenticate an email/password pair.

    Returns the AccountIdentity (string id, no secret material) on success.
    Raises InvalidCredentials on every kind of failure [C1]. Lets
    StorageUnavailable propagate -- a database outage is not a bad password.
    """
    if not email or not secret:
        verify_password(secret or "", _DUMMY_HASH)
        logger.debug("Credential check failed: reason=empty_input")
        raise InvalidCredentials("empty email or secret")

    account = store.get_by_email(email)
    hashed = store.get_password_hash(account.id) if account is not None else None

    if account is None or hashed is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(secret, _DUMMY_HASH)
        reason = "unknown_email" if account is None else "no_local_password"
        logger.debug("Credential check failed: reason=%s", reason)
        raise InvalidCredentials(reason)

    if not verify_password(secret, hashed):
        logger.debug("Credential check failed: reason=bad_secret account_id=%s", account.id)
        raise InvalidCredentials("bad_secret")

    store.update_last_login(account.id)
    return account


# ---------------------------------------------------------------------------
# Account Provisioner
# ---------------------------------------------------------------------------


def register_account(
    store: AccountStore,
    email: str,
    secret: str,
    name: str | None = None,
    preferred_language: str = "en",
    min_length: int = MIN_PASSWORD_LENGTH,
) -> AccountIdentity:
    """Create a password account with the default role (self-registration).

    Role is always DEFAULT_ROLE -- privileged accounts are created through the
    admin CLI (provision_account with an explicit role), never through here.
    """
    return provision_account(
        store,
        email,
        secret,
        role=DEFAULT_ROLE.value,
        name=name,
        preferred_language=preferred_language,
        min_length=min_length,
    )


def provision_account(
    store: AccountStore,
    email: str,
    secret: str,
    role: str,
    name: str | None = None,
    preferred_language: str = "en",
    min_length: int = MIN_PASSWORD_LENGTH,
) -> AccountIdentity:
    """Validate and insert a password account with the given role.

    Check order: email shape, then password strength, then uniqueness.
    """
    normalized = normalize_email(email)
    if not normalized or not _EMAIL_RE.match(normalized):
        raise InvalidEmail()

    if secret is None or len(secret) < min_length:
        raise WeakCredential(f"Password must be at least {min_length} characters.")

    if store.get_by_email(normalized) is not None:
        raise EmailAlreadyUsed()

    try:
        account = store.create_account(
            normalized,
            role=role,
            name=(name or "").strip() or None,
            preferred_language=preferred_language or "en",
            hashed_password=hash_password(secret),
        )
    except IntegrityError as exc:
        # Lost a race with a concurrent registration for the same email.
        raise EmailAlreadyUsed() from exc

    logger.info("Account registered (id=%s, role=%s)", account.id, account.role)
    return account
