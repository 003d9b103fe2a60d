"""
auth/errors.py -- Failure kinds raised by the identity core.

Every expected failure is an AuthError subclass. The `code` and
`public_message` class attributes are what a caller may show to an end user;
the exception's own message (str(exc)) is for logs only and may carry the
internal distinction (e.g. which session check failed).

Disclosure policy:
  - Authentication failures (InvalidCredentials, SessionError subclasses)
    share a single public message per family. Unknown email vs. wrong secret,
    and expired vs. malformed vs. unknown session, are never distinguishable
    from outside.
  - Validation failures (InvalidEmail, WeakCredential, EmailAlreadyUsed,
    MissingAuthorizationCode, UnsupportedProvider) are actionable and surface
    verbatim.
  - Operational failures (ProviderExchangeFailed, StorageUnavailable) surface
    as a generic message but keep their own code for operators.

No error kind triggers a retry inside this package.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all identity-core failures."""

    code: str = "auth_error"
    public_message: str = "Authentication failed."
    status_code: int = 400
    # Validation kinds set this so the specific detail reaches the user.
    expose_detail: bool = False

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message

    def user_message(self) -> str:
        return self.detail if self.expose_detail else self.public_message


# ---------------------------------------------------------------------------
# Credential path
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    public_message = "Invalid email or password."
    status_code = 401


class InvalidEmail(AuthError):
    code = "invalid_email"
    public_message = "A valid email address is required."
    status_code = 400
    expose_detail = True


class WeakCredential(AuthError):
    code = "weak_credential"
    public_message = "Password must be at least 8 characters."
    status_code = 400
    expose_detail = True


class EmailAlreadyUsed(AuthError):
    code = "email_already_used"
    public_message = "An account with that email already exists."
    status_code = 409
    expose_detail = True


# ---------------------------------------------------------------------------
# OAuth path
# ---------------------------------------------------------------------------


class MissingAuthorizationCode(AuthError):
    code = "missing_authorization_code"
    public_message = "The login provider did not return an authorization code."
    status_code = 400
    expose_detail = True


class UnsupportedProvider(AuthError):
    code = "unsupported_provider"
    public_message = "That login provider is not available."
    status_code = 400
    expose_detail = True


class ProviderExchangeFailed(AuthError):
    code = "provider_exchange_failed"
    public_message = "Login could not be completed. Please try again."
    status_code = 502


# ---------------------------------------------------------------------------
# Session path
# ---------------------------------------------------------------------------


class SessionError(AuthError):
    """Any reason a session token is not acceptable. Subclass is log-only."""

    code = "session_invalid"
    public_message = "Please log in again."
    status_code = 401


class SessionExpired(SessionError):
    pass


class SessionMalformed(SessionError):
    pass


class SessionUnknown(SessionError):
    pass


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class StorageUnavailable(AuthError):
    code = "storage_unavailable"
    public_message = "The service is temporarily unavailable."
    status_code = 503
