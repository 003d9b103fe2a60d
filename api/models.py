"""
API request and response models for the SponsorLink identity endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Password fields carry no min_length: the strength rule belongs to the Account
Provisioner, which reports it as a weak_credential 400 rather than a generic
422. max_length keeps inputs well below bcrypt's truncation point concerns.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AccountIdentity

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    # No str_strip_whitespace here: whitespace is part of the password.
    # Email normalization happens in the store.
    email: str = Field(max_length=255)
    password: str = Field(max_length=255)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    preferred_language: str = Field(default="en", min_length=2, max_length=10)


class RoleUpdate(BaseModel):
    """Request body for PATCH /api/v1/auth/accounts/{account_id}/role."""

    role: Literal["sponsor", "organizer", "admin"]


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public shape of an AccountIdentity. No secret material, ever."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str
    name: Optional[str] = None
    preferred_language: str = "en"
    email_verified: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: AccountIdentity) -> "AccountResponse":
        return cls(**identity.to_dict())


class SessionStartResponse(AccountResponse):
    """Account fields plus where the client should go next.

    redirect_to is the one-shot target captured by the access guard, or the
    default landing path when nothing was captured.
    """

    redirect_to: str


class LoginResponse(SessionStartResponse):
    """Session start fields plus the bearer token for non-browser clients."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class LogoutResponse(BaseModel):
    success: bool = True


class SessionInfoResponse(BaseModel):
    """GET /api/v1/auth/me -- the account plus the role the session was issued with."""

    account: AccountResponse
    session_role: str
    expires_at: int


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str]


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
