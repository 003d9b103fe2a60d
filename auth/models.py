"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic beyond serialization).
Dataclasses own domain shape; the store and the flow modules do the work.

Identity rule: AccountIdentity.id is always a non-empty str. The database key
is an integer; auth/store.py coerces it at the row-mapper boundary so no
caller ever sees the numeric form.

Layer rule: no imports from api/, web/ or core/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum


class Role(str, Enum):
    SPONSOR = "sponsor"
    ORGANIZER = "organizer"
    ADMIN = "admin"


# Self-registration and first social login always land here.
DEFAULT_ROLE = Role.SPONSOR

SUPPORTED_PROVIDERS = ("google", "apple")


@dataclass
class AccountIdentity:
    """Canonical account record, independent of the login method used.

    Carries no secret material -- the bcrypt hash lives in the credentials
    table and is only read by auth/credentials.py.
    """

    id: str
    email: str
    role: str
    name: str | None = None
    preferred_language: str = "en"
    email_verified: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> AccountIdentity:
        """Rebuild from a cached dict. Unknown keys are ignored."""
        return cls(
            id=str(data["id"]),
            email=data["email"],
            role=data["role"],
            name=data.get("name"),
            preferred_language=data.get("preferred_language") or "en",
            email_verified=bool(data.get("email_verified", False)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class SocialProfile:
    """What a provider tells us about the user after a code exchange."""

    provider_id: str
    email: str
    name: str | None = None
    profile_data: dict = field(default_factory=dict)  # picture, locale, given_name, ...
    email_verified: bool = True


@dataclass
class SocialIdentity:
    """Link between one (provider, provider_id) pair and one account.

    Many SocialIdentity rows may point at the same account; a given
    (provider, provider_id) pair points at exactly one.
    """

    provider: str
    provider_id: str
    email: str
    account_id: str
    profile_data: dict = field(default_factory=dict)
    linked_at: str | None = None


@dataclass
class SocialUser:
    """Result of a completed OAuth login."""

    account: AccountIdentity
    social_identities: list[SocialIdentity]
    email_verified: bool = True
    is_new_account: bool = False


@dataclass
class Session:
    """A freshly issued session. `token` is the only part handed to clients."""

    account_id: str
    role: str
    session_id: str
    issued_at: int  # unix seconds
    expires_at: int  # unix seconds
    token: str


@dataclass
class AccountRef:
    """What a validated session token proves: who, and with which role.

    role is the value embedded at issuance; a later role change on the
    account is not reflected until a new session is issued.
    """

    account_id: str
    role: str
    session_id: str
    expires_at: int
