"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_social are the mappers. Flow and route code never
touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Password hashes live in their own `credentials` table and are only returned
  by get_password_hash(). No AccountIdentity ever carries one.

Uniqueness is arbitrated by the database, not by check-then-insert:
  accounts.email                                  UNIQUE
  social_identities(provider, provider_id)        UNIQUE (both NOT NULL)
  sessions.account_id                             PRIMARY KEY (one session per account)
Callers catch sqlalchemy.exc.IntegrityError as the final word on a race.

Identity normalization: the integer primary key is coerced to a non-empty
string in _row_to_account. Everything above this module treats account ids
as opaque strings.

Connection failures (OperationalError, or any DBAPIError that invalidated the
connection) are re-raised as StorageUnavailable so the API can tell operators
"database down" apart from "bad input". IntegrityError is never mapped.

Layer rule: no imports from api/, web/ or core/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from auth.errors import StorageUnavailable
from auth.models import AccountIdentity, AccountRef, Role, SocialIdentity

logger = logging.getLogger("sponsorlink.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", Text),
    Column("role", String(20), nullable=False, server_default=Role.SPONSOR.value),
    Column("preferred_language", String(10), nullable=False, server_default="en"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_credentials = Table(
    "credentials",
    _metadata,
    Column("account_id", Integer, ForeignKey("accounts.id"), primary_key=True),
    Column("hashed_password", Text, nullable=False),  # bcrypt, never plaintext
    Column("created_at", String(32), nullable=False),
)

_social_identities = Table(
    "social_identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("provider", String(20), nullable=False),  # "google", "apple"
    Column("provider_id", String(255), nullable=False),  # provider's stable subject
    Column("email", String(255), nullable=False),
    Column("profile_data", Text),  # JSON blob
    Column("linked_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_id", name="uq_social_provider_subject"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("account_id", Integer, ForeignKey("accounts.id"), primary_key=True),
    Column("session_id", String(64), nullable=False, unique=True),
    Column("role", String(20), nullable=False),
    Column("issued_at", Integer, nullable=False),
    Column("expires_at", Integer, nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_unavailable(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    return isinstance(exc, OperationalError) or exc.connection_invalidated


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    """Canonical form used for every email comparison and every insert."""
    return (email or "").strip().lower()


def _canonical_id(value) -> str:
    """Coerce a storage key to the opaque string form callers rely on."""
    text_id = str(value).strip() if value is not None else ""
    if not text_id:
        raise ValueError("account id must be a non-empty value")
    return text_id


def _db_id(account_id: str | int) -> int | None:
    """Parse an opaque account id back into the integer key. None if it cannot be one."""
    try:
        return int(str(account_id).strip())
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for accounts, credentials, social identities and sessions.

    Usage:
        store = AccountStore("sqlite:///sponsorlink_auth.db")
        account = store.create_account("ann@example.com", role="sponsor", hashed_password=...)
        store.get_by_email("ann@example.com")
        store.close()
    """

    _UPDATABLE_FIELDS: set = {"name", "role", "preferred_language", "email_verified"}

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            _metadata.create_all(self.engine)
        except DBAPIError as exc:
            if not _is_unavailable(exc):
                raise
            raise StorageUnavailable(f"account store unavailable: {exc.orig}") from exc

    @contextmanager
    def _connection(self, write: bool = False) -> Iterator[Connection]:
        """Yield a connection; write=True wraps the block in one transaction.

        engine.begin() commits on clean exit and rolls back on any exception,
        which is what makes multi-row writes (account + credential, account +
        social identity, delete + insert session) all-or-nothing.
        """
        try:
            ctx = self.engine.begin() if write else self.engine.connect()
            with ctx as conn:
                yield conn
        except DBAPIError as exc:
            if not _is_unavailable(exc):
                raise
            logger.error("Account store unavailable: %s", exc.orig)
            raise StorageUnavailable(f"account store unavailable: {exc.orig}") from exc

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        with self._connection() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM accounts")).scalar()
        return (result or 0) > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connection() as conn:
                conn.execute(text("SELECT 1"))
        except StorageUnavailable:
            return False
        return True

    def create_account(
        self,
        email: str,
        role: str = Role.SPONSOR.value,
        name: str | None = None,
        preferred_language: str = "en",
        hashed_password: str | None = None,
        email_verified: bool = False,
        social: SocialIdentity | None = None,
    ) -> AccountIdentity:
        """Insert an account plus its credential and/or first social identity.

        All rows are written in a single transaction. Raises
        sqlalchemy.exc.IntegrityError if the email (or the social pair) is
        already taken -- nothing is persisted in that case.

        social.account_id is ignored; the new account's id is used.
        """
        now = _now_iso()
        with self._connection(write=True) as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=normalize_email(email),
                    name=name,
                    role=Role(role).value,
                    preferred_language=preferred_language or "en",
                    email_verified=1 if email_verified else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
            new_id = result.inserted_primary_key[0]
            if hashed_password is not None:
                conn.execute(
                    _credentials.insert().values(account_id=new_id, hashed_password=hashed_password, created_at=now)
                )
            if social is not None:
                conn.execute(_social_insert(new_id, social, now))
            row = conn.execute(_accounts.select().where(_accounts.c.id == new_id)).fetchone()
        return _row_to_account(row)

    def get_by_email(self, email: str) -> AccountIdentity | None:
        """Look up an account by normalized email. Returns None if not found."""
        with self._connection() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: str | int) -> AccountIdentity | None:
        """Look up an account by id (opaque string or raw key). Returns None if not found."""
        key = _db_id(account_id)
        if key is None:
            return None
        with self._connection() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == key)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_password_hash(self, account_id: str) -> str | None:
        """Return the stored bcrypt hash, or None for OAuth-only accounts."""
        key = _db_id(account_id)
        if key is None:
            return None
        with self._connection() as conn:
            return conn.execute(
                select(_credentials.c.hashed_password).where(_credentials.c.account_id == key)
            ).scalar()

    def update_account(self, account_id: str, **fields) -> bool:
        """Update mutable profile fields. Returns False if the account does not exist.

        Accepted fields: name, role, preferred_language, email_verified.
        A role change does not touch live sessions; it is picked up on the
        next session issue.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "email_verified" in fields:
            fields["email_verified"] = 1 if fields["email_verified"] else 0
        key = _db_id(account_id)
        if key is None:
            return False
        with self._connection(write=True) as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == key).values(updated_at=_now_iso(), **fields)
            )
        return result.rowcount > 0

    def update_last_login(self, account_id: str) -> None:
        key = _db_id(account_id)
        if key is None:
            return
        with self._connection(write=True) as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == key).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Social identities
    # ------------------------------------------------------------------

    def get_by_social(self, provider: str, provider_id: str) -> AccountIdentity | None:
        """Resolve the account linked to a (provider, provider_id) pair."""
        query = (
            _accounts.select()
            .join(_social_identities, _social_identities.c.account_id == _accounts.c.id)
            .where((_social_identities.c.provider == provider) & (_social_identities.c.provider_id == provider_id))
        )
        with self._connection() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_account(row) if row is not None else None

    def link_social(self, identity: SocialIdentity) -> SocialIdentity:
        """Attach a social identity to an existing account.

        Raises sqlalchemy.exc.IntegrityError if the (provider, provider_id)
        pair is already linked anywhere.
        """
        key = _db_id(identity.account_id)
        if key is None:
            raise ValueError(f"invalid account id {identity.account_id!r}")
        now = _now_iso()
        with self._connection(write=True) as conn:
            conn.execute(_social_insert(key, identity, now))
        return SocialIdentity(
            provider=identity.provider,
            provider_id=identity.provider_id,
            email=normalize_email(identity.email),
            account_id=_canonical_id(key),
            profile_data=dict(identity.profile_data),
            linked_at=now,
        )

    def list_social_identities(self, account_id: str) -> list[SocialIdentity]:
        key = _db_id(account_id)
        if key is None:
            return []
        with self._connection() as conn:
            rows = conn.execute(
                _social_identities.select()
                .where(_social_identities.c.account_id == key)
                .order_by(_social_identities.c.linked_at)
            ).fetchall()
        return [_row_to_social(r) for r in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def replace_session(self, account_id: str, session_id: str, role: str, issued_at: int, expires_at: int) -> None:
        """Make (session_id) the only live session for the account.

        Delete + insert in one transaction: concurrent issues for the same
        account serialize on the write lock and the last one wins.
        """
        key = _db_id(account_id)
        if key is None:
            raise ValueError(f"invalid account id {account_id!r}")
        with self._connection(write=True) as conn:
            conn.execute(_sessions.delete().where(_sessions.c.account_id == key))
            conn.execute(
                _sessions.insert().values(
                    account_id=key,
                    session_id=session_id,
                    role=role,
                    issued_at=issued_at,
                    expires_at=expires_at,
                )
            )

    def get_session(self, account_id: str) -> AccountRef | None:
        key = _db_id(account_id)
        if key is None:
            return None
        with self._connection() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.account_id == key)).fetchone()
        if row is None:
            return None
        return AccountRef(
            account_id=_canonical_id(row.account_id),
            role=row.role,
            session_id=row.session_id,
            expires_at=row.expires_at,
        )

    def delete_session(self, account_id: str, session_id: str) -> bool:
        """Remove the session only if it is still the live one. Returns True if removed."""
        key = _db_id(account_id)
        if key is None:
            return False
        with self._connection(write=True) as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.account_id == key) & (_sessions.c.session_id == session_id))
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _social_insert(account_key: int, identity: SocialIdentity, now: str):
    return _social_identities.insert().values(
        account_id=account_key,
        provider=identity.provider,
        provider_id=identity.provider_id,
        email=normalize_email(identity.email),
        profile_data=json.dumps(identity.profile_data or {}),
        linked_at=now,
    )


def _row_to_account(row) -> AccountIdentity:
    return AccountIdentity(
        id=_canonical_id(row.id),
        email=row.email,
        role=row.role,
        name=row.name,
        preferred_language=row.preferred_language or "en",
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_social(row) -> SocialIdentity:
    try:
        profile = json.loads(row.profile_data) if row.profile_data else {}
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable profile_data for social identity %s", row.id)
        profile = {}
    return SocialIdentity(
        provider=row.provider,
        provider_id=row.provider_id,
        email=row.email,
        account_id=_canonical_id(row.account_id),
        profile_data=profile,
        linked_at=row.linked_at,
    )
