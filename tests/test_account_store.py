"""
tests/test_account_store.py -- Unit tests for AccountStore.

Coverage:
  - ids are opaque non-empty strings; non-numeric ids simply miss
  - uniqueness is enforced by the database (email, provider pair)
  - account + credential / social rows are written atomically
  - one live session row per account, last write wins
  - unreachable database or dropped connection -> StorageUnavailable
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError

from auth.errors import StorageUnavailable
from auth.models import SocialIdentity
from auth.store import AccountStore, normalize_email


def _social(provider_id: str = "g-1", email: str = "s@example.com") -> SocialIdentity:
    return SocialIdentity(provider="google", provider_id=provider_id, email=email, account_id="")


class TestAccounts:
    def test_create_returns_string_id(self, store) -> None:
        account = store.create_account("a@x.com")
        assert isinstance(account.id, str) and account.id
        assert store.get_by_id(account.id) == account
        assert store.get_by_id(int(account.id)) == account

    @pytest.mark.parametrize("account_id", ["", "abc", None, "  "])
    def test_unparseable_id_misses(self, store, account_id) -> None:
        assert store.get_by_id(account_id) is None

    def test_duplicate_email_raises_integrity_error(self, store) -> None:
        store.create_account("a@x.com")
        with pytest.raises(IntegrityError):
            store.create_account(" A@X.COM ")

    def test_failed_insert_leaves_no_credential_behind(self, store) -> None:
        store.create_account("a@x.com", hashed_password="h1")
        with pytest.raises(IntegrityError):
            store.create_account("a@x.com", hashed_password="h2")
        existing = store.get_by_email("a@x.com")
        assert store.get_password_hash(existing.id) == "h1"

    def test_update_account(self, store) -> None:
        account = store.create_account("a@x.com")
        assert store.update_account(account.id, name="Ann", preferred_language="fr", email_verified=True)
        updated = store.get_by_id(account.id)
        assert (updated.name, updated.preferred_language, updated.email_verified) == ("Ann", "fr", True)

    def test_update_rejects_unknown_fields(self, store) -> None:
        account = store.create_account("a@x.com")
        with pytest.raises(ValueError):
            store.update_account(account.id, email="b@x.com")

    def test_update_missing_account_returns_false(self, store) -> None:
        assert store.update_account("999", name="x") is False

    def test_has_accounts_and_ping(self, store) -> None:
        assert store.ping() is True
        assert store.has_accounts() is False
        store.create_account("a@x.com")
        assert store.has_accounts() is True


class TestSocialIdentities:
    def test_create_with_social_links_in_one_step(self, store) -> None:
        account = store.create_account("s@example.com", social=_social())
        assert store.get_by_social("google", "g-1").id == account.id
        [identity] = store.list_social_identities(account.id)
        assert identity.account_id == account.id
        assert identity.linked_at

    def test_provider_pair_is_unique_across_accounts(self, store) -> None:
        store.create_account("one@example.com", social=_social("g-1", "one@example.com"))
        other = store.create_account("two@example.com")
        link = _social("g-1", "two@example.com")
        link.account_id = other.id
        with pytest.raises(IntegrityError):
            store.link_social(link)

    def test_failed_social_insert_rolls_back_account(self, store) -> None:
        store.create_account("one@example.com", social=_social("g-1"))
        with pytest.raises(IntegrityError):
            store.create_account("two@example.com", social=_social("g-1"))
        assert store.get_by_email("two@example.com") is None

    def test_profile_data_round_trips(self, store) -> None:
        social = _social()
        social.profile_data = {"picture": "https://img.example/a.png", "locale": "de"}
        account = store.create_account("s@example.com", social=social)
        [identity] = store.list_social_identities(account.id)
        assert identity.profile_data == social.profile_data


class TestSessions:
    def test_replace_keeps_one_row(self, store) -> None:
        account = store.create_account("a@x.com")
        store.replace_session(account.id, "first", "sponsor", 1, 100)
        store.replace_session(account.id, "second", "sponsor", 2, 200)
        live = store.get_session(account.id)
        assert live.session_id == "second"
        assert live.expires_at == 200

    def test_delete_only_matches_live_session(self, store) -> None:
        account = store.create_account("a@x.com")
        store.replace_session(account.id, "live", "sponsor", 1, 100)
        assert store.delete_session(account.id, "stale") is False
        assert store.delete_session(account.id, "live") is True
        assert store.get_session(account.id) is None


def test_normalize_email() -> None:
    assert normalize_email("  Ann@Example.COM ") == "ann@example.com"
    assert normalize_email("") == ""


def test_unreachable_database_is_storage_unavailable(tmp_path) -> None:
    missing_dir = tmp_path / "does" / "not" / "exist"
    with pytest.raises(StorageUnavailable):
        AccountStore(f"sqlite:///{missing_dir / 'auth.db'}")


class _DroppedConnectionEngine:
    """Engine stand-in whose connections die the way a lost server does."""

    def _fail(self):
        raise DBAPIError("SELECT 1", {}, Exception("server closed the connection"), connection_invalidated=True)

    def connect(self):
        self._fail()

    def begin(self):
        self._fail()

    def dispose(self) -> None:
        pass


def test_dropped_connection_is_storage_unavailable(store, monkeypatch) -> None:
    monkeypatch.setattr(store, "engine", _DroppedConnectionEngine())
    with pytest.raises(StorageUnavailable):
        store.get_by_email("a@x.com")
    with pytest.raises(StorageUnavailable):
        store.create_account("a@x.com")
    assert store.ping() is False
