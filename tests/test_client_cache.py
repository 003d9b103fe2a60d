"""
tests/test_client_cache.py -- Unit tests for ClientAuthCache over a plain dict.

Coverage:
  - cache/read/clear of the current identity
  - one-shot redirect marker (second consume yields the default)
  - open-redirect rejection on capture [C2]
  - legacy key migration never overwrites a current-format entry
"""

from __future__ import annotations

import json

import pytest

from auth.client_cache import (
    LEGACY_USER_KEY,
    REDIRECT_KEY,
    USER_KEY,
    ClientAuthCache,
    safe_relative_path,
)
from auth.models import AccountIdentity


def _identity(account_id: str = "7", email: str = "ann@example.com") -> AccountIdentity:
    return AccountIdentity(id=account_id, email=email, role="sponsor", name="Ann")


class TestIdentity:
    def test_cache_then_read(self) -> None:
        storage: dict = {}
        cache = ClientAuthCache(storage)
        cache.cache_identity(_identity())
        assert USER_KEY in storage
        assert cache.cached_identity() == _identity()

    def test_cache_overwrites(self) -> None:
        cache = ClientAuthCache({})
        cache.cache_identity(_identity("1"))
        cache.cache_identity(_identity("2", "bob@example.com"))
        assert cache.cached_identity().id == "2"

    def test_empty_storage_reads_none(self) -> None:
        assert ClientAuthCache({}).cached_identity() is None

    def test_unreadable_entry_is_discarded(self) -> None:
        storage = {USER_KEY: "{not json"}
        assert ClientAuthCache(storage).cached_identity() is None
        assert USER_KEY not in storage

    def test_clear_removes_current_legacy_and_redirect(self) -> None:
        storage = {USER_KEY: "x", LEGACY_USER_KEY: "y", REDIRECT_KEY: "/events", "theme": "dark"}
        ClientAuthCache(storage).clear()
        assert storage == {"theme": "dark"}

    def test_clear_on_empty_storage_is_noop(self) -> None:
        storage: dict = {}
        ClientAuthCache(storage).clear()
        assert storage == {}


class TestRedirectTarget:
    def test_consume_returns_captured_path_once(self) -> None:
        cache = ClientAuthCache({})
        assert cache.capture_redirect_target("/events/42")
        assert cache.consume_redirect_target("/dashboard") == "/events/42"
        assert cache.consume_redirect_target("/dashboard") == "/dashboard"

    def test_consume_without_capture_returns_default(self) -> None:
        assert ClientAuthCache({}).consume_redirect_target() == "/dashboard"

    def test_capture_overwrites_previous_target(self) -> None:
        cache = ClientAuthCache({})
        cache.capture_redirect_target("/a")
        cache.capture_redirect_target("/b")
        assert cache.consume_redirect_target() == "/b"

    @pytest.mark.parametrize("path", ["https://evil.example", "//evil.example", "/\\evil.example", "", "events"])
    def test_non_local_targets_are_refused(self, path) -> None:
        storage: dict = {}
        cache = ClientAuthCache(storage)
        assert cache.capture_redirect_target(path) is False
        assert REDIRECT_KEY not in storage
        assert cache.consume_redirect_target("/dashboard") == "/dashboard"

    def test_tampered_stored_target_falls_back_to_default(self) -> None:
        storage = {REDIRECT_KEY: "//evil.example"}
        assert ClientAuthCache(storage).consume_redirect_target("/home") == "/home"
        assert REDIRECT_KEY not in storage


class TestLegacyMigration:
    def test_copies_legacy_when_current_absent(self) -> None:
        legacy = json.dumps(_identity().to_dict())
        storage = {LEGACY_USER_KEY: legacy}
        cache = ClientAuthCache(storage)
        assert cache.migrate_legacy_format() is True
        assert storage[USER_KEY] == legacy
        assert cache.cached_identity().email == "ann@example.com"

    def test_never_overwrites_current_entry(self) -> None:
        current = json.dumps(_identity("1", "current@example.com").to_dict())
        storage = {USER_KEY: current, LEGACY_USER_KEY: json.dumps(_identity("2", "old@example.com").to_dict())}
        assert ClientAuthCache(storage).migrate_legacy_format() is False
        assert storage[USER_KEY] == current

    def test_idempotent(self) -> None:
        storage = {LEGACY_USER_KEY: json.dumps(_identity().to_dict())}
        cache = ClientAuthCache(storage)
        cache.migrate_legacy_format()
        snapshot = dict(storage)
        assert cache.migrate_legacy_format() is False
        assert storage == snapshot

    def test_nothing_to_migrate(self) -> None:
        storage: dict = {}
        assert ClientAuthCache(storage).migrate_legacy_format() is False
        assert storage == {}


class TestSafeRelativePath:
    @pytest.mark.parametrize("path", ["/", "/dashboard", "/events/42?tab=sponsors"])
    def test_local_paths_pass(self, path) -> None:
        assert safe_relative_path(path) == path

    @pytest.mark.parametrize("path", [None, "", "http://x", "//x", "/\\x", "relative"])
    def test_everything_else_is_rejected(self, path) -> None:
        assert safe_relative_path(path) is None
