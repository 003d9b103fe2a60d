"""
auth/client_cache.py -- Client-held mirror of "who is logged in".

ClientAuthCache wraps whatever string key/value storage the client side
persists. In the web layer that is Starlette's signed-cookie request.session;
in tests it is a plain dict. The storage is injected, never reached through a
global, so every consumer decides which client it is talking to.

The cache is NOT authoritative. The server-side session (auth/sessions.py) is
the truth; this mirror exists so pages can render the current user without a
round trip, and it must be cleared whenever the server says the session is
gone, otherwise a stale identity keeps being shown.

Keys:
  user          JSON of the current AccountIdentity
  currentUser   legacy key from the previous client; only read by migration
  redirectUrl   one-shot "return here after login" marker

Layer rule: no imports from api/, web/ or core/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import MutableMapping

from auth.models import AccountIdentity

logger = logging.getLogger("sponsorlink.auth.client_cache")

USER_KEY = "user"
LEGACY_USER_KEY = "currentUser"
REDIRECT_KEY = "redirectUrl"

DEFAULT_REDIRECT_PATH = "/dashboard"


def safe_relative_path(path: str | None) -> str | None:
    """Return path if it is a server-local path, else None. [C2]

    Rejects absolute URLs (https://attacker.com) and protocol-relative ones
    (//attacker.com), both of which would send the user off-site after login.
    Backslashes are rejected too; some browsers treat "/\\host" like "//host".
    """
    if path and path.startswith("/") and not path.startswith("//") and "\\" not in path:
        return path
    return None


class ClientAuthCache:
    """Current-user cache and redirect marker over injected client storage."""

    def __init__(self, storage: MutableMapping[str, str]) -> None:
        self._storage = storage

    # ------------------------------------------------------------------
    # Current user
    # ------------------------------------------------------------------

    def cache_identity(self, identity: AccountIdentity) -> None:
        """Overwrite the cached current user."""
        self._storage[USER_KEY] = json.dumps(identity.to_dict())

    def cached_identity(self) -> AccountIdentity | None:
        """Return the cached user, or None if absent or unreadable.

        An unreadable entry is removed so it cannot be migrated over or shown.
        """
        raw = self._storage.get(USER_KEY)
        if not raw:
            return None
        try:
            return AccountIdentity.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError):
            logger.warning("Discarding unreadable cached identity")
            self._storage.pop(USER_KEY, None)
            return None

    def clear(self) -> None:
        """Forget everything auth-related: user, legacy copy, redirect marker.

        The legacy key goes too; otherwise the next migrate_legacy_format()
        would resurrect a logged-out user.
        """
        for key in (USER_KEY, LEGACY_USER_KEY, REDIRECT_KEY):
            self._storage.pop(key, None)

    # ------------------------------------------------------------------
    # Redirect marker
    # ------------------------------------------------------------------

    def capture_redirect_target(self, path: str) -> bool:
        """Remember where the user was denied access. Returns False if path was rejected."""
        safe = safe_relative_path(path)
        if safe is None:
            logger.warning("Refusing to store non-local redirect target")
            return False
        self._storage[REDIRECT_KEY] = safe
        return True

    def consume_redirect_target(self, default_path: str = DEFAULT_REDIRECT_PATH) -> str:
        """Return the captured path and clear it in one step; default_path if none.

        pop() is the read and the clear together, so two consumers can never
        both receive the same marker. A second call always gets default_path.
        """
        target = safe_relative_path(self._storage.pop(REDIRECT_KEY, None))
        return target or default_path

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    def migrate_legacy_format(self) -> bool:
        """Copy currentUser -> user when only the legacy entry exists.

        Never overwrites an existing current-format entry. Idempotent and safe
        to call on every request/startup. Returns True if a copy happened.
        The legacy entry is left in place for older clients that still read it.
        """
        if self._storage.get(USER_KEY):
            return False
        legacy = self._storage.get(LEGACY_USER_KEY)
        if not legacy:
            return False
        self._storage[USER_KEY] = legacy
        logger.info("Migrated cached identity from legacy storage key")
        return True
