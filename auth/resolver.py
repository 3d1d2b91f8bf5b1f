"""
auth/resolver.py -- Resolve a bearer token to the user owning a live session.

One SessionResolver per request. It holds the token the caller presented
and memoizes the resolved record, so repeated "who is this?" checks within a
request cost nothing after the first.

Resolution order for get_user_data():
  1. No token                    -> None, no I/O.
  2. Memo already set            -> memo.
  3. Cache entry, uid == -1      -> None (token known invalid), store untouched.
  4. Cache entry, valid and live -> record, memoized, store untouched.
  5. Cache entry unusable        -> entry dropped, continue as a miss. This
     covers corrupt payloads, non-positive uids other than the -1 sentinel,
     and records whose expire has already passed.
  6. Store lookup on v_usess (token match, expire > now):
       found     -> positive cache entry, memoized, returned.
       not found -> token and memo cleared, negative entry cached.

Cache TTLs:
  Positive entries live for the session's remaining lifetime, capped at the
  configured expiration window, so a cached record never outlives its row.
  Negative entries live NEGATIVE_TTL seconds.

The store is the source of truth. The cache may be absent (cache=None) or
down; every path then falls through to the store.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from urllib.parse import quote

from auth.errors import AdminError, ErrorCode, Result
from auth.models import INVALID_SENTINEL_UID, SessionUser
from auth.store import AdminStore
from cache.store import SessionCache

logger = logging.getLogger("keygate.auth")

DEFAULT_TOKEN_NAME = "keygate"
DEFAULT_EXPIRATION = 7200
MIN_EXPIRATION = 600
NEGATIVE_TTL = 600


def require_fields(args: Mapping | None, keys: Sequence[str]) -> dict | None:
    """Return {key: str(value)} for keys, or None if any is missing or blank.

    Values are not trimmed; passwords may legitimately carry spaces.
    """
    if not args:
        return None
    values = {}
    for key in keys:
        value = args.get(key)
        if value is None:
            return None
        value = str(value)
        if not value.strip():
            return None
        values[key] = value
    return values


def _utcnow() -> datetime:
    # store timestamps are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _short(token: str) -> str:
    return f"{token[:8]}..."


class SessionResolver:
    """Per-request session state over a shared store and optional cache.

    Args:
        store:      Relational store; the source of truth.
        cache:      Optional look-aside cache. None disables caching.
        token_name: Name of the cookie / Authorization scheme carrying the
                    token. Also the cache key prefix.
        expiration: Standard session lifetime in seconds, at least 600.

    Raises:
        AdminError: TOKEN_NAME_NOT_SET or EXPIRATION_INVALID.
    """

    def __init__(
        self,
        store: AdminStore,
        cache: SessionCache | None = None,
        token_name: str = DEFAULT_TOKEN_NAME,
        expiration: int = DEFAULT_EXPIRATION,
    ) -> None:
        token_name = quote(token_name or "", safe="")
        if not token_name:
            logger.error("Token name not set")
            raise AdminError(ErrorCode.TOKEN_NAME_NOT_SET, "Token name not set.")
        if not expiration or expiration < MIN_EXPIRATION:
            logger.error("Invalid expiration value: %r", expiration)
            raise AdminError(ErrorCode.EXPIRATION_INVALID, "Invalid expiration value.")

        self.store = store
        self.cache = cache if cache is not None and cache.enabled else None
        self._token_name = token_name
        self._expiration = int(expiration)

        self._token_value: str | None = None
        self._user_data: SessionUser | None = None

    # ------------------------------------------------------------------
    # Configuration getters
    # ------------------------------------------------------------------

    def get_token_name(self) -> str:
        return self._token_name

    def get_expiration(self) -> int:
        return self._expiration

    @property
    def token_name(self) -> str:
        return self._token_name

    @property
    def expiration(self) -> int:
        return self._expiration

    # ------------------------------------------------------------------
    # Token state
    # ------------------------------------------------------------------

    @property
    def token_value(self) -> str | None:
        return self._token_value

    def set_token_value(self, value: str | None) -> None:
        """Adopt the bearer token for subsequent resolutions."""
        value = value or None
        if value != self._token_value:
            self._user_data = None
        self._token_value = value

    def reset(self) -> None:
        """Forget both the token and the resolved record."""
        self._token_value = None
        self._user_data = None

    def invalidate(self) -> None:
        """Drop the cache entry and memo for the current token, keeping the token.

        The next get_user_data() re-reads the store.
        """
        if self._token_value:
            self._cache_del(self._token_value)
        self._user_data = None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def get_user_data(self) -> SessionUser | None:
        """Return the user owning the current token's live session, or None."""
        token = self._token_value
        if not token:
            return None
        if self._user_data is not None:
            return self._user_data

        cached = self._cache_read(token)
        if cached is not None:
            if cached is _NEGATIVE:
                return None
            self._user_data = cached
            return cached

        session = self.store.get_session_user(token)
        if session is None:
            logger.debug("Session not found or expired: %s", _short(token))
            self.reset()
            self._cache_write(token, json.dumps({"uid": INVALID_SENTINEL_UID}), NEGATIVE_TTL)
            return None

        self._cache_write(token, session.to_json(), self._positive_ttl(session))
        self._user_data = session
        return session

    def is_logged_in(self) -> bool:
        return self.get_user_data() is not None

    def get_safe_user_data(self) -> Result:
        """Return the current user without credentials or session secrets."""
        udata = self.get_user_data()
        if udata is None:
            return Result(ErrorCode.NOT_LOGGED_IN)
        return Result(ErrorCode.OK, udata.safe_dict())

    def close_session(self, sid: int) -> None:
        """Expire one session row now and drop its cache entry.

        The current token's entry is dropped too. The row is kept for
        history. Other sessions of the same user are not affected.
        """
        closed = self.store.set_session_expiry(sid, 0)
        if closed:
            self._cache_del(closed)
        if self._token_value and self._token_value != closed:
            self._cache_del(self._token_value)

    # ------------------------------------------------------------------
    # Cache access
    # ------------------------------------------------------------------

    def cache_key(self, token: str) -> str:
        return f"{self._token_name}:{token}"

    def _positive_ttl(self, session: SessionUser) -> int:
        if session.expire is None:
            return self._expiration
        remaining = int((session.expire - _utcnow()).total_seconds())
        return max(1, min(remaining, self._expiration))

    def _cache_read(self, token: str):
        """Return _NEGATIVE, a live SessionUser, or None for a miss."""
        if self.cache is None:
            return None
        raw = self.cache.get(self.cache_key(token))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            uid = int(data["uid"])
            if uid == INVALID_SENTINEL_UID:
                logger.debug("Cache hit (invalid token): %s", _short(token))
                return _NEGATIVE
            if uid <= 0:
                raise ValueError(f"non-positive uid {uid}")
            data["uid"] = uid
            session = SessionUser.from_dict(data)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Discarding unreadable cache entry for %s: %s", _short(token), e)
            self._cache_del(token)
            return None
        if session.expire is not None and session.expire <= _utcnow():
            logger.debug("Discarding cached session past its expiry: %s", _short(token))
            self._cache_del(token)
            return None
        logger.debug("Cache hit: %s uid=%s", _short(token), session.uid)
        return session

    def _cache_write(self, token: str, payload: str, ttl: int) -> None:
        if self.cache is None:
            return
        self.cache.set(self.cache_key(token), payload, ttl=ttl)
        logger.debug("Session written to cache: %s ttl=%d", _short(token), ttl)

    def _cache_del(self, token: str) -> None:
        if self.cache is None:
            return
        self.cache.delete(self.cache_key(token))
        logger.debug("Session removed from cache: %s", _short(token))

    def drop_cached_tokens(self, tokens: Sequence[str]) -> None:
        """Remove the cache entries for the given tokens, e.g. every live session of a deleted user."""
        if self.cache is None or not tokens:
            return
        self.cache.delete(*(self.cache_key(t) for t in tokens))


# Marker returned by _cache_read for a confirmed-invalid token.
_NEGATIVE = object()
