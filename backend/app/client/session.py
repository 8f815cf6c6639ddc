"""
Access-token cache with single-flight refresh.

One SessionManager is created per client process and shared by every caller that
needs a bearer token. Tokens are reused until they are within the refresh buffer
of their `exp` claim; at that point exactly one refresh runs and concurrent callers
join it instead of hitting the identity provider themselves.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

# Lifetime assumed for tokens whose payload cannot be decoded.
FALLBACK_TTL_S = 4 * 3600

TokenFetcher = Callable[[], Awaitable[str]]


class TokenState(str, Enum):
    ABSENT = "absent"
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


def decode_expiry(token: str, *, now: Optional[float] = None) -> float:
    """
    Return the token's `exp` claim as epoch seconds.

    The signature is not verified; the server does that. Anything that is not a
    JWT with a numeric `exp` is assumed to live FALLBACK_TTL_S from `now`.
    """
    current = time.time() if now is None else now
    try:
        payload_b64 = token.split(".")[1]
        padded = payload_b64 + "=" * (-len(payload_b64) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded))
        exp = claims.get("exp")
        if isinstance(exp, (int, float)) and not isinstance(exp, bool):
            return float(exp)
    except (IndexError, ValueError, AttributeError):
        pass
    return current + FALLBACK_TTL_S


@dataclass
class CachedToken:
    token: str
    expires_at: float


class InMemoryTokenStore:
    """Process-local token storage."""

    def __init__(self):
        self._cached: Optional[CachedToken] = None

    def load(self) -> Optional[CachedToken]:
        return self._cached

    def save(self, cached: CachedToken) -> None:
        self._cached = cached

    def clear(self) -> None:
        self._cached = None


class FileTokenStore(InMemoryTokenStore):
    """
    Token storage persisted to a JSON file, so a restarted client can reuse
    a token that is still valid.
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path

    def load(self) -> Optional[CachedToken]:
        if self._cached is not None:
            return self._cached
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._cached = CachedToken(token=data["token"], expires_at=float(data["expires_at"]))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable token cache %s: %s", self.path, e)
            return None
        return self._cached

    def save(self, cached: CachedToken) -> None:
        super().save(cached)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"token": cached.token, "expires_at": cached.expires_at}, f)

    def clear(self) -> None:
        super().clear()
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


@dataclass
class SessionStats:
    refreshes: int = 0
    failures: int = 0
    joins: int = 0
    join_timeouts: int = 0
    cache_hits: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class SessionManager:
    """
    Owns the cached token and the single in-flight refresh.

    `get_valid_token()` never raises on refresh failure: callers get the cached
    token while it is still usable, else None. A failure schedules the next
    attempt `backoff_delay()` seconds later; until then callers get the cached
    token without waiting. After `max_failures` consecutive failures refreshes
    stop and `needs_reconnect` is set until `reconnect()`.
    """

    def __init__(
        self,
        fetch_token: TokenFetcher,
        *,
        store: Optional[InMemoryTokenStore] = None,
        refresh_buffer_s: float = 300.0,
        join_timeout_s: float = 2.0,
        base_backoff_s: float = 1.0,
        max_backoff_s: float = 30.0,
        max_failures: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch_token = fetch_token
        self.store = store or InMemoryTokenStore()
        self.refresh_buffer_s = refresh_buffer_s
        self.join_timeout_s = join_timeout_s
        self.base_backoff_s = base_backoff_s
        self.max_backoff_s = max_backoff_s
        self.max_failures = max_failures
        self._clock = clock

        self._refresh_task: Optional[asyncio.Task] = None
        self._failures = 0
        self._next_attempt_at = 0.0
        self._needs_reconnect = False
        self.stats = SessionStats()

    # ==================== State ====================

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def next_attempt_at(self) -> float:
        return self._next_attempt_at

    @property
    def needs_reconnect(self) -> bool:
        return self._needs_reconnect

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def state(self) -> TokenState:
        cached = self.store.load()
        if cached is None:
            return TokenState.ABSENT
        now = self._clock()
        if cached.expires_at <= now:
            return TokenState.EXPIRED
        if cached.expires_at <= now + self.refresh_buffer_s:
            return TokenState.EXPIRING_SOON
        return TokenState.VALID

    def _usable_token(self) -> Optional[str]:
        cached = self.store.load()
        if cached is None or cached.expires_at <= self._clock():
            return None
        return cached.token

    def backoff_delay(self) -> float:
        """Delay before the next refresh attempt, in seconds."""
        if not self._failures:
            return 0.0
        return min(self.base_backoff_s * (2 ** self._failures), self.max_backoff_s)

    # ==================== Operations ====================

    async def get_valid_token(self, force: bool = False) -> Optional[str]:
        if not force and self.state() is TokenState.VALID:
            self.stats.cache_hits += 1
            return self.store.load().token

        if self._needs_reconnect or self._clock() < self._next_attempt_at:
            return self._usable_token()

        if self.refreshing:
            self.stats.joins += 1
            return await self._wait(self._refresh_task)

        self._refresh_task = asyncio.create_task(self._refresh())
        if self._usable_token() is None:
            # Nothing to fall back to; wait for the refresh to finish.
            return await asyncio.shield(self._refresh_task)
        return await self._wait(self._refresh_task)

    async def _wait(self, task: asyncio.Task) -> Optional[str]:
        try:
            token = await asyncio.wait_for(asyncio.shield(task), self.join_timeout_s)
        except asyncio.TimeoutError:
            self.stats.join_timeouts += 1
            logger.debug("Refresh still running after %.1fs, using cached token", self.join_timeout_s)
            return self._usable_token()
        return token if token is not None else self._usable_token()

    async def _refresh(self) -> Optional[str]:
        try:
            self.stats.refreshes += 1
            try:
                token = await self._fetch_token()
            except Exception as e:
                self._record_failure(e)
                return None
            if not token:
                self._record_failure(ValueError("empty token"))
                return None

            self.store.save(CachedToken(token=token, expires_at=decode_expiry(token, now=self._clock())))
            self._failures = 0
            self._next_attempt_at = 0.0
            return token
        finally:
            self._refresh_task = None

    def _record_failure(self, exc: BaseException) -> None:
        self._failures += 1
        self.stats.failures += 1
        self._next_attempt_at = self._clock() + self.backoff_delay()
        logger.warning(
            "Token refresh failed (%d/%d), next attempt in %.1fs: %s",
            self._failures, self.max_failures, self.backoff_delay(), exc,
        )
        if self._failures >= self.max_failures:
            self._needs_reconnect = True
            logger.error("Token refresh failed %d times; reconnect required", self._failures)

    async def reconnect(self) -> Optional[str]:
        """Clear the failure state and fetch a fresh token immediately."""
        self._failures = 0
        self._next_attempt_at = 0.0
        self._needs_reconnect = False
        return await self.get_valid_token(force=True)

    def invalidate(self) -> None:
        """Drop the cached token (e.g. after the server rejected it)."""
        self.store.clear()


@dataclass
class SupabaseTokenFetcher:
    """Exchanges a refresh token for a new access token; rotates the refresh token."""

    supabase_url: str
    anon_key: str
    refresh_token: str
    timeout_s: float = 10.0
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = field(default=None, repr=False)

    def _client(self) -> httpx.AsyncClient:
        if self.client_factory is not None:
            return self.client_factory()
        return httpx.AsyncClient(timeout=self.timeout_s)

    async def __call__(self) -> str:
        url = self.supabase_url.rstrip("/") + "/auth/v1/token"
        async with self._client() as client:
            resp = await client.post(
                url,
                params={"grant_type": "refresh_token"},
                headers={"apikey": self.anon_key},
                json={"refresh_token": self.refresh_token},
            )
        resp.raise_for_status()
        data = resp.json()
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Token response has no access_token")
        if data.get("refresh_token"):
            self.refresh_token = data["refresh_token"]
        return access_token
