"""Per-key token bucket rate limiting.

Each API key gets a bucket of ``rate_limit`` tokens. A request spends one
token; once 60 seconds pass without an admitted request the bucket is refilled
completely (a hard reset, not a proportional top-up).

Buckets live in memory and are the source of truth while the process runs.
They are seeded lazily from the persisted ``tokens``/``last_used`` columns and
the newest values are written back by one background writer per key. A crash
before that write lands loses the latest decrements; the bucket is rebuilt
from the stale persisted values on the next start.
"""

import asyncio
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from llamagate.database import ApiKeyRecord, Database, utcnow
from llamagate.logging_config import get_logger, mask_key

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60


class Decision(str, Enum):
    ALLOW = "allow"
    RATE_LIMITED = "rate_limited"
    INVALID_KEY = "invalid_key"
    DEACTIVATED = "deactivated"


@dataclass
class RateLimitCacheEntry:
    tokens: int
    last_used_at: datetime


@dataclass
class RateLimitResult:
    """Result of an admission check."""
    decision: Decision
    remaining: int = 0
    retry_after: int = 0
    record: Optional[ApiKeyRecord] = None

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW


class RateLimiter:
    """In-memory token buckets keyed by API key, backed by the key store.

    Admission for one key is serialized by a per-key lock, so concurrent
    requests never spend the same token. Different keys never wait on each
    other.
    """


    def __init__(
        self,
        database: Database,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: Dict[str, RateLimitCacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        # Newest unsaved (tokens, last_used_at) per key and its single writer task.
        self._unsaved: Dict[str, Tuple[int, datetime]] = {}
        self._writers: Dict[str, asyncio.Task] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _hold(self, key: str):
        lock = self._lock_for(key)
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                if key not in self._entries:
                    self._locks.pop(key, None)

    async def admit(self, key: str, record: Optional[ApiKeyRecord] = None) -> RateLimitResult:
        """Decide whether a request for ``key`` may proceed, spending a token if so.

        Args:
            key: The caller's API key.
            record: An already fetched record for ``key``; looked up when omitted.

        Returns:
            RateLimitResult with the decision and remaining tokens.
        """
        if record is None:
            record = await self.database.get_key(key)
        if record is None:
            self.evict(key)
            return RateLimitResult(decision=Decision.INVALID_KEY)
        if not record.active:
            return RateLimitResult(decision=Decision.DEACTIVATED, record=record)

        async with self._hold(key):
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = RateLimitCacheEntry(
                    tokens=record.tokens, last_used_at=record.last_used_at
                )

            now = self._clock()
            elapsed = (now - entry.last_used_at).total_seconds()
            if elapsed >= self.window_seconds:
                entry.tokens = record.rate_limit

            if entry.tokens <= 0:
                retry_after = max(1, math.ceil(self.window_seconds - elapsed))
                logger.warning(
                    "rate_limit_exceeded",
                    api_key=mask_key(key),
                    rate_limit=record.rate_limit,
                    retry_after=retry_after,
                )
                return RateLimitResult(
                    decision=Decision.RATE_LIMITED, retry_after=retry_after, record=record
                )

            entry.tokens -= 1
            entry.last_used_at = now
            self._persist(key, entry.tokens, now)
            return RateLimitResult(decision=Decision.ALLOW, remaining=entry.tokens, record=record)

    def _persist(self, key: str, tokens: int, last_used_at: datetime) -> None:
        """Queue the bucket state for writing.

        At most one write per key is in flight; values queued meanwhile
        collapse into the newest one, so the store never ends on a stale count.
        """
        self._unsaved[key] = (tokens, last_used_at)
        if key not in self._writers:
            self._writers[key] = asyncio.create_task(self._write_latest(key))

    async def _write_latest(self, key: str) -> None:
        try:
            while key in self._unsaved:
                tokens, last_used_at = self._unsaved.pop(key)
                try:
                    await self.database.update_tokens(key, tokens, last_used_at)
                except Exception as e:
                    logger.error("token_update_failed", api_key=mask_key(key), error=str(e))
        finally:
            self._writers.pop(key, None)

    def snapshot(self, key: str) -> Optional[RateLimitCacheEntry]:
        """Return a copy of the cached bucket for ``key``, if any."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return RateLimitCacheEntry(tokens=entry.tokens, last_used_at=entry.last_used_at)

    def evict(self, key: str) -> None:
        """Forget the bucket for a removed or rotated key."""
        self._entries.pop(key, None)
        # A lock still in use is dropped by its last holder instead.
        if key not in self._lock_users:
            self._locks.pop(key, None)

    async def flush(self) -> None:
        """Wait for all queued token writes to reach the store."""
        while self._writers:
            await asyncio.gather(*list(self._writers.values()), return_exceptions=True)
