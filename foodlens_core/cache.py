"""Frequency-gated key-value cache with a circuit breaker over the store."""

from __future__ import annotations

import heapq
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from foodlens_core.errors import CacheStoreError

logger = logging.getLogger("foodlens_core.cache")

SOURCE_CACHE = "cache"
SOURCE_UPSTREAM = "openfoodfacts"


@dataclass(frozen=True)
class CacheRead:
    value: Any | None
    frequency: int
    source: str = SOURCE_UPSTREAM

    @property
    def hit(self) -> bool:
        return self.value is not None


class CacheStore(Protocol):
    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...


class MemoryStore:
    """Process-local store.

    Expired entries are evicted when touched and by a sweep every
    ``sweep_every`` writes. Each table holds at most ``max_entries`` keys;
    past that the entries closest to expiry are dropped first.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        *,
        max_entries: int = 10000,
        sweep_every: int = 256,
    ) -> None:
        self._clock = clock
        self.max_entries = max(1, int(max_entries))
        self.sweep_every = max(1, int(sweep_every))
        self._values: dict[str, tuple[Any, float]] = {}
        self._counters: dict[str, tuple[int, float]] = {}
        self._writes = 0

    async def incr(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        count, expires_at = self._counters.get(key, (0, 0.0))
        if count and expires_at <= now:
            count = 0
        if count == 0:
            expires_at = now + ttl_seconds
        count += 1
        self._counters[key] = (count, expires_at)
        self._after_write(self._counters, now)
        return count

    async def get(self, key: str) -> Any | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        now = self._clock()
        self._values[key] = (value, now + ttl_seconds)
        self._after_write(self._values, now)

    def purge_expired(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        removed = 0
        for table in (self._values, self._counters):
            stale = [key for key, (_, expires_at) in table.items() if expires_at <= now]
            for key in stale:
                del table[key]
            removed += len(stale)
        return removed

    def _after_write(self, table: dict[str, tuple[Any, float]], now: float) -> None:
        self._writes += 1
        if self._writes % self.sweep_every == 0:
            self.purge_expired(now)
        if len(table) <= self.max_entries:
            return
        self.purge_expired(now)
        overflow = len(table) - self.max_entries
        if overflow > 0:
            for key, _ in heapq.nsmallest(overflow, table.items(), key=lambda item: item[1][1]):
                del table[key]
            logger.warning("Memory cache full; evicted %d entries closest to expiry", overflow)

    @property
    def counter_count(self) -> int:
        return len(self._counters)

    def __len__(self) -> int:
        return len(self._values)


class UpstashStore:
    """Upstash Redis over its REST API (one command per request)."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        url: str,
        token: str,
        timeout_seconds: float = 3.0,
    ) -> None:
        self.http = http
        self.url = url.rstrip("/")
        self.token = token
        self.timeout_seconds = max(0.5, float(timeout_seconds))

    async def _command(self, *args: Any) -> Any:
        try:
            resp = await self.http.post(
                self.url,
                headers={"Authorization": f"Bearer {self.token}"},
                json=[str(a) for a in args],
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CacheStoreError(f"Upstash {args[0]} failed", component="upstash", original_error=exc)
        if not isinstance(body, dict) or "error" in body:
            detail = body.get("error") if isinstance(body, dict) else body
            raise CacheStoreError(f"Upstash {args[0]} error: {detail}", component="upstash")
        return body.get("result")

    async def incr(self, key: str, ttl_seconds: int) -> int:
        count = int(await self._command("INCR", key))
        if count == 1:
            await self._command("EXPIRE", key, int(ttl_seconds))
        return count

    async def get(self, key: str) -> Any | None:
        raw = await self._command("GET", key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._command("SET", key, json.dumps(value), "EX", int(ttl_seconds))


class FrequencyGatedCache:
    """Only persists a value once its key has been read ``threshold`` times.

    Store failures never propagate: reads degrade to a miss and writes to a
    no-op. After ``failure_threshold`` consecutive failures the store is
    skipped for ``disable_window_seconds``.
    """

    def __init__(
        self,
        store: CacheStore | None,
        *,
        threshold: int = 3,
        ttl_seconds: int = 86400,
        failure_threshold: int = 3,
        disable_window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.threshold = max(1, int(threshold))
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.failure_threshold = max(1, int(failure_threshold))
        self.disable_window_seconds = max(0.0, float(disable_window_seconds))
        self._clock = clock
        self._failures = 0
        self._disabled_until = 0.0

    @property
    def circuit_open(self) -> bool:
        return self._disabled_until > self._clock()

    @property
    def available(self) -> bool:
        return self.store is not None and not self.circuit_open

    def _record_failure(self, op: str, key: str) -> None:
        self._failures += 1
        logger.warning("Cache %s failed for key=%s (consecutive=%d)", op, key, self._failures, exc_info=True)
        if self._failures >= self.failure_threshold:
            self._disabled_until = self._clock() + self.disable_window_seconds
            self._failures = 0
            logger.warning("Cache disabled for %.0fs after repeated store failures", self.disable_window_seconds)

    def _record_success(self) -> None:
        self._failures = 0

    async def read(self, key: str, *, bypass: bool = False) -> CacheRead:
        if bypass:
            return CacheRead(value=None, frequency=1)
        if not self.available:
            return CacheRead(value=None, frequency=0)
        try:
            frequency = await self.store.incr(f"freq:{key}", self.ttl_seconds)
            value = await self.store.get(key)
        except CacheStoreError:
            self._record_failure("read", key)
            return CacheRead(value=None, frequency=0)
        self._record_success()
        if value is not None:
            return CacheRead(value=value, frequency=frequency, source=SOURCE_CACHE)
        return CacheRead(value=None, frequency=frequency)

    async def write(self, key: str, value: Any, frequency: int, *, bypass: bool = False) -> bool:
        """Returns True when the value was persisted."""
        if bypass or frequency < self.threshold or not self.available:
            return False
        try:
            await self.store.set(key, value, self.ttl_seconds)
        except CacheStoreError:
            self._record_failure("write", key)
            return False
        self._record_success()
        return True
