import json

import httpx
import pytest

from foodlens_core.cache import SOURCE_CACHE, SOURCE_UPSTREAM, FrequencyGatedCache, MemoryStore, UpstashStore
from foodlens_core.errors import CacheStoreError


class BrokenStore:
    def __init__(self):
        self.calls = 0

    async def incr(self, key, ttl_seconds):
        self.calls += 1
        raise CacheStoreError("store down")

    async def get(self, key):
        self.calls += 1
        raise CacheStoreError("store down")

    async def set(self, key, value, ttl_seconds):
        self.calls += 1
        raise CacheStoreError("store down")


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_counter_window_resets_after_ttl(self, clock):
        store = MemoryStore(clock=clock)
        assert await store.incr("freq:a", 10) == 1
        assert await store.incr("freq:a", 10) == 2
        clock.advance(11)
        assert await store.incr("freq:a", 10) == 1

    @pytest.mark.asyncio
    async def test_values_expire(self, clock):
        store = MemoryStore(clock=clock)
        await store.set("k", {"v": 1}, 5)
        assert await store.get("k") == {"v": 1}
        clock.advance(5)
        assert await store.get("k") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_sweep_drops_untouched_expired_keys(self, clock):
        store = MemoryStore(clock=clock, sweep_every=4)
        for i in range(3):
            await store.incr(f"freq:q{i}", 10)
        await store.set("search:q0", ["x"], 10)
        clock.advance(11)

        assert store.counter_count == 3
        assert len(store) == 1
        await store.incr("freq:fresh", 10)
        await store.incr("freq:other", 10)
        await store.incr("freq:more", 10)
        assert store.counter_count == 6
        await store.set("search:fresh", ["y"], 10)

        assert store.counter_count == 3
        assert len(store) == 1
        assert await store.get("search:fresh") == ["y"]

    @pytest.mark.asyncio
    async def test_cap_evicts_entries_closest_to_expiry(self, clock):
        store = MemoryStore(clock=clock, max_entries=2, sweep_every=1000)
        await store.set("a", 1, 30)
        await store.set("b", 2, 10)
        await store.set("c", 3, 20)

        assert len(store) == 2
        assert await store.get("b") is None
        assert await store.get("a") == 1
        assert await store.get("c") == 3

    @pytest.mark.asyncio
    async def test_cap_prefers_expired_entries(self, clock):
        store = MemoryStore(clock=clock, max_entries=2, sweep_every=1000)
        for i in range(2):
            await store.incr(f"freq:old{i}", 5)
        clock.advance(6)
        await store.incr("freq:new", 100)

        assert store.counter_count == 1
        assert await store.incr("freq:new", 100) == 2


class TestFrequencyGate:
    @pytest.mark.asyncio
    async def test_write_below_threshold_leaves_store_unchanged(self, clock):
        store = MemoryStore(clock=clock)
        cache = FrequencyGatedCache(store, threshold=3, clock=clock)

        read = await cache.read("search:oreo")
        assert not read.hit
        assert read.frequency == 1
        assert read.source == SOURCE_UPSTREAM
        assert await cache.write("search:oreo", ["x"], read.frequency) is False
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_write_at_threshold_is_readable_until_ttl(self, clock):
        store = MemoryStore(clock=clock)
        cache = FrequencyGatedCache(store, threshold=3, ttl_seconds=100, clock=clock)

        for _ in range(2):
            await cache.read("search:oreo")
        read = await cache.read("search:oreo")
        assert read.frequency == 3
        assert await cache.write("search:oreo", ["x"], read.frequency) is True

        hit = await cache.read("search:oreo")
        assert hit.hit
        assert hit.value == ["x"]
        assert hit.source == SOURCE_CACHE

        clock.advance(101)
        assert not (await cache.read("search:oreo")).hit

    @pytest.mark.asyncio
    async def test_bypass_skips_store(self, clock):
        store = MemoryStore(clock=clock)
        cache = FrequencyGatedCache(store, threshold=1, clock=clock)
        read = await cache.read("k", bypass=True)
        assert read.frequency == 1
        assert await cache.write("k", 1, 99, bypass=True) is False
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_no_store_is_a_permanent_miss(self):
        cache = FrequencyGatedCache(None)
        read = await cache.read("k")
        assert (read.value, read.frequency) == (None, 0)
        assert await cache.write("k", 1, 10) is False
        assert not cache.available


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_repeated_failures_and_recovers(self, clock):
        store = BrokenStore()
        cache = FrequencyGatedCache(store, failure_threshold=3, disable_window_seconds=60, clock=clock)

        for _ in range(3):
            read = await cache.read("k")
            assert not read.hit
        assert cache.circuit_open
        calls = store.calls

        await cache.read("k")
        assert await cache.write("k", 1, 10) is False
        assert store.calls == calls

        clock.advance(61)
        assert not cache.circuit_open
        await cache.read("k")
        assert store.calls == calls + 1

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, clock):
        store = BrokenStore()
        cache = FrequencyGatedCache(store, failure_threshold=2, clock=clock)
        await cache.read("k")
        cache.store = MemoryStore(clock=clock)
        await cache.read("k")
        cache.store = store
        await cache.read("k")
        assert not cache.circuit_open


class FakeUpstash:
    """Minimal Upstash REST emulation over ``httpx.MockTransport``."""

    def __init__(self):
        self.data = {}
        self.commands = []

    def __call__(self, request):
        assert request.headers["authorization"] == "Bearer secret"
        cmd = json.loads(request.read())
        self.commands.append(cmd)
        op = cmd[0]
        if op == "INCR":
            self.data[cmd[1]] = int(self.data.get(cmd[1], 0)) + 1
            return httpx.Response(200, json={"result": self.data[cmd[1]]})
        if op == "EXPIRE":
            return httpx.Response(200, json={"result": 1})
        if op == "GET":
            return httpx.Response(200, json={"result": self.data.get(cmd[1])})
        if op == "SET":
            self.data[cmd[1]] = cmd[2]
            return httpx.Response(200, json={"result": "OK"})
        return httpx.Response(400, json={"error": f"unknown command {op}"})


class TestUpstashStore:
    @pytest.mark.asyncio
    async def test_round_trip_through_rest_commands(self):
        fake = FakeUpstash()
        async with httpx.AsyncClient(transport=httpx.MockTransport(fake)) as http:
            store = UpstashStore(http, url="https://redis.test", token="secret")
            assert await store.incr("freq:k", 60) == 1
            assert await store.incr("freq:k", 60) == 2
            await store.set("k", {"code": "1"}, 60)
            assert await store.get("k") == {"code": "1"}
            assert await store.get("missing") is None

        assert ["EXPIRE", "freq:k", "60"] in fake.commands
        assert sum(1 for c in fake.commands if c[0] == "EXPIRE") == 1
        assert ["SET", "k", json.dumps({"code": "1"}), "EX", "60"] in fake.commands

    @pytest.mark.asyncio
    async def test_error_reply_raises(self):
        def handler(request):
            return httpx.Response(200, json={"error": "WRONGPASS"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            store = UpstashStore(http, url="https://redis.test", token="secret")
            with pytest.raises(CacheStoreError):
                await store.get("k")

    @pytest.mark.asyncio
    async def test_gate_degrades_when_upstash_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            cache = FrequencyGatedCache(UpstashStore(http, url="https://redis.test", token="secret"))
            read = await cache.read("search:x")
        assert not read.hit
        assert read.frequency == 0
