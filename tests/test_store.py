from datetime import datetime, timedelta, timezone

import pytest

from pixie.settings import Settings
from pixie.events import OpenContext
from pixie.pipeline.recorder import create_pixel, record_open
from pixie.pipeline.report import build_report
from pixie.store import MemoryStore, RedisStore, build_store, event_key, event_key_prefix, meta_key


def test_key_layout():
    assert meta_key("abc") == "meta:abc"
    assert event_key_prefix("abc") == "events:abc:"
    assert event_key("abc", 1700000000123, "0f0f0f") == "events:abc:1700000000123-0f0f0f"


def test_event_keys_sort_in_time_order():
    keys = [event_key("p", ms, "ffffff") for ms in (999, 1000, 1700000000000)]
    assert sorted(keys) == keys


@pytest.mark.asyncio
async def test_memory_store_get_put_delete():
    s = MemoryStore()
    assert await s.get("missing") is None
    await s.put("k", '{"a": 1}')
    assert await s.get("k") == '{"a": 1}'
    assert await s.get("k", "json") == {"a": 1}
    await s.delete("k")
    assert await s.get("k") is None
    await s.delete("k")


@pytest.mark.asyncio
async def test_memory_store_list_is_prefix_scoped_and_paged():
    s = MemoryStore()
    for i in range(5):
        await s.put(f"events:a:{i}", "{}")
    await s.put("events:ab:0", "{}")
    await s.put("meta:a", "{}")

    page = await s.list("events:a:", limit=10)
    assert page.keys == [f"events:a:{i}" for i in range(5)]
    assert page.complete

    page = await s.list("events:a:", limit=3)
    assert page.keys == ["events:a:0", "events:a:1", "events:a:2"]
    assert not page.complete

    page = await s.list("events:a:", limit=5)
    assert len(page.keys) == 5
    assert page.complete


def test_build_store_picks_backend():
    assert isinstance(build_store(Settings(store_backend="memory", _env_file=None)), MemoryStore)
    assert isinstance(build_store(Settings(store_backend="redis", _env_file=None)), RedisStore)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisStore."""

    def __init__(self):
        self.data = {}
        self.matches = []
        self.calls = []
        self.closed = False

    async def get(self, key):
        self.calls.append("GET")
        return self.data.get(key)

    async def mget(self, keys):
        self.calls.append("MGET")
        return [self.data.get(k) for k in keys]

    async def set(self, key, value):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)

    async def scan_iter(self, match=None, count=None):
        self.matches.append(match)
        prefix = match[:-1].replace("\\", "")
        for k in list(self.data):
            if k.startswith(prefix):
                yield k

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_redis_store_roundtrip_and_list():
    fake = FakeRedis()
    s = RedisStore(fake)
    await s.put("meta:x", '{"id": "x"}')
    for ms in (3, 1, 2):
        await s.put(event_key("x", ms, "aa"), "{}")
    assert await s.get("meta:x", "json") == {"id": "x"}

    page = await s.list("events:x:", limit=10)
    assert page.keys == [event_key("x", ms, "aa") for ms in (1, 2, 3)]
    assert page.complete
    assert fake.matches[-1] == "events:x:*"

    page = await s.list("events:x:", limit=2)
    assert len(page.keys) == 2
    assert not page.complete

    await s.delete("meta:x")
    assert await s.get("meta:x") is None
    assert await s.ping() is True


@pytest.mark.asyncio
async def test_redis_store_escapes_glob_characters():
    fake = FakeRedis()
    await RedisStore(fake).list("events:a*b?[c]:", limit=1)
    assert fake.matches[-1] == "events:a\\*b\\?\\[c\\]:*"


@pytest.mark.asyncio
async def test_get_many_keeps_order_and_missing_keys():
    for s in (MemoryStore(), RedisStore(FakeRedis())):
        await s.put("a", '{"n": 1}')
        await s.put("c", '{"n": 3}')
        assert await s.get_many(["c", "b", "a"], "json") == [{"n": 3}, None, {"n": 1}]
        assert await s.get_many([]) == []


@pytest.mark.asyncio
async def test_full_page_report_reads_events_in_one_round_trip():
    fake = FakeRedis()
    s = RedisStore(fake)
    meta, token = await create_pixel(s)
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i in range(1000):
        await record_open(s, meta.id, OpenContext(ip="10.0.0.1"), now=base + timedelta(milliseconds=i))

    fake.calls.clear()
    rep = await build_report(s, meta.id, token, page_limit=1000)
    assert len(rep.events) == 1000
    # one GET for the meta, one MGET for every event
    assert fake.calls == ["GET", "MGET"]


@pytest.mark.asyncio
async def test_redis_store_close():
    fake = FakeRedis()
    await RedisStore(fake).close()
    assert fake.closed
