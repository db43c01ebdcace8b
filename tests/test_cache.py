import asyncio

import pytest

from chatsphere.console.cache import QueryCache, freeze_key


class Counter:
    def __init__(self, value=None):
        self.calls = 0
        self.value = value

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        return self.value if self.value is not None else self.calls


def test_freeze_key_is_structural():
    assert freeze_key(("/api/conversations", {"archived": False})) == freeze_key(
        ["/api/conversations", {"archived": False}]
    )
    assert freeze_key(("/api/conversations", {"archived": False})) != freeze_key(
        ("/api/conversations", {"archived": True})
    )


def test_fetch_uses_fresh_data_until_invalidated():
    async def scenario():
        cache = QueryCache()
        fetcher = Counter()
        key = ("/api/conversations", "c1", "messages")
        cache.register(key, fetcher)

        assert await cache.fetch(key) == 1
        assert await cache.fetch(key) == 1
        assert cache.invalidate(("/api/conversations",)) == [key]
        await cache.drain()
        assert cache.get(key) == 2
        assert not cache.is_stale(key)

    asyncio.run(scenario())


def test_invalidate_prefix_only_touches_matching_keys():
    async def scenario():
        cache = QueryCache()
        active = ("/api/conversations", {"archived": False})
        pins = ("/api/conversations/pins",)
        cache.set(active, {"items": []})
        cache.set(pins, {"pins": []})
        cache.set(("/api/ready-messages",), {"items": []})

        assert cache.invalidate(("/api/conversations",)) == []
        assert cache.is_stale(active)
        assert not cache.is_stale(pins)
        assert not cache.is_stale(("/api/ready-messages",))

    asyncio.run(scenario())


def test_invalidate_without_loop_only_marks_stale():
    cache = QueryCache()
    key = ("/api/conversations", {"archived": False})
    cache.register(key, Counter())
    cache.set(key, {"items": []})
    assert cache.invalidate(("/api/conversations",)) == []
    assert cache.is_stale(key)
    assert cache.get(key) == {"items": []}


def test_fetch_unregistered_stale_key_raises():
    async def scenario():
        cache = QueryCache()
        with pytest.raises(KeyError):
            await cache.fetch(("/api/nothing",))

    asyncio.run(scenario())


def test_refetch_prefix_runs_every_registered_key():
    async def scenario():
        cache = QueryCache()
        active, archived = Counter("active"), Counter("archived")
        cache.register(("/api/conversations", {"archived": False}), active)
        cache.register(("/api/conversations", {"archived": True}), archived)

        keys = await cache.refetch(("/api/conversations",), exact=False)
        assert len(keys) == 2
        assert cache.get(("/api/conversations", {"archived": True})) == "archived"
        assert await cache.refetch(("/api/conversations",), exact=True) == []

    asyncio.run(scenario())


def test_failed_refetch_keeps_previous_data():
    async def scenario():
        cache = QueryCache()
        key = ("/api/conversations", {"archived": False})

        async def broken():
            raise RuntimeError("offline")

        cache.set(key, {"items": [1]})
        cache.register(key, broken)
        await cache.refetch(key)
        assert cache.get(key) == {"items": [1]}

    asyncio.run(scenario())


def test_batch_refetches_each_stale_key_once():
    async def scenario():
        cache = QueryCache()
        active, messages = Counter(), Counter()
        active_key = ("/api/conversations", {"archived": False})
        messages_key = ("/api/conversations", "c1", "messages")
        cache.register(active_key, active)
        cache.register(messages_key, messages)
        await cache.fetch(active_key)
        await cache.fetch(messages_key)

        with cache.batch():
            cache.invalidate(("/api/conversations",))
            await cache.refetch(active_key)
            cache.invalidate(messages_key)
            await asyncio.sleep(0)
            assert messages.calls == 1
            assert cache.is_stale(messages_key)
        await cache.drain()

        assert active.calls == 2
        assert messages.calls == 2
        assert not cache.is_stale(active_key)

    asyncio.run(scenario())
