"""Selector cache: keys, hits, success counting, invalidation, failures."""

import asyncio
import logging

from clipaible.executor.schemas import SelectorSet
from clipaible.executor.selector_cache import SelectorCache, cache_key
from clipaible.executor.storage import MemoryStorage
from tests.fakes import FailingStorage, FakeClock

DAY = 24 * 3600

SELECTORS = SelectorSet(container="article", content_selector=".post-body", exclude=[".share"])


def test_cache_key_normalizes_host():
    assert cache_key("https://www.Example.com/a/b?c=1") == "example.com"
    assert cache_key("blog.example.com") == "blog.example.com"
    assert cache_key("") == ""


def test_put_then_get_on_same_site():
    async def scenario():
        cache = SelectorCache(MemoryStorage(), clock=FakeClock())
        assert await cache.put("https://www.example.com/one", SELECTORS)
        entry = await cache.get("https://example.com/two")
        return entry

    entry = asyncio.run(scenario())
    assert entry is not None
    assert entry.key == "example.com"
    assert entry.selectors.content_selector == ".post-body"
    assert entry.success_count == 0


def test_old_entries_are_still_served():
    async def scenario():
        clock = FakeClock()
        cache = SelectorCache(MemoryStorage(), clock=clock)
        await cache.put("example.com", SELECTORS)
        clock.advance(14 * DAY)
        return await cache.get("example.com"), clock

    entry, clock = asyncio.run(scenario())
    assert entry is not None
    assert entry.last_used == clock.now


def test_selectors_without_container_or_content_are_not_cached():
    async def scenario():
        storage = MemoryStorage()
        cache = SelectorCache(storage)
        stored = await cache.put("example.com", SelectorSet(title="h1"))
        return stored, storage

    stored, storage = asyncio.run(scenario())
    assert stored is False
    assert storage.cache_entries == {}


def test_only_mark_success_counts_and_hits_log_trust(caplog):
    async def scenario():
        cache = SelectorCache(MemoryStorage())
        await cache.put("example.com", SELECTORS)
        await cache.mark_success("example.com")
        first = await cache.get("example.com")
        await cache.mark_success("example.com")
        second = await cache.get("example.com")
        return first, second

    with caplog.at_level(logging.INFO, logger="clipaible.executor.selector_cache"):
        first, second = asyncio.run(scenario())

    assert first.success_count == 1
    assert second.success_count == 2
    hits = [r.getMessage() for r in caplog.records if "Hit:" in r.getMessage()]
    assert "unproven" in hits[0]
    assert "(proven" in hits[1]


def test_reput_replaces_selectors_and_keeps_count():
    async def scenario():
        cache = SelectorCache(MemoryStorage())
        await cache.put("example.com", SELECTORS)
        await cache.put("example.com", SelectorSet(content_selector="main"))
        return await cache.get("example.com")

    entry = asyncio.run(scenario())
    assert entry.selectors.content_selector == "main"
    assert entry.success_count == 0


def test_invalidate_removes_entry_and_index():
    async def scenario():
        storage = MemoryStorage()
        cache = SelectorCache(storage)
        await cache.put("example.com", SELECTORS)
        await cache.put("other.org", SELECTORS)
        await cache.invalidate("https://www.example.com/x")
        return storage, await cache.get("example.com")

    storage, entry = asyncio.run(scenario())
    assert entry is None
    assert storage.cache_index == ["other.org"]


def test_stats_delete_and_clear():
    async def scenario():
        clock = FakeClock()
        cache = SelectorCache(MemoryStorage(), clock=clock)
        await cache.put("a.com", SELECTORS)
        clock.advance(60)
        await cache.put("b.com", SELECTORS)
        await cache.mark_success("b.com")
        stats = await cache.stats()
        deleted = await cache.delete("a.com")
        missing = await cache.delete("a.com")
        cleared = await cache.clear()
        return stats, deleted, missing, cleared, await cache.stats()

    stats, deleted, missing, cleared, after = asyncio.run(scenario())
    assert stats["domain_count"] == 2
    assert stats["total_successes"] == 1
    assert [d["domain"] for d in stats["domains"]] == ["b.com", "a.com"]
    assert deleted is True
    assert missing is False
    assert cleared == 1
    assert after["domain_count"] == 0


def test_disabled_reads_and_writes():
    async def scenario():
        storage = MemoryStorage()
        writer = SelectorCache(storage, write_enabled=False)
        assert not await writer.put("example.com", SELECTORS)
        await SelectorCache(storage).put("example.com", SELECTORS)
        return await SelectorCache(storage, read_enabled=False).get("example.com")

    assert asyncio.run(scenario()) is None


def test_storage_failures_are_swallowed():
    async def scenario():
        cache = SelectorCache(FailingStorage())
        put = await cache.put("example.com", SELECTORS)
        got = await cache.get("example.com")
        await cache.mark_success("example.com")
        await cache.invalidate("example.com")
        return put, got, await cache.stats()

    put, got, stats = asyncio.run(scenario())
    assert put is False
    assert got is None
    assert stats["domain_count"] == 0


def test_malformed_entry_is_a_miss():
    async def scenario():
        storage = MemoryStorage()
        await storage.write_cache_entry("example.com", {"key": "example.com", "selectors": "garbage"})
        return await SelectorCache(storage).get("example.com"), storage

    entry, storage = asyncio.run(scenario())
    assert entry is None
    assert "example.com" not in storage.cache_entries
