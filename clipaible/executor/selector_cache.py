"""Per-site cache of AI-inferred CSS selectors.

Selector inference is the expensive AI call in selector mode, and sites
rarely change their article markup, so the selectors that worked for a
site are kept and reused on the next clip from the same site.

Invalidation is reactive only: there is no TTL, and an entry is removed
the moment an extraction using it fails or comes back empty. The cache is
an optimization. Every storage failure is logged and swallowed: a failed
read is a miss, a failed write is a no-op.
"""

import logging
import time
from typing import Callable, Optional
from urllib.parse import urlparse

from clipaible.executor.schemas import SelectorCacheEntry, SelectorSet

logger = logging.getLogger(__name__)

# Successes after which a hit is logged as proven
MIN_SUCCESS_FOR_TRUST = 2


def cache_key(url_or_host: str) -> str:
    """Normalize a URL or hostname to a cache key (lower-case host, no 'www.')."""
    value = (url_or_host or "").strip()
    if "://" not in value:
        value = f"http://{value}"
    host = (urlparse(value).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


class SelectorCache:
    """Selector cache over a HostStorage.

    Args:
        storage: Where entries and the key index live
        clock: Returns epoch seconds (injectable for tests)
        read_enabled: False turns every get() into a miss
        write_enabled: False turns put() into a no-op
    """

    def __init__(
        self,
        storage,
        clock: Callable[[], float] = time.time,
        read_enabled: bool = True,
        write_enabled: bool = True,
    ):
        self._storage = storage
        self._clock = clock
        self.read_enabled = read_enabled
        self.write_enabled = write_enabled

    async def get(self, key: str) -> Optional[SelectorCacheEntry]:
        """Return the cached entry for a site, or None on a miss or any failure."""
        key = cache_key(key)
        if not key or not self.read_enabled:
            return None

        try:
            raw = await self._storage.read_cache_entry(key)
        except Exception as e:
            logger.warning(f"[selector-cache] Read failed for {key} (treating as miss): {e}")
            return None
        if not raw:
            logger.debug(f"[selector-cache] Miss: {key}")
            return None

        try:
            entry = SelectorCacheEntry(**raw)
        except ValueError as e:
            logger.warning(f"[selector-cache] Discarding malformed entry for {key}: {e}")
            await self._remove(key)
            return None

        entry.last_used = self._clock()
        await self._write(entry)

        age_min = int((self._clock() - entry.created) / 60)
        trust = "proven" if entry.success_count >= MIN_SUCCESS_FOR_TRUST else "unproven"
        logger.info(
            f"[selector-cache] Hit: {key} ({trust}, successes={entry.success_count}, "
            f"age={age_min} min)"
        )
        return entry

    async def put(self, key: str, selectors: SelectorSet) -> bool:
        """Store selectors that just produced a good extraction.

        A new entry starts at success_count 0; only mark_success() counts
        successes. Re-putting an existing site replaces its selectors and
        keeps its counters. Selectors with neither a container nor a content
        selector are not worth caching and are refused.

        Returns True if the entry was written.
        """
        key = cache_key(key)
        if not key or not self.write_enabled:
            return False
        if not selectors.has_content_selectors:
            logger.info(f"[selector-cache] Not caching {key}: no container/content selector")
            return False

        now = self._clock()
        existing = await self._read_entry(key)
        if existing is not None:
            entry = existing.model_copy(update={
                "selectors": selectors,
                "last_used": now,
            })
        else:
            entry = SelectorCacheEntry(
                key=key,
                selectors=selectors,
                success_count=0,
                failure_count=0,
                last_used=now,
                created=now,
            )

        if not await self._write(entry):
            return False
        await self._add_to_index(key)
        logger.info(f"[selector-cache] Cached selectors for {key} (successes={entry.success_count})")
        return True

    async def mark_success(self, key: str) -> None:
        """Record that a cached entry produced a good extraction again."""
        key = cache_key(key)
        entry = await self._read_entry(key)
        if entry is None:
            return
        entry.success_count += 1
        entry.last_used = self._clock()
        await self._write(entry)
        logger.debug(f"[selector-cache] Success recorded: {key} (successes={entry.success_count})")

    async def invalidate(self, key: str) -> None:
        """Remove a site's entry after an extraction that used it failed."""
        key = cache_key(key)
        if not key:
            return
        entry = await self._read_entry(key)
        await self._remove(key)
        if entry is not None:
            logger.warning(
                f"[selector-cache] Invalidated {key} "
                f"(had {entry.success_count} successes)"
            )

    async def delete(self, key: str) -> bool:
        """Remove one site on request. Returns True if it was cached."""
        key = cache_key(key)
        existed = await self._read_entry(key) is not None
        await self._remove(key)
        return existed

    async def clear(self) -> int:
        """Remove every cached site. Returns how many were removed."""
        keys = await self._read_index()
        for key in keys:
            await self._remove(key, update_index=False)
        try:
            await self._storage.write_cache_index([])
        except Exception as e:
            logger.warning(f"[selector-cache] Failed to reset index: {e}")
        logger.info(f"[selector-cache] Cleared {len(keys)} entries")
        return len(keys)

    async def stats(self) -> dict:
        """Entry count, total successes, and entries by most recent use."""
        entries = []
        for key in await self._read_index():
            entry = await self._read_entry(key)
            if entry is not None:
                entries.append(entry)

        now = self._clock()
        entries.sort(key=lambda e: e.last_used, reverse=True)
        return {
            "domain_count": len(entries),
            "total_successes": sum(e.success_count for e in entries),
            "domains": [
                {
                    "domain": e.key,
                    "success_count": e.success_count,
                    "last_used": e.last_used,
                    "age_hours": round((now - e.last_used) / 3600, 1),
                }
                for e in entries
            ],
        }

    # --- storage helpers (never raise) ---

    async def _read_entry(self, key: str) -> Optional[SelectorCacheEntry]:
        if not key:
            return None
        try:
            raw = await self._storage.read_cache_entry(key)
            return SelectorCacheEntry(**raw) if raw else None
        except Exception as e:
            logger.warning(f"[selector-cache] Read failed for {key}: {e}")
            return None

    async def _write(self, entry: SelectorCacheEntry) -> bool:
        try:
            await self._storage.write_cache_entry(entry.key, entry.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.warning(f"[selector-cache] Write failed for {entry.key} (non-critical): {e}")
            return False

    async def _remove(self, key: str, update_index: bool = True) -> None:
        try:
            await self._storage.remove_cache_entry(key)
        except Exception as e:
            logger.warning(f"[selector-cache] Remove failed for {key} (non-critical): {e}")
            return
        if update_index:
            keys = await self._read_index()
            if key in keys:
                keys.remove(key)
                await self._write_index(keys)

    async def _read_index(self) -> list[str]:
        try:
            return list(await self._storage.read_cache_index())
        except Exception as e:
            logger.warning(f"[selector-cache] Index read failed: {e}")
            return []

    async def _write_index(self, keys: list[str]) -> None:
        try:
            await self._storage.write_cache_index(keys)
        except Exception as e:
            logger.warning(f"[selector-cache] Index write failed (non-critical): {e}")

    async def _add_to_index(self, key: str) -> None:
        keys = await self._read_index()
        if key not in keys:
            keys.append(key)
            await self._write_index(keys)
