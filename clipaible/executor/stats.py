"""Saved-clip statistics.

Counters by output format, month and site, total processing time, and a
short history of recent saves. Recording is best-effort: a stats failure
never affects the job that produced it.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from clipaible.executor.schemas import StatsRecord
from clipaible.executor.selector_cache import cache_key

logger = logging.getLogger(__name__)

MAX_HISTORY = 50


async def load_stats(storage) -> StatsRecord:
    """Current stats, or an empty record if none exist or they can't be read."""
    try:
        raw = await storage.read_stats()
    except Exception as e:
        logger.warning(f"Failed to read stats: {e}")
        return StatsRecord()
    if not raw:
        return StatsRecord()
    try:
        return StatsRecord(**raw)
    except ValueError as e:
        logger.warning(f"Discarding malformed stats record: {e}")
        return StatsRecord()


async def record_save(
    storage,
    *,
    title: str,
    url: str,
    output_format: str,
    processing_seconds: float,
    clock: Callable[[], float] = time.time,
) -> Optional[StatsRecord]:
    """Count one saved clip. Returns the updated record, or None on failure."""
    try:
        stats = await load_stats(storage)
        now = clock()
        month = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m")
        site = cache_key(url) or "unknown"

        stats.total_saved += 1
        stats.by_format[output_format] = stats.by_format.get(output_format, 0) + 1
        stats.by_month[month] = stats.by_month.get(month, 0) + 1
        stats.top_sites[site] = stats.top_sites.get(site, 0) + 1
        stats.total_processing_time += max(0.0, processing_seconds)
        stats.last_saved = now
        stats.history.insert(0, {
            "title": title or "Untitled",
            "url": url,
            "domain": site,
            "format": output_format,
            "date": now,
            "processing_time": round(processing_seconds, 2),
        })
        del stats.history[MAX_HISTORY:]

        await storage.write_stats(stats.model_dump(mode="json"))
        logger.info(f"Stats recorded: {stats.total_saved} saved, {output_format} from {site}")
        return stats
    except Exception as e:
        logger.warning(f"Failed to record stats (non-fatal): {e}")
        return None


async def reset_stats(storage) -> None:
    """Zero every counter."""
    await storage.write_stats(StatsRecord().model_dump(mode="json"))
