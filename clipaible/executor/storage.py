"""Host persistence for job snapshots, selector cache entries, and stats.

Components talk to a HostStorage and never to the database directly, so
the same state machine and cache run against SQL (SqlStorage) or an
in-process dict (MemoryStorage). Values cross this boundary as plain
JSON-compatible dicts.

SqlStorage runs the blocking db.execute calls on worker threads so the
event loop (and the heartbeat riding on it) never stalls on disk I/O.
"""

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from clipaible.executor.db import _json_dumps, _json_loads, execute, init_db

logger = logging.getLogger(__name__)

JOB_SLOT = "current"
CACHE_INDEX_KEY = "selector_cache_index"
STATS_KEY = "stats"


@runtime_checkable
class HostStorage(Protocol):
    """Async key/value persistence the pipeline checkpoints into."""

    async def read_job_snapshot(self) -> Optional[dict]: ...

    async def write_job_snapshot(self, snapshot: dict) -> None: ...

    async def clear_job_snapshot(self) -> None: ...

    async def read_cache_entry(self, key: str) -> Optional[dict]: ...

    async def write_cache_entry(self, key: str, entry: dict) -> None: ...

    async def remove_cache_entry(self, key: str) -> None: ...

    async def read_cache_index(self) -> list[str]: ...

    async def write_cache_index(self, keys: list[str]) -> None: ...

    async def read_stats(self) -> Optional[dict]: ...

    async def write_stats(self, stats: dict) -> None: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqlStorage:
    """HostStorage backed by the db module (SQLite or Postgres)."""

    def __init__(self):
        init_db()

    async def _run(self, sql: str, params: tuple = (), fetch: str = "none"):
        return await asyncio.to_thread(execute, sql, params, fetch)

    # --- Job snapshot ---

    async def read_job_snapshot(self) -> Optional[dict]:
        row = await self._run(
            "SELECT snapshot FROM job_snapshots WHERE slot = %s",
            (JOB_SLOT,),
            fetch="one",
        )
        if row is None:
            return None
        return _json_loads(row["snapshot"]) or None

    async def write_job_snapshot(self, snapshot: dict) -> None:
        await self._run(
            """INSERT INTO job_snapshots (slot, snapshot, updated_at)
               VALUES (%s, %s, %s)
               ON CONFLICT (slot) DO UPDATE
               SET snapshot = excluded.snapshot, updated_at = excluded.updated_at""",
            (JOB_SLOT, _json_dumps(snapshot), _now_iso()),
        )

    async def clear_job_snapshot(self) -> None:
        await self._run("DELETE FROM job_snapshots WHERE slot = %s", (JOB_SLOT,))

    # --- Selector cache ---

    async def read_cache_entry(self, key: str) -> Optional[dict]:
        row = await self._run(
            "SELECT entry FROM selector_cache WHERE cache_key = %s",
            (key,),
            fetch="one",
        )
        if row is None:
            return None
        return _json_loads(row["entry"]) or None

    async def write_cache_entry(self, key: str, entry: dict) -> None:
        await self._run(
            """INSERT INTO selector_cache (cache_key, entry, updated_at)
               VALUES (%s, %s, %s)
               ON CONFLICT (cache_key) DO UPDATE
               SET entry = excluded.entry, updated_at = excluded.updated_at""",
            (key, _json_dumps(entry), _now_iso()),
        )

    async def remove_cache_entry(self, key: str) -> None:
        await self._run("DELETE FROM selector_cache WHERE cache_key = %s", (key,))

    async def read_cache_index(self) -> list[str]:
        value = await self._read_state(CACHE_INDEX_KEY)
        return list(value) if isinstance(value, list) else []

    async def write_cache_index(self, keys: list[str]) -> None:
        await self._write_state(CACHE_INDEX_KEY, list(keys))

    # --- Stats ---

    async def read_stats(self) -> Optional[dict]:
        value = await self._read_state(STATS_KEY)
        return value if isinstance(value, dict) and value else None

    async def write_stats(self, stats: dict) -> None:
        await self._write_state(STATS_KEY, stats)

    async def _read_state(self, state_key: str):
        row = await self._run(
            "SELECT value FROM app_state WHERE state_key = %s",
            (state_key,),
            fetch="one",
        )
        if row is None:
            return None
        return _json_loads(row["value"])

    async def _write_state(self, state_key: str, value) -> None:
        await self._run(
            """INSERT INTO app_state (state_key, value, updated_at)
               VALUES (%s, %s, %s)
               ON CONFLICT (state_key) DO UPDATE
               SET value = excluded.value, updated_at = excluded.updated_at""",
            (state_key, _json_dumps(value), _now_iso()),
        )


class MemoryStorage:
    """In-process HostStorage. Values are deep-copied in and out."""

    def __init__(self):
        self.job_snapshot: Optional[dict] = None
        self.cache_entries: dict[str, dict] = {}
        self.cache_index: list[str] = []
        self.stats: Optional[dict] = None
        self.job_writes = 0

    async def read_job_snapshot(self) -> Optional[dict]:
        return copy.deepcopy(self.job_snapshot)

    async def write_job_snapshot(self, snapshot: dict) -> None:
        self.job_snapshot = copy.deepcopy(snapshot)
        self.job_writes += 1

    async def clear_job_snapshot(self) -> None:
        self.job_snapshot = None

    async def read_cache_entry(self, key: str) -> Optional[dict]:
        return copy.deepcopy(self.cache_entries.get(key))

    async def write_cache_entry(self, key: str, entry: dict) -> None:
        self.cache_entries[key] = copy.deepcopy(entry)

    async def remove_cache_entry(self, key: str) -> None:
        self.cache_entries.pop(key, None)

    async def read_cache_index(self) -> list[str]:
        return list(self.cache_index)

    async def write_cache_index(self, keys: list[str]) -> None:
        self.cache_index = list(keys)

    async def read_stats(self) -> Optional[dict]:
        return copy.deepcopy(self.stats)

    async def write_stats(self, stats: dict) -> None:
        self.stats = copy.deepcopy(stats)


def get_storage(kind: Optional[str] = None):
    """Build the storage the API should use ("sql" default, or "memory")."""
    kind = (kind or "sql").lower()
    if kind == "memory":
        logger.info("Using in-memory host storage (state is lost on restart)")
        return MemoryStorage()
    return SqlStorage()
