"""
Keyed query cache shared by mutation handlers and the realtime router.

Keys are tuples such as ``("/api/jobs",)``.  Invalidation and refetching
work on key prefixes, so ``("/api/jobs",)`` also covers
``("/api/jobs", "2026-10-18")``.  An entry is *active* while at least one
observer has registered it; only active entries are refetched eagerly.
"""
from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

QueryKey = tuple[str, ...]
Fetcher = Callable[[], Awaitable[Any]]

LOGGER = logging.getLogger("dailytracker.sync_client")


def as_key(key: str | Sequence[str]) -> QueryKey:
    if isinstance(key, str):
        return (key,)
    return tuple(key)


def key_matches(prefix: QueryKey, key: QueryKey) -> bool:
    return key[: len(prefix)] == prefix


@dataclass
class CacheEntry:
    key: QueryKey
    fetcher: Fetcher | None = None
    data: Any = None
    stale: bool = True
    observers: int = 0
    fetch_count: int = 0
    fetched_at: float | None = None
    error: Exception | None = None

    @property
    def active(self) -> bool:
        return self.observers > 0 and self.fetcher is not None


class QueryCache:
    def __init__(self) -> None:
        self._entries: dict[QueryKey, CacheEntry] = {}

    def entry(self, key: str | Sequence[str]) -> CacheEntry | None:
        return self._entries.get(as_key(key))

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def register(self, key: str | Sequence[str], fetcher: Fetcher) -> CacheEntry:
        """Start observing ``key``; the fetcher is what refetches will call."""
        normalized = as_key(key)
        entry = self._entries.setdefault(normalized, CacheEntry(key=normalized))
        entry.fetcher = fetcher
        entry.observers += 1
        return entry

    def unregister(self, key: str | Sequence[str]) -> None:
        entry = self.entry(key)
        if entry is not None and entry.observers > 0:
            entry.observers -= 1

    def get(self, key: str | Sequence[str]) -> Any:
        entry = self.entry(key)
        return entry.data if entry is not None else None

    def set_data(self, key: str | Sequence[str], data: Any) -> None:
        normalized = as_key(key)
        entry = self._entries.setdefault(normalized, CacheEntry(key=normalized))
        entry.data = data
        entry.stale = False
        entry.error = None
        entry.fetched_at = time.monotonic()

    async def fetch(self, key: str | Sequence[str]) -> Any:
        entry = self.entry(key)
        if entry is None or entry.fetcher is None:
            raise KeyError(f"No fetcher registered for {as_key(key)!r}")
        entry.fetch_count += 1
        try:
            data = await entry.fetcher()
        except Exception as exc:
            entry.error = exc
            LOGGER.warning(
                json.dumps(
                    {"event": "cache_fetch_failed", "key": list(entry.key), "error": str(exc)}
                )
            )
            return entry.data
        self.set_data(entry.key, data)
        return data

    async def ensure(self, key: str | Sequence[str]) -> Any:
        entry = self.entry(key)
        if entry is not None and not entry.stale:
            return entry.data
        return await self.fetch(key)

    def invalidate(self, prefix: str | Sequence[str]) -> list[QueryKey]:
        normalized = as_key(prefix)
        matched = [key for key in self._entries if key_matches(normalized, key)]
        for key in matched:
            self._entries[key].stale = True
        return matched

    async def refetch_active(self, prefix: str | Sequence[str]) -> list[QueryKey]:
        normalized = as_key(prefix)
        refetched: list[QueryKey] = []
        for key, entry in list(self._entries.items()):
            if not key_matches(normalized, key) or not entry.active:
                continue
            await self.fetch(key)
            refetched.append(key)
        return refetched
