from __future__ import annotations

import asyncio
import copy
import logging
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from chartdeck.services.canonicalizer import canonical_json

logger = logging.getLogger("uvicorn.error")

DEFAULT_TTL_SECONDS = 900


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CacheEntry:
    key: str
    owner_id: str
    columns: list[str]
    rows: list[dict[str, Any]]
    created_at: datetime
    expires_at: datetime
    size_bytes: int

    def copy(self) -> "CacheEntry":
        return CacheEntry(
            key=self.key,
            owner_id=self.owner_id,
            columns=list(self.columns),
            rows=copy.deepcopy(self.rows),
            created_at=self.created_at,
            expires_at=self.expires_at,
            size_bytes=self.size_bytes,
        )


@dataclass(slots=True)
class OwnerCacheStatus:
    owner_id: str
    entries: int
    last_updated: datetime | None
    size_bytes: int

    @property
    def cached(self) -> bool:
        return self.entries > 0


class ChartResultCache:
    """Process-local TTL + LRU cache of processed chart rows, indexed by owner."""

    def __init__(self, *, ttl_seconds: int = DEFAULT_TTL_SECONDS, max_entries: int = 2000) -> None:
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    async def get(self, key: str) -> CacheEntry | None:
        now = _utcnow()
        async with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            if entry.expires_at <= now:
                self._entries.pop(key, None)
                return None
            self._entries.move_to_end(key)
            return entry.copy()

    async def put(
        self,
        key: str,
        owner_id: str,
        rows: list[dict[str, Any]],
        columns: list[str],
        ttl_seconds: int | None = None,
    ) -> CacheEntry:
        now = _utcnow()
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(
            key=key,
            owner_id=owner_id,
            columns=list(columns),
            rows=copy.deepcopy(rows),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
            size_bytes=len(canonical_json(rows).encode("utf-8")),
        )
        async with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return entry.copy()

    async def invalidate(self, owner_id: str) -> int:
        async with self._lock:
            keys = [key for key, entry in self._entries.items() if entry.owner_id == owner_id]
            for key in keys:
                self._entries.pop(key, None)
        if keys:
            logger.info("chart.cache_invalidate | %s", {"owner_id": owner_id, "entries": len(keys)})
        return len(keys)

    async def invalidate_many(self, owner_ids: Iterable[str]) -> int:
        total = 0
        for owner_id in owner_ids:
            total += await self.invalidate(owner_id)
        return total

    async def owner_status(self, owner_id: str) -> OwnerCacheStatus:
        now = _utcnow()
        async with self._lock:
            live = [
                entry
                for entry in self._entries.values()
                if entry.owner_id == owner_id and entry.expires_at > now
            ]
        return OwnerCacheStatus(
            owner_id=owner_id,
            entries=len(live),
            last_updated=max((entry.created_at for entry in live), default=None),
            size_bytes=sum(entry.size_bytes for entry in live),
        )

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
