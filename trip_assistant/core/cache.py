"""Bounded, TTL'd response cache for completion results.

Three independent removal paths:

- LRU: inserting at capacity evicts the single least-recently-used entry.
- TTL: expired entries are never served, and a background sweep removes them.
- Offload: once utilization reaches ``offload_threshold`` the least-accessed
  ``offload_fraction`` of entries is evicted as a batch. This is eviction under
  pressure, frequency based, not movement to a secondary tier.
"""

import asyncio
import hashlib
import json
import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from trip_assistant.config import CacheSettings
from trip_assistant.middleware.event_collector import emit_event

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float
    access_count: int = 1
    last_access_at: float = 0.0

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


def make_cache_key(turns: Iterable[str], options: Optional[Mapping[str, Any]] = None, *, last_k: int = 5) -> str:
    """Stable SHA-256 over the last ``last_k`` turn contents and the active options."""
    recent = list(turns)[-last_k:]
    payload = json.dumps(
        {"turns": recent, "options": dict(options or {})},
        sort_keys=True,
        default=str,
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResponseCache:
    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or CacheSettings()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.offloads = 0
        self.expirations = 0

    def make_key(self, turns: Iterable[str], options: Optional[Mapping[str, Any]] = None) -> str:
        return make_cache_key(turns, options, last_k=self.settings.key_turns)

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expired(now):
                del self._entries[key]
                self.expirations += 1
                self.misses += 1
                return None
            entry.access_count += 1
            entry.last_access_at = now
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.settings.max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug("Response cache evicted LRU entry %s", evicted_key[:12])
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                ttl=ttl if ttl is not None else self.settings.ttl_seconds,
                last_access_at=now,
            )
            if self._should_offload():
                self._offload(protect=key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @property
    def utilization(self) -> float:
        return len(self._entries) / self.settings.max_size

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def _should_offload(self) -> bool:
        threshold = self.settings.offload_threshold
        return threshold is not None and self.utilization >= threshold

    def _offload(self, protect: Optional[str] = None) -> None:
        count = math.floor(len(self._entries) * self.settings.offload_fraction)
        if count <= 0:
            return
        # Stable sort: equal access counts fall back to LRU order. The entry
        # that triggered the offload is never its own victim.
        candidates = [e for e in self._entries.values() if e.key != protect]
        victims = sorted(candidates, key=lambda e: e.access_count)[:count]
        for entry in victims:
            del self._entries[entry.key]
        count = len(victims)
        self.offloads += count
        logger.info("Response cache offloaded %d low-use entries (size now %d)", count, len(self._entries))
        emit_event(
            component="response_cache",
            status="offloaded",
            message=f"Offloaded {count} low-use entries",
            details={"size": len(self._entries)},
        )

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in expired:
                del self._entries[key]
            self.expirations += len(expired)
        if expired:
            logger.info("Response cache swept %d expired entries", len(expired))
        return len(expired)

    def start_sweeper(self) -> asyncio.Task:
        """Run ``sweep`` every ``sweep_interval_seconds`` on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("Response cache sweep failed")

    def stats(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "offloads": self.offloads,
            "expirations": self.expirations,
            "size": len(self._entries),
            "max_size": self.settings.max_size,
            "utilization": round(self.utilization, 4),
            "hit_rate": round(self.hit_rate, 4),
        }
