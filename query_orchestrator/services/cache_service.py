"""
Content-addressed result/plan cache.

One ``ResultCache`` instance is created per engine and injected into the
planner and the agents that memoise their output.  Entries carry their own
TTL so a single store can hold the short-lived classes (filtered sources,
agent outputs) next to the longer-lived query classifications.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from query_orchestrator.agent.state import ConversationMessage, SourceDescriptor
from query_orchestrator.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float
    access_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


@dataclass(slots=True)
class CacheStats:
    size: int
    max_entries: int
    hits: int
    misses: int
    evictions: int
    expirations: int
    top_entries: list[dict[str, Any]] = field(default_factory=list)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hit_rate, 4),
            "top_entries": self.top_entries,
        }


class ResultCache:
    """
    Bounded TTL + LRU map safe for concurrent use.

    Parameters
    ----------
    max_entries : int | None
        Capacity; the least recently used entry is evicted once exceeded.
    default_ttl : float | None
        TTL in seconds applied when ``set`` is called without one.
    clock : Callable[[], float]
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_entries: int | None = None,
        default_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries or settings.cache_max_entries
        self._default_ttl = default_ttl if default_ttl is not None else settings.cache_short_ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._inflight: dict[str, asyncio.Future] = {}
        self._sweeper: asyncio.Task | None = None

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ──────────────────────────────────────────
    # Core operations
    # ──────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return default
            entry.access_count += 1
            entry.last_accessed = now
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            ttl=self._default_ttl if ttl is None else ttl,
            last_accessed=now,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Cache: evicted %s", evicted)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = self._misses = self._evictions = self._expirations = 0

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in doomed:
                del self._entries[key]
            self._expirations += len(doomed)
        if doomed:
            logger.debug("Cache: swept %d expired entries", len(doomed))
        return len(doomed)

    def stats(self, top: int = 5) -> CacheStats:
        with self._lock:
            ranked = sorted(
                self._entries.values(),
                key=lambda entry: entry.access_count,
                reverse=True,
            )[:top]
            return CacheStats(
                size=len(self._entries),
                max_entries=self._max_entries,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
                top_entries=[
                    {"key": entry.key, "access_count": entry.access_count}
                    for entry in ranked
                ],
            )

    # ──────────────────────────────────────────
    # Check-else-compute-else-populate
    # ──────────────────────────────────────────

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl: float | None = None,
        should_cache: Callable[[T], bool] | None = None,
    ) -> T:
        """
        Return the cached value for *key* or compute, store and return it.

        Concurrent callers for the same key on one event loop share a single
        in-flight computation.  Values rejected by *should_cache* are returned
        but not stored.
        """
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        inflight = self._inflight.get(key)
        if inflight is not None and not inflight.done():
            try:
                return await asyncio.shield(inflight)
            except asyncio.CancelledError:
                if not inflight.cancelled():
                    raise
                # The owning task was cancelled; compute on our own

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await compute()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()  # mark retrieved when nobody else is waiting
            raise
        else:
            if should_cache is None or should_cache(value):
                self.set(key, value, ttl)
            future.set_result(value)
            return value
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    # ──────────────────────────────────────────
    # Background sweep
    # ──────────────────────────────────────────

    def start_sweeper(self, interval: float | None = None) -> asyncio.Task:
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper
        period = interval or settings.cache_sweep_interval_seconds
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(period), name="result-cache-sweeper"
        )
        return self._sweeper

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.purge_expired()


# ──────────────────────────────────────────────
# Key derivation
# ──────────────────────────────────────────────

def normalize_query(query: str) -> str:
    return " ".join(query.casefold().split())


def source_fingerprint(sources: Iterable[SourceDescriptor]) -> str:
    return ",".join(sorted(f"{source.kind.value}:{source.id}" for source in sources))


def _digest(*parts: str) -> str:
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def plan_key(query: str, sources: Iterable[SourceDescriptor], user_scope: str) -> str:
    return "plan:" + _digest(normalize_query(query), source_fingerprint(sources), user_scope)


def analysis_key(query: str) -> str:
    return "analysis:" + _digest(normalize_query(query))


def history_fingerprint(history: Iterable[ConversationMessage]) -> str:
    return "\x1e".join(f"{message.role}:{normalize_query(message.text)}" for message in history)


def agent_key(
    agent: str,
    query: str,
    sources: Iterable[SourceDescriptor],
    user_scope: str,
    history: Iterable[ConversationMessage] = (),
) -> str:
    return f"agent:{agent}:" + _digest(
        normalize_query(query),
        source_fingerprint(sources),
        user_scope,
        history_fingerprint(history),
    )
