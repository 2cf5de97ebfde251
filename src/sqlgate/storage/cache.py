"""Per-query result cache keyed by query name and bound parameter values."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cachetools import TTLCache

from sqlgate.config.models import CacheSettings

if TYPE_CHECKING:
    from sqlgate.serving.binding import BoundParameter

LOG = logging.getLogger("sqlgate.storage.cache")

Row = dict[str, object]
CacheKey = tuple[tuple[int, str, str], ...]


def cache_key(bound: Sequence[BoundParameter]) -> CacheKey:
    """
    Build a hashable key from bound parameters in placeholder order.

    Values are keyed by ``repr`` so ``1`` and ``Decimal('1')`` stay distinct.

    Returns
    -------
    CacheKey
        Tuple of ``(position, type, repr(value))`` triples.
    """
    ordered = sorted(bound, key=lambda param: param.position)
    return tuple((param.position, param.type.value, repr(param.value)) for param in ordered)


@dataclass
class _QueryCache:
    settings: CacheSettings
    entries: TTLCache[CacheKey, tuple[Row, ...]]
    hits: int = 0
    misses: int = 0


class QueryResultCache:
    """
    Thread-safe TTL caches, one per query name.

    Each query gets its own ``TTLCache`` sized and timed from its
    ``CacheSettings``; a query whose settings change gets a fresh cache.
    Cached rows are copied on the way in and out.
    """

    def __init__(self, *, timer: Callable[[], float] = time.monotonic) -> None:
        self._timer = timer
        self._caches: dict[str, _QueryCache] = {}
        self._lock = threading.Lock()

    def _cache_for(self, name: str, settings: CacheSettings) -> _QueryCache:
        cache = self._caches.get(name)
        if cache is None or cache.settings != settings:
            cache = _QueryCache(
                settings=settings,
                entries=TTLCache(maxsize=settings.max_size, ttl=settings.ttl_seconds, timer=self._timer),
            )
            self._caches[name] = cache
            LOG.debug(
                "Created result cache for query=%s maxsize=%d ttl=%.1fs",
                name,
                settings.max_size,
                settings.ttl_seconds,
            )
        return cache

    def get(self, name: str, settings: CacheSettings, bound: Sequence[BoundParameter]) -> list[Row] | None:
        """
        Look up cached rows for one query invocation.

        Parameters
        ----------
        name
            Query name.
        settings
            The query's current cache settings.
        bound
            Bound parameters of the invocation.

        Returns
        -------
        list[Row] | None
            Copies of the cached rows, or None on a miss or expired entry.
        """
        key = cache_key(bound)
        with self._lock:
            cache = self._cache_for(name, settings)
            rows = cache.entries.get(key)
            if rows is None:
                cache.misses += 1
                return None
            cache.hits += 1
        LOG.debug("Result cache hit for query=%s", name)
        return [dict(row) for row in rows]

    def put(
        self,
        name: str,
        settings: CacheSettings,
        bound: Sequence[BoundParameter],
        rows: Sequence[Row],
    ) -> None:
        """Store copies of ``rows`` for one query invocation."""
        key = cache_key(bound)
        with self._lock:
            self._cache_for(name, settings).entries[key] = tuple(dict(row) for row in rows)

    def invalidate(self, name: str | None = None) -> int:
        """
        Drop cached entries for one query, or for every query.

        Parameters
        ----------
        name
            Query to clear; all queries when omitted.

        Returns
        -------
        int
            Number of entries removed.
        """
        with self._lock:
            targets = list(self._caches) if name is None else [name]
            removed = 0
            for target in targets:
                cache = self._caches.get(target)
                if cache is None:
                    continue
                cache.entries.expire()
                removed += len(cache.entries)
                cache.entries.clear()
        LOG.info("Invalidated %d cached result(s) for query=%s", removed, name or "*")
        return removed

    def stats(self) -> dict[str, dict[str, Any]]:
        """
        Report per-query hit, miss and size counters.

        Returns
        -------
        dict[str, dict[str, Any]]
            Counters keyed by query name.
        """
        with self._lock:
            summary: dict[str, dict[str, Any]] = {}
            for name, cache in sorted(self._caches.items()):
                cache.entries.expire()
                lookups = cache.hits + cache.misses
                summary[name] = {
                    "hits": cache.hits,
                    "misses": cache.misses,
                    "hitRate": round(cache.hits / lookups, 4) if lookups else 0.0,
                    "size": len(cache.entries),
                    "maxSize": cache.settings.max_size,
                    "ttlSeconds": cache.settings.ttl_seconds,
                }
        return summary


__all__ = ["CacheKey", "QueryResultCache", "cache_key"]
