"""
Query Result Cache

Caches whole aggregated results for repeated identical queries.

Keys are scoped per user, `search:{user_id}:{sha256}`, so a single user's
entries can be purged by prefix when ingestion writes new content for them.
The engine never listens for writes itself; collaborators call
invalidate_user() (also exposed as POST /api/search/invalidate).
"""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

from .cache import Cache, InMemoryCache
from .models import AggregatedResult, SearchQuery

logger = logging.getLogger(__name__)

KEY_PREFIX = "search"


@dataclass
class QueryCacheStats:
    hits: int = 0
    misses: int = 0
    stores: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


def _user_prefix(user_id: str) -> str:
    # Quoted so a ':' inside a user id cannot reach another user's prefix
    return f"{KEY_PREFIX}:{quote(user_id, safe='')}:"


class QueryResultCache:
    """
    Cache of AggregatedResult keyed by normalized query + filters.

    Entries are immutable: put() stores a deep copy and get() returns a deep
    copy, so no caller can alter what another caller will read.
    """

    def __init__(
        self,
        cache: Optional[Cache] = None,
        ttl_seconds: float = 300,
        max_entries: int = 500,
        enabled: bool = True,
    ):
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._cache = cache or InMemoryCache(maxsize=max_entries, default_ttl=ttl_seconds)
        self._stats = QueryCacheStats()

    @classmethod
    def from_config(cls, config: dict, cache: Optional[Cache] = None) -> "QueryResultCache":
        settings = config["query_cache"]
        return cls(
            cache=cache,
            ttl_seconds=settings["ttl_seconds"],
            max_entries=settings["max_entries"],
            enabled=settings["enabled"],
        )

    @staticmethod
    def build_key(query: SearchQuery) -> str:
        """
        Deterministic key over the trimmed query text and canonical filters.

        Content type and source order do not matter. Text is only trimmed:
        a cached result echoes the text and highlights of the query that
        produced it.
        """
        date_range = None
        if query.date_range is not None:
            date_range = {
                "start": query.date_range.start.isoformat() if query.date_range.start else None,
                "end": query.date_range.end.isoformat() if query.date_range.end else None,
            }
        canonical = {
            "text": query.text.strip(),
            "user_id": query.user_id,
            "project_id": query.project_id,
            "content_types": sorted(set(query.content_types)),
            "date_range": date_range,
            "limit": query.limit,
            "threshold": query.similarity_threshold,
            "sources": sorted(set(query.sources)),
        }
        digest = hashlib.sha256(
            json.dumps(canonical, sort_keys=True, separators=(",", ":")).encode("utf-8")
        ).hexdigest()
        return f"{_user_prefix(query.user_id)}{digest}"

    async def get(self, cache_key: str) -> Optional[AggregatedResult]:
        if not self.enabled:
            return None
        entry = await self._cache.get(cache_key)
        if not isinstance(entry, AggregatedResult):
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        logger.debug(f"Query cache hit: {cache_key}")
        return entry.model_copy(deep=True)

    async def put(
        self,
        cache_key: str,
        result: AggregatedResult,
        ttl: Optional[float] = None,
    ) -> None:
        if not self.enabled:
            return
        await self._cache.set(cache_key, result.model_copy(deep=True), ttl=ttl or self.ttl_seconds)
        self._stats.stores += 1

    async def invalidate_user(self, user_id: str) -> int:
        """Drop every cached result for user_id. Returns count removed."""
        removed = await self._cache.delete_prefix(_user_prefix(user_id))
        self._stats.invalidations += removed
        logger.info(f"Invalidated {removed} cached searches for {user_id}")
        return removed

    async def clear(self) -> int:
        """Drop every cached result. Returns count removed."""
        removed = await self._cache.delete_prefix(f"{KEY_PREFIX}:")
        self._stats.invalidations += removed
        logger.info(f"Invalidated {removed} cached searches")
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = asdict(self._stats)
        stats["hit_rate"] = round(self._stats.hit_rate, 4)
        stats["enabled"] = self.enabled
        stats["ttl_seconds"] = self.ttl_seconds
        stats["backend"] = await self._cache.stats()
        return stats
