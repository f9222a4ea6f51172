"""
Search observability hooks.

UnifiedSearchService reports one SearchSummary per request to every
registered SearchObserver. Observer failures are logged and never affect the
search response.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List

from prometheus_client import Counter, Histogram

from .models import AggregationState, SourceStats

logger = logging.getLogger(__name__)


SEARCH_REQUESTS = Counter(
    "omnisearch_requests_total",
    "Unified search requests",
    ["state", "cache"],
)
SEARCH_LATENCY = Histogram(
    "omnisearch_request_latency_seconds",
    "Unified search latency",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0),
)
SOURCE_REQUESTS = Counter(
    "omnisearch_source_requests_total",
    "Per-source fan-out outcomes",
    ["source", "status"],
)
SOURCE_LATENCY = Histogram(
    "omnisearch_source_latency_seconds",
    "Per-source fan-out latency",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 3.0),
)
RESULT_COUNT = Histogram(
    "omnisearch_result_count",
    "Hits returned per search",
    buckets=(0, 1, 5, 10, 20, 50, 100),
)


@dataclass
class SearchSummary:
    """What one search request did."""

    user_id: str
    state: AggregationState
    cache_hit: bool
    total_time_ms: float
    result_count: int
    degraded: bool = False
    per_source_stats: List[SourceStats] = field(default_factory=list)


class SearchObserver(ABC):
    """Receives a summary after every search."""

    @abstractmethod
    def on_search(self, summary: SearchSummary) -> None:
        pass


class LoggingObserver(SearchObserver):
    """Logs one line per search plus a warning per failed source."""

    def on_search(self, summary: SearchSummary) -> None:
        sources = ", ".join(
            f"{s.source}={s.status.value}/{s.count}" for s in summary.per_source_stats
        )
        logger.info(
            f"Search for {summary.user_id}: state={summary.state.value} "
            f"cache_hit={summary.cache_hit} results={summary.result_count} "
            f"time={summary.total_time_ms:.1f}ms sources=[{sources}]"
        )
        for stats in summary.per_source_stats:
            if stats.failed:
                logger.warning(f"Source {stats.source} {stats.status.value}: {stats.error}")


class PrometheusObserver(SearchObserver):
    """Exports request and per-source metrics via prometheus_client."""

    def on_search(self, summary: SearchSummary) -> None:
        SEARCH_REQUESTS.labels(
            state=summary.state.value,
            cache="hit" if summary.cache_hit else "miss",
        ).inc()
        SEARCH_LATENCY.observe(summary.total_time_ms / 1000)
        RESULT_COUNT.observe(summary.result_count)

        # Cached responses replay stats from the original run
        if summary.cache_hit:
            return
        for stats in summary.per_source_stats:
            SOURCE_REQUESTS.labels(source=stats.source, status=stats.status.value).inc()
            SOURCE_LATENCY.labels(source=stats.source).observe(stats.latency_ms / 1000)
