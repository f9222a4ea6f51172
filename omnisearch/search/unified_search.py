"""
Unified Search Service

Answers one free-text query from the internal vector store and every
connected external provider at once, then merges the results.

Request flow:
    query cache → dispatch (one task per source) → collect at a single
    deadline → merge/rank → cache → observers

Per-source isolation: a source that errors or misses the deadline is
recorded in per_source_stats and the others still answer. AllSourcesFailed
is raised only when every dispatched source errored or timed out.

IMPORTANT: The embedding model in config/search.yaml MUST be the model that
indexed content_records. Vector similarity only works between vectors from
the same model.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from omnisearch.config import load_config

from .adapters import ADAPTER_CLASSES, ExternalSourceAdapter, ProxyScoreProfile
from .cache import create_cache
from .embedding_cache import EmbeddingGenerator
from .errors import AdapterTimeout, AllSourcesFailed, SearchError, SearchValidationError
from .models import (
    ALL_CONTENT_TYPES,
    INTERNAL_SOURCE,
    AggregatedResult,
    AggregationState,
    NormalizedHit,
    SearchQuery,
    SearchRequest,
    SourceResult,
    SourceStats,
    SourceStatus,
    TimingBreakdown,
)
from .observability import LoggingObserver, PrometheusObserver, SearchObserver, SearchSummary
from .query_cache import QueryResultCache
from .ranker import ResultRanker
from .tokens import DatabaseTokenProvider, TokenProvider
from .vector_search import ContentStore, PgVectorContentStore, RecordFilter, VectorSimilaritySearcher

logger = logging.getLogger(__name__)


@dataclass
class _BranchOutcome:
    result: SourceResult
    stats: SourceStats


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class UnifiedSearchService:
    """
    Fan-out aggregator over internal and external sources.

    Provides:
    - Concurrent internal vector search and provider searches
    - One shared deadline for every branch
    - Partial results when some sources fail
    - Query result caching with per-user invalidation
    """

    def __init__(
        self,
        embedding_generator: EmbeddingGenerator,
        searcher: VectorSimilaritySearcher,
        adapters: Optional[List[ExternalSourceAdapter]] = None,
        ranker: Optional[ResultRanker] = None,
        query_cache: Optional[QueryResultCache] = None,
        observers: Optional[List[SearchObserver]] = None,
        config: Optional[dict] = None,
    ):
        """
        Initialize the search service.

        Args:
            embedding_generator: Cached query embedding generator
            searcher: Internal vector similarity searcher
            adapters: External providers, dispatched in this order
            ranker: Merge/format stage (defaults from config)
            query_cache: Whole-result cache (defaults from config)
            observers: Receive one SearchSummary per request
            config: Search config (defaults to load_config())
        """
        self._config = config or load_config()
        settings = self._config["search"]
        self.default_limit = settings["default_limit"]
        self.max_limit = settings["max_limit"]
        self.default_threshold = settings["default_threshold"]
        self.deadline_seconds = settings["deadline_seconds"]
        self.cache_degraded_results = self._config["query_cache"]["cache_degraded_results"]

        if searcher.dimensions != embedding_generator.dimensions:
            raise ValueError(
                f"Embedding dimensions ({embedding_generator.dimensions}) do not match "
                f"the content store ({searcher.dimensions})"
            )

        self.embedding_generator = embedding_generator
        self.searcher = searcher
        self.adapters = list(adapters or [])
        self.ranker = ranker or ResultRanker.from_config(self._config)
        self.query_cache = query_cache or QueryResultCache.from_config(self._config)
        self.observers = list(observers or [])

        logger.info(
            f"Search service initialized: sources={self.sources}, "
            f"model={embedding_generator.model_version}, deadline={self.deadline_seconds}s"
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[dict] = None,
        store: Optional[ContentStore] = None,
        token_provider: Optional[TokenProvider] = None,
    ) -> "UnifiedSearchService":
        """
        Build the production service.

        pgvector store and database token lookup unless overridden; Redis
        caches when REDIS_URL is set.
        """
        config = config or load_config()
        embedding_settings = config["embedding"]
        cache_settings = config["query_cache"]

        embedding_generator = EmbeddingGenerator.from_config(
            config,
            cache=create_cache(
                "embeddings",
                maxsize=embedding_settings["max_entries"],
                default_ttl=embedding_settings["ttl_hours"] * 3600,
            ),
        )
        store = store or PgVectorContentStore(dimensions=embedding_settings["dimensions"])
        token_provider = token_provider or DatabaseTokenProvider()

        adapters = []
        for name, adapter_cls in ADAPTER_CLASSES.items():
            settings = config["adapters"].get(name, {})
            if not settings.get("enabled", True):
                logger.info(f"Adapter '{name}' disabled in config")
                continue
            adapters.append(
                adapter_cls(
                    token_provider=token_provider,
                    profile=ProxyScoreProfile(
                        ceiling=settings["proxy_ceiling"],
                        floor=settings["proxy_floor"],
                    ),
                )
            )

        return cls(
            embedding_generator=embedding_generator,
            searcher=VectorSimilaritySearcher(store),
            adapters=adapters,
            ranker=ResultRanker.from_config(config),
            query_cache=QueryResultCache.from_config(
                config,
                cache=create_cache(
                    "queries",
                    maxsize=cache_settings["max_entries"],
                    default_ttl=cache_settings["ttl_seconds"],
                ),
            ),
            observers=[LoggingObserver(), PrometheusObserver()],
            config=config,
        )

    @property
    def sources(self) -> List[str]:
        """Every source this service can dispatch, in dispatch order."""
        return [INTERNAL_SOURCE] + [a.source for a in self.adapters if a.enabled]

    def build_query(self, request: SearchRequest) -> SearchQuery:
        """
        Validate a request and fill in defaults.

        Raises:
            SearchValidationError: On a missing query or user, or invalid filters
        """
        text = (request.query or "").strip()
        if not text:
            raise SearchValidationError("Query is required")
        user_id = (request.user_id or "").strip()
        if not user_id:
            raise SearchValidationError("userId is required")

        filters = request.filters

        content_types = list(ALL_CONTENT_TYPES)
        if filters.content_types is not None:
            unknown = sorted(set(filters.content_types) - set(ALL_CONTENT_TYPES))
            if unknown:
                raise SearchValidationError(f"Unknown content types: {', '.join(unknown)}")
            if not filters.content_types:
                raise SearchValidationError("contentTypes cannot be empty")
            content_types = [t for t in ALL_CONTENT_TYPES if t in filters.content_types]

        sources = self.sources
        if filters.sources is not None:
            unknown = sorted(set(filters.sources) - set(sources))
            if unknown:
                raise SearchValidationError(f"Unknown or disabled sources: {', '.join(unknown)}")
            if not filters.sources:
                raise SearchValidationError("sources cannot be empty")
            sources = [s for s in sources if s in filters.sources]

        limit = filters.limit or self.default_limit
        if limit > self.max_limit:
            logger.debug(f"Clamping limit {limit} to {self.max_limit}")
            limit = self.max_limit

        threshold = self.default_threshold if filters.threshold is None else filters.threshold

        return SearchQuery(
            text=text,
            user_id=user_id,
            project_id=filters.project_id,
            content_types=content_types,
            date_range=filters.date_range,
            limit=limit,
            similarity_threshold=threshold,
            sources=sources,
        )

    async def search(self, request: Union[SearchRequest, SearchQuery]) -> AggregatedResult:
        """
        Run a unified search.

        Args:
            request: Raw request (validated here) or an already built query

        Returns:
            AggregatedResult with hits, per-source stats and timings

        Raises:
            SearchValidationError: If the request is invalid
            AllSourcesFailed: If every dispatched source errored or timed out
        """
        query = request if isinstance(request, SearchQuery) else self.build_query(request)
        started = time.perf_counter()

        cache_key = self.query_cache.build_key(query)
        cached = await self.query_cache.get(cache_key)
        if cached is not None:
            self._notify(query, cached, cache_hit=True, total_time_ms=_elapsed_ms(started))
            return cached

        try:
            result = await self._aggregate(query, started)
        except AllSourcesFailed as e:
            self._notify_failure(query, e, _elapsed_ms(started))
            raise

        if not result.degraded or self.cache_degraded_results:
            await self.query_cache.put(cache_key, result)
        else:
            logger.debug("Not caching degraded result")

        self._notify(query, result, cache_hit=False, total_time_ms=result.timing.total_time_ms)
        return result

    async def _aggregate(self, query: SearchQuery, started: float) -> AggregatedResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.deadline_seconds
        timing: Dict[str, float] = {"embedding": 0.0, "search": 0.0}

        # Dispatch
        state = AggregationState.DISPATCH
        tasks: Dict[str, asyncio.Task] = {}
        if query.wants_source(INTERNAL_SOURCE) and query.internal_content_types:
            tasks[INTERNAL_SOURCE] = asyncio.create_task(
                self._run_branch(INTERNAL_SOURCE, self._search_internal(query, timing))
            )
        for adapter in self.adapters:
            if adapter.applies_to(query):
                tasks[adapter.source] = asyncio.create_task(
                    self._run_branch(
                        adapter.source,
                        self._search_external(adapter, query, deadline),
                    )
                )
        logger.debug(f"{state.value}: {list(tasks)}")

        if not tasks:
            logger.info("No source applies to this query")
            return self._result(query, [], [], timing, started, AggregationState.DONE)

        # Collecting
        state = AggregationState.COLLECTING
        try:
            done, pending = await asyncio.wait(
                tasks.values(), timeout=max(0.0, deadline - loop.time())
            )
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        source_results: List[SourceResult] = []
        per_source_stats: List[SourceStats] = []
        for source, task in tasks.items():
            if task in done and not task.cancelled():
                outcome = task.result()
                per_source_stats.append(outcome.stats)
                source_results.append(outcome.result)
            else:
                logger.warning(f"Source {source} missed the {self.deadline_seconds}s deadline")
                per_source_stats.append(
                    SourceStats(
                        source=source,
                        latency_ms=_elapsed_ms(started),
                        status=SourceStatus.TIMED_OUT,
                        error="deadline exceeded",
                    )
                )

        if all(s.failed for s in per_source_stats):
            logger.error(f"All {len(per_source_stats)} search sources failed")
            raise AllSourcesFailed(per_source_stats)

        # Merging
        state = AggregationState.MERGING
        logger.debug(f"{state.value}: {sum(len(r.hits) for r in source_results)} candidate hits")
        hits = self.ranker.merge(source_results, query)

        return self._result(
            query, hits, per_source_stats, timing, started, AggregationState.DONE
        )

    def _result(
        self,
        query: SearchQuery,
        hits,
        per_source_stats: List[SourceStats],
        timing: Dict[str, float],
        started: float,
        state: AggregationState,
    ) -> AggregatedResult:
        return AggregatedResult(
            query=query,
            hits=hits,
            per_source_stats=per_source_stats,
            timing=TimingBreakdown(
                total_time_ms=_elapsed_ms(started),
                embedding_time_ms=timing["embedding"],
                search_time_ms=timing["search"],
            ),
            state=state,
            degraded=any(s.failed for s in per_source_stats),
        )

    async def _run_branch(self, source: str, coro) -> _BranchOutcome:
        """Await one source and turn its outcome into stats. Never raises except on cancel."""
        started = time.perf_counter()
        try:
            result, reason = await coro
        except AdapterTimeout as e:
            logger.warning(f"Source {source} timed out: {e}")
            return self._failed(source, started, SourceStatus.TIMED_OUT, str(e))
        except SearchError as e:
            logger.warning(f"Source {source} failed: {e}")
            return self._failed(source, started, SourceStatus.ERROR, str(e))
        except Exception as e:
            logger.error(f"Unexpected error from source {source}: {e}", exc_info=True)
            return self._failed(source, started, SourceStatus.ERROR, str(e))

        status = SourceStatus.SKIPPED if reason else SourceStatus.SUCCESS
        return _BranchOutcome(
            result=result,
            stats=SourceStats(
                source=source,
                count=len(result.hits),
                latency_ms=_elapsed_ms(started),
                status=status,
                reason=reason,
            ),
        )

    @staticmethod
    def _failed(source: str, started: float, status: SourceStatus, error: str) -> _BranchOutcome:
        return _BranchOutcome(
            result=SourceResult(source=source, hits=[]),
            stats=SourceStats(
                source=source,
                latency_ms=_elapsed_ms(started),
                status=status,
                error=error,
            ),
        )

    async def _search_internal(self, query: SearchQuery, timing: Dict[str, float]):
        started = time.perf_counter()
        vector = await self.embedding_generator.get_embedding(query.text)
        timing["embedding"] = _elapsed_ms(started)

        started = time.perf_counter()
        scored = await self.searcher.search(
            vector,
            RecordFilter.from_query(query),
            limit=query.limit,
            threshold=query.similarity_threshold,
        )
        timing["search"] = _elapsed_ms(started)

        hits = [
            NormalizedHit(
                origin=INTERNAL_SOURCE,
                source_id=s.record.id,
                content_type=s.record.content_type,
                title=s.record.title or "Untitled",
                body=s.record.body,
                score=s.similarity,
                created_at=s.record.created_at,
                url=s.record.metadata.get("url"),
                metadata={**s.record.metadata, "projectId": s.record.project_id},
            )
            for s in scored
        ]
        return SourceResult(source=INTERNAL_SOURCE, hits=hits), None

    @staticmethod
    async def _search_external(
        adapter: ExternalSourceAdapter,
        query: SearchQuery,
        deadline: float,
    ):
        result = await adapter.fetch(query, query.user_id, query.limit, deadline)
        reason = (result.reason or "skipped") if result.skipped else None
        return SourceResult(source=adapter.source, hits=result.hits), reason

    def _notify(
        self,
        query: SearchQuery,
        result: AggregatedResult,
        cache_hit: bool,
        total_time_ms: float,
    ) -> None:
        self._emit(
            SearchSummary(
                user_id=query.user_id,
                state=result.state,
                cache_hit=cache_hit,
                total_time_ms=total_time_ms,
                result_count=len(result.hits),
                degraded=result.degraded,
                per_source_stats=result.per_source_stats,
            )
        )

    def _notify_failure(self, query: SearchQuery, error: AllSourcesFailed, total_time_ms: float) -> None:
        self._emit(
            SearchSummary(
                user_id=query.user_id,
                state=AggregationState.PARTIAL_FAILURE,
                cache_hit=False,
                total_time_ms=total_time_ms,
                result_count=0,
                degraded=True,
                per_source_stats=error.per_source_stats,
            )
        )

    def _emit(self, summary: SearchSummary) -> None:
        for observer in self.observers:
            try:
                observer.on_search(summary)
            except Exception as e:
                logger.error(f"Search observer {type(observer).__name__} failed: {e}")

    async def invalidate(self, user_id: Optional[str] = None) -> int:
        """Purge cached results for one user, or for everyone when user_id is None."""
        if user_id:
            return await self.query_cache.invalidate_user(user_id)
        return await self.query_cache.clear()

    async def get_stats(self) -> Dict:
        return {
            "embedding": self.embedding_generator.get_stats(),
            "query_cache": await self.query_cache.get_stats(),
        }
