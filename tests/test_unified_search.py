"""
Unified Search Service Tests

End-to-end fan-out over an in-memory content store, a mocked embedding
client and fake provider adapters.
"""

import asyncio
import copy
from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import psycopg2
import pytest

from omnisearch.config import DEFAULT_CONFIG
from omnisearch.search.adapters import (
    AdapterResult,
    DriveSearchAdapter,
    ExternalSourceAdapter,
    GmailSearchAdapter,
    ProxyScoreProfile,
)
from omnisearch.search.embedding_cache import EmbeddingGenerator
from omnisearch.search.errors import (
    AdapterError,
    AdapterTimeout,
    AllSourcesFailed,
    SearchBackendUnavailable,
    SearchValidationError,
)
from omnisearch.search.models import (
    AggregationState,
    ContentRecord,
    DateRange,
    NormalizedHit,
    SearchFilters,
    SearchRequest,
    SearchResponse,
    SourceStatus,
)
from omnisearch.search.observability import SearchObserver
from omnisearch.search.tokens import DatabaseTokenProvider, StaticTokenProvider
from omnisearch.search.unified_search import UnifiedSearchService
from omnisearch.search.vector_search import InMemoryContentStore, VectorSimilaritySearcher


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def unit_vector(similarity):
    return [similarity, float(np.sqrt(max(0.0, 1 - similarity ** 2)))]


def record(record_id, similarity, created=None, content_type="message", body=None):
    return ContentRecord(
        id=record_id,
        content_type=content_type,
        title=f"Doc {record_id}",
        body=body or f"Notes about the project roadmap ({record_id})",
        embedding=unit_vector(similarity),
        owner_id="u1",
        created_at=created or utc(2024, 1, 1),
    )


def gmail_hit(source_id, score, created=None):
    return NormalizedHit(
        origin="external:gmail",
        source_id=source_id,
        content_type="message",
        title=f"Mail {source_id}",
        body="Re: project roadmap",
        score=score,
        created_at=created or utc(2024, 1, 2),
    )


class FakeAdapter(ExternalSourceAdapter):
    """Adapter whose fetch() outcome is scripted."""

    def __init__(self, source="gmail", content_type="message", hits=None,
                 error=None, delay=0.0, skipped_reason=None):
        super().__init__(
            token_provider=StaticTokenProvider({"u1": "tok"}),
            profile=ProxyScoreProfile(ceiling=0.88, floor=0.7),
        )
        self.source = source
        self.content_type = content_type
        self.hits = hits or []
        self.error = error
        self.delay = delay
        self.skipped_reason = skipped_reason
        self.calls = 0
        self.cancelled = False

    async def fetch(self, query, user_id, limit, deadline):
        self.calls += 1
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error:
            raise self.error
        if self.skipped_reason:
            return AdapterResult(source=self.source, skipped=True, reason=self.skipped_reason)
        return AdapterResult(source=self.source, hits=list(self.hits))

    async def _search(self, session, query, limit):
        return []

    def _to_hit(self, item, score):
        return None


class RecordingObserver(SearchObserver):
    def __init__(self):
        self.summaries = []

    def on_search(self, summary):
        self.summaries.append(summary)


def embedding_client(vector=(1.0, 0.0), error=None):
    client = MagicMock()
    if error:
        client.embeddings.create = AsyncMock(side_effect=error)
    else:
        client.embeddings.create = AsyncMock(return_value=MagicMock(data=[MagicMock(embedding=list(vector))]))
    return client


def make_service(records=None, adapters=None, client=None, store=None, observers=None, **search_settings):
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["search"].update(search_settings)
    generator = EmbeddingGenerator(
        client=client or embedding_client(),
        dimensions=2,
        max_retries=1,
        backoff_base_seconds=0,
    )
    return UnifiedSearchService(
        embedding_generator=generator,
        searcher=VectorSimilaritySearcher(store or InMemoryContentStore(2, records or [])),
        adapters=adapters,
        observers=observers,
        config=config,
    )


def request(query="project roadmap", **filters):
    return SearchRequest(query=query, user_id="u1", filters=SearchFilters(**filters))


ROADMAP_RECORDS = [record("a", 0.92), record("b", 0.81), record("c", 0.75), record("d", 0.40)]


def failing_store():
    store = MagicMock(dimensions=2)
    store.search = AsyncMock(side_effect=SearchBackendUnavailable("database down"))
    return store


class TestUnifiedSearch:
    """Merge, partial failure and terminal states."""

    @pytest.mark.asyncio
    async def test_blends_internal_and_mail_results(self):
        gmail = FakeAdapter(hits=[gmail_hit("m1", 0.88), gmail_hit("m2", 0.70)])
        service = make_service(ROADMAP_RECORDS, [gmail])

        result = await service.search(request(limit=5, threshold=0.7))

        assert [h.similarity for h in result.hits] == [0.92, 0.88, 0.81, 0.75, 0.70]
        assert [h.source_id for h in result.hits] == ["a", "m1", "b", "c", "m2"]
        assert [h.origin for h in result.hits][:2] == ["internal", "external:gmail"]
        assert result.state == AggregationState.DONE
        assert result.degraded is False
        stats = {s.source: s for s in result.per_source_stats}
        assert stats["internal"].count == 3
        assert stats["gmail"].count == 2
        assert all(s.status == SourceStatus.SUCCESS for s in stats.values())
        assert "<mark>" in result.hits[0].highlight

    @pytest.mark.asyncio
    async def test_failed_source_does_not_fail_request(self):
        gmail = FakeAdapter(error=AdapterError("gmail", "HTTP 500"))
        service = make_service(ROADMAP_RECORDS, [gmail])

        result = await service.search(request())

        assert [h.source_id for h in result.hits] == ["a", "b", "c"]
        stats = {s.source: s for s in result.per_source_stats}
        assert stats["gmail"].status == SourceStatus.ERROR
        assert "HTTP 500" in stats["gmail"].error
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_every_source_failing_raises(self):
        gmail = FakeAdapter(error=AdapterTimeout("gmail"))
        service = make_service(adapters=[gmail], store=failing_store())

        with pytest.raises(AllSourcesFailed) as exc_info:
            await service.search(request())

        statuses = {s.source: s.status for s in exc_info.value.per_source_stats}
        assert statuses == {"internal": SourceStatus.ERROR, "gmail": SourceStatus.TIMED_OUT}

    @pytest.mark.asyncio
    async def test_database_outage_fails_every_source(self):
        """Content store and token store share one database; both down is a failure, not an empty Done."""

        @contextmanager
        def unreachable():
            raise psycopg2.OperationalError("could not connect to server")
            yield

        tokens = DatabaseTokenProvider(connection_factory=unreachable)
        profile = ProxyScoreProfile(ceiling=0.88, floor=0.7)
        adapters = [
            GmailSearchAdapter(token_provider=tokens, profile=profile),
            DriveSearchAdapter(token_provider=tokens, profile=profile),
        ]
        service = make_service(adapters=adapters, store=failing_store())

        with pytest.raises(AllSourcesFailed) as exc_info:
            await service.search(request(content_types=["message", "file"]))

        statuses = {s.source: s.status for s in exc_info.value.per_source_stats}
        assert statuses == {
            "internal": SourceStatus.ERROR,
            "gmail": SourceStatus.ERROR,
            "drive": SourceStatus.ERROR,
        }

    @pytest.mark.asyncio
    async def test_no_matches_is_done_not_failure(self):
        service = make_service([record("low", 0.2)], [FakeAdapter()])

        result = await service.search(request())

        assert result.hits == []
        assert result.state == AggregationState.DONE
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_skipped_source_is_not_a_failure(self):
        gmail = FakeAdapter(skipped_reason="not_authenticated")
        service = make_service(adapters=[gmail])

        result = await service.search(request(sources=["gmail"]))

        assert result.hits == []
        assert result.per_source_stats[0].status == SourceStatus.SKIPPED
        assert result.per_source_stats[0].reason == "not_authenticated"
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_nothing_dispatched(self):
        gmail = FakeAdapter()
        service = make_service(ROADMAP_RECORDS, [gmail])

        result = await service.search(request(content_types=["event"]))

        assert result.hits == []
        assert result.per_source_stats == []
        assert result.state == AggregationState.DONE
        assert gmail.calls == 0

    @pytest.mark.asyncio
    async def test_embedding_failure_only_degrades_internal(self):
        gmail = FakeAdapter(hits=[gmail_hit("m1", 0.88)])
        service = make_service(
            ROADMAP_RECORDS, [gmail], client=embedding_client(error=RuntimeError("503"))
        )

        result = await service.search(request())

        assert [h.source_id for h in result.hits] == ["m1"]
        stats = {s.source: s for s in result.per_source_stats}
        assert stats["internal"].status == SourceStatus.ERROR
        assert stats["gmail"].status == SourceStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_date_range_applies_to_every_source(self):
        records = [record("jan", 0.9, created=utc(2024, 1, 10)), record("mar", 0.9, created=utc(2024, 3, 10))]
        gmail = FakeAdapter(hits=[
            gmail_hit("in", 0.88, created=utc(2024, 1, 20)),
            gmail_hit("out", 0.8, created=utc(2024, 2, 20)),
        ])
        service = make_service(records, [gmail])

        result = await service.search(
            request(date_range=DateRange(start=utc(2024, 1, 1), end=utc(2024, 1, 31)))
        )

        assert [h.source_id for h in result.hits] == ["jan", "in"]


class TestDeadline:
    """Shared deadline and cancellation."""

    @pytest.mark.asyncio
    async def test_slow_source_times_out(self):
        slow = FakeAdapter(delay=5.0)
        service = make_service(ROADMAP_RECORDS, [slow], deadline_seconds=0.1)

        result = await service.search(request())

        stats = {s.source: s for s in result.per_source_stats}
        assert stats["gmail"].status == SourceStatus.TIMED_OUT
        assert stats["internal"].status == SourceStatus.SUCCESS
        assert slow.cancelled is True
        assert len(result.hits) == 3

    @pytest.mark.asyncio
    async def test_cancelling_the_request_cancels_sources(self):
        slow = FakeAdapter(delay=5.0)
        service = make_service(ROADMAP_RECORDS, [slow])

        task = asyncio.create_task(service.search(request()))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert slow.cancelled is True


class TestCaching:
    """Query result cache behaviour."""

    @pytest.mark.asyncio
    async def test_repeat_query_served_from_cache(self):
        client = embedding_client()
        gmail = FakeAdapter(hits=[gmail_hit("m1", 0.88)])
        observer = RecordingObserver()
        service = make_service(ROADMAP_RECORDS, [gmail], client=client, observers=[observer])

        first = await service.search(request())
        second = await service.search(request())

        assert [h.source_id for h in second.hits] == [h.source_id for h in first.hits]
        assert gmail.calls == 1
        assert client.embeddings.create.await_count == 1
        assert [s.cache_hit for s in observer.summaries] == [False, True]

    @pytest.mark.asyncio
    async def test_cached_response_identical_to_fresh(self):
        gmail = FakeAdapter(hits=[gmail_hit("m1", 0.88)])
        service = make_service(ROADMAP_RECORDS, [gmail])

        first = await service.search(request(query="Project ROADMAP", limit=5))
        second = await service.search(request(query="Project ROADMAP", limit=5))

        assert gmail.calls == 1
        fresh = SearchResponse.from_result(first)
        cached = SearchResponse.from_result(second)
        assert cached.model_dump_json() == fresh.model_dump_json()
        assert cached.query == "Project ROADMAP"

    @pytest.mark.asyncio
    async def test_differently_cased_query_echoes_its_own_text(self):
        gmail = FakeAdapter(hits=[gmail_hit("m1", 0.88)])
        service = make_service(ROADMAP_RECORDS, [gmail])

        await service.search(request(query="project roadmap"))
        second = await service.search(request(query="PROJECT ROADMAP"))

        assert gmail.calls == 2
        assert second.query.text == "PROJECT ROADMAP"

    @pytest.mark.asyncio
    async def test_degraded_result_not_cached(self):
        gmail = FakeAdapter(error=AdapterError("gmail", "HTTP 502"))
        service = make_service(ROADMAP_RECORDS, [gmail])

        await service.search(request())
        await service.search(request())

        assert gmail.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_user(self):
        gmail = FakeAdapter(hits=[gmail_hit("m1", 0.88)])
        service = make_service(ROADMAP_RECORDS, [gmail])
        await service.search(request())

        assert await service.invalidate("u1") == 1
        await service.search(request())

        assert gmail.calls == 2

    @pytest.mark.asyncio
    async def test_stats(self):
        service = make_service(ROADMAP_RECORDS)
        await service.search(request())

        stats = await service.get_stats()

        assert stats["embedding"]["misses"] == 1
        assert stats["query_cache"]["stores"] == 1


class TestBuildQuery:
    """Request validation and defaults."""

    def test_defaults(self):
        service = make_service(adapters=[FakeAdapter()])

        query = service.build_query(SearchRequest(query=" roadmap ", user_id="u1"))

        assert query.text == "roadmap"
        assert query.limit == 20
        assert query.similarity_threshold == 0.7
        assert query.sources == ["internal", "gmail"]
        assert query.content_types == ["message", "file", "transcript", "knowledge", "event"]

    def test_limit_clamped(self):
        query = make_service().build_query(request(limit=500))

        assert query.limit == 100

    @pytest.mark.parametrize("bad_request", [
        SearchRequest(query="   ", user_id="u1"),
        SearchRequest(query="roadmap"),
        SearchRequest(query="roadmap", user_id="u1", filters=SearchFilters(content_types=["video"])),
        SearchRequest(query="roadmap", user_id="u1", filters=SearchFilters(content_types=[])),
        SearchRequest(query="roadmap", user_id="u1", filters=SearchFilters(sources=["slack"])),
    ])
    def test_invalid_requests(self, bad_request):
        with pytest.raises(SearchValidationError):
            make_service().build_query(bad_request)

    def test_dimension_mismatch_rejected_at_startup(self):
        generator = EmbeddingGenerator(client=MagicMock(), dimensions=3)

        with pytest.raises(ValueError):
            UnifiedSearchService(
                embedding_generator=generator,
                searcher=VectorSimilaritySearcher(InMemoryContentStore(2)),
                config=DEFAULT_CONFIG,
            )


class TestObservers:
    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_search(self):
        broken = MagicMock(spec=SearchObserver)
        broken.on_search.side_effect = RuntimeError("exporter down")
        recorder = RecordingObserver()
        service = make_service(ROADMAP_RECORDS, observers=[broken, recorder])

        result = await service.search(request())

        assert len(result.hits) == 3
        assert recorder.summaries[0].result_count == 3

    @pytest.mark.asyncio
    async def test_all_failed_is_reported(self):
        recorder = RecordingObserver()
        service = make_service(store=failing_store(), observers=[recorder])

        with pytest.raises(AllSourcesFailed):
            await service.search(request())

        assert recorder.summaries[0].state == AggregationState.PARTIAL_FAILURE


class TestFromConfig:
    def test_wires_every_enabled_adapter(self):
        service = UnifiedSearchService.from_config(
            DEFAULT_CONFIG,
            store=InMemoryContentStore(1536),
            token_provider=StaticTokenProvider(),
        )

        assert service.sources == ["internal", "gmail", "drive", "calendar"]
        assert service.adapters[0].profile == ProxyScoreProfile(ceiling=0.88, floor=0.7)

    def test_disabled_adapter_left_out(self):
        config = copy.deepcopy(DEFAULT_CONFIG)
        config["adapters"]["drive"]["enabled"] = False

        service = UnifiedSearchService.from_config(
            config,
            store=InMemoryContentStore(1536),
            token_provider=StaticTokenProvider(),
        )

        assert service.sources == ["internal", "gmail", "calendar"]
