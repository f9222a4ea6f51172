"""
Tests for search observers.
"""

import logging

from prometheus_client import REGISTRY

from omnisearch.search.models import AggregationState, SourceStats, SourceStatus
from omnisearch.search.observability import LoggingObserver, PrometheusObserver, SearchSummary


def summary(cache_hit=False):
    return SearchSummary(
        user_id="u1",
        state=AggregationState.DONE,
        cache_hit=cache_hit,
        total_time_ms=120.0,
        result_count=4,
        degraded=True,
        per_source_stats=[
            SourceStats(source="internal", count=4, latency_ms=80.0, status=SourceStatus.SUCCESS),
            SourceStats(source="drive", latency_ms=3000.0, status=SourceStatus.TIMED_OUT,
                        error="deadline exceeded"),
        ],
    )


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestLoggingObserver:
    def test_logs_summary_and_failed_sources(self, caplog):
        with caplog.at_level(logging.INFO, logger="omnisearch.search.observability"):
            LoggingObserver().on_search(summary())

        assert "internal=success/4" in caplog.text
        assert "Source drive timedOut: deadline exceeded" in caplog.text


class TestPrometheusObserver:
    def test_counts_request_and_sources(self):
        before_requests = sample("omnisearch_requests_total", state="done", cache="miss")
        before_drive = sample("omnisearch_source_requests_total", source="drive", status="timedOut")

        PrometheusObserver().on_search(summary())

        assert sample("omnisearch_requests_total", state="done", cache="miss") == before_requests + 1
        assert sample(
            "omnisearch_source_requests_total", source="drive", status="timedOut"
        ) == before_drive + 1

    def test_cache_hit_skips_source_metrics(self):
        before_requests = sample("omnisearch_requests_total", state="done", cache="hit")
        before_internal = sample(
            "omnisearch_source_requests_total", source="internal", status="success"
        )

        PrometheusObserver().on_search(summary(cache_hit=True))

        assert sample("omnisearch_requests_total", state="done", cache="hit") == before_requests + 1
        assert sample(
            "omnisearch_source_requests_total", source="internal", status="success"
        ) == before_internal
