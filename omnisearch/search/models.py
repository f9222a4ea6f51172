"""
Search Module Models

Pydantic models for search requests, responses, and the data passed between
the fan-out aggregator, the searcher, the adapters and the ranker.

Wire format is camelCase (userId, perSourceStats, ...); Python attributes are
snake_case. Models accept either form on input.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Content types held by the internal store
INTERNAL_CONTENT_TYPES = ("message", "file", "transcript", "knowledge")
# Content types only produced by external providers
EXTERNAL_CONTENT_TYPES = ("event",)
ALL_CONTENT_TYPES = INTERNAL_CONTENT_TYPES + EXTERNAL_CONTENT_TYPES

INTERNAL_SOURCE = "internal"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so every comparison is timezone-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    """Base model serializing to camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DateRange(CamelModel):
    """Inclusive creation-time window."""

    start: Optional[datetime] = Field(default=None, description="Earliest createdAt (inclusive)")
    end: Optional[datetime] = Field(default=None, description="Latest createdAt (inclusive)")

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start and self.end and self.start > self.end:
            raise ValueError("dateRange.start must not be after dateRange.end")
        return self

    def contains(self, moment: Optional[datetime]) -> bool:
        """True when moment falls inside the window. Undated items never match."""
        if moment is None:
            return False
        moment = ensure_utc(moment)
        if self.start and moment < self.start:
            return False
        if self.end and moment > self.end:
            return False
        return True


class SearchFilters(CamelModel):
    """Optional filters supplied by the caller."""

    project_id: Optional[str] = None
    content_types: Optional[List[str]] = Field(
        default=None,
        description="Subset of: message, file, transcript, knowledge, event",
    )
    date_range: Optional[DateRange] = None
    limit: Optional[int] = Field(default=None, ge=1)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    sources: Optional[List[str]] = Field(
        default=None,
        description="Restrict dispatch to these sources: internal, gmail, drive, calendar",
    )


class SearchRequest(CamelModel):
    """Request body for unified search."""

    query: Optional[str] = Field(default=None, max_length=2000, description="Free-text query")
    user_id: Optional[str] = Field(default=None, description="Requesting user")
    filters: SearchFilters = Field(default_factory=SearchFilters)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "query": "project roadmap",
                "userId": "user_123",
                "filters": {
                    "contentTypes": ["message", "file"],
                    "limit": 5,
                    "threshold": 0.7,
                },
            }
        },
    )


class SearchQuery(CamelModel):
    """A validated query with every default filled in."""

    text: str
    user_id: str
    project_id: Optional[str] = None
    content_types: List[str]
    date_range: Optional[DateRange] = None
    limit: int
    similarity_threshold: float
    sources: List[str]

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    @property
    def internal_content_types(self) -> List[str]:
        return [t for t in self.content_types if t in INTERNAL_CONTENT_TYPES]

    def wants_source(self, source: str) -> bool:
        return source in self.sources


class ContentRecord(BaseModel):
    """A row of the internal content store. Read-only to the search engine."""

    id: str
    content_type: str
    title: Optional[str] = None
    body: str = ""
    # Not selected by the pgvector store; results only need the score
    embedding: List[float] = Field(default_factory=list)
    owner_id: str
    project_id: Optional[str] = None
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


@dataclass(frozen=True)
class ScoredRecord:
    """A content record with its cosine similarity to the query."""

    record: ContentRecord
    similarity: float


@dataclass(frozen=True)
class NormalizedHit:
    """
    A result from any source, before merging.

    origin is 'internal' or 'external:<provider>'. Adapters own the mapping
    from provider fields; the ranker only reads these attributes.
    """

    origin: str
    source_id: str
    content_type: str
    title: str
    body: str
    score: float
    created_at: Optional[datetime] = None
    url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceResult:
    """Hits from one source, in that source's native order."""

    source: str
    hits: List[NormalizedHit]


class SearchHit(CamelModel):
    """A merged, formatted result."""

    source_id: str
    content_type: str
    title: str
    snippet: str = Field(..., description="First N characters of the body")
    highlight: str = Field(default="", description="Window around query-term matches")
    similarity: float = Field(..., ge=0, le=1, description="Normalized score 0-1")
    created_at: Optional[datetime] = None
    url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    origin: str = Field(..., description="internal or external:<provider>")

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class SourceStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMED_OUT = "timedOut"
    SKIPPED = "skipped"


class SourceStats(CamelModel):
    """Outcome of one fan-out branch."""

    source: str
    count: int = 0
    latency_ms: float = 0.0
    status: SourceStatus
    error: Optional[str] = None
    reason: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status in (SourceStatus.ERROR, SourceStatus.TIMED_OUT)


class TimingBreakdown(CamelModel):
    total_time_ms: float = 0.0
    embedding_time_ms: float = 0.0
    search_time_ms: float = 0.0


class AggregationState(str, Enum):
    DISPATCH = "dispatch"
    COLLECTING = "collecting"
    MERGING = "merging"
    DONE = "done"
    PARTIAL_FAILURE = "partialFailure"


class AppliedFilters(CamelModel):
    """Filters echoed back to the caller with defaults filled in."""

    user_id: str
    project_id: Optional[str] = None
    content_types: List[str]
    date_range: Optional[DateRange] = None
    limit: int
    threshold: float
    sources: List[str]


class AggregatedResult(CamelModel):
    """Everything one aggregation produced; this is what the query cache stores."""

    query: SearchQuery
    hits: List[SearchHit]
    per_source_stats: List[SourceStats]
    timing: TimingBreakdown
    state: AggregationState = AggregationState.DONE
    degraded: bool = False

    def applied_filters(self) -> AppliedFilters:
        return AppliedFilters(
            user_id=self.query.user_id,
            project_id=self.query.project_id,
            content_types=self.query.content_types,
            date_range=self.query.date_range,
            limit=self.query.limit,
            threshold=self.query.similarity_threshold,
            sources=self.query.sources,
        )


class SearchResponse(CamelModel):
    """Search endpoint response."""

    query: str
    filters: AppliedFilters
    results: List[SearchHit]
    count: int
    performance: TimingBreakdown
    per_source_stats: List[SourceStats]

    @classmethod
    def from_result(cls, result: AggregatedResult) -> "SearchResponse":
        return cls(
            query=result.query.text,
            filters=result.applied_filters(),
            results=result.hits,
            count=len(result.hits),
            performance=result.timing,
            per_source_stats=result.per_source_stats,
        )


class SearchErrorResponse(CamelModel):
    """Body returned with a 500 when nothing could be searched."""

    error: str
    code: str = "ALL_SOURCES_FAILED"
    per_source_stats: List[SourceStats] = Field(default_factory=list)


class EmbeddingCacheEntry(BaseModel):
    """A cached query embedding. Never modified after it is written."""

    text_hash: str
    model_version: str
    vector: List[float]
    created_at: datetime

    model_config = ConfigDict(frozen=True)


class InvalidateRequest(CamelModel):
    """Cache purge request from ingestion/write-path collaborators."""

    user_id: Optional[str] = Field(default=None, description="Purge one user; omit to purge all")


class InvalidateResponse(CamelModel):
    user_id: Optional[str] = None
    invalidated: int


class SearchStatsResponse(CamelModel):
    embedding: Dict[str, Any]
    query_cache: Dict[str, Any]
