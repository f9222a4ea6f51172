"""
Vector Similarity Search

Nearest-neighbour search over the internal content store.

Contract (all stores):
- Similarity is cosine, clamped to [0, 1].
- Filters (content type, owner, project, date range) are applied BEFORE
  rank-truncation, so `limit` is filled with eligible items whenever enough
  exist.
- Nothing below `threshold` is returned.
- Ties are broken by most recent created_at, then id.

IMPORTANT: The query vector must come from the same embedding model that
produced content_records.embedding (see config/search.yaml).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, ContextManager, Iterable, List, Optional, Sequence

import numpy as np
import psycopg2

from omnisearch.db.connection import get_connection

from .errors import EmbeddingDimensionMismatch, SearchBackendUnavailable
from .models import ContentRecord, DateRange, ScoredRecord, SearchQuery

logger = logging.getLogger(__name__)

# pgvector's hnsw.ef_search default and upper bound
HNSW_DEFAULT_EF_SEARCH = 40
HNSW_MAX_EF_SEARCH = 1000


@dataclass(frozen=True)
class RecordFilter:
    """Eligibility filter for internal content records."""

    owner_id: str
    content_types: Sequence[str]
    project_id: Optional[str] = None
    date_range: Optional[DateRange] = None

    @classmethod
    def from_query(cls, query: SearchQuery) -> "RecordFilter":
        return cls(
            owner_id=query.user_id,
            content_types=tuple(query.internal_content_types),
            project_id=query.project_id,
            date_range=query.date_range,
        )

    def matches(self, record: ContentRecord) -> bool:
        if record.owner_id != self.owner_id:
            return False
        if record.content_type not in self.content_types:
            return False
        if self.project_id is not None and record.project_id != self.project_id:
            return False
        if self.date_range is not None and not self.date_range.contains(record.created_at):
            return False
        return True


def clamp_similarity(value: float) -> float:
    """Map cosine [-1, 1] onto [0, 1] by clamping; opposite vectors score 0."""
    return min(1.0, max(0.0, float(value)))


def rank_key(scored: ScoredRecord):
    """Sort key: similarity desc, created_at desc, id asc."""
    return (-scored.similarity, -scored.record.created_at.timestamp(), scored.record.id)


def cosine_similarities(query_vector: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of query_vector against every row of matrix. Zero vectors score 0."""
    query = np.asarray(query_vector, dtype=np.float64)
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denominators = row_norms * query_norm
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denominators > 0, dots / denominators, 0.0)
    return sims


class ContentStore(ABC):
    """A vector-capable content store."""

    dimensions: int

    @abstractmethod
    async def search(
        self,
        query_vector: List[float],
        record_filter: RecordFilter,
        limit: int,
        threshold: float,
    ) -> List[ScoredRecord]:
        """Return up to limit eligible records with similarity >= threshold."""
        pass


class InMemoryContentStore(ContentStore):
    """
    Numpy-backed store for tests and local development.

    Records are only ever added; the search engine never mutates them.
    """

    def __init__(self, dimensions: int, records: Optional[Iterable[ContentRecord]] = None):
        self.dimensions = dimensions
        self._records: List[ContentRecord] = []
        for record in records or []:
            self.add(record)

    def add(self, record: ContentRecord) -> None:
        if len(record.embedding) != self.dimensions:
            raise EmbeddingDimensionMismatch(
                self.dimensions,
                len(record.embedding),
                f"Record {record.id} has {len(record.embedding)} dimensions, store expects {self.dimensions}",
            )
        self._records.append(record)

    def __len__(self) -> int:
        return len(self._records)

    async def search(
        self,
        query_vector: List[float],
        record_filter: RecordFilter,
        limit: int,
        threshold: float,
    ) -> List[ScoredRecord]:
        eligible = [r for r in self._records if record_filter.matches(r)]
        if not eligible:
            return []

        matrix = np.asarray([r.embedding for r in eligible], dtype=np.float64)
        sims = cosine_similarities(query_vector, matrix)

        scored = [
            ScoredRecord(record=record, similarity=clamp_similarity(sim))
            for record, sim in zip(eligible, sims)
        ]
        scored = [s for s in scored if s.similarity >= threshold]
        scored.sort(key=rank_key)
        return scored[:limit]


class PgVectorContentStore(ContentStore):
    """
    PostgreSQL + pgvector store.

    Uses pgvector's cosine distance operator (<=>); similarity = 1 - distance.
    psycopg2 is blocking, so queries run in a worker thread.

    An HNSW index scan returns at most hnsw.ef_search candidates and applies
    WHERE afterwards, so filtered searches could come back short. Each query
    therefore raises ef_search to the limit and, with pgvector >= 0.8, turns
    on iterative scans so the index keeps going until enough rows pass the
    filters.
    """

    def __init__(
        self,
        dimensions: int,
        table: str = "content_records",
        connection_factory: Callable[[], ContextManager] = get_connection,
        iterative_scan: bool = True,
    ):
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")
        self.dimensions = dimensions
        self.table = table
        self.iterative_scan = iterative_scan
        self._connection_factory = connection_factory

    def session_settings(self, limit: int) -> List[str]:
        """SET LOCAL statements issued in the search transaction."""
        ef_search = min(max(int(limit), HNSW_DEFAULT_EF_SEARCH), HNSW_MAX_EF_SEARCH)
        statements = [f"SET LOCAL hnsw.ef_search = {ef_search}"]
        if self.iterative_scan:
            statements.append("SET LOCAL hnsw.iterative_scan = strict_order")
        return statements

    @staticmethod
    def _vector_literal(vector: Sequence[float]) -> str:
        # pgvector text format: [x1,x2,...]
        return "[" + ",".join(str(float(x)) for x in vector) + "]"

    def build_query(
        self,
        query_vector: Sequence[float],
        record_filter: RecordFilter,
        limit: int,
        threshold: float,
    ):
        """Build SQL and params. Every filter is in WHERE, before ORDER BY/LIMIT."""
        params = {
            "vec": self._vector_literal(query_vector),
            "owner_id": record_filter.owner_id,
            "content_types": list(record_filter.content_types),
            "threshold": threshold,
            "limit": limit,
        }
        clauses = [
            "embedding IS NOT NULL",
            "owner_id = %(owner_id)s",
            "content_type = ANY(%(content_types)s)",
            "1 - (embedding <=> %(vec)s::vector) >= %(threshold)s",
        ]
        if record_filter.project_id is not None:
            clauses.append("project_id = %(project_id)s")
            params["project_id"] = record_filter.project_id
        if record_filter.date_range is not None:
            if record_filter.date_range.start is not None:
                clauses.append("created_at >= %(start)s")
                params["start"] = record_filter.date_range.start
            if record_filter.date_range.end is not None:
                clauses.append("created_at <= %(end)s")
                params["end"] = record_filter.date_range.end

        sql = f"""
            SELECT
                id,
                content_type,
                title,
                body,
                owner_id,
                project_id,
                created_at,
                metadata,
                1 - (embedding <=> %(vec)s::vector) AS similarity
            FROM {self.table}
            WHERE {" AND ".join(clauses)}
            ORDER BY embedding <=> %(vec)s::vector, created_at DESC, id
            LIMIT %(limit)s
        """
        return sql, params

    def _search_sync(
        self,
        query_vector: List[float],
        record_filter: RecordFilter,
        limit: int,
        threshold: float,
    ) -> List[ScoredRecord]:
        sql, params = self.build_query(query_vector, record_filter, limit, threshold)
        try:
            with self._connection_factory() as conn:
                with conn.cursor() as cur:
                    for statement in self.session_settings(limit):
                        cur.execute(statement)
                    cur.execute(sql, params)
                    rows = cur.fetchall()
        except psycopg2.Error as e:
            logger.error(f"Vector search failed: {e}")
            raise SearchBackendUnavailable(f"Vector search failed: {e}") from e

        return [
            ScoredRecord(
                record=ContentRecord(
                    id=str(row[0]),
                    content_type=row[1],
                    title=row[2],
                    body=row[3] or "",
                    owner_id=row[4],
                    project_id=row[5],
                    created_at=row[6],
                    metadata=row[7] or {},
                ),
                similarity=clamp_similarity(row[8]),
            )
            for row in rows
        ]

    async def search(
        self,
        query_vector: List[float],
        record_filter: RecordFilter,
        limit: int,
        threshold: float,
    ) -> List[ScoredRecord]:
        return await asyncio.to_thread(
            self._search_sync, query_vector, record_filter, limit, threshold
        )


class VectorSimilaritySearcher:
    """
    Searcher in front of a ContentStore.

    Re-checks the store's output so the threshold, filter and ordering
    guarantees hold regardless of backend, and converts any backend fault
    into SearchBackendUnavailable.
    """

    def __init__(self, store: ContentStore):
        self.store = store

    @property
    def dimensions(self) -> int:
        return self.store.dimensions

    async def search(
        self,
        query_vector: List[float],
        record_filter: RecordFilter,
        limit: int,
        threshold: float,
    ) -> List[ScoredRecord]:
        """
        Find the records most similar to query_vector.

        Args:
            query_vector: Query embedding (must match store dimensions)
            record_filter: Eligibility filter, applied before truncation
            limit: Maximum results
            threshold: Minimum similarity (inclusive)

        Returns:
            Scored records, similarity desc then created_at desc

        Raises:
            EmbeddingDimensionMismatch: If query_vector has the wrong dimension
            SearchBackendUnavailable: If the store cannot be queried
        """
        if len(query_vector) != self.store.dimensions:
            raise EmbeddingDimensionMismatch(self.store.dimensions, len(query_vector))
        if limit <= 0 or not record_filter.content_types:
            return []

        try:
            results = await self.store.search(query_vector, record_filter, limit, threshold)
        except SearchBackendUnavailable:
            raise
        except Exception as e:
            logger.error(f"Content store error: {e}")
            raise SearchBackendUnavailable(f"Content store error: {e}") from e

        checked = [
            ScoredRecord(record=s.record, similarity=clamp_similarity(s.similarity))
            for s in results
            if record_filter.matches(s.record)
        ]
        checked = [s for s in checked if s.similarity >= threshold]
        checked.sort(key=rank_key)
        logger.debug(f"Vector search returned {len(checked)} records")
        return checked[:limit]
