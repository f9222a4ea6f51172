"""
Search Module

Unified retrieval across the internal vector store and external providers
(Gmail, Drive, Calendar).

Key Components:
- UnifiedSearchService: Fan-out, deadline, merge and caching
- EmbeddingGenerator: Cached query embeddings
- VectorSimilaritySearcher: Internal nearest-neighbour search
- ResultRanker: Cross-source merge and formatting
- Source Adapters: Provider searches mapped to NormalizedHit
"""

from .embedding_cache import EmbeddingGenerator
from .errors import AllSourcesFailed, SearchError, SearchValidationError
from .models import (
    AggregatedResult,
    SearchHit,
    SearchQuery,
    SearchRequest,
    SearchResponse,
    SourceStats,
)
from .query_cache import QueryResultCache
from .ranker import ResultRanker
from .unified_search import UnifiedSearchService
from .vector_search import VectorSimilaritySearcher

__all__ = [
    "AggregatedResult",
    "AllSourcesFailed",
    "EmbeddingGenerator",
    "QueryResultCache",
    "ResultRanker",
    "SearchError",
    "SearchHit",
    "SearchQuery",
    "SearchRequest",
    "SearchResponse",
    "SearchValidationError",
    "SourceStats",
    "UnifiedSearchService",
    "VectorSimilaritySearcher",
]
