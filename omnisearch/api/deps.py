"""
FastAPI Dependency Injection

Provides the shared search service for API endpoints. The service holds
the embedding and query caches, so one instance lives for the whole process.

Tests override get_search_service via app.dependency_overrides.
"""

from functools import lru_cache

from omnisearch.search.unified_search import UnifiedSearchService


@lru_cache(maxsize=1)
def get_search_service() -> UnifiedSearchService:
    """
    FastAPI dependency for the unified search service.

    Usage in endpoints:
        @router.post("/search")
        async def search(service: UnifiedSearchService = Depends(get_search_service)):
            ...
    """
    return UnifiedSearchService.from_config()
