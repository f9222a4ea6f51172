"""
Search API Router

Endpoints for unified search across internal content and connected
providers, plus the cache invalidation hook used by ingestion.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from omnisearch.api.deps import get_search_service
from omnisearch.search.errors import AllSourcesFailed, SearchValidationError
from omnisearch.search.models import (
    DateRange,
    InvalidateRequest,
    InvalidateResponse,
    SearchErrorResponse,
    SearchFilters,
    SearchRequest,
    SearchResponse,
    SearchStatsResponse,
)
from omnisearch.search.unified_search import UnifiedSearchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search", tags=["search"])


def _split(value: Optional[str]) -> Optional[List[str]]:
    """Parse a comma-separated query parameter; 'all' or empty means no filter."""
    if value is None:
        return None
    items = [v.strip() for v in value.split(",") if v.strip()]
    if not items or items == ["all"]:
        return None
    return items


async def _run_search(request: SearchRequest, service: UnifiedSearchService):
    try:
        result = await service.search(request)
    except SearchValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AllSourcesFailed as e:
        body = SearchErrorResponse(error=str(e), per_source_stats=e.per_source_stats)
        return JSONResponse(status_code=500, content=body.model_dump(by_alias=True, mode="json"))

    return SearchResponse.from_result(result)


@router.post(
    "",
    response_model=SearchResponse,
    responses={500: {"model": SearchErrorResponse}},
)
async def search(
    request: SearchRequest,
    service: UnifiedSearchService = Depends(get_search_service),
):
    """
    Search internal content and connected providers with one query.

    Results from every source are merged into a single list ordered by
    similarity, then recency. Sources that fail or miss the deadline are
    reported in `perSourceStats`; the request still succeeds with the rest.

    **Content types:** `message`, `file`, `transcript`, `knowledge`, `event`

    **Sources:** `internal`, `gmail`, `drive`, `calendar`

    Returns 500 only when every dispatched source failed.
    """
    return await _run_search(request, service)


@router.get(
    "",
    response_model=SearchResponse,
    responses={500: {"model": SearchErrorResponse}},
)
async def search_get(
    q: Optional[str] = Query(default=None, max_length=2000, description="Search query"),
    user_id: Optional[str] = Query(default=None, alias="userId", description="Requesting user"),
    type: Optional[str] = Query(
        default=None,
        description="Comma-separated content types, or 'all'",
    ),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    limit: Optional[int] = Query(default=None, ge=1, description="Max results"),
    threshold: Optional[float] = Query(
        default=None, ge=0.0, le=1.0, description="Minimum similarity"
    ),
    sources: Optional[str] = Query(default=None, description="Comma-separated sources"),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    service: UnifiedSearchService = Depends(get_search_service),
):
    """
    Query-string variant of POST /api/search.

    **Examples:**
    - `/api/search?q=project+roadmap&userId=user_123`
    - `/api/search?q=standup&userId=user_123&type=event&startDate=2024-01-01T00:00:00Z`
    """
    try:
        date_range = None
        if start_date or end_date:
            date_range = DateRange(start=start_date, end=end_date)
        request = SearchRequest(
            query=q,
            user_id=user_id,
            filters=SearchFilters(
                project_id=project_id,
                content_types=_split(type),
                date_range=date_range,
                limit=limit,
                threshold=threshold,
                sources=_split(sources),
            ),
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail=e.errors(include_url=False, include_context=False, include_input=False),
        )

    return await _run_search(request, service)


@router.post("/invalidate", response_model=InvalidateResponse)
async def invalidate(
    request: InvalidateRequest,
    service: UnifiedSearchService = Depends(get_search_service),
):
    """
    Purge cached search results.

    Called by ingestion after it writes new content for a user. Omit
    `userId` to purge every user's cached results.
    """
    removed = await service.invalidate(request.user_id)
    return InvalidateResponse(user_id=request.user_id, invalidated=removed)


@router.get("/stats", response_model=SearchStatsResponse)
async def get_stats(
    service: UnifiedSearchService = Depends(get_search_service),
):
    """Embedding cache and query cache statistics."""
    return SearchStatsResponse(**await service.get_stats())
