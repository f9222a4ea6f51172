"""
Health Check Endpoints

Liveness check and Prometheus metrics for the Omnisearch API.
Used by monitoring systems and load balancers.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime


@router.get("/health", response_model=HealthResponse)
def health_check():
    """
    Basic health check endpoint.

    Returns 200 OK if the API is running.
    Does not check external dependencies.
    """
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc)
    )


@router.get("/metrics")
def metrics():
    """Prometheus exposition of search request and per-source metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
