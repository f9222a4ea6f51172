"""
Omnisearch API - Main Application

FastAPI application serving unified search over internal content and
connected Google providers.

Run with:
    uvicorn omnisearch.api.main:app --reload --port 8000

API Documentation available at:
    - Swagger UI: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

import logging
import logging.handlers
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from omnisearch.logging_utils import SafeStreamHandler, quiet_noisy_loggers

# =============================================================================
# File-based logging (survives stdout/pipe issues)
# =============================================================================
_LOG_FILE = os.getenv("OMNISEARCH_LOG_FILE", "/tmp/omnisearch-app.log")
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_root_logger = logging.getLogger()
_root_logger.setLevel(logging.INFO)

if not any(isinstance(h, logging.handlers.RotatingFileHandler) for h in _root_logger.handlers):
    _file_handler = logging.handlers.RotatingFileHandler(
        _LOG_FILE,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3,
    )
    _file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    _file_handler.setLevel(logging.INFO)
    _root_logger.addHandler(_file_handler)

if not any(isinstance(h, SafeStreamHandler) for h in _root_logger.handlers):
    _stream_handler = SafeStreamHandler()
    _stream_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    _stream_handler.setLevel(logging.INFO)
    _root_logger.addHandler(_stream_handler)

quiet_noisy_loggers()

# =============================================================================

# Load .env from project root so DATABASE_URL, REDIS_URL and OPENAI_API_KEY are available
load_dotenv(Path(__file__).parent.parent.parent / ".env")
from fastapi.middleware.cors import CORSMiddleware

from omnisearch import __version__
from omnisearch.api.routers import health, search

logger = logging.getLogger(__name__)


# Create FastAPI application
app = FastAPI(
    title="Omnisearch API",
    description="""
    Unified retrieval across internal content and connected providers.

    ## Features

    - **Unified Search**: One query over internal vector search, Gmail, Drive and Calendar
    - **Partial Results**: Failing or slow providers are reported, not fatal
    - **Caching**: Query embeddings and whole results are cached
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS for frontend applications
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Next.js default
        "http://127.0.0.1:3000",
        "http://localhost:3001",  # Next.js alternate port
        "http://127.0.0.1:3001",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Invalid query or filters are a 400, not FastAPI's default 422."""
    logger.info(f"Rejected request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors(), custom_encoder={ValueError: str})},
    )


# Register routers
app.include_router(health.router)
app.include_router(search.router)


@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "name": "Omnisearch API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }
