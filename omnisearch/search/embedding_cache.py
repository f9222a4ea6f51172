"""
Embedding Cache & Generator

Memoizes query text → embedding vector in front of the OpenAI embeddings API.

Text is normalized (trim, whitespace collapse, casefold) before hashing so
"Project Roadmap " and "project roadmap" share one cache slot. The cache key
carries a model version tag, so switching models can never return a vector
from the old model.

Provider calls on a miss are bounded by a semaphore (rate limits), each
attempt has its own timeout (shorter than the request deadline, leaving time
to merge), and failures are retried with exponential backoff. Retries live
here and nowhere else in the search path.
"""

import asyncio
import hashlib
import logging
import random
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI

from .cache import Cache, InMemoryCache
from .errors import EmbeddingDimensionMismatch, EmbeddingProviderError, SearchValidationError
from .models import EmbeddingCacheEntry

logger = logging.getLogger(__name__)

EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536

KEY_PREFIX = "emb"

# Errors where retrying cannot help
NON_RETRYABLE_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class EmbeddingCacheStats:
    """Counters for the embedding cache. Hit rate ≥ 80% is the target under repeated queries."""

    hits: int = 0
    misses: int = 0
    provider_calls: int = 0
    provider_errors: int = 0
    dimension_mismatches: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.hits / self.total_requests

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["total_requests"] = self.total_requests
        data["hit_rate"] = round(self.hit_rate, 4)
        return data


class EmbeddingGenerator:
    """
    Cached embedding generation.

    Usage:
        generator = EmbeddingGenerator()
        vector = await generator.get_embedding("project roadmap")
    """

    def __init__(
        self,
        cache: Optional[Cache] = None,
        model: str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
        model_version: Optional[str] = None,
        ttl_hours: float = 24,
        max_entries: int = 1000,
        max_concurrency: int = 4,
        max_retries: int = 3,
        backoff_base_seconds: float = 0.5,
        request_timeout_seconds: float = 1.5,
        batch_size: int = 20,
        max_input_chars: int = 8000,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize the generator.

        Args:
            cache: Cache capability (defaults to an in-memory TTL/LRU cache)
            model: OpenAI embedding model name
            dimensions: Vector dimensions requested from the model
            model_version: Tag embedded in cache keys (defaults to "model:dimensions")
            ttl_hours: Time-to-live for cached vectors
            max_entries: Capacity of the default in-memory cache
            max_concurrency: Concurrent provider calls allowed
            max_retries: Provider attempts before giving up
            backoff_base_seconds: First retry delay; doubles per attempt
            request_timeout_seconds: Timeout for a single provider attempt
            batch_size: Texts per provider call in get_embeddings()
            max_input_chars: Input truncation before hashing and embedding
            client: AsyncOpenAI client (lazily created when omitted)
        """
        if not (1 <= dimensions <= 4096):
            raise ValueError(f"Invalid embedding dimensions: {dimensions}")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.model = model
        self.dimensions = dimensions
        self.model_version = model_version or f"{model}:{dimensions}"
        self.ttl_seconds = ttl_hours * 3600
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.batch_size = batch_size
        self.max_input_chars = max_input_chars

        self._cache = cache or InMemoryCache(maxsize=max_entries, default_ttl=self.ttl_seconds)
        self._client = client
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._stats = EmbeddingCacheStats()

    @classmethod
    def from_config(cls, config: dict, cache: Optional[Cache] = None) -> "EmbeddingGenerator":
        """Build from the 'embedding' section of the search config."""
        settings = config["embedding"]
        return cls(
            cache=cache,
            model=settings["model"],
            dimensions=settings["dimensions"],
            ttl_hours=settings["ttl_hours"],
            max_entries=settings["max_entries"],
            max_concurrency=settings["max_concurrency"],
            max_retries=settings["max_retries"],
            backoff_base_seconds=settings["backoff_base_seconds"],
            request_timeout_seconds=settings["request_timeout_seconds"],
            batch_size=settings["batch_size"],
            max_input_chars=settings["max_input_chars"],
        )

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-initialize async OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    def normalize_text(self, text: str) -> str:
        """Trim, collapse whitespace, casefold and truncate."""
        normalized = _WHITESPACE.sub(" ", text.strip()).casefold()
        return normalized[: self.max_input_chars]

    def cache_key(self, text: str) -> Tuple[str, str]:
        """
        Cache key and text hash for text.

        Returns:
            (key, text_hash) where key = "emb:{model_version}:{sha256}"
        """
        text_hash = hashlib.sha256(self.normalize_text(text).encode("utf-8")).hexdigest()
        return f"{KEY_PREFIX}:{self.model_version}:{text_hash}", text_hash

    async def get_embedding(self, text: str) -> List[float]:
        """
        Get the embedding for text, from cache when possible.

        Raises:
            SearchValidationError: If text is empty
            EmbeddingProviderError: If the provider fails after all retries
            EmbeddingDimensionMismatch: If a cached or returned vector has the wrong dimension
        """
        if not text or not text.strip():
            raise SearchValidationError("Text to embed cannot be empty")

        key, text_hash = self.cache_key(text)
        cached = await self._lookup(key)
        if cached is not None:
            self._stats.hits += 1
            logger.debug(f"Embedding cache hit (hit rate {self._stats.hit_rate:.2%})")
            return cached

        self._stats.misses += 1
        vectors = await self._call_provider([self.normalize_text(text)])
        await self._store(key, text_hash, vectors[0])
        logger.debug(f"Embedding cache miss (hit rate {self._stats.hit_rate:.2%})")
        return vectors[0]

    async def get_embeddings(self, texts: List[str]) -> List[List[float]]:
        """
        Batch variant of get_embedding().

        Checks the cache for every text, then embeds only the missing ones
        in provider batches of batch_size. Output order matches input order.
        """
        if not texts:
            return []

        results: List[Optional[List[float]]] = [None] * len(texts)
        pending: Dict[str, Tuple[str, List[int]]] = {}

        for i, text in enumerate(texts):
            if not text or not text.strip():
                raise SearchValidationError(f"Text at index {i} is empty")
            key, text_hash = self.cache_key(text)
            if key in pending:
                pending[key][1].append(i)
                continue
            cached = await self._lookup(key)
            if cached is not None:
                self._stats.hits += 1
                results[i] = cached
            else:
                self._stats.misses += 1
                pending[key] = (text_hash, [i])

        if pending:
            keys = list(pending)
            logger.info(
                f"Embedding batch: {len(texts)} requested, {len(keys)} to generate"
            )
            for start in range(0, len(keys), self.batch_size):
                batch_keys = keys[start : start + self.batch_size]
                inputs = [self.normalize_text(texts[pending[k][1][0]]) for k in batch_keys]
                vectors = await self._call_provider(inputs)
                for key, vector in zip(batch_keys, vectors):
                    text_hash, indices = pending[key]
                    await self._store(key, text_hash, vector)
                    for i in indices:
                        results[i] = vector

        return results  # type: ignore[return-value]

    async def warmup(self, texts: List[str]) -> int:
        """Pre-populate the cache with common queries. Returns count warmed."""
        texts = [t for t in texts if t and t.strip()]
        logger.info(f"Warming embedding cache with {len(texts)} texts")
        await self.get_embeddings(texts)
        return len(texts)

    async def invalidate(self) -> int:
        """Drop every cached embedding, for all model versions."""
        removed = await self._cache.delete_prefix(f"{KEY_PREFIX}:")
        logger.info(f"Invalidated {removed} cached embeddings")
        return removed

    def get_stats(self) -> Dict:
        stats = self._stats.to_dict()
        stats["model_version"] = self.model_version
        return stats

    async def _lookup(self, key: str) -> Optional[List[float]]:
        entry = await self._cache.get(key)
        if entry is None:
            return None
        if not isinstance(entry, EmbeddingCacheEntry) or entry.model_version != self.model_version:
            await self._cache.delete(key)
            return None
        if len(entry.vector) != self.dimensions:
            self._stats.dimension_mismatches += 1
            await self._cache.delete(key)
            raise EmbeddingDimensionMismatch(self.dimensions, len(entry.vector))
        return list(entry.vector)

    async def _store(self, key: str, text_hash: str, vector: List[float]) -> None:
        entry = EmbeddingCacheEntry(
            text_hash=text_hash,
            model_version=self.model_version,
            vector=vector,
            created_at=datetime.now(timezone.utc),
        )
        await self._cache.set(key, entry, ttl=self.ttl_seconds)

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with ±25% jitter: base, 2×base, 4×base, ..."""
        base = self.backoff_base_seconds * (2 ** (attempt - 1))
        return base * random.uniform(0.75, 1.25)

    async def _call_provider(self, inputs: List[str]) -> List[List[float]]:
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._semaphore:
                    self._stats.provider_calls += 1
                    response = await asyncio.wait_for(
                        self.client.embeddings.create(
                            model=self.model,
                            input=inputs,
                            dimensions=self.dimensions,
                        ),
                        timeout=self.request_timeout_seconds,
                    )
                vectors = [item.embedding for item in response.data]
                if len(vectors) != len(inputs):
                    raise EmbeddingProviderError(
                        f"Provider returned {len(vectors)} embeddings for {len(inputs)} inputs"
                    )
                for vector in vectors:
                    if len(vector) != self.dimensions:
                        raise EmbeddingDimensionMismatch(self.dimensions, len(vector))
                return vectors
            except (EmbeddingDimensionMismatch, EmbeddingProviderError):
                self._stats.provider_errors += 1
                raise
            except NON_RETRYABLE_ERRORS as e:
                self._stats.provider_errors += 1
                logger.error(f"Embedding request rejected, not retrying: {e}")
                raise EmbeddingProviderError(f"Embedding generation failed: {e}") from e
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    f"Embedding request timed out after {self.request_timeout_seconds}s "
                    f"(attempt {attempt}/{self.max_retries})"
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Embedding request failed (attempt {attempt}/{self.max_retries}): {e}"
                )

            self._stats.provider_errors += 1
            if attempt < self.max_retries:
                await asyncio.sleep(self._backoff_delay(attempt))

        logger.error(f"Embedding generation failed after {self.max_retries} attempts: {last_error}")
        raise EmbeddingProviderError(
            f"Embedding generation failed after {self.max_retries} attempts: {last_error}"
        ) from last_error
