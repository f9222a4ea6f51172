"""
Base External Source Adapter

Abstract base class for credential-gated providers queried at search time.

Each adapter translates one query into provider REST calls and maps the
provider's response into NormalizedHit objects. The aggregator and ranker
never look at provider fields.

Providers rank by keyword relevance and expose no comparable score, so each
hit gets a proxy score from its position in the provider's order (see
ProxyScoreProfile). This is an approximation, not a calibrated similarity.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import aiohttp

from ..errors import AdapterError, AdapterSkipped, AdapterTimeout, TokenLookupError
from ..models import NormalizedHit, SearchQuery, ensure_utc
from ..tokens import TokenProvider

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = "not_authenticated"
TOKEN_REJECTED = "token_rejected"
INSUFFICIENT_SCOPE = "insufficient_scope"

# 403 reasons meaning the user never granted access. Any other 403
# (rateLimitExceeded, userRateLimitExceeded, dailyLimitExceeded, ...) is a fault.
SCOPE_ERROR_REASONS = frozenset({
    "insufficientPermissions",
    "forbidden",
    "ACCESS_TOKEN_SCOPE_INSUFFICIENT",
})


@dataclass(frozen=True)
class ProxyScoreProfile:
    """
    Linear rank decay from ceiling (first hit) to floor (last hit).

    score(i, n) = ceiling - (ceiling - floor) * i / max(n - 1, 1)
    """

    ceiling: float
    floor: float

    def __post_init__(self):
        if not (0.0 <= self.floor <= self.ceiling <= 1.0):
            raise ValueError(
                f"Proxy scores need 0 <= floor <= ceiling <= 1, got {self.floor}..{self.ceiling}"
            )

    def score(self, rank: int, total: int) -> float:
        if total <= 0:
            raise ValueError("total must be positive")
        return self.ceiling - (self.ceiling - self.floor) * rank / max(total - 1, 1)


@dataclass
class AdapterResult:
    """Hits from one adapter call, in the provider's native order."""

    source: str
    hits: List[NormalizedHit] = field(default_factory=list)
    skipped: bool = False
    reason: Optional[str] = None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp or a YYYY-MM-DD date as UTC."""
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        logger.debug(f"Unparseable provider timestamp: {value}")
        return None


def rfc3339(moment: datetime) -> str:
    return ensure_utc(moment).strftime("%Y-%m-%dT%H:%M:%SZ")


class ExternalSourceAdapter(ABC):
    """
    Abstract base class for external search adapters.

    Subclasses set `source` and `content_type` and implement _search() and
    _to_hit(). The base class owns credentials, the HTTP session, deadline
    handling and proxy scoring.
    """

    source: str = ""
    content_type: str = ""

    def __init__(
        self,
        token_provider: TokenProvider,
        profile: ProxyScoreProfile,
        enabled: bool = True,
    ):
        self.token_provider = token_provider
        self.profile = profile
        self.enabled = enabled

    @property
    def origin(self) -> str:
        return f"external:{self.source}"

    def applies_to(self, query: SearchQuery) -> bool:
        """True when this adapter should be dispatched for query."""
        return (
            self.enabled
            and self.content_type in query.content_types
            and query.wants_source(self.source)
        )

    async def fetch(
        self,
        query: SearchQuery,
        user_id: str,
        limit: int,
        deadline: float,
    ) -> AdapterResult:
        """
        Query the provider.

        Args:
            query: Validated search query
            user_id: User whose credentials to use
            limit: Maximum hits to request
            deadline: Absolute event-loop time (loop.time()) owned by the caller

        Returns:
            AdapterResult; skipped=True when the user has no usable credentials

        Raises:
            AdapterTimeout: If the deadline passes before the provider answers
            AdapterError: On any other provider failure
        """
        try:
            token = await self.token_provider.get_valid_access_token(user_id)
        except TokenLookupError as e:
            raise AdapterError(self.source, str(e)) from e
        if not token:
            logger.info(f"{self.source}: no access token for {user_id}, skipping")
            return AdapterResult(source=self.source, skipped=True, reason=NOT_AUTHENTICATED)

        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise AdapterTimeout(self.source)

        try:
            async with self._get_aiohttp_session(token, remaining) as session:
                items = await self._search(session, query, limit)
        except AdapterSkipped as e:
            logger.info(f"{self.source}: skipped ({e.reason})")
            return AdapterResult(source=self.source, skipped=True, reason=e.reason)
        except asyncio.TimeoutError as e:
            raise AdapterTimeout(self.source) from e
        except aiohttp.ClientError as e:
            logger.warning(f"{self.source}: request failed: {e}")
            raise AdapterError(self.source, str(e)) from e

        items = items[:limit]
        hits = []
        for i, item in enumerate(items):
            hit = self._to_hit(item, self.profile.score(i, len(items)))
            if hit is not None:
                hits.append(hit)

        logger.debug(f"{self.source}: {len(hits)} hits")
        return AdapterResult(source=self.source, hits=hits)

    @asynccontextmanager
    async def _get_aiohttp_session(
        self, token: str, timeout_seconds: float
    ) -> AsyncIterator[aiohttp.ClientSession]:
        """Session with bearer auth and a total timeout of the time left."""
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            yield session

    async def _get_json(
        self,
        session: aiohttp.ClientSession,
        url: str,
        params: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """GET url and return the JSON body; missing access is a skip, quota and server errors raise."""
        async with session.get(url, params=params) as response:
            if response.status == 401:
                raise AdapterSkipped(self.source, TOKEN_REJECTED)
            if response.status == 403:
                reasons = await self._error_reasons(response)
                if reasons & SCOPE_ERROR_REASONS:
                    raise AdapterSkipped(self.source, INSUFFICIENT_SCOPE)
                # Google also reports quota exhaustion as 403
                raise AdapterError(
                    self.source, f"HTTP 403: {', '.join(sorted(reasons)) or 'no reason given'}"
                )
            if response.status == 429:
                raise AdapterError(self.source, "HTTP 429: rate limited")
            if response.status >= 400:
                body = await response.text()
                raise AdapterError(self.source, f"HTTP {response.status}: {body[:200]}")
            return await response.json()

    @staticmethod
    async def _error_reasons(response: aiohttp.ClientResponse) -> Set[str]:
        """Reason codes from a Google API error body (errors[] and details[])."""
        try:
            body = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return set()
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return set()
        entries = list(error.get("errors") or []) + list(error.get("details") or [])
        return {e["reason"] for e in entries if isinstance(e, dict) and e.get("reason")}

    @abstractmethod
    async def _search(
        self,
        session: aiohttp.ClientSession,
        query: SearchQuery,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """
        Run the provider search.

        Returns:
            Raw provider items in the provider's relevance order
        """
        pass

    @abstractmethod
    def _to_hit(self, item: Dict[str, Any], score: float) -> Optional[NormalizedHit]:
        """Map one provider item to a NormalizedHit (None to drop it)."""
        pass
