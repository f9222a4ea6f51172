"""
Access token lookup for external providers.

The search engine only reads tokens. Acquiring and refreshing them belongs to
the OAuth collaborator, so an expired token is reported as missing and the
adapter is skipped for that request.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, ContextManager, Dict, Optional

import psycopg2

from omnisearch.db.connection import get_connection

from .errors import TokenLookupError

logger = logging.getLogger(__name__)

# Tokens expiring within this window are treated as already expired
EXPIRY_BUFFER_SECONDS = 5 * 60


class TokenProvider(ABC):
    """Supplies provider access tokens for a user."""

    @abstractmethod
    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        """
        Return a usable access token, or None when the user has none.

        Must not raise for a missing or expired token.

        Raises:
            TokenLookupError: If the token store itself cannot be read
        """
        pass


class StaticTokenProvider(TokenProvider):
    """Fixed user -> token mapping, for tests and local development."""

    def __init__(self, tokens: Optional[Dict[str, str]] = None):
        self._tokens = dict(tokens or {})

    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        return self._tokens.get(user_id)


class DatabaseTokenProvider(TokenProvider):
    """Reads the user_tokens table."""

    def __init__(
        self,
        connection_factory: Callable[[], ContextManager] = get_connection,
        clock: Callable[[], float] = time.time,
    ):
        self._connection_factory = connection_factory
        self._clock = clock

    def _fetch(self, user_id: str):
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT access_token, expires_at FROM user_tokens WHERE user_id = %s",
                    (user_id,),
                )
                return cur.fetchone()

    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        try:
            row = await asyncio.to_thread(self._fetch, user_id)
        except psycopg2.Error as e:
            logger.error(f"Token lookup failed for {user_id}: {e}")
            raise TokenLookupError(f"Token lookup failed: {e}") from e

        if row is None:
            logger.info(f"No provider token stored for {user_id}")
            return None

        access_token, expires_at_ms = row
        now_ms = self._clock() * 1000
        if expires_at_ms is not None and expires_at_ms - now_ms < EXPIRY_BUFFER_SECONDS * 1000:
            logger.info(f"Provider token for {user_id} is expired or about to expire")
            return None
        return access_token
