"""
Gmail Search Adapter

Searches the user's mailbox with the Gmail API: messages.list for ids in
Gmail's relevance order, then messages.get (metadata only) for headers and
the snippet.
"""

import asyncio
import html
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import aiohttp

from .base import ExternalSourceAdapter
from ..models import NormalizedHit, SearchQuery

logger = logging.getLogger(__name__)


class GmailSearchAdapter(ExternalSourceAdapter):
    """Adapter for Gmail messages (content type 'message')."""

    BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
    METADATA_HEADERS = ("Subject", "From", "Date")

    source = "gmail"
    content_type = "message"

    @staticmethod
    def build_query(query: SearchQuery) -> str:
        """Gmail search string with the date range pushed down as epoch seconds."""
        parts = [query.text]
        if query.date_range is not None:
            if query.date_range.start is not None:
                parts.append(f"after:{int(query.date_range.start.timestamp())}")
            if query.date_range.end is not None:
                # before: is exclusive
                parts.append(f"before:{int(query.date_range.end.timestamp()) + 1}")
        return " ".join(parts)

    async def _search(
        self,
        session: aiohttp.ClientSession,
        query: SearchQuery,
        limit: int,
    ) -> List[Dict[str, Any]]:
        listing = await self._get_json(
            session,
            f"{self.BASE_URL}/messages",
            params={"q": self.build_query(query), "maxResults": str(limit)},
        )
        ids = [m["id"] for m in listing.get("messages", [])][:limit]
        if not ids:
            return []

        params = [("format", "metadata")] + [
            ("metadataHeaders", name) for name in self.METADATA_HEADERS
        ]
        # Details are fetched concurrently; gather keeps the listing order
        return await asyncio.gather(
            *(
                self._get_json(session, f"{self.BASE_URL}/messages/{message_id}", params=params)
                for message_id in ids
            )
        )

    def _to_hit(self, item: Dict[str, Any], score: float) -> Optional[NormalizedHit]:
        message_id = item.get("id")
        if not message_id:
            return None

        headers = {
            h.get("name"): h.get("value", "")
            for h in item.get("payload", {}).get("headers", [])
        }
        subject = headers.get("Subject") or "No Subject"
        sender = headers.get("From") or "Unknown"

        return NormalizedHit(
            origin=self.origin,
            source_id=message_id,
            content_type=self.content_type,
            title=subject,
            body=html.unescape(item.get("snippet", "")),
            score=score,
            created_at=self._message_time(item, headers.get("Date")),
            url=f"https://mail.google.com/mail/u/0/#inbox/{message_id}",
            metadata={
                "from": sender,
                "threadId": item.get("threadId"),
                "labels": item.get("labelIds", []),
            },
        )

    @staticmethod
    def _message_time(item: Dict[str, Any], date_header: Optional[str]) -> Optional[datetime]:
        internal = item.get("internalDate")
        if internal:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
        if date_header:
            try:
                parsed = parsedate_to_datetime(date_header)
            except (TypeError, ValueError):
                return None
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        return None
