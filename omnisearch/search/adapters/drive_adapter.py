"""
Drive Search Adapter

Full-text and name search over the user's Google Drive files.
"""

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .base import ExternalSourceAdapter, parse_timestamp, rfc3339
from ..models import NormalizedHit, SearchQuery

logger = logging.getLogger(__name__)


def _escape(term: str) -> str:
    """Escape a term for a single-quoted Drive query literal."""
    return term.replace("\\", "\\\\").replace("'", "\\'")


class DriveSearchAdapter(ExternalSourceAdapter):
    """Adapter for Drive files (content type 'file')."""

    FILES_URL = "https://www.googleapis.com/drive/v3/files"
    FIELDS = "files(id, name, mimeType, modifiedTime, webViewLink, size, description)"

    source = "drive"
    content_type = "file"

    @staticmethod
    def build_query(query: SearchQuery) -> str:
        term = _escape(query.text)
        clauses = [
            f"(fullText contains '{term}' or name contains '{term}')",
            "trashed = false",
        ]
        if query.date_range is not None:
            if query.date_range.start is not None:
                clauses.append(f"modifiedTime >= '{rfc3339(query.date_range.start)}'")
            if query.date_range.end is not None:
                clauses.append(f"modifiedTime <= '{rfc3339(query.date_range.end)}'")
        return " and ".join(clauses)

    async def _search(
        self,
        session: aiohttp.ClientSession,
        query: SearchQuery,
        limit: int,
    ) -> List[Dict[str, Any]]:
        # No orderBy: keep Drive's relevance order for proxy scoring
        data = await self._get_json(
            session,
            self.FILES_URL,
            params={
                "q": self.build_query(query),
                "fields": self.FIELDS,
                "pageSize": str(limit),
            },
        )
        return data.get("files", [])

    def _to_hit(self, item: Dict[str, Any], score: float) -> Optional[NormalizedHit]:
        file_id = item.get("id")
        if not file_id:
            return None

        name = item.get("name") or "Untitled"
        return NormalizedHit(
            origin=self.origin,
            source_id=file_id,
            content_type=self.content_type,
            title=name,
            body=item.get("description") or name,
            score=score,
            created_at=parse_timestamp(item.get("modifiedTime")),
            url=item.get("webViewLink"),
            metadata={
                "mimeType": item.get("mimeType"),
                "size": item.get("size"),
                "modifiedTime": item.get("modifiedTime"),
            },
        )
