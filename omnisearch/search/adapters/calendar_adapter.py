"""
Calendar Search Adapter

Free-text search over events in the user's primary Google Calendar.

The Calendar API only orders ascending (startTime/updated), so with no date
range it would hand back the oldest matches first. Instead a candidate page
is fetched without orderBy and re-ordered newest start first; the proxy score
decays over that order.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from .base import ExternalSourceAdapter, parse_timestamp, rfc3339
from ..models import NormalizedHit, SearchQuery

logger = logging.getLogger(__name__)

# Events fetched before re-ordering; the API allows up to 2500
CANDIDATE_PAGE_SIZE = 250

_UNDATED = datetime.min.replace(tzinfo=timezone.utc)


def _event_start(item: Dict[str, Any]) -> Optional[datetime]:
    start = item.get("start", {})
    return parse_timestamp(start.get("dateTime") or start.get("date"))


class CalendarSearchAdapter(ExternalSourceAdapter):
    """Adapter for calendar events (content type 'event')."""

    EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"

    source = "calendar"
    content_type = "event"

    @staticmethod
    def build_params(query: SearchQuery, limit: int) -> Dict[str, str]:
        params = {
            "q": query.text,
            "singleEvents": "true",
            "maxResults": str(max(limit, CANDIDATE_PAGE_SIZE)),
        }
        if query.date_range is not None:
            if query.date_range.start is not None:
                params["timeMin"] = rfc3339(query.date_range.start)
            if query.date_range.end is not None:
                params["timeMax"] = rfc3339(query.date_range.end)
        return params

    async def _search(
        self,
        session: aiohttp.ClientSession,
        query: SearchQuery,
        limit: int,
    ) -> List[Dict[str, Any]]:
        data = await self._get_json(session, self.EVENTS_URL, params=self.build_params(query, limit))
        items = [i for i in data.get("items", []) if i.get("status") != "cancelled"]
        if data.get("nextPageToken"):
            logger.debug(f"calendar: more than {len(items)} matches, newest of the first page used")
        # Newest first; undated events last
        items.sort(key=lambda i: _event_start(i) or _UNDATED, reverse=True)
        return items[:limit]

    def _to_hit(self, item: Dict[str, Any], score: float) -> Optional[NormalizedHit]:
        event_id = item.get("id")
        if not event_id or item.get("status") == "cancelled":
            return None

        start = item.get("start", {})
        end = item.get("end", {})
        summary = item.get("summary") or "Untitled event"

        return NormalizedHit(
            origin=self.origin,
            source_id=event_id,
            content_type=self.content_type,
            title=summary,
            body=item.get("description") or summary,
            score=score,
            created_at=_event_start(item),
            url=item.get("htmlLink"),
            metadata={
                "location": item.get("location"),
                "end": end.get("dateTime") or end.get("date"),
                "attendees": len(item.get("attendees", [])),
                "allDay": "date" in start and "dateTime" not in start,
            },
        )
