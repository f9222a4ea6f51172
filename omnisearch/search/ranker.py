"""
Result Ranker & Formatter

Merges per-source hit lists into one ranked, formatted list.

Ordering contract:
1. similarity (rounded to score_precision) descending
2. created_at descending, undated hits last
3. original source order (dispatch order, then each source's native order)

The third key comes from Python's stable sort, so identical inputs always
produce identical output.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Sequence

from .models import NormalizedHit, SearchHit, SearchQuery, SourceResult

logger = logging.getLogger(__name__)

# Characters shown before the match in a highlight window
HIGHLIGHT_LEAD = 30

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ResultRanker:
    """Merge, filter, order and format hits from every source."""

    def __init__(
        self,
        preview_chars: int = 200,
        highlight_window: int = 100,
        score_precision: int = 4,
    ):
        if highlight_window <= HIGHLIGHT_LEAD:
            raise ValueError(f"highlight_window must exceed {HIGHLIGHT_LEAD}")
        self.preview_chars = preview_chars
        self.highlight_window = highlight_window
        self.score_precision = score_precision

    @classmethod
    def from_config(cls, config: dict) -> "ResultRanker":
        settings = config["ranking"]
        return cls(
            preview_chars=settings["preview_chars"],
            highlight_window=settings["highlight_window"],
            score_precision=settings["score_precision"],
        )

    def normalize_score(self, score: float) -> float:
        """Clamp to [0, 1] and round; rounding happens before any comparison."""
        return round(min(1.0, max(0.0, float(score))), self.score_precision)

    def merge(self, source_results: Sequence[SourceResult], query: SearchQuery) -> List[SearchHit]:
        """
        Merge source results into the final hit list.

        Args:
            source_results: Per-source hits in dispatch order
            query: The validated query (threshold, date range, limit, text)

        Returns:
            At most query.limit hits, ordered by the module contract
        """
        candidates = []
        dropped = 0
        for result in source_results:
            for hit in result.hits:
                score = self.normalize_score(hit.score)
                if score < query.similarity_threshold:
                    dropped += 1
                    continue
                if query.date_range is not None and not query.date_range.contains(hit.created_at):
                    dropped += 1
                    continue
                candidates.append((score, hit))

        # Two stable passes: recency first, then score
        candidates.sort(key=lambda c: self._recency(c[1]), reverse=True)
        candidates.sort(key=lambda c: c[0], reverse=True)

        if dropped:
            logger.debug(f"Ranker dropped {dropped} hits below threshold or outside date range")

        return [self.format_hit(hit, score, query.text) for score, hit in candidates[: query.limit]]

    @staticmethod
    def _recency(hit: NormalizedHit):
        # Undated hits sort after every dated hit
        if hit.created_at is None:
            return (0, _EPOCH)
        return (1, hit.created_at)

    def format_hit(self, hit: NormalizedHit, score: float, query_text: str) -> SearchHit:
        return SearchHit(
            source_id=hit.source_id,
            content_type=hit.content_type,
            title=hit.title or "Untitled",
            snippet=self.create_preview(hit.body),
            highlight=self.create_highlight(hit.body, query_text),
            similarity=score,
            created_at=hit.created_at,
            url=hit.url,
            metadata=dict(hit.metadata),
            origin=hit.origin,
        )

    def create_preview(self, content: str) -> str:
        """First preview_chars characters, with '...' when truncated."""
        if not content:
            return ""
        if len(content) <= self.preview_chars:
            return content
        return content[: self.preview_chars] + "..."

    def create_highlight(self, content: str, query_text: str) -> str:
        """
        Window around the first match with query terms wrapped in <mark>.

        Looks for the whole query phrase first, then the first query term
        that occurs. Without any match, returns the first highlight_window
        characters unmarked.
        """
        if not content:
            return ""

        terms = self._terms(query_text)
        index, matched = self._find_match(content, query_text, terms)
        if index is None:
            return content[: self.highlight_window]

        start = max(0, index - HIGHLIGHT_LEAD)
        end = min(len(content), index + len(matched) + self.highlight_window - HIGHLIGHT_LEAD)
        return self._mark(content[start:end], terms)

    @staticmethod
    def _terms(query_text: str) -> List[str]:
        seen = []
        for term in query_text.split():
            if term.casefold() not in (s.casefold() for s in seen):
                seen.append(term)
        return seen

    @staticmethod
    def _find_match(content: str, phrase: str, terms: List[str]):
        # Offsets come from content itself; lower() can change string length
        phrase = phrase.strip()
        for candidate in ([phrase] if phrase else []) + terms:
            match = re.search(re.escape(candidate), content, flags=re.IGNORECASE)
            if match:
                return match.start(), match.group(0)
        return None, ""

    @staticmethod
    def _mark(window: str, terms: List[str]) -> str:
        if not terms:
            return window
        # Longest first so overlapping terms mark the longer one
        pattern = "|".join(re.escape(t) for t in sorted(terms, key=len, reverse=True))
        return re.sub(f"({pattern})", r"<mark>\1</mark>", window, flags=re.IGNORECASE)
