"""Hybrid search: fold lexical and semantic hits into ranked, snippeted results."""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Any

from pants.core.embedding_providers import EmbeddingProvider, embed_or_none
from pants.core.models import MatchingChunk, MatchType, SearchHit, SearchResultGroup

if TYPE_CHECKING:
    from pants.core.storage import DB

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 300
SNIPPET_STEP = 50
# Windows are not started in the last this-many characters
SNIPPET_TAIL = 100
WORD_BOUNDARY_SLACK = 20
CHUNK_EXCERPT_LENGTH = 200
MIN_TERM_LENGTH = 3

EMPHASIS = "**"
ELLIPSIS = "..."

HYBRID = "hybrid"


def query_terms(query: str) -> list[str]:
    """Lowercased whitespace-separated terms longer than two characters, deduplicated."""
    terms: list[str] = []
    for term in (query or "").lower().split():
        if len(term) >= MIN_TERM_LENGTH and term not in terms:
            terms.append(term)
    return terms


def extract_snippet(text: str, query: str, max_length: int = SNIPPET_LENGTH) -> str:
    """Return the window of ``text`` that contains the most distinct query terms.

    Windows of ``max_length`` characters start every SNIPPET_STEP characters;
    the earliest best window wins. Its edges are moved to a word boundary when
    one lies within WORD_BOUNDARY_SLACK characters, and an ellipsis marks each
    truncated side.
    """
    if not text:
        return ""

    terms = query_terms(query)
    lowered = text.lower()

    best_pos = 0
    best_score = 0
    for pos in range(0, max(len(text) - SNIPPET_TAIL, 1), SNIPPET_STEP):
        window = lowered[pos : pos + max_length]
        score = sum(1 for term in terms if term in window)
        if score > best_score:
            best_score = score
            best_pos = pos

    start = best_pos
    end = min(len(text), start + max_length)

    if start > 0:
        space = text.find(" ", start)
        if space != -1 and space < start + WORD_BOUNDARY_SLACK:
            start = space + 1
    if end < len(text):
        space = text.rfind(" ", 0, end + 1)
        if space != -1 and space > end - WORD_BOUNDARY_SLACK:
            end = space

    snippet = text[start:end].strip()
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(text):
        snippet = snippet + ELLIPSIS
    return snippet


def highlight_terms(text: str, query: str) -> str:
    """Wrap every case-insensitive occurrence of a query term in emphasis markers."""
    if not text or not query:
        return text
    terms = sorted(query_terms(query), key=len, reverse=True)
    if not terms:
        return text
    pattern = re.compile("|".join(re.escape(t) for t in terms), re.IGNORECASE)
    return pattern.sub(lambda m: f"{EMPHASIS}{m.group(0)}{EMPHASIS}", text)


class HybridSearcher:
    """Runs the store's hybrid query and groups hits per archive."""

    def __init__(
        self,
        db: "DB",
        provider: EmbeddingProvider,
        match_threshold: float = 0.65,
        default_limit: int = 20,
    ) -> None:
        self._db = db
        self._provider = provider
        self._match_threshold = match_threshold
        self._default_limit = default_limit

    @property
    def semantic_enabled(self) -> bool:
        return self._provider.available

    async def search(self, query: str, user_id: str, limit: int | None = None) -> list[SearchResultGroup]:
        """Search one user's archives.

        Falls back to lexical-only hits when no query embedding is available.
        Groups are ordered by relevance, ties keeping the store's hit order.

        Raises:
            ValueError: If ``limit`` is given and less than 1.
        """
        if limit is None:
            limit = self._default_limit
        elif limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        if not query or not query.strip():
            return []

        query_embedding = await embed_or_none(self._provider, query)
        if query_embedding is None and self._provider.available:
            logger.info("Query embedding unavailable, searching lexically")

        hits = self._db.search_hybrid(
            query,
            user_id,
            query_embedding=query_embedding,
            limit=max(limit * 2, 30),
            match_threshold=self._match_threshold,
        )
        groups = self._group_hits(hits, query)
        ranked = sorted(groups, key=lambda g: g.relevance_score, reverse=True)
        return ranked[:limit]

    def _group_hits(self, hits: list[SearchHit], query: str) -> list[SearchResultGroup]:
        groups: dict[int, SearchResultGroup] = {}

        for hit in hits:
            group = groups.get(hit.archive_id)
            if group is None:
                group = self._new_group(hit, query)
                groups[hit.archive_id] = group
            else:
                group.relevance_score = max(group.relevance_score, hit.score)
                if group.match_type != hit.match_type.value:
                    group.match_type = HYBRID

            if hit.chunk_content:
                group.matching_chunks.append(
                    MatchingChunk(
                        content=highlight_terms(hit.chunk_content[:CHUNK_EXCERPT_LENGTH], query),
                        similarity=hit.score if hit.match_type == MatchType.SEMANTIC else 0.0,
                    )
                )

        return list(groups.values())

    def _new_group(self, hit: SearchHit, query: str) -> SearchResultGroup:
        title, url, description = hit.title, hit.url, hit.description
        text, tags, created_at = hit.text, hit.tags, hit.created_at

        if not text:
            archive = self._db.get_archive(hit.archive_id)
            if archive is not None:
                title = title or archive.title
                url = url or archive.url
                description = description or archive.description
                text = archive.text
                tags = tags if tags is not None else list(archive.tags)
                created_at = created_at or archive.created_at

        snippet = extract_snippet(text or description or "", query)
        return SearchResultGroup(
            id=hit.archive_id,
            title=title or "Untitled",
            url=url,
            description=description or "",
            tags=list(tags or []),
            created_at=created_at,
            relevance_score=hit.score,
            snippet=highlight_terms(snippet, query),
            match_type=hit.match_type.value,
        )


def build_search_response(
    query: str,
    results: list[SearchResultGroup],
    semantic_enabled: bool,
    started: float,
) -> dict[str, Any]:
    """JSON body for a search request; ``started`` is a time.monotonic() value."""
    has_semantic = any(r.match_type in (MatchType.SEMANTIC.value, HYBRID) for r in results)
    avg_relevance = sum(r.relevance_score for r in results) / len(results) if results else 0.0
    return {
        "query": query,
        "mode": HYBRID if has_semantic else "text",
        "results": [r.to_dict() for r in results],
        "total_count": len(results),
        "metadata": {
            "semantic_enabled": semantic_enabled,
            "avg_relevance": round(avg_relevance, 2),
            "search_time_ms": int((time.monotonic() - started) * 1000),
        },
    }
