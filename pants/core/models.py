"""Data types shared by the import pipeline, the store and search."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class ImportItem:
    """One row of an import list. Immutable once parsed."""

    url: str
    title: str = ""
    tags: frozenset[str] = frozenset()
    time_added: datetime | None = None


@dataclass(frozen=True)
class ImportResult:
    """Outcome of processing a single ImportItem."""

    url: str
    success: bool
    skipped: bool = False
    error: str | None = None
    archive_ref: int | None = None
    title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "success": self.success,
            "skipped": self.skipped,
            "error": self.error,
            "archive_id": self.archive_ref,
            "title": self.title,
        }


@dataclass(frozen=True)
class ImportProgress:
    """Snapshot passed to progress callbacks after each item completes."""

    processed: int
    total: int
    successful: int
    failed: int
    current_url: str
    current_result: ImportResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "currentUrl": self.current_url,
            "currentResult": self.current_result.to_dict(),
        }


@dataclass
class ImportSummary:
    """Accumulated result of an import run.

    Mutated only from the event loop thread; ``record`` has no await points,
    so concurrent batch items never interleave inside it.
    """

    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    duplicates: int = 0
    cancelled: bool = False
    # Items a cancelled run never launched; total == successful + failed + skipped + not_started
    not_started: int = 0
    results: list[ImportResult] = field(default_factory=list)

    def record(self, result: ImportResult) -> None:
        if result.success and result.skipped:
            self.skipped += 1
        elif result.success:
            self.successful += 1
        else:
            self.failed += 1
        self.results.append(result)

    @property
    def processed(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "cancelled": self.cancelled,
            "not_started": self.not_started,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class ArchiveRecord:
    """A single user's archived copy of a URL."""

    id: int
    user_id: str
    url: str
    title: str
    description: str = ""
    text: str = ""
    markdown: str | None = None
    extraction_method: str | None = None
    word_count: int = 0
    reading_time: int = 0
    tags: tuple[str, ...] = ()
    created_at: str | None = None


@dataclass(frozen=True)
class ContentChunk:
    """Chunk content shared across users, identified by (content_hash, chunk_index)."""

    id: int
    content_hash: str
    chunk_index: int
    text: str
    embedding: list[float] | None = None


class MatchType(str, Enum):
    """How a search hit was found."""

    LEXICAL = "lexical"
    SEMANTIC = "semantic"


@dataclass
class SearchHit:
    """Raw hit from the store's hybrid query (archive- or chunk-level)."""

    archive_id: int
    score: float
    match_type: MatchType
    title: str | None = None
    url: str | None = None
    description: str | None = None
    text: str | None = None
    tags: list[str] | None = None
    created_at: str | None = None
    chunk_id: int | None = None
    chunk_content: str | None = None


@dataclass
class MatchingChunk:
    content: str
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "similarity": self.similarity}


@dataclass
class SearchResultGroup:
    """All hits for one archive, folded into a single ranked result."""

    id: int
    title: str
    url: str | None
    description: str = ""
    tags: list[str] = field(default_factory=list)
    created_at: str | None = None
    relevance_score: float = 0.0
    snippet: str = ""
    match_type: str = MatchType.LEXICAL.value
    matching_chunks: list[MatchingChunk] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "description": self.description,
            "tags": self.tags,
            "created_at": self.created_at,
            "relevance_score": self.relevance_score,
            "snippet": self.snippet,
            "match_type": self.match_type,
            "matching_chunks": [c.to_dict() for c in self.matching_chunks],
        }
