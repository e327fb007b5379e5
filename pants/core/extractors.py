"""Page extraction: turn a URL into title, description, markdown and text.

Uses trafilatura for local extraction and, when configured, Firecrawl as the
primary extractor with trafilatura as the fallback.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import trafilatura
from trafilatura.settings import use_config

logger = logging.getLogger(__name__)


class ExtractionErrorType(str, Enum):
    """Classification of extraction errors (reported only, never branched on)."""

    TIMEOUT = "timeout"  # Retriable
    HTTP_4XX = "http_4xx"  # Not retriable (404, 403, etc.)
    HTTP_5XX = "http_5xx"  # Retriable (server error)
    CONNECTION_ERROR = "connection_error"  # Retriable
    TOO_LARGE = "too_large"
    NO_CONTENT = "no_content"
    LOW_QUALITY = "low_quality"
    ERROR_PAGE = "error_page"
    PROVIDER_ERROR = "provider_error"


RETRIABLE_ERRORS = {
    ExtractionErrorType.TIMEOUT,
    ExtractionErrorType.HTTP_5XX,
    ExtractionErrorType.CONNECTION_ERROR,
}


class ExtractionError(Exception):
    """Raised when a page cannot be turned into usable content."""

    def __init__(self, error_type: ExtractionErrorType, message: str, http_status: int | None = None):
        super().__init__(message)
        self.error_type = error_type
        self.http_status = http_status

    @property
    def retriable(self) -> bool:
        return self.error_type in RETRIABLE_ERRORS


@dataclass
class ExtractedPage:
    """Content extracted from one URL."""

    title: str
    description: str
    text: str
    markdown: str | None = None
    html: str | None = None
    word_count: int = 0
    reading_time: int = 0
    extraction_method: str = "trafilatura"


# Quality gates
MIN_CONTENT_LENGTH = 100
MIN_WORD_COUNT = 20
WORDS_PER_MINUTE = 200

# Stored text is capped
MAX_TEXT_LENGTH = 50_000

# Maximum content size to fetch (10MB)
MAX_CONTENT_SIZE = 10 * 1024 * 1024

FETCH_TIMEOUT = 30.0

FIRECRAWL_SCRAPE_URL = "https://api.firecrawl.dev/v1/scrape"

ERROR_TITLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b404\b",
        r"page not found",
        r"access denied",
        r"403 forbidden",
        r"^error\b",
        r"just a moment",
        r"attention required",
    )
]

# Only checked on short pages; long articles may mention these phrases
ERROR_BODY_PHRASES = (
    "page not found",
    "page you requested could not be found",
    "access denied",
    "enable javascript",
    "verify you are human",
)
ERROR_BODY_MAX_LENGTH = 1000


def count_words(text: str) -> int:
    return len(text.split())


def reading_time(word_count: int) -> int:
    """Minutes to read at WORDS_PER_MINUTE, rounded up."""
    return math.ceil(word_count / WORDS_PER_MINUTE)


def check_quality(title: str, text: str) -> None:
    """Reject error pages and pages with too little content.

    Raises:
        ExtractionError: If the page fails a quality gate.
    """
    for pattern in ERROR_TITLE_PATTERNS:
        if pattern.search(title or ""):
            raise ExtractionError(ExtractionErrorType.ERROR_PAGE, f"Error page detected: {title!r}")

    if len(text) < ERROR_BODY_MAX_LENGTH:
        lowered = text.lower()
        for phrase in ERROR_BODY_PHRASES:
            if phrase in lowered:
                raise ExtractionError(ExtractionErrorType.ERROR_PAGE, f"Error page detected: {phrase!r}")

    if len(text) < MIN_CONTENT_LENGTH:
        raise ExtractionError(ExtractionErrorType.LOW_QUALITY, f"Content too short: {len(text)} chars")

    words = count_words(text)
    if words < MIN_WORD_COUNT:
        raise ExtractionError(ExtractionErrorType.LOW_QUALITY, f"Too few words: {words}")


def markdown_to_text(markdown: str) -> str:
    """Plain text for search from extracted markdown."""
    text = re.sub(r"```[\s\S]*?```", "", markdown)
    text = re.sub(r"`[^`]*`", "", text)
    text = re.sub(r"!\[[^\]]*\]\([^)]*\)", "", text)
    text = re.sub(r"\[([^\]]*)\]\([^)]*\)", r"\1", text)
    text = re.sub(r"[#*_`>]", "", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def clean_markdown(markdown: str) -> str:
    """Strip boilerplate that scraped markdown commonly carries."""
    markdown = re.sub(r"\[(Advertisement|Sponsored)\]", "", markdown)
    markdown = re.sub(r"Skip to (main )?content\s*", "", markdown, flags=re.IGNORECASE)
    markdown = re.sub(r"^- \[[^\]]*\]\([^)]*\)\s*$", "", markdown, flags=re.MULTILINE)
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    return markdown.strip()


def _build_page(
    *,
    title: str,
    description: str,
    text: str,
    markdown: str | None,
    html: str | None,
    method: str,
) -> ExtractedPage:
    check_quality(title, text)
    text = text[:MAX_TEXT_LENGTH]
    words = count_words(text)
    return ExtractedPage(
        title=title or "Untitled",
        description=description,
        text=text,
        markdown=markdown,
        html=html,
        word_count=words,
        reading_time=reading_time(words),
        extraction_method=method,
    )


class Extractor(ABC):
    """Extraction collaborator: ``extract(url)`` returns a page or raises ExtractionError."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def extract(self, url: str) -> ExtractedPage:
        ...

    async def close(self) -> None:
        """Release network resources."""


class TrafilaturaExtractor(Extractor):
    """Fetches HTML with httpx and extracts the main content with trafilatura."""

    def __init__(self, method_name: str = "trafilatura") -> None:
        self._method_name = method_name
        self._config = use_config()
        self._config.set("DEFAULT", "EXTRACTION_TIMEOUT", "30")
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self._method_name

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(FETCH_TIMEOUT),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=10),
                headers={
                    "User-Agent": "Mozilla/5.0 (compatible; PantsArchiver/1.0)",
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.9",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _fetch_html(self, url: str) -> str:
        client = await self._get_client()
        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise ExtractionError(
                ExtractionErrorType.TIMEOUT, f"Request timed out after {FETCH_TIMEOUT}s"
            ) from e
        except httpx.TransportError as e:
            raise ExtractionError(ExtractionErrorType.CONNECTION_ERROR, f"Connection error: {e}") from e

        status = response.status_code
        if status >= 500:
            raise ExtractionError(ExtractionErrorType.HTTP_5XX, f"Server error: {status}", status)
        if status >= 400:
            raise ExtractionError(ExtractionErrorType.HTTP_4XX, f"Client error: {status}", status)

        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_CONTENT_SIZE:
            raise ExtractionError(
                ExtractionErrorType.TOO_LARGE, f"Content too large: {content_length} bytes", status
            )
        return response.text

    def _extract_sync(self, html: str) -> dict[str, Any]:
        text = trafilatura.extract(
            html,
            config=self._config,
            include_comments=False,
            include_tables=True,
            favor_recall=True,
        )
        markdown = trafilatura.extract(
            html,
            config=self._config,
            output_format="markdown",
            include_comments=False,
            include_tables=True,
            include_links=True,
            favor_recall=True,
        )
        metadata = trafilatura.extract_metadata(html)
        return {
            "text": text or "",
            "markdown": markdown,
            "title": (metadata.title if metadata else None) or "",
            "description": (metadata.description if metadata else None) or "",
        }

    async def extract(self, url: str) -> ExtractedPage:
        html = await self._fetch_html(url)

        # trafilatura is CPU-bound
        extracted = await asyncio.get_running_loop().run_in_executor(None, self._extract_sync, html)

        if not extracted["text"]:
            raise ExtractionError(ExtractionErrorType.NO_CONTENT, "No content could be extracted")

        return _build_page(
            title=extracted["title"],
            description=extracted["description"],
            text=extracted["text"],
            markdown=extracted["markdown"],
            html=html,
            method=self._method_name,
        )


class FirecrawlExtractor(Extractor):
    """Extraction through the Firecrawl scrape API (renders JavaScript)."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return "firecrawl"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(FETCH_TIMEOUT + 15.0),
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def extract(self, url: str) -> ExtractedPage:
        client = await self._get_client()
        try:
            response = await client.post(
                FIRECRAWL_SCRAPE_URL,
                json={
                    "url": url,
                    "formats": ["markdown", "html"],
                    "onlyMainContent": True,
                    "removeBase64Images": True,
                    "waitFor": 3000,
                    "timeout": int(FETCH_TIMEOUT * 1000),
                },
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ExtractionError(ExtractionErrorType.TIMEOUT, "Firecrawl request timed out") from e
        except httpx.HTTPStatusError as e:
            raise ExtractionError(
                ExtractionErrorType.PROVIDER_ERROR,
                f"Firecrawl error: {e.response.status_code}",
                e.response.status_code,
            ) from e
        except httpx.TransportError as e:
            raise ExtractionError(ExtractionErrorType.CONNECTION_ERROR, f"Firecrawl not reachable: {e}") from e

        data = response.json().get("data") or {}
        markdown = data.get("markdown")
        if not markdown:
            raise ExtractionError(ExtractionErrorType.NO_CONTENT, "Firecrawl returned no content")

        metadata = data.get("metadata") or {}
        status = metadata.get("statusCode") or 200
        if status >= 400:
            error_type = ExtractionErrorType.HTTP_5XX if status >= 500 else ExtractionErrorType.HTTP_4XX
            raise ExtractionError(error_type, f"Page returned {status}", status)

        markdown = clean_markdown(markdown)
        return _build_page(
            title=metadata.get("title") or metadata.get("ogTitle") or "",
            description=metadata.get("description") or metadata.get("ogDescription") or "",
            text=markdown_to_text(markdown),
            markdown=markdown,
            html=data.get("html"),
            method=self.name,
        )


class FallbackExtractor(Extractor):
    """Tries ``primary`` first and falls back to ``fallback`` on any ExtractionError."""

    def __init__(self, primary: Extractor, fallback: Extractor) -> None:
        self._primary = primary
        self._fallback = fallback

    @property
    def name(self) -> str:
        return f"{self._primary.name}+{self._fallback.name}"

    async def extract(self, url: str) -> ExtractedPage:
        try:
            return await self._primary.extract(url)
        except ExtractionError as e:
            logger.warning(f"{self._primary.name} failed for {url} ({e.error_type.value}: {e}), falling back")
        return await self._fallback.extract(url)

    async def close(self) -> None:
        await self._primary.close()
        await self._fallback.close()


def get_extractor(firecrawl_api_key: str | None = None) -> Extractor:
    """Select the extractor from configuration.

    Firecrawl with a trafilatura fallback when an API key is configured,
    trafilatura alone otherwise.
    """
    if firecrawl_api_key:
        return FallbackExtractor(
            FirecrawlExtractor(firecrawl_api_key),
            TrafilaturaExtractor(method_name="trafilatura-fallback"),
        )
    return TrafilaturaExtractor()
