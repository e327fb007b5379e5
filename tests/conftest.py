"""Shared fixtures and fakes for the extraction and embedding collaborators."""

import asyncio
from collections import Counter

import pytest

from pants.core.embedding_providers import EmbeddingProvider
from pants.core.extractors import ExtractedPage, ExtractionError, ExtractionErrorType, Extractor
from pants.core.storage import init_db

ARTICLE_TEXT = (
    "Gemini embeddings turn text into vectors that capture meaning. "
    "Hybrid search combines keyword matching with vector similarity so that "
    "results stay relevant even when the wording differs from the query. "
)


class CountingProvider(EmbeddingProvider):
    """Returns the same unit vector for every text and records each call."""

    def __init__(self, dimensions: int = 768):
        self._dimensions = dimensions
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model_id(self) -> str:
        return f"fake-{self._dimensions}"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.extend(texts)
        vector = [0.0] * self._dimensions
        vector[0] = 1.0
        return [list(vector) for _ in texts]


def make_page(url: str, title: str = "Article", text: str = ARTICLE_TEXT) -> ExtractedPage:
    return ExtractedPage(
        title=title,
        description=f"About {url}",
        text=text,
        markdown=text,
        word_count=len(text.split()),
        reading_time=1,
        extraction_method="fake",
    )


class FakeExtractor(Extractor):
    """Serves canned pages; URLs in ``failing`` always raise."""

    def __init__(self, pages=None, failing=(), delays=None):
        self.pages = dict(pages or {})
        self.failing = set(failing)
        self.delays = dict(delays or {})
        self.attempts: Counter = Counter()
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def name(self) -> str:
        return "fake"

    async def extract(self, url: str) -> ExtractedPage:
        self.attempts[url] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(url, 0))
            if url in self.failing:
                raise ExtractionError(ExtractionErrorType.HTTP_5XX, f"Server error for {url}", 503)
            return self.pages.get(url) or make_page(url)
        finally:
            self.in_flight -= 1


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def db():
    database = init_db(":memory:")
    yield database
    database.conn.close()


@pytest.fixture
def provider():
    return CountingProvider()


@pytest.fixture
def sleep():
    return RecordingSleep()
