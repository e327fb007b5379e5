"""Tests for shared_embeddings.py"""

import asyncio
import sqlite3
from unittest.mock import patch

import pytest

from pants.core.chunking import Chunk, build_archive_text, chunk_text
from pants.core.embedding_providers import EmbeddingError, NullEmbeddingProvider
from pants.core.shared_embeddings import SharedEmbeddingStore

from conftest import ARTICLE_TEXT, CountingProvider

LONG_TEXT = (ARTICLE_TEXT + "\n\n") * 20


def _archive(db, user_id, url="https://example.com/post", text=LONG_TEXT, tags=("ai",)):
    return db.create_archive(
        user_id=user_id, url=url, title="Post", description="A post", text=text, tags=list(tags)
    )


@pytest.mark.asyncio
async def test_ensure_embedded_creates_and_links(db, provider):
    store = SharedEmbeddingStore(db, provider)
    archive = _archive(db, "alice")

    content_id = await store.ensure_embedded(archive, Chunk(content="hello world", index=0))

    assert provider.calls == ["hello world"]
    assert db.get_content(content_id).embedding is not None
    assert db.count_user_content("alice", archive.id) == 1


@pytest.mark.asyncio
async def test_existing_chunk_is_reused(db, provider):
    store = SharedEmbeddingStore(db, provider)
    archive = _archive(db, "alice")
    chunk = Chunk(content="hello world", index=0)

    first = await store.ensure_embedded(archive, chunk)
    second = await store.ensure_embedded(archive, chunk)

    assert first == second
    assert len(provider.calls) == 1
    assert db.count_user_content("alice") == 1


@pytest.mark.asyncio
async def test_two_users_share_embeddings(db, provider):
    """The provider runs once per unique chunk no matter how many users archive it."""
    store = SharedEmbeddingStore(db, provider, chunk_size=500, chunk_overlap=100)
    alice = _archive(db, "alice")
    bob = _archive(db, "bob")
    expected = chunk_text(build_archive_text(alice.title, alice.description, alice.text), 500, 100)
    assert len(expected) > 1

    alice_ids = await store.process_archive(alice)
    calls_after_alice = len(provider.calls)
    bob_ids = await store.process_archive(bob)

    assert calls_after_alice == len(expected)
    assert len(provider.calls) == calls_after_alice
    assert alice_ids == bob_ids
    assert db.count_user_content("alice") == len(expected)
    assert db.count_user_content("bob") == len(expected)


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_embedding_call(db):
    class SlowProvider(CountingProvider):
        async def embed(self, texts):
            await asyncio.sleep(0.01)
            return await super().embed(texts)

    provider = SlowProvider()
    store = SharedEmbeddingStore(db, provider)
    alice = _archive(db, "alice")
    bob = _archive(db, "bob")
    chunk = Chunk(content="same chunk", index=0)

    ids = await asyncio.gather(store.ensure_embedded(alice, chunk), store.ensure_embedded(bob, chunk))

    assert ids[0] == ids[1]
    assert provider.calls == ["same chunk"]


@pytest.mark.asyncio
async def test_unavailable_provider_stores_chunk_without_vector(db):
    store = SharedEmbeddingStore(db, NullEmbeddingProvider())
    archive = _archive(db, "alice", text="short body")

    ids = await store.process_archive(archive)

    assert len(ids) == 1
    assert db.get_content(ids[0]).embedding is None
    assert len(db.get_chunks_without_embedding()) == 1


@pytest.mark.asyncio
async def test_provider_error_is_not_fatal(db):
    class FailingProvider(CountingProvider):
        async def embed(self, texts):
            raise EmbeddingError("rate limited", provider="fake", retriable=True)

    store = SharedEmbeddingStore(db, FailingProvider())
    archive = _archive(db, "alice", text="short body")

    ids = await store.process_archive(archive)

    assert len(ids) == 1
    assert db.get_content(ids[0]).embedding is None


@pytest.mark.asyncio
async def test_store_failure_skips_only_that_chunk(db, provider):
    store = SharedEmbeddingStore(db, provider, chunk_size=500, chunk_overlap=100)
    archive = _archive(db, "alice")
    original = db.link_user_content
    calls = {"n": 0}

    def flaky_link(**kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return original(**kwargs)

    with patch.object(db, "link_user_content", side_effect=flaky_link):
        ids = await store.process_archive(archive)

    total = len(chunk_text(build_archive_text(archive.title, archive.description, archive.text), 500, 100))
    assert len(ids) == total - 1


@pytest.mark.asyncio
async def test_unsupported_dimensions_store_chunks_lexical_only(db):
    store = SharedEmbeddingStore(db, CountingProvider(dimensions=5), chunk_size=500, chunk_overlap=100)
    archive = _archive(db, "alice")

    ids = await store.process_archive(archive)

    total = len(chunk_text(build_archive_text(archive.title, archive.description, archive.text), 500, 100))
    assert len(ids) == total > 1
    assert db.get_stats()["embedded_chunks"] == 0
    assert db.count_user_content("alice", archive.id) == total


@pytest.mark.asyncio
async def test_rejected_vector_skips_only_that_chunk(db, provider):
    store = SharedEmbeddingStore(db, provider, chunk_size=500, chunk_overlap=100)
    archive = _archive(db, "alice")
    original = db.get_or_create_content
    calls = {"n": 0}

    def rejecting(**kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ValueError("Unsupported embedding dimensions: 5")
        return original(**kwargs)

    with patch.object(db, "get_or_create_content", side_effect=rejecting):
        ids = await store.process_archive(archive)

    total = len(chunk_text(build_archive_text(archive.title, archive.description, archive.text), 500, 100))
    assert len(ids) == total - 1


@pytest.mark.asyncio
async def test_backfill_embeds_vectorless_chunks(db, provider):
    archive = _archive(db, "alice", text="short body")
    await SharedEmbeddingStore(db, NullEmbeddingProvider()).process_archive(archive)

    result = await SharedEmbeddingStore(db, provider).backfill_embeddings(limit=10)

    assert result == {"processed": 1, "failed": 0, "remaining": 0}
    assert db.get_stats()["embedded_chunks"] == 1


@pytest.mark.asyncio
async def test_backfill_without_provider_does_nothing(db):
    archive = _archive(db, "alice", text="short body")
    store = SharedEmbeddingStore(db, NullEmbeddingProvider())
    await store.process_archive(archive)

    result = await store.backfill_embeddings()

    assert result == {"processed": 0, "failed": 0, "remaining": 1}
