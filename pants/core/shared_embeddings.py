"""Content-addressable chunk store with embeddings shared across users.

A chunk is identified by ``(content_hash, chunk_index)`` where the hash
covers the source URL and the chunk text. The embedding provider is called
at most once per identity: existing rows are reused, and concurrent
requests for the same identity inside this process share one in-flight
embedding call.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import TYPE_CHECKING

from pants.core.chunking import CHUNK_OVERLAP, CHUNK_SIZE, Chunk, build_archive_text, chunk_text
from pants.core.embedding_providers import EmbeddingProvider, embed_or_none
from pants.core.models import ArchiveRecord
from pants.core.storage import SUPPORTED_DIMENSIONS, content_hash

if TYPE_CHECKING:
    from pants.core.storage import DB

logger = logging.getLogger(__name__)

BACKFILL_BATCH_SIZE = 50


class SharedEmbeddingStore:
    """Deduplicates chunk content by hash and links it to user archives."""

    def __init__(
        self,
        db: "DB",
        provider: EmbeddingProvider,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
    ) -> None:
        self._db = db
        self._provider = provider
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._inflight: dict[tuple[str, int], asyncio.Task[int]] = {}

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    async def ensure_embedded(self, archive: ArchiveRecord, chunk: Chunk) -> int:
        """Return the shared content id for ``chunk``, creating and embedding it if new.

        Also links the content to the archive's owner. Raises sqlite3.Error
        when the store write fails.
        """
        key = (content_hash(archive.url, chunk.content), chunk.index)

        content_id = self._db.find_content(*key)
        if content_id is not None:
            logger.debug(f"Reusing existing embedding for chunk {chunk.index} of {archive.url}")
        else:
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(self._create(key, archive, chunk))
                self._inflight[key] = task
                task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
            content_id = await asyncio.shield(task)

        self._db.link_user_content(
            user_id=archive.user_id,
            content_id=content_id,
            archive_id=archive.id,
            tags=archive.tags,
        )
        return content_id

    async def _create(self, key: tuple[str, int], archive: ArchiveRecord, chunk: Chunk) -> int:
        embedding = await embed_or_none(self._provider, chunk.content)
        if embedding is not None and len(embedding) not in SUPPORTED_DIMENSIONS:
            logger.warning(
                f"Unsupported embedding dimensions {len(embedding)} from {self._provider.name}, "
                f"storing chunk {chunk.index} of {archive.url} without vector"
            )
            embedding = None
        if embedding is None:
            logger.info(f"Storing chunk {chunk.index} of {archive.url} without vector (lexical only)")
        else:
            logger.debug(f"Created new embedding for chunk {chunk.index} of {archive.url}")
        return self._db.get_or_create_content(
            content_hash=key[0],
            chunk_index=key[1],
            url=archive.url,
            title=archive.title,
            content=chunk.content,
            embedding=embedding,
            provider=self._provider.name,
            model=self._provider.model_id,
        )

    async def process_archive(self, archive: ArchiveRecord) -> list[int]:
        """Chunk an archive and route every chunk through the shared store.

        A failed store write skips that chunk only.
        """
        chunks = chunk_text(
            build_archive_text(archive.title, archive.description, archive.text),
            chunk_size=self._chunk_size,
            overlap=self._chunk_overlap,
        )
        logger.info(f"Processing {len(chunks)} chunks for archive {archive.id} ({archive.url})")

        content_ids = []
        for chunk in chunks:
            try:
                content_ids.append(await self.ensure_embedded(archive, chunk))
            except (sqlite3.Error, ValueError) as e:
                logger.error(f"Error storing chunk {chunk.index} of archive {archive.id}: {e}")
        logger.info(f"Processed {len(content_ids)}/{len(chunks)} chunks for archive {archive.id}")
        return content_ids

    async def backfill_embeddings(self, limit: int = 500) -> dict[str, int]:
        """Embed stored chunks that were saved without a vector.

        Stops early when the provider is unavailable.
        """
        if not self._provider.available:
            return {"processed": 0, "failed": 0, "remaining": len(self._db.get_chunks_without_embedding(limit))}

        processed = 0
        failed = 0
        while processed + failed < limit:
            rows = self._db.get_chunks_without_embedding(min(BACKFILL_BATCH_SIZE, limit - processed - failed))
            if not rows:
                break
            embedded_any = False
            for row in rows:
                embedding = await embed_or_none(self._provider, row["content"])
                if embedding is None:
                    failed += 1
                    continue
                try:
                    self._db.save_content_embedding(
                        row["id"], embedding, self._provider.name, self._provider.model_id
                    )
                    processed += 1
                    embedded_any = True
                except (sqlite3.Error, ValueError) as e:
                    failed += 1
                    logger.error(f"Failed to save embedding for chunk {row['id']}: {e}")
            if not embedded_any:
                break

        remaining = len(self._db.get_chunks_without_embedding(limit))
        return {"processed": processed, "failed": failed, "remaining": remaining}
