"""Batched, rate-limited, retried import of URL lists.

Duplicates are filtered up front; the remaining items are processed in
sequential batches whose members run concurrently. Every item ends up as
exactly one ImportResult, and nothing short of argument validation makes
``ImportOrchestrator.run`` raise.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pants.core.duplicates import DuplicateDetector
from pants.core.extractors import ExtractedPage, Extractor
from pants.core.models import ImportItem, ImportProgress, ImportResult, ImportSummary
from pants.core.storage import DuplicateArchiveError

if TYPE_CHECKING:
    from pants.core.settings import Settings
    from pants.core.shared_embeddings import SharedEmbeddingStore
    from pants.core.storage import DB

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ImportProgress], Any]


@dataclass(frozen=True)
class ImportOptions:
    """Pacing and retry knobs for one run. Delays are in seconds."""

    batch_size: int = 3
    delay_between_batches: float = 2.0
    delay_between_requests: float = 1.0
    max_retries: int = 2
    process_embeddings: bool = True

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must not be negative, got {self.max_retries}")
        if self.delay_between_batches < 0 or self.delay_between_requests < 0:
            raise ValueError("delays must not be negative")

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> "ImportOptions":
        values: dict[str, Any] = {
            "batch_size": settings.import_batch_size,
            "delay_between_batches": settings.import_delay_between_batches,
            "delay_between_requests": settings.import_delay_between_requests,
            "max_retries": settings.import_max_retries,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ImportOrchestrator:
    """Drives an import: duplicate filter, extraction, archive creation, chunk embedding."""

    def __init__(
        self,
        db: "DB",
        extractor: Extractor,
        embedding_store: "SharedEmbeddingStore | None" = None,
        detector: DuplicateDetector | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._extractor = extractor
        self._embedding_store = embedding_store
        self._detector = detector or DuplicateDetector(db)
        self._sleep = sleep

    async def run(
        self,
        items: list[ImportItem],
        user_id: str,
        options: ImportOptions | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ImportSummary:
        """Import ``items`` for ``user_id``.

        Args:
            items: Parsed import rows
            user_id: Owner of the created archives
            options: Pacing and retry settings (defaults if omitted)
            on_progress: Called after every completed item
            cancel_event: When set, no further batch is started; items
                already running finish and are recorded

        Returns:
            ImportSummary whose ``results`` hold one entry per non-duplicate
            item that was processed, in completion order.
        """
        if not user_id:
            raise ValueError("user_id is required")
        options = options or ImportOptions()

        partition = self._detector.partition(items, user_id)
        summary = ImportSummary(
            total=len(items),
            duplicates=len(partition.duplicate),
            skipped=len(partition.duplicate),
        )
        logger.info(
            f"Starting import for {user_id}: {len(items)} total URLs, "
            f"{len(partition.duplicate)} duplicates found, {len(partition.new)} new URLs to process"
        )

        to_process = partition.new
        total_batches = (len(to_process) + options.batch_size - 1) // options.batch_size

        for batch_number, start in enumerate(range(0, len(to_process), options.batch_size), start=1):
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                summary.not_started = len(to_process) - start
                logger.info(f"Import cancelled before batch {batch_number}/{total_batches}")
                break

            batch = to_process[start : start + options.batch_size]
            logger.info(f"Processing batch {batch_number}/{total_batches} ({len(batch)} URLs)")

            tasks = [asyncio.ensure_future(self._process_item(item, user_id, options)) for item in batch]
            for finished in asyncio.as_completed(tasks):
                result = await finished
                summary.record(result)
                self._report(on_progress, summary, result)

            if batch_number < total_batches and options.delay_between_batches > 0:
                logger.debug(f"Waiting {options.delay_between_batches}s before next batch")
                await self._sleep(options.delay_between_batches)

        logger.info(
            f"Import complete for {user_id}: {summary.successful} successful, {summary.failed} failed, "
            f"{summary.skipped} skipped ({summary.duplicates} duplicates)"
            + (" [cancelled]" if summary.cancelled else "")
        )
        return summary

    def _report(self, on_progress: ProgressCallback | None, summary: ImportSummary, result: ImportResult) -> None:
        if on_progress is None:
            return
        progress = ImportProgress(
            processed=summary.successful + summary.failed + summary.skipped,
            total=summary.total,
            successful=summary.successful,
            failed=summary.failed,
            current_url=result.url,
            current_result=result,
        )
        try:
            on_progress(progress)
        except Exception:
            logger.exception("Progress callback failed")

    async def _extract_with_retries(self, url: str, options: ImportOptions) -> ExtractedPage:
        """Extract ``url``, retrying any failure with linear backoff.

        Makes at most ``max_retries + 1`` attempts and re-raises the last error.
        """
        attempt = 0
        while True:
            try:
                return await self._extractor.extract(url)
            except Exception as e:
                attempt += 1
                if attempt > options.max_retries:
                    raise
                logger.warning(f"Retry {attempt}/{options.max_retries} for {url}: {e}")
                await self._sleep(options.delay_between_requests * attempt)

    async def _process_item(self, item: ImportItem, user_id: str, options: ImportOptions) -> ImportResult:
        try:
            existing = self._db.find_archive_by_url(user_id, item.url)
            if existing is not None:
                return ImportResult(
                    url=item.url, success=True, skipped=True, archive_ref=existing.id, title=existing.title
                )

            try:
                page = await self._extract_with_retries(item.url, options)
            except Exception as e:
                logger.error(f"Failed to archive {item.url} after {options.max_retries + 1} attempts: {e}")
                return ImportResult(url=item.url, success=False, error=str(e) or type(e).__name__)

            title = page.title
            if not title or title == "Untitled":
                title = item.title or title or "Untitled"

            try:
                archive = self._db.create_archive(
                    user_id=user_id,
                    url=item.url,
                    title=title,
                    description=page.description,
                    html=page.html,
                    text=page.text,
                    markdown=page.markdown,
                    extraction_method=page.extraction_method,
                    word_count=page.word_count,
                    reading_time=page.reading_time,
                    tags=sorted(item.tags),
                    time_added=item.time_added.isoformat() if item.time_added else None,
                )
            except DuplicateArchiveError:
                existing = self._db.find_archive_by_url(user_id, item.url)
                logger.info(f"{item.url} was archived concurrently, skipping")
                return ImportResult(
                    url=item.url,
                    success=True,
                    skipped=True,
                    archive_ref=existing.id if existing else None,
                    title=title,
                )

            if options.process_embeddings and self._embedding_store is not None:
                try:
                    await self._embedding_store.process_archive(archive)
                except Exception:
                    logger.exception(f"Embedding processing failed for archive {archive.id}")

            logger.info(f"Archived {item.url} as {archive.id} ({page.extraction_method})")
            return ImportResult(url=item.url, success=True, archive_ref=archive.id, title=title)

        except Exception as e:
            logger.exception(f"Unexpected error importing {item.url}")
            return ImportResult(url=item.url, success=False, error=f"{type(e).__name__}: {e}")
