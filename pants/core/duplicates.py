"""Duplicate detection for imports and duplicate cleanup for existing archives."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pants.core.models import ImportItem
from pants.core.storage import IN_QUERY_BATCH_SIZE, normalize_url

if TYPE_CHECKING:
    from pants.core.storage import DB

logger = logging.getLogger(__name__)


@dataclass
class Partition:
    """Exhaustive, disjoint split of import items."""

    new: list[ImportItem] = field(default_factory=list)
    duplicate: list[ImportItem] = field(default_factory=list)


class DuplicateDetector:
    """Splits candidate items into already-archived and new for one user.

    Existence is checked with batched "url in set" queries. A failing batch
    is treated as containing no duplicates (fail-open): an import is never
    blocked by a transient store error, at the cost of possibly re-archiving
    a few URLs, which the store's unique constraint then rejects.
    """

    def __init__(self, db: "DB", batch_size: int = IN_QUERY_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._db = db
        self._batch_size = batch_size

    def existing_urls(self, urls: list[str], user_id: str) -> set[str]:
        existing: set[str] = set()
        for i in range(0, len(urls), self._batch_size):
            batch = urls[i : i + self._batch_size]
            try:
                existing |= self._db.find_existing_urls(user_id, batch)
            except sqlite3.Error as e:
                logger.warning(
                    f"Duplicate check failed for batch {i // self._batch_size + 1} "
                    f"({len(batch)} URLs), treating as new: {e}"
                )
        return existing

    def partition(self, items: list[ImportItem], user_id: str) -> Partition:
        """Partition items into new and duplicate.

        Repeated URLs inside ``items`` keep their first occurrence as new and
        count the rest as duplicates.
        """
        existing = self.existing_urls([item.url for item in items], user_id)

        result = Partition()
        seen: set[str] = set()
        for item in items:
            canonical = normalize_url(item.url) or item.url
            if item.url in existing or canonical in seen:
                result.duplicate.append(item)
            else:
                result.new.append(item)
            seen.add(canonical)

        logger.info(
            f"Duplicate check: {len(result.duplicate)} duplicates found, "
            f"{len(result.new)} new URLs to import"
        )
        return result


def dedupe_user_archives(db: "DB", user_id: str) -> dict[str, Any]:
    """Remove duplicate archives of one user, keeping the oldest per canonical URL."""
    archives = db.list_archive_urls(user_id)
    logger.info(f"Found {len(archives)} total archives for user {user_id}")

    seen: set[str] = set()
    ids_to_delete: list[int] = []
    for archive in archives:
        key = archive["url_canonical"] or archive["url"]
        if key in seen:
            ids_to_delete.append(archive["id"])
        else:
            seen.add(key)

    if not ids_to_delete:
        return {
            "message": "No duplicates found",
            "originalCount": len(archives),
            "duplicatesRemoved": 0,
            "finalCount": len(archives),
        }

    logger.info(f"Will delete {len(ids_to_delete)} duplicate archives")
    deleted = db.delete_archives(ids_to_delete)
    db.rebuild_fts()
    final_count = db.get_stats(user_id)["archives"]
    logger.info(f"Deduplication complete: deleted {deleted}, final count {final_count}")

    return {
        "message": "Deduplication complete",
        "originalCount": len(archives),
        "duplicatesRemoved": deleted,
        "finalCount": final_count,
    }
