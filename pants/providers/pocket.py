"""Pocket export (CSV) validation and parsing."""

from __future__ import annotations

import csv
import io
import logging
import re
from datetime import datetime, timezone

from pants.core.models import ImportItem

logger = logging.getLogger(__name__)

# Data rows inspected by validation when looking for at least one URL
VALIDATION_SAMPLE_ROWS = 9

TAG_SEPARATORS = re.compile(r"[|,]")


class PocketValidationError(ValueError):
    """The uploaded file is not a usable Pocket export."""


def validate_pocket_csv(csv_content: str) -> None:
    """Cheap structural check run before any parsing or import.

    Raises:
        PocketValidationError: If the file is empty, lacks url/title
            columns, or has no URLs in its first rows.
    """
    lines = (csv_content or "").strip().splitlines()
    if len(lines) < 2:
        raise PocketValidationError("CSV file appears to be empty or has no data rows")

    header = lines[0].lower()
    if "url" not in header or "title" not in header:
        raise PocketValidationError(
            "CSV file does not appear to be a Pocket export (missing URL and Title columns)"
        )

    if not any("http" in line for line in lines[1 : 1 + VALIDATION_SAMPLE_ROWS]):
        raise PocketValidationError("No valid URLs found in CSV file")


def _parse_time_added(value: str | None) -> datetime | None:
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_tags(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(tag.strip() for tag in TAG_SEPARATORS.split(value) if tag.strip())


def parse_pocket_csv(csv_content: str) -> list[ImportItem]:
    """Parse a Pocket export into ImportItems.

    Rows whose url is empty or not an http(s) URL (including repeated header
    rows) are skipped silently.
    """
    reader = csv.DictReader(io.StringIO(csv_content or ""))
    if reader.fieldnames is None:
        return []
    reader.fieldnames = [(name or "").strip().lower() for name in reader.fieldnames]

    items: list[ImportItem] = []
    skipped = 0
    for row in reader:
        url = (row.get("url") or "").strip()
        if not url.lower().startswith(("http://", "https://")):
            skipped += 1
            continue
        items.append(
            ImportItem(
                url=url,
                title=(row.get("title") or "").strip(),
                tags=_parse_tags(row.get("tags")),
                time_added=_parse_time_added(row.get("time_added")),
            )
        )

    logger.info(f"Parsed {len(items)} URLs from Pocket CSV ({skipped} rows skipped)")
    return items
