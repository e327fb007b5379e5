"""ImportJob model and store with DB persistence for background imports."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pants.core.models import ImportItem, ImportProgress, ImportSummary

if TYPE_CHECKING:
    from pants.core.import_pipeline import ImportOptions, ImportOrchestrator

logger = logging.getLogger(__name__)


class ImportStatus(str, Enum):
    """Status of an import job."""

    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (ImportStatus.PENDING, ImportStatus.RUNNING)


@dataclass
class ImportJob:
    """Tracks state of one import run started over HTTP."""

    id: str
    user_id: str
    status: ImportStatus
    items_total: int = 0
    items_processed: int = 0
    items_successful: int = 0
    items_failed: int = 0
    items_skipped: int = 0
    items_duplicates: int = 0
    items_not_started: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: str | None = None
    # Not persisted; available while the process that ran the job is alive
    summary: ImportSummary | None = None

    def touch(self) -> None:
        self.last_activity = datetime.now(timezone.utc)

    @property
    def progress_percent(self) -> float:
        if not self.items_total:
            return 0.0
        return (self.items_processed / self.items_total) * 100

    def apply_progress(self, progress: ImportProgress) -> None:
        self.items_processed = progress.processed
        self.items_successful = progress.successful
        self.items_failed = progress.failed

    def apply_summary(self, summary: ImportSummary) -> None:
        self.summary = summary
        self.items_total = summary.total
        self.items_processed = summary.successful + summary.failed + summary.skipped
        self.items_successful = summary.successful
        self.items_failed = summary.failed
        self.items_skipped = summary.skipped
        self.items_duplicates = summary.duplicates
        self.items_not_started = summary.not_started

    def to_dict(self) -> dict[str, Any]:
        """JSON payload for the job endpoints."""
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "items_total": self.items_total,
            "items_processed": self.items_processed,
            "items_successful": self.items_successful,
            "items_failed": self.items_failed,
            "items_skipped": self.items_skipped,
            "items_duplicates": self.items_duplicates,
            "items_not_started": self.items_not_started,
            "progress_percent": round(self.progress_percent, 1),
            "started_at": self.started_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "error": self.error,
        }
        if self.summary is not None:
            data["results"] = [r.to_dict() for r in self.summary.results]
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ImportJob:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=ImportStatus(row["status"]),
            items_total=row["items_total"],
            items_processed=row["items_processed"],
            items_successful=row["items_successful"],
            items_failed=row["items_failed"],
            items_skipped=row["items_skipped"],
            items_duplicates=row["items_duplicates"],
            items_not_started=row["items_not_started"],
            started_at=datetime.fromisoformat(row["started_at"]),
            last_activity=datetime.fromisoformat(row["last_activity"]),
            error=row["error"],
        )


_COLUMNS = """
    id, user_id, status, items_total, items_processed, items_successful,
    items_failed, items_skipped, items_duplicates, items_not_started, started_at, last_activity, error
"""


class ImportJobStore:
    """Store for ImportJobs with DB persistence. Thread-safe.

    Also owns the cancellation event of every job run in this process.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._jobs: dict[str, ImportJob] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._lock = threading.Lock()
        self._load_from_db()

    def _load_from_db(self) -> None:
        """Load unfinished jobs; ones left running by a previous process are marked failed."""
        cur = self._conn.execute(
            f"""
            SELECT {_COLUMNS}
            FROM import_jobs
            WHERE status IN ('pending', 'running')
            ORDER BY started_at DESC
            """
        )
        for row in cur.fetchall():
            job = ImportJob.from_row(row)
            job.status = ImportStatus.FAILED
            job.error = "Interrupted by restart"
            job.touch()
            self._jobs[job.id] = job
            self._persist(job)
            logger.warning(f"Import job {job.id} was interrupted by a restart")

    def create(self, user_id: str, items_total: int = 0) -> ImportJob:
        """Register a pending job and its cancellation event."""
        job = ImportJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            status=ImportStatus.PENDING,
            items_total=items_total,
        )
        with self._lock:
            self._jobs[job.id] = job
            self._cancel_events[job.id] = asyncio.Event()
            self._persist(job)
        return job

    def _persist(self, job: ImportJob) -> None:
        """Upsert the job row. Caller holds the lock."""
        self._conn.execute(
            f"""
            INSERT INTO import_jobs ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                items_total = excluded.items_total,
                items_processed = excluded.items_processed,
                items_successful = excluded.items_successful,
                items_failed = excluded.items_failed,
                items_skipped = excluded.items_skipped,
                items_duplicates = excluded.items_duplicates,
                items_not_started = excluded.items_not_started,
                last_activity = excluded.last_activity,
                error = excluded.error
            """,
            (
                job.id,
                job.user_id,
                job.status.value,
                job.items_total,
                job.items_processed,
                job.items_successful,
                job.items_failed,
                job.items_skipped,
                job.items_duplicates,
                job.items_not_started,
                job.started_at.isoformat(),
                job.last_activity.isoformat(),
                job.error,
            ),
        )
        self._conn.commit()

    def get(self, job_id: str) -> ImportJob | None:
        """Get job by ID from memory, falling back to the DB for older jobs."""
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None:
            return job
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM import_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return ImportJob.from_row(row) if row else None

    def update(self, job: ImportJob) -> None:
        job.touch()
        with self._lock:
            self._jobs[job.id] = job
            self._persist(job)

    def cancel_event(self, job_id: str) -> asyncio.Event:
        with self._lock:
            return self._cancel_events.setdefault(job_id, asyncio.Event())

    def list_for_user(self, user_id: str, limit: int = 10) -> list[ImportJob]:
        """Recent jobs of one user from DB, newest first."""
        cur = self._conn.execute(
            f"""
            SELECT {_COLUMNS}
            FROM import_jobs
            WHERE user_id = ?
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [ImportJob.from_row(row) for row in cur.fetchall()]

    def cancel(self, job_id: str) -> ImportJob | None:
        """Request cancellation of a pending or running job.

        Returns the job if cancellation was requested, None otherwise. The
        run stops launching batches; the final status is written when it
        returns.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status not in ACTIVE_STATUSES:
                return None
            self._cancel_events.setdefault(job_id, asyncio.Event()).set()
            job.status = ImportStatus.CANCELLED
            job.touch()
            self._persist(job)
            return job

    def finish(self, job_id: str) -> None:
        """Drop the cancellation event of a finished job."""
        with self._lock:
            self._cancel_events.pop(job_id, None)


async def run_import_job(
    job: ImportJob,
    items: list[ImportItem],
    orchestrator: "ImportOrchestrator",
    store: ImportJobStore,
    options: "ImportOptions | None" = None,
) -> ImportSummary | None:
    """Run an import job to completion, persisting progress as items finish."""
    cancel_event = store.cancel_event(job.id)
    if cancel_event.is_set():
        store.finish(job.id)
        return None

    job.status = ImportStatus.RUNNING
    store.update(job)

    def on_progress(progress: ImportProgress) -> None:
        job.apply_progress(progress)
        store.update(job)

    try:
        summary = await orchestrator.run(
            items,
            job.user_id,
            options=options,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )
    except Exception as e:
        logger.exception(f"Import job {job.id} failed")
        job.status = ImportStatus.FAILED
        job.error = str(e)
        store.update(job)
        raise
    finally:
        store.finish(job.id)

    job.apply_summary(summary)
    job.status = ImportStatus.CANCELLED if summary.cancelled else ImportStatus.COMPLETED
    store.update(job)
    logger.info(f"Import job {job.id} {job.status.value}: {summary.successful}/{summary.total} archived")
    return summary
