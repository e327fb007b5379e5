from __future__ import annotations

import logging
import os
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from pants.core.background import TaskLimitError, TaskSupervisor
from pants.core.duplicates import DuplicateDetector, dedupe_user_archives
from pants.core.embedding_providers import get_provider
from pants.core.extractors import get_extractor
from pants.core.import_job import ImportJobStore, run_import_job
from pants.core.import_pipeline import ImportOptions, ImportOrchestrator
from pants.core.search import HybridSearcher, build_search_response
from pants.core.settings import Settings
from pants.core.shared_embeddings import SharedEmbeddingStore
from pants.core.storage import init_db
from pants.providers.pocket import PocketValidationError, parse_pocket_csv, validate_pocket_csv

logger = logging.getLogger(__name__)

NEW_PREVIEW_LIMIT = 10
DUPLICATE_PREVIEW_LIMIT = 5


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PocketOptions(_Body):
    batch_size: int | None = Field(default=None, alias="batchSize")
    delay_between_batches: float | None = Field(default=None, alias="delayBetweenBatches")
    delay_between_requests: float | None = Field(default=None, alias="delayBetweenRequests")
    max_retries: int | None = Field(default=None, alias="maxRetries")


class PocketValidateRequest(_Body):
    csv_content: str = Field(default="", alias="csvContent")
    user_id: str | None = Field(default=None, alias="userId")


class PocketImportRequest(_Body):
    csv_content: str = Field(default="", alias="csvContent")
    user_id: str = Field(default="", alias="userId")
    options: PocketOptions = Field(default_factory=PocketOptions)


class SearchRequest(_Body):
    query: str = ""
    user_id: str = Field(default="", alias="userId")
    limit: int | None = None


class ReprocessRequest(_Body):
    user_id: str | None = Field(default=None, alias="userId")
    limit: int = 500


class DedupeRequest(_Body):
    user_id: str = Field(default="", alias="userId")


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


app = FastAPI(title="pants")


@app.on_event("startup")
def _startup() -> None:
    s = Settings.from_env()
    logging.basicConfig(
        level=s.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db = init_db(s.db_path)
    provider = get_provider(s.embedding_provider, s.embedding_model)
    if not provider.available:
        logger.warning(f"Semantic search disabled: {getattr(provider, 'reason', 'no provider')}")
    extractor = get_extractor(os.getenv("FIRECRAWL_API_KEY", "").strip() or None)
    embedding_store = SharedEmbeddingStore(db, provider, s.chunk_size, s.chunk_overlap)

    app.state.settings = s
    app.state.db = db
    app.state.provider = provider
    app.state.extractor = extractor
    app.state.embedding_store = embedding_store
    app.state.detector = DuplicateDetector(db)
    app.state.orchestrator = ImportOrchestrator(db, extractor, embedding_store, app.state.detector)
    app.state.searcher = HybridSearcher(db, provider, s.search_match_threshold, s.search_default_limit)
    app.state.jobs = ImportJobStore(db.conn)
    app.state.supervisor = TaskSupervisor(s.max_background_tasks)
    logger.info(f"pants started ({s.app_env}), db={s.db_path}, embeddings={provider.name}/{provider.model_id}")


@app.on_event("shutdown")
async def _shutdown() -> None:
    await app.state.supervisor.shutdown()
    await app.state.extractor.close()
    app.state.db.conn.close()


@app.get("/health")
def health(request: Request):
    s: Settings = request.app.state.settings
    return {"ok": True, "env": s.app_env, "stats": request.app.state.db.get_stats()}


@app.post("/api/pocket/validate")
def api_pocket_validate(body: PocketValidateRequest, request: Request):
    """Validate a Pocket CSV and preview what an import would do."""
    if not body.csv_content:
        return _error(400, "CSV content is required")
    try:
        validate_pocket_csv(body.csv_content)
    except PocketValidationError as e:
        return _error(400, str(e), valid=False)

    items = parse_pocket_csv(body.csv_content)
    new, duplicates = items, []
    if body.user_id:
        partition = request.app.state.detector.partition(items, body.user_id)
        new, duplicates = partition.new, partition.duplicate

    return {
        "valid": True,
        "total_urls": len(items),
        "new_urls": len(new),
        "duplicate_urls": len(duplicates),
        "preview": [
            {"url": i.url, "title": i.title, "tags": sorted(i.tags)} for i in new[:NEW_PREVIEW_LIMIT]
        ],
        "has_more": len(new) > NEW_PREVIEW_LIMIT,
        "duplicates_preview": [{"url": d.url, "title": d.title} for d in duplicates[:DUPLICATE_PREVIEW_LIMIT]],
    }


@app.post("/api/pocket/import")
async def api_pocket_import(body: PocketImportRequest, request: Request):
    """Start a Pocket import as a background job.

    Returns the job id; poll /api/pocket/jobs/{job_id} for progress.
    """
    state = request.app.state
    s: Settings = state.settings

    if not body.csv_content or not body.user_id:
        return _error(400, "CSV content and userId are required")
    try:
        validate_pocket_csv(body.csv_content)
    except PocketValidationError as e:
        return _error(400, str(e))

    items = parse_pocket_csv(body.csv_content)
    if not items:
        return _error(400, "No valid URLs found in CSV")

    if s.max_import_urls and len(items) > s.max_import_urls:
        return _error(
            429,
            "Import would exceed the archive limit",
            limit=s.max_import_urls,
            requested=len(items),
        )

    try:
        options = ImportOptions.from_settings(s, **body.options.model_dump())
    except ValueError as e:
        return _error(400, str(e))

    job = state.jobs.create(user_id=body.user_id, items_total=len(items))
    try:
        state.supervisor.submit(
            f"import-{job.id}",
            run_import_job(job, items, state.orchestrator, state.jobs, options),
        )
    except TaskLimitError as e:
        job.error = str(e)
        state.jobs.cancel(job.id)
        return _error(429, str(e))

    return {
        "message": "Import started",
        "job_id": job.id,
        "total_urls": len(items),
        "options": {
            "batchSize": options.batch_size,
            "delayBetweenBatches": options.delay_between_batches,
            "delayBetweenRequests": options.delay_between_requests,
            "maxRetries": options.max_retries,
        },
    }


@app.get("/api/pocket/jobs/{job_id}")
def api_pocket_job(job_id: str, request: Request):
    job = request.app.state.jobs.get(job_id)
    if not job:
        return _error(404, "Job not found")
    return job.to_dict()


@app.post("/api/pocket/jobs/{job_id}/cancel")
def api_pocket_job_cancel(job_id: str, request: Request):
    """Stop launching new batches; items already running still finish."""
    job = request.app.state.jobs.cancel(job_id)
    if not job:
        return _error(404, "Job not found or cannot be cancelled")
    return {"status": job.status.value, "job": job.to_dict()}


@app.get("/api/pocket/status/{user_id}")
def api_pocket_status(user_id: str, request: Request):
    """Archives created for the user in the last 24 hours."""
    recent = request.app.state.db.list_recent_archives(user_id, hours=24)
    return {
        "recentImports": len(recent),
        "recentArchives": recent,
        "jobs": [j.to_dict() for j in request.app.state.jobs.list_for_user(user_id)],
    }


@app.post("/api/search")
async def api_search(body: SearchRequest, request: Request):
    started = time.monotonic()
    if not body.query.strip() or not body.user_id:
        return _error(400, "Query and userId are required")
    if body.limit is not None and body.limit < 1:
        return _error(400, "limit must be at least 1")

    searcher: HybridSearcher = request.app.state.searcher
    logger.info(f"Search: {body.query!r} for user {body.user_id}")
    results = await searcher.search(body.query, body.user_id, body.limit)
    return build_search_response(body.query, results, searcher.semantic_enabled, started)


@app.post("/api/admin/reprocess-embeddings")
async def api_reprocess_embeddings(body: ReprocessRequest, request: Request):
    """Re-chunk a user's archives (if given) and embed chunks stored without a vector."""
    state = request.app.state
    store: SharedEmbeddingStore = state.embedding_store

    reprocessed = 0
    if body.user_id:
        for archive in state.db.list_archives(body.user_id):
            await store.process_archive(archive)
            reprocessed += 1

    result = await store.backfill_embeddings(limit=body.limit)
    return {"message": "Embeddings reprocessed", "processed_count": reprocessed, **result}


@app.post("/api/admin/dedupe")
def api_admin_dedupe(body: DedupeRequest, request: Request):
    if not body.user_id:
        return _error(400, "userId is required")
    return dedupe_user_archives(request.app.state.db, body.user_id)


@app.get("/api/providers/health")
async def api_providers_health(request: Request):
    """Health of the configured embedding provider."""
    health = await request.app.state.provider.health_check()
    return {"providers": [health.to_dict()]}
