from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: str
    embedding_provider: str
    embedding_model: str | None
    import_batch_size: int
    import_delay_between_batches: float
    import_delay_between_requests: float
    import_max_retries: int
    max_import_urls: int
    chunk_size: int
    chunk_overlap: int
    search_match_threshold: float
    search_default_limit: int
    max_background_tasks: int

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/pants.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "gemini").strip().lower(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "").strip() or None,
            import_batch_size=_i("IMPORT_BATCH_SIZE", "3"),
            import_delay_between_batches=_f("IMPORT_DELAY_BETWEEN_BATCHES", "2.0"),
            import_delay_between_requests=_f("IMPORT_DELAY_BETWEEN_REQUESTS", "1.0"),
            import_max_retries=_i("IMPORT_MAX_RETRIES", "2"),
            max_import_urls=_i("MAX_IMPORT_URLS", "0"),
            chunk_size=_i("CHUNK_SIZE", "1500"),
            chunk_overlap=_i("CHUNK_OVERLAP", "300"),
            search_match_threshold=_f("SEARCH_MATCH_THRESHOLD", "0.65"),
            search_default_limit=_i("SEARCH_DEFAULT_LIMIT", "20"),
            max_background_tasks=_i("MAX_BACKGROUND_TASKS", "4"),
        )
