from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import sqlite3
import struct
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import sqlite_vec

from pants.core.models import ArchiveRecord, ContentChunk, MatchType, SearchHit

logger = logging.getLogger(__name__)

# Backend query-size limit for "value in set" queries
IN_QUERY_BATCH_SIZE = 100

# Vector dimensions with a vec0 table (Gemini/Ollama 768, mxbai 1024, OpenAI 1536/3072)
SUPPORTED_DIMENSIONS = (768, 1024, 1536, 3072)

TRACKING_PARAM_PREFIXES = ("utm_",)
TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid"}


def normalize_url(url: str | None) -> str | None:
    """Normalize URL for deduplication.

    - Lowercase scheme and host
    - Remove www. prefix
    - Normalize http to https
    - Remove trailing slash
    - Remove fragment and tracking parameters (utm_*, fbclid, ...)
    """
    if not url:
        return None
    url = url.strip()
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme == "http":
        scheme = "https"
    netloc = parsed.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]
    query = urlencode([
        (k, v)
        for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if not k.lower().startswith(TRACKING_PARAM_PREFIXES) and k.lower() not in TRACKING_PARAMS
    ])
    normalized = urlunparse((
        scheme,
        netloc,
        parsed.path.rstrip("/"),
        "",  # params
        query,
        "",  # fragment
    ))
    return normalized or None


def content_hash(url: str, content: str) -> str:
    """Hash identifying chunk content independent of who archived it."""
    return hashlib.sha256(f"{url}:{content}".encode()).hexdigest()


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


def build_fts_query(query: str) -> str | None:
    """Turn free text into an FTS5 OR-query of quoted terms."""
    terms = re.findall(r"\w+", query or "")
    if not terms:
        return None
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)


class DuplicateArchiveError(Exception):
    """An archive for this (user, canonical URL) already exists."""

    def __init__(self, user_id: str, url: str):
        super().__init__(f"Archive already exists for user {user_id}: {url}")
        self.user_id = user_id
        self.url = url


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS archives (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  url TEXT NOT NULL,
  url_canonical TEXT NOT NULL,
  title TEXT,
  description TEXT,
  archived_html TEXT,
  archived_text TEXT,
  archived_markdown TEXT,
  extraction_method TEXT,
  word_count INTEGER DEFAULT 0,
  reading_time INTEGER DEFAULT 0,
  tags TEXT NOT NULL DEFAULT '[]',
  time_added TEXT,
  created_at TEXT DEFAULT (datetime('now')),
  UNIQUE(user_id, url_canonical)
);

CREATE INDEX IF NOT EXISTS idx_archives_user_created ON archives(user_id, created_at);

CREATE VIRTUAL TABLE IF NOT EXISTS archives_fts USING fts5(
  title, description, archived_text,
  content='archives',
  content_rowid='id'
);

-- Chunk content shared by every user who archives the same content
CREATE TABLE IF NOT EXISTS content_chunks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  content_hash TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  url TEXT NOT NULL,
  title TEXT,
  content TEXT NOT NULL,
  embedding_provider TEXT,
  embedding_model TEXT,
  embedding_dimensions INTEGER,
  created_at TEXT DEFAULT (datetime('now')),
  UNIQUE(content_hash, chunk_index)
);

CREATE VIRTUAL TABLE IF NOT EXISTS content_fts USING fts5(
  content,
  content='content_chunks',
  content_rowid='id'
);

CREATE TABLE IF NOT EXISTS user_content (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  content_id INTEGER NOT NULL REFERENCES content_chunks(id),
  archive_id INTEGER NOT NULL REFERENCES archives(id) ON DELETE CASCADE,
  tags TEXT NOT NULL DEFAULT '[]',
  created_at TEXT DEFAULT (datetime('now')),
  UNIQUE(user_id, content_id, archive_id)
);

CREATE INDEX IF NOT EXISTS idx_user_content_content ON user_content(content_id);
CREATE INDEX IF NOT EXISTS idx_user_content_archive ON user_content(archive_id);

CREATE TABLE IF NOT EXISTS import_jobs (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  status TEXT NOT NULL,  -- pending, running, cancelled, completed, failed
  items_total INTEGER DEFAULT 0,
  items_processed INTEGER DEFAULT 0,
  items_successful INTEGER DEFAULT 0,
  items_failed INTEGER DEFAULT 0,
  items_skipped INTEGER DEFAULT 0,
  items_duplicates INTEGER DEFAULT 0,
  items_not_started INTEGER DEFAULT 0,
  started_at TEXT DEFAULT (datetime('now')),
  last_activity TEXT DEFAULT (datetime('now')),
  error TEXT
);
"""


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with sqlite-vec loaded."""
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    # sqlite-vec must be loaded into this connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


def _archive_from_row(row: sqlite3.Row) -> ArchiveRecord:
    return ArchiveRecord(
        id=row["id"],
        user_id=row["user_id"],
        url=row["url"],
        title=row["title"] or "Untitled",
        description=row["description"] or "",
        text=row["archived_text"] or "",
        markdown=row["archived_markdown"],
        extraction_method=row["extraction_method"],
        word_count=row["word_count"] or 0,
        reading_time=row["reading_time"] or 0,
        tags=tuple(json.loads(row["tags"] or "[]")),
        created_at=row["created_at"],
    )


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def get_stats(self, user_id: str | None = None) -> dict[str, Any]:
        if user_id:
            archives = self.conn.execute(
                "SELECT COUNT(*) FROM archives WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
        else:
            archives = self.conn.execute("SELECT COUNT(*) FROM archives").fetchone()[0]
        chunks = self.conn.execute("SELECT COUNT(*) FROM content_chunks").fetchone()[0]
        embedded = self.conn.execute(
            "SELECT COUNT(*) FROM content_chunks WHERE embedding_dimensions IS NOT NULL"
        ).fetchone()[0]
        return {"archives": archives, "content_chunks": chunks, "embedded_chunks": embedded}

    # ==================== Archives ====================

    def create_archive(
        self,
        *,
        user_id: str,
        url: str,
        title: str,
        description: str = "",
        html: str | None = None,
        text: str = "",
        markdown: str | None = None,
        extraction_method: str | None = None,
        word_count: int = 0,
        reading_time: int = 0,
        tags: list[str] | tuple[str, ...] = (),
        time_added: str | None = None,
    ) -> ArchiveRecord:
        """Insert a new archive and index it for lexical search.

        Raises:
            DuplicateArchiveError: If the user already archived this canonical URL.
        """
        url_canonical = normalize_url(url) or url
        try:
            cur = self.conn.execute(
                """
                INSERT INTO archives (
                    user_id, url, url_canonical, title, description, archived_html,
                    archived_text, archived_markdown, extraction_method, word_count,
                    reading_time, tags, time_added
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, url, url_canonical, title, description, html,
                    text, markdown, extraction_method, word_count,
                    reading_time, json.dumps(sorted(tags)), time_added,
                ),
            )
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise DuplicateArchiveError(user_id, url) from e

        archive_id = cur.lastrowid
        self.conn.execute(
            "INSERT INTO archives_fts (rowid, title, description, archived_text) VALUES (?, ?, ?, ?)",
            (archive_id, title, description, text),
        )
        self.conn.commit()
        archive = self.get_archive(archive_id)
        assert archive is not None
        return archive

    def get_archive(self, archive_id: int) -> ArchiveRecord | None:
        row = self.conn.execute("SELECT * FROM archives WHERE id = ?", (archive_id,)).fetchone()
        return _archive_from_row(row) if row else None

    def find_archive_by_url(self, user_id: str, url: str) -> ArchiveRecord | None:
        """Exact-match lookup of a user's archive by canonical URL."""
        row = self.conn.execute(
            "SELECT * FROM archives WHERE user_id = ? AND url_canonical = ?",
            (user_id, normalize_url(url) or url),
        ).fetchone()
        return _archive_from_row(row) if row else None

    def find_existing_urls(self, user_id: str, urls: list[str]) -> set[str]:
        """Return the subset of ``urls`` the user already archived.

        One "value in set" query; callers keep ``urls`` within
        IN_QUERY_BATCH_SIZE.
        """
        if not urls:
            return set()
        by_canonical: dict[str, list[str]] = {}
        for url in urls:
            by_canonical.setdefault(normalize_url(url) or url, []).append(url)

        placeholders = ",".join("?" * len(by_canonical))
        cur = self.conn.execute(
            f"""
            SELECT url_canonical FROM archives
            WHERE user_id = ? AND url_canonical IN ({placeholders})
            """,
            [user_id, *by_canonical.keys()],
        )
        existing: set[str] = set()
        for row in cur.fetchall():
            existing.update(by_canonical.get(row[0], []))
        return existing

    def list_archives(self, user_id: str) -> list[ArchiveRecord]:
        cur = self.conn.execute(
            "SELECT * FROM archives WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [_archive_from_row(row) for row in cur.fetchall()]

    def list_recent_archives(self, user_id: str, hours: int = 24) -> list[dict[str, Any]]:
        cur = self.conn.execute(
            """
            SELECT id, url, title, created_at, extraction_method
            FROM archives
            WHERE user_id = ? AND created_at >= datetime('now', ?)
            ORDER BY created_at DESC, id DESC
            """,
            (user_id, f"-{hours} hours"),
        )
        return [dict(row) for row in cur.fetchall()]

    def list_archive_urls(self, user_id: str) -> list[dict[str, Any]]:
        """All archives of a user, oldest first."""
        cur = self.conn.execute(
            """
            SELECT id, url, url_canonical, title, created_at
            FROM archives
            WHERE user_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (user_id,),
        )
        return [dict(row) for row in cur.fetchall()]

    def delete_archives(self, archive_ids: list[int]) -> int:
        """Delete archives in batches; returns the number deleted."""
        deleted = 0
        for i in range(0, len(archive_ids), IN_QUERY_BATCH_SIZE):
            batch = archive_ids[i : i + IN_QUERY_BATCH_SIZE]
            placeholders = ",".join("?" * len(batch))
            try:
                cur = self.conn.execute(f"DELETE FROM archives WHERE id IN ({placeholders})", batch)
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"Error deleting archive batch: {e}")
                continue
            deleted += cur.rowcount
        return deleted

    def rebuild_fts(self) -> int:
        """Rebuild the archive FTS index from the archives table.

        Returns the number of archives indexed.
        """
        self.conn.execute("INSERT INTO archives_fts(archives_fts) VALUES('rebuild')")
        self.conn.commit()
        return self.conn.execute("SELECT COUNT(*) FROM archives").fetchone()[0]

    # ==================== Shared content ====================

    def find_content(self, content_hash: str, chunk_index: int) -> int | None:
        row = self.conn.execute(
            "SELECT id FROM content_chunks WHERE content_hash = ? AND chunk_index = ?",
            (content_hash, chunk_index),
        ).fetchone()
        return row[0] if row else None

    def get_content(self, content_id: int) -> ContentChunk | None:
        row = self.conn.execute(
            """
            SELECT id, content_hash, chunk_index, content, embedding_dimensions
            FROM content_chunks WHERE id = ?
            """,
            (content_id,),
        ).fetchone()
        if not row:
            return None
        embedding = None
        if row["embedding_dimensions"]:
            vec = self.conn.execute(
                f"SELECT embedding FROM content_vectors_{row['embedding_dimensions']} WHERE rowid = ?",
                (content_id,),
            ).fetchone()
            if vec:
                embedding = deserialize_f32(vec[0])
        return ContentChunk(
            id=row["id"],
            content_hash=row["content_hash"],
            chunk_index=row["chunk_index"],
            text=row["content"],
            embedding=embedding,
        )

    def _ensure_vec_table(self, dimensions: int) -> str:
        if dimensions not in SUPPORTED_DIMENSIONS:
            raise ValueError(f"Unsupported embedding dimensions: {dimensions}")
        table = f"content_vectors_{dimensions}"
        self.conn.execute(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0(
              embedding float[{dimensions}] distance_metric=cosine
            )
            """
        )
        return table

    def _store_vector(self, content_id: int, embedding: list[float], provider: str, model: str) -> None:
        """Write a vector for a chunk. Caller commits."""
        table = self._ensure_vec_table(len(embedding))
        self.conn.execute(
            f"INSERT INTO {table} (rowid, embedding) VALUES (?, ?)",
            (content_id, serialize_f32(embedding)),
        )
        self.conn.execute(
            """
            UPDATE content_chunks
            SET embedding_provider = ?, embedding_model = ?, embedding_dimensions = ?
            WHERE id = ?
            """,
            (provider, model, len(embedding), content_id),
        )

    def get_or_create_content(
        self,
        *,
        content_hash: str,
        chunk_index: int,
        url: str,
        title: str | None,
        content: str,
        embedding: list[float] | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> int:
        """Atomically get or create a shared chunk row.

        If another writer created the row first, its id is returned and the
        given embedding is discarded.
        """
        try:
            cur = self.conn.execute(
                """
                INSERT INTO content_chunks (content_hash, chunk_index, url, title, content)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(content_hash, chunk_index) DO NOTHING
                RETURNING id
                """,
                (content_hash, chunk_index, url, title, content),
            )
            row = cur.fetchone()
            if row is None:
                self.conn.commit()
                existing = self.find_content(content_hash, chunk_index)
                if existing is None:
                    raise sqlite3.IntegrityError(
                        f"content row vanished for {content_hash}:{chunk_index}"
                    )
                return existing

            content_id = row[0]
            self.conn.execute(
                "INSERT INTO content_fts (rowid, content) VALUES (?, ?)",
                (content_id, content),
            )
            if embedding:
                self._store_vector(content_id, embedding, provider or "unknown", model or "unknown")
            self.conn.commit()
            return content_id
        except (sqlite3.Error, ValueError):
            self.conn.rollback()
            raise

    def link_user_content(
        self,
        *,
        user_id: str,
        content_id: int,
        archive_id: int,
        tags: list[str] | tuple[str, ...] = (),
    ) -> None:
        """Idempotently link shared content to a user's archive."""
        self.conn.execute(
            """
            INSERT INTO user_content (user_id, content_id, archive_id, tags)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, content_id, archive_id) DO NOTHING
            """,
            (user_id, content_id, archive_id, json.dumps(sorted(tags))),
        )
        self.conn.commit()

    def count_user_content(self, user_id: str, archive_id: int | None = None) -> int:
        if archive_id is None:
            cur = self.conn.execute("SELECT COUNT(*) FROM user_content WHERE user_id = ?", (user_id,))
        else:
            cur = self.conn.execute(
                "SELECT COUNT(*) FROM user_content WHERE user_id = ? AND archive_id = ?",
                (user_id, archive_id),
            )
        return cur.fetchone()[0]

    def get_chunks_without_embedding(self, limit: int = 100) -> list[dict[str, Any]]:
        cur = self.conn.execute(
            """
            SELECT id, content
            FROM content_chunks
            WHERE embedding_dimensions IS NULL
            ORDER BY id
            LIMIT ?
            """,
            (limit,),
        )
        return [{"id": row[0], "content": row[1]} for row in cur.fetchall()]

    def save_content_embedding(
        self, content_id: int, embedding: list[float], provider: str, model: str
    ) -> None:
        try:
            self._store_vector(content_id, embedding, provider, model)
            self.conn.commit()
        except (sqlite3.Error, ValueError):
            self.conn.rollback()
            raise

    # ==================== Hybrid search ====================

    def search_lexical(self, query: str, user_id: str, limit: int = 30) -> list[SearchHit]:
        """Archive-level FTS hits for one user, best first."""
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        cur = self.conn.execute(
            """
            SELECT a.id, a.title, a.url, a.description, a.archived_text, a.tags,
                   a.created_at, bm25(archives_fts) AS rank
            FROM archives_fts f
            JOIN archives a ON a.id = f.rowid
            WHERE archives_fts MATCH ? AND a.user_id = ?
            ORDER BY rank
            LIMIT ?
            """,
            (fts_query, user_id, limit),
        )
        hits = []
        for row in cur.fetchall():
            strength = abs(row["rank"])
            hits.append(
                SearchHit(
                    archive_id=row["id"],
                    score=strength / (1.0 + strength),
                    match_type=MatchType.LEXICAL,
                    title=row["title"],
                    url=row["url"],
                    description=row["description"],
                    text=row["archived_text"],
                    tags=json.loads(row["tags"] or "[]"),
                    created_at=row["created_at"],
                )
            )
        return hits

    def search_semantic(
        self,
        query_embedding: list[float],
        user_id: str,
        limit: int = 30,
        match_threshold: float = 0.65,
    ) -> list[SearchHit]:
        """Chunk-level vector hits for one user, most similar first."""
        dimensions = len(query_embedding)
        if dimensions not in SUPPORTED_DIMENSIONS:
            return []
        table = f"content_vectors_{dimensions}"
        exists = self.conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ).fetchone()
        if not exists:
            return []

        # Scoped to the user's chunks before ranking
        cur = self.conn.execute(
            f"""
            SELECT uc.archive_id, uc.content_id, c.content, a.title, a.url,
                   a.description, a.tags, a.created_at,
                   vec_distance_cosine(v.embedding, ?) AS distance
            FROM user_content uc
            JOIN {table} v ON v.rowid = uc.content_id
            JOIN content_chunks c ON c.id = uc.content_id
            JOIN archives a ON a.id = uc.archive_id
            WHERE uc.user_id = ?
            ORDER BY distance, uc.archive_id
            LIMIT ?
            """,
            (serialize_f32(query_embedding), user_id, limit),
        )

        hits: list[SearchHit] = []
        for row in cur.fetchall():
            similarity = 1.0 - row["distance"]
            if similarity < match_threshold:
                break
            hits.append(
                SearchHit(
                    archive_id=row["archive_id"],
                    score=similarity,
                    match_type=MatchType.SEMANTIC,
                    title=row["title"],
                    url=row["url"],
                    description=row["description"],
                    tags=json.loads(row["tags"] or "[]"),
                    created_at=row["created_at"],
                    chunk_id=row["content_id"],
                    chunk_content=row["content"],
                )
            )
        return hits

    def search_hybrid(
        self,
        query: str,
        user_id: str,
        query_embedding: list[float] | None = None,
        limit: int = 30,
        match_threshold: float = 0.65,
    ) -> list[SearchHit]:
        """Combined lexical + semantic hits ordered by score.

        Lexical-only when no query embedding is available.
        """
        hits = self.search_lexical(query, user_id, limit)
        if query_embedding:
            hits += self.search_semantic(query_embedding, user_id, limit, match_threshold)
        return sorted(hits, key=lambda h: h.score, reverse=True)


def init_db(db_path: str) -> DB:
    """Open (creating if needed) the database at ``db_path``."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    db = DB(conn=connect(db_path))
    db.init()
    return db
