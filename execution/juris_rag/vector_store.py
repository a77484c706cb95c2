"""
Chunk and Job Store with PostgreSQL + pgvector

Persists documents, gazette bundles, chunks, ingestion jobs and the query
embedding cache. Chunks carry two indexes derived from the same row:
a pgvector column (cosine, HNSW) and a generated ``tsvector`` column (GIN),
so deleting a chunk removes both index entries with it.

Job claiming is a single guarded UPDATE (``FOR UPDATE SKIP LOCKED``), which
keeps it exactly-once when several workers share the queue.
"""

import os
import json
import uuid
import logging
from typing import Optional
from datetime import datetime
from dataclasses import dataclass
from contextlib import contextmanager

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from .errors import StoreWriteFailed
from .language_config import VALID_FTS_CONFIGS
from .models import (
    Bundle,
    ChunkMatch,
    Document,
    IngestionJob,
    JobStatus,
    QueryEmbeddingCacheEntry,
    SearchFilters,
    StoreStats,
    StoredChunk,
)

logger = logging.getLogger(__name__)

CHUNK_COLUMNS = (
    "id, document_id, bundle_id, chunk_index, content, summary, parent_chunk_id, "
    "embedding, embedding_dim, embedding_model, process_number, section, token_count, "
    "start_offset, end_offset, metadata"
)
MATCH_COLUMNS = (
    "id, document_id, bundle_id, chunk_index, content, summary, section, process_number"
)

JOB_UPDATABLE = frozenset({
    "status", "priority", "total_chunks", "chunks_done", "error_message",
    "failures", "started_at", "finished_at",
})
DOCUMENT_UPDATABLE = frozenset({"status", "embedding_processed", "error_message"})
BUNDLE_UPDATABLE = frozenset({"status", "error_message"})


@dataclass
class VectorStoreConfig:
    """Configuration for vector store."""
    connection_string: Optional[str] = None
    embedding_dimensions: int = 768
    fts_language: str = "portuguese"
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64
    # Connection pooling settings
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True  # Set to False for simple single-connection mode


def _db_value(value):
    if hasattr(value, "value"):  # str enums
        return value.value
    return value


def _is_uuid(value) -> bool:
    """Ids are cast with ::uuid; anything else would raise inside Postgres."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class VectorStore:
    """
    PostgreSQL store for the ingestion pipeline.

    Features:
    - Cosine similarity search with threshold and filters
    - Portuguese full-text rank search over a generated tsvector
    - Durable, priority-ordered job queue with atomic claim
    - Persistent query embedding cache
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        """
        Initialize vector store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or VectorStoreConfig()
        if self.config.fts_language not in VALID_FTS_CONFIGS:
            raise ValueError(f"Unsupported FTS language '{self.config.fts_language}'")
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/juris_rag"
        )

    # =========================================================================
    # Connection handling
    # =========================================================================

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                conn = self._pool.getconn()
                try:
                    with conn.cursor() as cur:
                        cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    conn.commit()
                finally:
                    self._pool.putconn(conn)

                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor
                )
                self._conn.autocommit = False

                with self._conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    self._conn.commit()

                logger.info("Connected to PostgreSQL with pgvector (single connection)")

        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if self._pool:
            return self._pool.getconn()

        # For single connection mode, only reconnect if connection is closed
        if self._conn and self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()

        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        """Ensure we have a connection (pool or single) and return it."""
        if not self._conn and not self._pool:
            self.connect()

        try:
            return self._get_connection()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            logger.warning("Database error in _ensure_connection, retrying after reconnect...")
            self.connect()
            return self._get_connection()

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Automatically releases connection back to pool when done.
        """
        conn = self._ensure_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                conn.rollback()
            return True
        except psycopg2.Error as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def _write(self, operation, label: str):
        """Run a write; database errors surface as StoreWriteFailed."""
        try:
            return self._execute_with_retry(operation, label)
        except psycopg2.Error as e:
            logger.error(f"{label} failed: {e}")
            raise StoreWriteFailed(f"{label} failed: {e}") from e

    def _fetch_one(self, sql: str, params, label: str) -> Optional[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
            return dict(row) if row else None

        return self._execute_with_retry(_op, label)

    def _fetch_all(self, sql: str, params, label: str) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [dict(r) for r in rows]

        return self._execute_with_retry(_op, label)

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Schema
    # =========================================================================

    def schema_sql(self) -> str:
        dim = self.config.embedding_dimensions
        fts = self.config.fts_language
        return f"""
        CREATE TABLE IF NOT EXISTS bundles (
            id UUID PRIMARY KEY,
            title TEXT NOT NULL,
            raw_text TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            error_message TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS documents (
            id UUID PRIMARY KEY,
            name TEXT NOT NULL,
            origin TEXT NOT NULL DEFAULT 'upload'
                CHECK (origin IN ('upload', 'gazette', 'manual')),
            raw_text TEXT,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'processing', 'processed', 'error')),
            embedding_processed BOOLEAN NOT NULL DEFAULT FALSE,
            tags TEXT[] DEFAULT ARRAY[]::TEXT[],
            size_bytes BIGINT DEFAULT 0,
            bundle_id UUID REFERENCES bundles(id) ON DELETE SET NULL,
            process_number TEXT,
            error_message TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS document_chunks (
            id UUID PRIMARY KEY,
            document_id UUID REFERENCES documents(id) ON DELETE CASCADE,
            bundle_id UUID REFERENCES bundles(id) ON DELETE CASCADE,
            chunk_index INT NOT NULL,
            content TEXT NOT NULL,
            summary TEXT,
            parent_chunk_id UUID REFERENCES document_chunks(id) ON DELETE SET NULL,
            embedding VECTOR({dim}),
            embedding_dim INT,
            embedding_model VARCHAR(100),
            process_number TEXT,
            section TEXT,
            token_count INT,
            start_offset INT,
            end_offset INT,
            metadata JSONB DEFAULT '{{}}',
            search_vector TSVECTOR GENERATED ALWAYS AS (to_tsvector('{fts}', content)) STORED,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            CHECK ((document_id IS NULL) <> (bundle_id IS NULL))
        );

        CREATE UNIQUE INDEX IF NOT EXISTS uq_chunks_document_index
            ON document_chunks(document_id, chunk_index) WHERE document_id IS NOT NULL;
        CREATE UNIQUE INDEX IF NOT EXISTS uq_chunks_bundle_index
            ON document_chunks(bundle_id, chunk_index) WHERE bundle_id IS NOT NULL;
        CREATE INDEX IF NOT EXISTS idx_chunks_process_number
            ON document_chunks(process_number);
        CREATE INDEX IF NOT EXISTS idx_chunks_search_vector
            ON document_chunks USING GIN (search_vector);
        CREATE INDEX IF NOT EXISTS idx_chunks_embedding
            ON document_chunks
            USING hnsw (embedding vector_cosine_ops)
            WITH (m = {self.config.hnsw_m}, ef_construction = {self.config.hnsw_ef_construction});

        CREATE TABLE IF NOT EXISTS ingestion_jobs (
            id UUID PRIMARY KEY,
            seq BIGSERIAL,
            document_id UUID REFERENCES documents(id) ON DELETE CASCADE,
            bundle_id UUID REFERENCES bundles(id) ON DELETE CASCADE,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'processing', 'concluded', 'error')),
            priority INT NOT NULL DEFAULT 0,
            total_chunks INT NOT NULL DEFAULT 0,
            chunks_done INT NOT NULL DEFAULT 0,
            error_message TEXT,
            process_number TEXT,
            failures JSONB DEFAULT '[]',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            finished_at TIMESTAMPTZ,
            CHECK ((document_id IS NULL) <> (bundle_id IS NULL)),
            CHECK (chunks_done >= 0 AND chunks_done <= total_chunks)
        );

        CREATE INDEX IF NOT EXISTS idx_jobs_claim
            ON ingestion_jobs(status, priority DESC, created_at, seq);

        CREATE TABLE IF NOT EXISTS query_embeddings_cache (
            id BIGSERIAL PRIMARY KEY,
            query_hash TEXT NOT NULL UNIQUE,
            query_text TEXT,
            embedding VECTOR({dim}) NOT NULL,
            embedding_dim INT NOT NULL,
            hit_count INT NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            last_used_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_query_cache_last_used
            ON query_embeddings_cache(last_used_at);

        CREATE TABLE IF NOT EXISTS corpus_state (
            id INT PRIMARY KEY DEFAULT 1 CHECK (id = 1),
            version BIGINT NOT NULL DEFAULT 0
        );

        INSERT INTO corpus_state (id, version) VALUES (1, 0) ON CONFLICT (id) DO NOTHING;
        """

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        schema_sql = self.schema_sql()

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()

        self._execute_with_retry(_op, "initialize_schema")
        logger.info("Schema initialized successfully")

    # =========================================================================
    # Documents and bundles
    # =========================================================================

    def insert_document(self, document: Document) -> str:
        sql = """
        INSERT INTO documents
            (id, name, origin, raw_text, status, embedding_processed, tags,
             size_bytes, bundle_id, process_number)
        VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, %s::uuid, %s)
        ON CONFLICT (id) DO UPDATE SET
            name = EXCLUDED.name,
            raw_text = EXCLUDED.raw_text,
            tags = EXCLUDED.tags,
            size_bytes = EXCLUDED.size_bytes
        """
        params = (
            document.id, document.name, _db_value(document.origin), document.raw_text,
            _db_value(document.status), document.embedding_processed, document.tags,
            document.size_bytes, document.bundle_id, document.process_number,
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()
            return document.id

        return self._write(_op, "insert_document")

    def get_document(self, document_id: str) -> Optional[Document]:
        if not _is_uuid(document_id):
            return None
        row = self._fetch_one(
            "SELECT * FROM documents WHERE id = %s::uuid", (document_id,), "get_document"
        )
        return Document.from_row(row) if row else None

    def delete_document(self, document_id: str) -> bool:
        """Delete a document; its chunks and jobs go with it (ON DELETE CASCADE)."""
        if not _is_uuid(document_id):
            return False
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("DELETE FROM documents WHERE id = %s::uuid", (document_id,))
                deleted = cur.rowcount > 0
            conn.commit()
            if deleted:
                logger.info(f"Deleted document {document_id}")
            else:
                logger.warning(f"Document {document_id} not found")
            return deleted

        return self._write(_op, "delete_document")

    def update_document(self, document_id: str, **fields) -> None:
        self._update("documents", DOCUMENT_UPDATABLE, document_id, fields, extra="updated_at = NOW()")

    def insert_bundle(self, bundle: Bundle) -> str:
        sql = """
        INSERT INTO bundles (id, title, raw_text, status)
        VALUES (%s::uuid, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET title = EXCLUDED.title, raw_text = EXCLUDED.raw_text
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (bundle.id, bundle.title, bundle.raw_text, _db_value(bundle.status)))
            conn.commit()
            return bundle.id

        return self._write(_op, "insert_bundle")

    def get_bundle(self, bundle_id: str) -> Optional[Bundle]:
        if not _is_uuid(bundle_id):
            return None
        row = self._fetch_one(
            "SELECT * FROM bundles WHERE id = %s::uuid", (bundle_id,), "get_bundle"
        )
        return Bundle.from_row(row) if row else None

    def update_bundle(self, bundle_id: str, **fields) -> None:
        self._update("bundles", BUNDLE_UPDATABLE, bundle_id, fields)

    def _update(self, table: str, allowed: frozenset, row_id: str, fields: dict, extra: str = "") -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update {table} columns: {sorted(unknown)}")
        if not fields:
            return
        if not _is_uuid(row_id):
            logger.warning(f"Ignoring update of {table}: invalid id {row_id!r}")
            return

        assignments = [f"{col} = %s" for col in fields]
        if extra:
            assignments.append(extra)
        sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE id = %s::uuid"
        params = [_db_value(v) for v in fields.values()] + [row_id]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()

        self._write(_op, f"update_{table}")

    # =========================================================================
    # Chunks
    # =========================================================================

    def insert_chunk(self, chunk: StoredChunk) -> str:
        """Insert one chunk; a duplicate (owner, chunk_index) raises StoreWriteFailed."""
        chunk_id = chunk.chunk_id or str(uuid.uuid4())
        sql = """
        INSERT INTO document_chunks
            (id, document_id, bundle_id, chunk_index, content, summary, parent_chunk_id,
             embedding, embedding_dim, embedding_model, process_number, section,
             token_count, start_offset, end_offset, metadata)
        VALUES
            (%s::uuid, %s::uuid, %s::uuid, %s, %s, %s, %s::uuid,
             %s::vector, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            chunk_id, chunk.document_id, chunk.bundle_id, chunk.chunk_index,
            chunk.content, chunk.summary, chunk.parent_chunk_id,
            chunk.embedding, chunk.embedding_dim, chunk.embedding_model,
            chunk.process_number, chunk.section, chunk.token_count,
            chunk.start_offset, chunk.end_offset, json.dumps(chunk.metadata or {}),
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()
            return chunk_id

        return self._write(_op, "insert_chunk")

    def delete_by_document(self, document_id: str) -> int:
        return self._delete_chunks("document_id", document_id)

    def delete_by_bundle(self, bundle_id: str) -> int:
        return self._delete_chunks("bundle_id", bundle_id)

    def _delete_chunks(self, column: str, owner_id: str) -> int:
        if not _is_uuid(owner_id):
            return 0
        sql = f"DELETE FROM document_chunks WHERE {column} = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (owner_id,))
                deleted = cur.rowcount
            conn.commit()
            logger.info(f"Deleted {deleted} chunks for {column}={owner_id}")
            return deleted

        return self._write(_op, "delete_chunks")

    def get_chunks(self, owner_id: str) -> list[StoredChunk]:
        if not _is_uuid(owner_id):
            return []
        rows = self._fetch_all(
            f"SELECT {CHUNK_COLUMNS} FROM document_chunks "
            "WHERE document_id = %s::uuid OR bundle_id = %s::uuid ORDER BY chunk_index",
            (owner_id, owner_id),
            "get_chunks",
        )
        return [StoredChunk.from_row(r) for r in rows]

    def get_chunk_context(self, chunk_id: str, window: int = 1) -> list[StoredChunk]:
        """The chunk, its neighbours within ``window`` positions, and its parent."""
        if not _is_uuid(chunk_id):
            return []
        sql = f"""
        WITH target AS (
            SELECT document_id, bundle_id, chunk_index, parent_chunk_id
            FROM document_chunks WHERE id = %s::uuid
        )
        SELECT {', '.join('c.' + col.strip() for col in CHUNK_COLUMNS.split(','))}
        FROM document_chunks c, target t
        WHERE c.id = t.parent_chunk_id
           OR (c.document_id IS NOT DISTINCT FROM t.document_id
               AND c.bundle_id IS NOT DISTINCT FROM t.bundle_id
               AND c.chunk_index BETWEEN t.chunk_index - %s AND t.chunk_index + %s)
        ORDER BY c.chunk_index
        """
        rows = self._fetch_all(sql, (chunk_id, window, window), "get_chunk_context")
        return [StoredChunk.from_row(r) for r in rows]

    @staticmethod
    def _filter_clause(filters: Optional[SearchFilters]) -> tuple[str, list]:
        clauses, params = [], []
        if filters and filters.document_id:
            if not _is_uuid(filters.document_id):
                raise ValueError(f"document_id must be a UUID, got {filters.document_id!r}")
            clauses.append("document_id = %s::uuid")
            params.append(filters.document_id)
        if filters and filters.process_number:
            clauses.append("process_number = %s")
            params.append(filters.process_number)
        sql = "".join(f" AND {c}" for c in clauses)
        return sql, params

    def vector_search(
        self,
        query_embedding: list[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
        threshold: Optional[float] = None,
    ) -> list[ChunkMatch]:
        """
        Semantic search using cosine similarity.

        Args:
            query_embedding: Query embedding vector
            filters: Optional document / process-number restriction
            limit: Number of results to return
            threshold: Minimum similarity; matches below it are excluded

        Returns:
            ChunkMatch list ordered by similarity (``similarity`` set)
        """
        where_extra, filter_params = self._filter_clause(filters)
        threshold_sql = ""
        threshold_params = []
        if threshold is not None:
            threshold_sql = " AND 1 - (embedding <=> %s::vector) >= %s"
            threshold_params = [query_embedding, threshold]

        sql = f"""
        SELECT {MATCH_COLUMNS},
            1 - (embedding <=> %s::vector) AS similarity
        FROM document_chunks
        WHERE embedding IS NOT NULL
        {where_extra}{threshold_sql}
        ORDER BY embedding <=> %s::vector, chunk_index, id
        LIMIT %s
        """
        params = [query_embedding] + filter_params + threshold_params + [query_embedding, limit]
        rows = self._fetch_all(sql, params, "vector_search")
        return [ChunkMatch.from_row(r) for r in rows]

    def lexical_search(
        self,
        query_text: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
    ) -> list[ChunkMatch]:
        """
        Full-text search ranked with ts_rank.

        Query terms are OR-ed so chunks matching only part of a question
        still rank; more matched terms rank higher.

        Returns:
            ChunkMatch list ordered by rank (``text_rank`` set)
        """
        terms = [t for t in query_text.split() if t.lower() != "or"]
        if not terms:
            return []
        tsquery_text = " or ".join(terms)
        fts = self.config.fts_language
        where_extra, filter_params = self._filter_clause(filters)

        sql = f"""
        SELECT {MATCH_COLUMNS},
            ts_rank(search_vector, websearch_to_tsquery('{fts}', %s)) AS text_rank
        FROM document_chunks
        WHERE search_vector @@ websearch_to_tsquery('{fts}', %s)
        {where_extra}
        ORDER BY text_rank DESC, chunk_index, id
        LIMIT %s
        """
        params = [tsquery_text, tsquery_text] + filter_params + [limit]
        rows = self._fetch_all(sql, params, "lexical_search")
        return [ChunkMatch.from_row(r) for r in rows]

    def score_chunks(self, query_embedding: list[float], chunk_ids: list[str]) -> dict[str, float]:
        """Cosine similarity of specific chunks (used for lexical-only hits)."""
        if not chunk_ids:
            return {}
        sql = """
        SELECT id, 1 - (embedding <=> %s::vector) AS similarity
        FROM document_chunks
        WHERE id = ANY(%s::uuid[]) AND embedding IS NOT NULL
        """
        rows = self._fetch_all(sql, (query_embedding, list(chunk_ids)), "score_chunks")
        return {str(r["id"]): float(r["similarity"]) for r in rows}

    # =========================================================================
    # Ingestion jobs
    # =========================================================================

    def insert_job(self, job: IngestionJob) -> IngestionJob:
        sql = """
        INSERT INTO ingestion_jobs
            (id, document_id, bundle_id, status, priority, process_number)
        VALUES (%s::uuid, %s::uuid, %s::uuid, %s, %s, %s)
        RETURNING *
        """
        params = (
            job.job_id, job.document_id, job.bundle_id,
            _db_value(job.status), job.priority, job.process_number,
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
            return IngestionJob.from_row(dict(row))

        return self._write(_op, "insert_job")

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        if not _is_uuid(job_id):
            return None
        row = self._fetch_one(
            "SELECT * FROM ingestion_jobs WHERE id = %s::uuid", (job_id,), "get_job"
        )
        return IngestionJob.from_row(row) if row else None

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[IngestionJob]:
        if status is not None:
            rows = self._fetch_all(
                "SELECT * FROM ingestion_jobs WHERE status = %s "
                "ORDER BY created_at DESC, seq DESC LIMIT %s",
                (_db_value(status), limit),
                "list_jobs",
            )
        else:
            rows = self._fetch_all(
                "SELECT * FROM ingestion_jobs ORDER BY created_at DESC, seq DESC LIMIT %s",
                (limit,),
                "list_jobs",
            )
        return [IngestionJob.from_row(r) for r in rows]

    def claim_next_job(self) -> Optional[IngestionJob]:
        """Atomically move the highest-priority, oldest pending job to processing."""
        sql = """
        UPDATE ingestion_jobs
        SET status = 'processing', started_at = NOW(), finished_at = NULL
        WHERE id = (
            SELECT id FROM ingestion_jobs
            WHERE status = 'pending'
            ORDER BY priority DESC, created_at ASC, seq ASC
            FOR UPDATE SKIP LOCKED
            LIMIT 1
        )
        RETURNING *
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
                row = cur.fetchone()
            conn.commit()
            return IngestionJob.from_row(dict(row)) if row else None

        return self._write(_op, "claim_next_job")

    def update_job(
        self,
        job_id: str,
        expected_status: Optional[JobStatus] = None,
        **fields,
    ) -> Optional[IngestionJob]:
        """
        Update job columns, optionally guarded by the current status.

        Returns:
            The updated job, or None when the job is missing or the guard failed
        """
        unknown = set(fields) - JOB_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update ingestion_jobs columns: {sorted(unknown)}")
        if not _is_uuid(job_id):
            return None

        values = dict(fields)
        if "failures" in values:
            values["failures"] = json.dumps([f.to_dict() for f in values["failures"]])

        assignments = ", ".join(f"{col} = %s" for col in values) or "status = status"
        sql = f"UPDATE ingestion_jobs SET {assignments} WHERE id = %s::uuid"
        params = [_db_value(v) for v in values.values()] + [job_id]
        if expected_status is not None:
            sql += " AND status = %s"
            params.append(_db_value(expected_status))
        sql += " RETURNING *"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
            return IngestionJob.from_row(dict(row)) if row else None

        return self._write(_op, "update_job")

    # =========================================================================
    # Query embedding cache
    # =========================================================================

    def get_query_embedding(self, key: str) -> Optional[QueryEmbeddingCacheEntry]:
        row = self._fetch_one(
            "SELECT * FROM query_embeddings_cache WHERE query_hash = %s",
            (key,),
            "get_query_embedding",
        )
        return QueryEmbeddingCacheEntry.from_row(row) if row else None

    def upsert_query_embedding(self, entry: QueryEmbeddingCacheEntry) -> None:
        sql = """
        INSERT INTO query_embeddings_cache
            (query_hash, query_text, embedding, embedding_dim, hit_count, created_at, last_used_at)
        VALUES (%s, %s, %s::vector, %s, %s, %s, %s)
        ON CONFLICT (query_hash) DO UPDATE SET
            embedding = EXCLUDED.embedding,
            embedding_dim = EXCLUDED.embedding_dim,
            last_used_at = EXCLUDED.last_used_at
        """
        params = (
            entry.key, entry.query_text, entry.embedding, len(entry.embedding),
            entry.hit_count, entry.created_at, entry.last_used_at,
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()

        self._write(_op, "upsert_query_embedding")

    def touch_query_embedding(self, key: str, used_at: datetime) -> None:
        sql = """
        UPDATE query_embeddings_cache
        SET hit_count = hit_count + 1, last_used_at = %s
        WHERE query_hash = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (used_at, key))
            conn.commit()

        self._write(_op, "touch_query_embedding")

    def prune_query_embeddings(self, max_entries: int) -> int:
        """Drop least-recently-used cache rows beyond ``max_entries``."""
        sql = """
        DELETE FROM query_embeddings_cache
        WHERE id IN (
            SELECT id FROM query_embeddings_cache
            ORDER BY last_used_at DESC, id DESC
            OFFSET %s
        )
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (max_entries,))
                deleted = cur.rowcount
            conn.commit()
            return deleted

        return self._write(_op, "prune_query_embeddings")

    # =========================================================================
    # Corpus version
    # =========================================================================

    def corpus_version(self) -> int:
        """Counter bumped whenever chunks are added or removed by a job."""
        row = self._fetch_one(
            "SELECT version FROM corpus_state WHERE id = 1", None, "corpus_version"
        )
        return int(row["version"]) if row else 0

    def bump_corpus_version(self) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE corpus_state SET version = version + 1 WHERE id = 1 RETURNING version"
                )
                row = cur.fetchone()
            conn.commit()
            return int(row["version"]) if row else 0

        return self._write(_op, "bump_corpus_version")

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> StoreStats:
        totals = self._fetch_one(
            """
            SELECT
                (SELECT COUNT(*) FROM documents) AS total_documents,
                (SELECT COUNT(*) FROM documents WHERE status = 'processed') AS processed_documents,
                (SELECT COUNT(*) FROM document_chunks) AS total_chunks,
                (SELECT COUNT(*) FROM document_chunks WHERE embedding IS NOT NULL)
                    AS chunks_with_embedding
            """,
            None,
            "get_stats",
        ) or {}
        rows = self._fetch_all(
            "SELECT status, COUNT(*) AS n FROM ingestion_jobs GROUP BY status",
            None,
            "get_stats_jobs",
        )
        jobs_by_status = {s.value: 0 for s in JobStatus}
        jobs_by_status.update({r["status"]: int(r["n"]) for r in rows})

        return StoreStats(
            total_documents=int(totals.get("total_documents") or 0),
            processed_documents=int(totals.get("processed_documents") or 0),
            total_chunks=int(totals.get("total_chunks") or 0),
            chunks_with_embedding=int(totals.get("chunks_with_embedding") or 0),
            jobs_by_status=jobs_by_status,
        )


# CLI for testing
if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    store = VectorStore()
    store.connect()
    store.initialize_schema()
    print(store.get_stats().to_dict())
    store.close()
