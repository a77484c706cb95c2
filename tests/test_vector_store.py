"""
Tests for execution/juris_rag/vector_store.py

Covers: VectorStoreConfig, connection string resolution, schema DDL, SQL
shape of searches, guarded job updates, error mapping and row parsing.

All database calls are mocked -- no PostgreSQL required.
"""

from unittest.mock import MagicMock

import psycopg2
import pytest

DOC_ID = "6f1c2a9e-8d3b-4c57-9a0e-2b7d4f1e3c88"
JOB_ID = "0b9e4d2c-7a15-4f3e-8c61-5d2a9f0e7b14"


@pytest.fixture
def db(monkeypatch):
    """VectorStore wired to a mocked single connection; yields (store, cursor)."""
    from execution.juris_rag.vector_store import VectorStore, VectorStoreConfig
    monkeypatch.delenv("POSTGRES_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    store = VectorStore(VectorStoreConfig(use_pooling=False))
    conn = MagicMock()
    conn.closed = 0
    cursor = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    store._conn = conn
    return store, cursor


def _executed(cursor):
    sql, params = cursor.execute.call_args.args
    return " ".join(sql.split()), params


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestVectorStoreConfig:

    def test_defaults(self):
        from execution.juris_rag.vector_store import VectorStoreConfig
        cfg = VectorStoreConfig()
        assert cfg.connection_string is None
        assert cfg.embedding_dimensions == 768
        assert cfg.fts_language == "portuguese"
        assert cfg.use_pooling is True

    def test_rejects_unknown_fts_language(self):
        from execution.juris_rag.vector_store import VectorStore, VectorStoreConfig
        with pytest.raises(ValueError):
            VectorStore(VectorStoreConfig(fts_language="klingon'); DROP TABLE documents; --"))


class TestConnectionString:

    def test_uses_config_connection_string(self, monkeypatch):
        from execution.juris_rag.vector_store import VectorStore, VectorStoreConfig
        monkeypatch.setenv("POSTGRES_URL", "postgres://env/db")
        store = VectorStore(VectorStoreConfig(connection_string="postgres://custom/db"))
        assert store._connection_string == "postgres://custom/db"

    def test_falls_back_to_postgres_url_env(self, monkeypatch):
        from execution.juris_rag.vector_store import VectorStore
        monkeypatch.setenv("POSTGRES_URL", "postgres://env/db")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert VectorStore()._connection_string == "postgres://env/db"

    def test_falls_back_to_database_url_env(self, monkeypatch):
        from execution.juris_rag.vector_store import VectorStore
        monkeypatch.delenv("POSTGRES_URL", raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgres://dburl/db")
        assert VectorStore()._connection_string == "postgres://dburl/db"


class TestSchema:

    def test_schema_indexes(self):
        from execution.juris_rag.vector_store import VectorStore, VectorStoreConfig
        sql = VectorStore(VectorStoreConfig()).schema_sql()
        assert "VECTOR(768)" in sql
        assert "to_tsvector('portuguese', content)" in sql
        assert "USING hnsw (embedding vector_cosine_ops)" in sql
        assert "USING GIN (search_vector)" in sql
        assert "ON DELETE CASCADE" in sql
        assert "chunks_done <= total_chunks" in sql

    def test_dimension_follows_config(self):
        from execution.juris_rag.vector_store import VectorStore, VectorStoreConfig
        sql = VectorStore(VectorStoreConfig(embedding_dimensions=1024)).schema_sql()
        assert "VECTOR(1024)" in sql
        assert "VECTOR(768)" not in sql


# ---------------------------------------------------------------------------
# Searches
# ---------------------------------------------------------------------------

class TestVectorSearch:

    def test_threshold_and_filters_in_sql(self, db):
        from execution.juris_rag.models import SearchFilters
        store, cursor = db
        cursor.fetchall.return_value = []

        store.vector_search(
            [0.1, 0.2],
            filters=SearchFilters(process_number="1234567-89.2024.8.26.0100"),
            limit=5,
            threshold=0.3,
        )

        sql, params = _executed(cursor)
        assert "process_number = %s" in sql
        assert "1 - (embedding <=> %s::vector) >= %s" in sql
        assert "ORDER BY embedding <=> %s::vector, chunk_index, id" in sql
        assert params == [
            [0.1, 0.2], "1234567-89.2024.8.26.0100", [0.1, 0.2], 0.3, [0.1, 0.2], 5,
        ]

    def test_rows_become_matches(self, db):
        store, cursor = db
        cursor.fetchall.return_value = [{
            "id": "c1", "document_id": "d1", "bundle_id": None, "chunk_index": 3,
            "content": "Dou provimento.", "summary": "Voto.", "section": "VOTO",
            "process_number": None, "similarity": 0.82,
        }]

        [match] = store.vector_search([0.1, 0.2])

        assert match.chunk_id == "c1"
        assert match.similarity == pytest.approx(0.82)
        assert match.section == "VOTO"
        assert match.text_rank == 0.0


class TestLexicalSearch:

    def test_terms_are_or_ed(self, db):
        store, cursor = db
        cursor.fetchall.return_value = []

        store.lexical_search("prazo recursal", limit=7)

        sql, params = _executed(cursor)
        assert "websearch_to_tsquery('portuguese', %s)" in sql
        assert "ORDER BY text_rank DESC, chunk_index, id" in sql
        assert params == ["prazo or recursal", "prazo or recursal", 7]

    def test_blank_query_skips_database(self, db):
        store, cursor = db
        assert store.lexical_search("   ") == []
        cursor.execute.assert_not_called()


class TestScoreChunks:

    def test_returns_similarity_by_id(self, db):
        store, cursor = db
        cursor.fetchall.return_value = [{"id": "c9", "similarity": 0.41}]
        assert store.score_chunks([0.1], ["c9"]) == {"c9": pytest.approx(0.41)}

    def test_empty_ids_skip_database(self, db):
        store, cursor = db
        assert store.score_chunks([0.1], []) == {}
        cursor.execute.assert_not_called()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

class TestWrites:

    def test_duplicate_chunk_raises_store_write_failed(self, db):
        from execution.juris_rag.errors import StoreWriteFailed
        from execution.juris_rag.models import StoredChunk
        store, cursor = db
        cursor.execute.side_effect = psycopg2.IntegrityError("duplicate key")

        with pytest.raises(StoreWriteFailed):
            store.insert_chunk(StoredChunk(chunk_id="c1", chunk_index=0, content="x", document_id="d1"))
        store._conn.rollback.assert_called()

    def test_update_document_whitelist(self, db):
        store, _ = db
        with pytest.raises(ValueError):
            store.update_document("d1", raw_text="overwritten")

    def test_update_document_sql(self, db):
        from execution.juris_rag.models import DocumentStatus
        store, cursor = db
        store.update_document(DOC_ID, status=DocumentStatus.PROCESSED, embedding_processed=True)

        sql, params = _executed(cursor)
        assert sql.startswith("UPDATE documents SET status = %s, embedding_processed = %s")
        assert "updated_at = NOW()" in sql
        assert params == ["processed", True, DOC_ID]


class TestJobs:

    def test_claim_uses_skip_locked(self, db):
        store, cursor = db
        cursor.fetchone.return_value = None

        assert store.claim_next_job() is None

        sql = " ".join(cursor.execute.call_args.args[0].split())
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "ORDER BY priority DESC, created_at ASC, seq ASC" in sql

    def test_guarded_update(self, db):
        from execution.juris_rag.models import ChunkFailure, JobStatus
        store, cursor = db
        cursor.fetchone.return_value = {
            "id": JOB_ID, "document_id": DOC_ID, "bundle_id": None, "status": "processing",
            "priority": 5, "total_chunks": 5, "chunks_done": 4, "error_message": None,
            "process_number": None,
            "failures": [{"chunk_index": 2, "error": "timeout", "error_type": "EmbeddingUnavailable"}],
        }

        job = store.update_job(
            JOB_ID,
            expected_status=JobStatus.PROCESSING,
            chunks_done=4,
            failures=[ChunkFailure(2, "timeout", "EmbeddingUnavailable")],
        )

        sql, params = _executed(cursor)
        assert sql.endswith("WHERE id = %s::uuid AND status = %s RETURNING *")
        assert params[-2:] == [JOB_ID, "processing"]
        assert '"chunk_index": 2' in params[1]
        assert job.chunks_done == 4
        assert job.failures[0].error_type == "EmbeddingUnavailable"

    def test_guard_miss_returns_none(self, db):
        from execution.juris_rag.models import JobStatus
        store, cursor = db
        cursor.fetchone.return_value = None
        assert store.update_job(JOB_ID, expected_status=JobStatus.PROCESSING, chunks_done=1) is None
        cursor.execute.assert_called_once()

    def test_unknown_job_field(self, db):
        store, _ = db
        with pytest.raises(ValueError):
            store.update_job("j1", document_id="other")


class TestMalformedIds:

    @pytest.mark.parametrize("getter", ["get_job", "get_document", "get_bundle"])
    def test_lookup_returns_none_without_sql(self, db, getter):
        store, cursor = db
        assert getattr(store, getter)("not-a-uuid") is None
        cursor.execute.assert_not_called()

    def test_update_job_returns_none_without_sql(self, db):
        from execution.juris_rag.models import JobStatus
        store, cursor = db
        assert store.update_job("not-a-uuid", expected_status=JobStatus.PENDING, priority=9) is None
        cursor.execute.assert_not_called()

    def test_chunk_operations_skip_database(self, db):
        store, cursor = db
        assert store.get_chunks("42") == []
        assert store.delete_by_document("42") == 0
        assert store.get_chunk_context("42") == []
        store.update_document("42", status="error")
        cursor.execute.assert_not_called()

    def test_search_filter_rejected(self, db):
        from execution.juris_rag.models import SearchFilters
        store, cursor = db
        with pytest.raises(ValueError):
            store.vector_search([0.1, 0.2], filters=SearchFilters(document_id="d1"))
        with pytest.raises(ValueError):
            store.lexical_search("prazo", filters=SearchFilters(document_id="d1"))
        cursor.execute.assert_not_called()


class TestCorpusVersion:

    def test_schema_seeds_single_row(self):
        from execution.juris_rag.vector_store import VectorStore, VectorStoreConfig
        sql = VectorStore(VectorStoreConfig()).schema_sql()
        assert "CREATE TABLE IF NOT EXISTS corpus_state" in sql
        assert "ON CONFLICT (id) DO NOTHING" in sql

    def test_read(self, db):
        store, cursor = db
        cursor.fetchone.return_value = {"version": 7}
        assert store.corpus_version() == 7

    def test_bump(self, db):
        store, cursor = db
        cursor.fetchone.return_value = {"version": 8}

        assert store.bump_corpus_version() == 8

        sql = " ".join(cursor.execute.call_args.args[0].split())
        assert sql == "UPDATE corpus_state SET version = version + 1 WHERE id = 1 RETURNING version"
        store._conn.commit.assert_called()

class TestStats:

    def test_stats_parsing(self, db):
        store, cursor = db
        cursor.fetchone.return_value = {
            "total_documents": 4, "processed_documents": 3,
            "total_chunks": 10, "chunks_with_embedding": 9,
        }
        cursor.fetchall.return_value = [{"status": "concluded", "n": 3}, {"status": "error", "n": 1}]

        stats = store.get_stats()

        assert stats.total_documents == 4
        assert stats.embedding_rate == 90
        assert stats.jobs_by_status == {"pending": 0, "processing": 0, "concluded": 3, "error": 1}


class TestPing:

    def test_ping_ok(self, db):
        store, _ = db
        assert store.ping() is True

    def test_ping_failure(self, db):
        store, cursor = db
        cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")
        assert store.ping() is False
