"""
Tests for execution/juris_rag/embeddings.py

Covers: EmbeddingConfig defaults, query-embedding caches (in-process and
store-backed), truncation, dimension checks, error wrapping and the factory.
Provider clients are replaced with MagicMocks.
"""

from unittest.mock import MagicMock

import pytest


@pytest.fixture
def openai_service(monkeypatch):
    """OpenAIEmbeddingService with a mocked client returning 4-dim vectors."""
    from execution.juris_rag.embeddings import EmbeddingConfig, OpenAIEmbeddingService
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    service = OpenAIEmbeddingService(EmbeddingConfig(dimensions=4, max_input_chars=20))
    client = MagicMock()

    def _create(model, input, dimensions):
        response = MagicMock()
        response.data = [MagicMock(embedding=[0.1, 0.2, 0.3, 0.4]) for _ in input]
        return response

    client.embeddings.create.side_effect = _create
    service._client = client
    return service


class TestEmbeddingConfig:

    def test_defaults(self):
        from execution.juris_rag.embeddings import EmbeddingConfig
        cfg = EmbeddingConfig()
        assert cfg.provider == "openai"
        assert cfg.model == "text-embedding-3-small"
        assert cfg.dimensions == 768
        assert cfg.max_input_chars == 8000


class TestQueryKey:

    def test_normalized_text(self):
        from execution.juris_rag.embeddings import make_query_key
        assert make_query_key("  Prazo Recursal ") == make_query_key("prazo recursal")
        assert make_query_key("prazo") != make_query_key("prazo recursal")
        assert len(make_query_key("x")) == 64


class TestQueryEmbeddingCache:

    def test_miss_then_hit(self, clock):
        from execution.juris_rag.embeddings import QueryEmbeddingCache
        cache = QueryEmbeddingCache(clock=clock)
        assert cache.get("prazo recursal") is None

        cache.put("prazo recursal", [1.0, 2.0])
        assert cache.get("Prazo Recursal") == [1.0, 2.0]

    def test_hit_count_and_last_used(self, clock):
        from execution.juris_rag.embeddings import QueryEmbeddingCache
        cache = QueryEmbeddingCache(clock=clock)
        cache.put("q", [1.0])
        created = clock()

        clock.advance(60)
        cache.get("q")
        cache.get("q")

        entry = cache.get_entry("q")
        assert entry.hit_count == 2
        assert entry.created_at == created
        assert entry.last_used_at == clock()

    def test_put_is_upsert(self, clock):
        from execution.juris_rag.embeddings import QueryEmbeddingCache
        cache = QueryEmbeddingCache(clock=clock)
        cache.put("q", [1.0])
        cache.get("q")
        cache.put("Q ", [2.0])

        assert len(cache) == 1
        entry = cache.get_entry("q")
        assert entry.embedding == [2.0]
        assert entry.hit_count == 1

    def test_lru_eviction(self, clock):
        from execution.juris_rag.embeddings import QueryEmbeddingCache
        cache = QueryEmbeddingCache(max_entries=2, clock=clock)
        cache.put("a", [1.0])
        cache.put("b", [2.0])
        cache.get("a")
        cache.put("c", [3.0])

        assert len(cache) == 2
        assert cache.get("b") is None
        assert cache.get("a") == [1.0]
        assert cache.get("c") == [3.0]

    def test_ttl_expiry(self, clock):
        from execution.juris_rag.embeddings import QueryEmbeddingCache
        cache = QueryEmbeddingCache(ttl_seconds=3600, clock=clock)
        cache.put("q", [1.0])

        clock.advance(3599)
        assert cache.get("q") == [1.0]
        clock.advance(2)
        assert cache.get("q") is None
        assert len(cache) == 0


class TestStoreQueryEmbeddingCache:

    def test_round_trip_through_store(self, store, clock):
        from execution.juris_rag.embeddings import StoreQueryEmbeddingCache, make_query_key
        cache = StoreQueryEmbeddingCache(store, clock=clock)
        cache.put("prazo recursal", [0.5, 0.5])

        clock.advance(10)
        assert cache.get("PRAZO RECURSAL") == [0.5, 0.5]

        entry = store.get_query_embedding(make_query_key("prazo recursal"))
        assert entry.hit_count == 1
        assert entry.last_used_at == clock()

    def test_prunes_to_bound(self, store, clock):
        from execution.juris_rag.embeddings import StoreQueryEmbeddingCache
        cache = StoreQueryEmbeddingCache(store, max_entries=2, clock=clock)
        for q in ("a", "b", "c"):
            cache.put(q, [1.0])
            clock.advance(1)

        assert cache.get("a") is None
        assert cache.get("b") == [1.0]
        assert cache.get("c") == [1.0]

    def test_store_failure_is_a_miss(self):
        from execution.juris_rag.embeddings import StoreQueryEmbeddingCache
        broken = MagicMock()
        broken.get_query_embedding.side_effect = RuntimeError("connection lost")
        broken.upsert_query_embedding.side_effect = RuntimeError("connection lost")
        cache = StoreQueryEmbeddingCache(broken)

        assert cache.get("q") is None
        cache.put("q", [1.0])


class TestBaseEmbeddingService:

    def test_embed_returns_vector(self, openai_service):
        assert openai_service.embed("texto") == [0.1, 0.2, 0.3, 0.4]

    def test_input_is_truncated(self, openai_service):
        openai_service.embed("x" * 100)
        sent = openai_service._client.embeddings.create.call_args.kwargs["input"]
        assert sent == ["x" * 20]

    def test_dimensions_requested(self, openai_service):
        openai_service.embed("texto")
        kwargs = openai_service._client.embeddings.create.call_args.kwargs
        assert kwargs["dimensions"] == 4
        assert kwargs["model"] == "text-embedding-3-small"

    def test_embed_documents_batches(self, openai_service):
        assert len(openai_service.embed_documents(["a", "b", "c"])) == 3
        assert openai_service.embed_documents([]) == []

    def test_wrong_dimension_is_unavailable(self, openai_service):
        from execution.juris_rag.errors import EmbeddingUnavailable
        response = MagicMock()
        response.data = [MagicMock(embedding=[0.1, 0.2])]
        openai_service._client.embeddings.create.side_effect = None
        openai_service._client.embeddings.create.return_value = response

        with pytest.raises(EmbeddingUnavailable, match="dimensions"):
            openai_service.embed("texto")

    def test_provider_error_is_unavailable_and_retryable(self, openai_service):
        from execution.juris_rag.errors import EmbeddingUnavailable
        openai_service._client.embeddings.create.side_effect = TimeoutError("timeout")

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            openai_service.embed("texto")
        assert exc_info.value.retryable is True

    def test_missing_client_is_unavailable(self, monkeypatch):
        from execution.juris_rag.embeddings import OpenAIEmbeddingService
        from execution.juris_rag.errors import EmbeddingUnavailable
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(EmbeddingUnavailable):
            OpenAIEmbeddingService().embed("texto")

    def test_query_cache_used_only_for_queries(self, openai_service, clock):
        from execution.juris_rag.embeddings import QueryEmbeddingCache
        openai_service.query_cache = QueryEmbeddingCache(clock=clock)
        create = openai_service._client.embeddings.create

        openai_service.embed_query("prazo recursal")
        openai_service.embed_query("Prazo recursal")
        assert create.call_count == 1

        openai_service.embed("prazo recursal")
        openai_service.embed("prazo recursal")
        assert create.call_count == 3


class TestVoyageEmbeddingService:

    def test_input_type_passed_through(self, monkeypatch):
        from execution.juris_rag.embeddings import EmbeddingConfig, VoyageEmbeddingService
        monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
        service = VoyageEmbeddingService(EmbeddingConfig(provider="voyage", model="voyage-multilingual-2", dimensions=2))
        service._client = MagicMock()
        service._client.embed.return_value = MagicMock(embeddings=[[0.1, 0.2]])

        service.embed_query("prazo")

        kwargs = service._client.embed.call_args.kwargs
        assert kwargs["input_type"] == "query"
        assert kwargs["model"] == "voyage-multilingual-2"


class TestFactory:

    def test_default_is_openai(self, monkeypatch):
        from execution.juris_rag.embeddings import OpenAIEmbeddingService, get_embedding_service
        monkeypatch.delenv("EMBEDDING_PROVIDER", raising=False)
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        service = get_embedding_service()
        assert isinstance(service, OpenAIEmbeddingService)
        assert service.dimensions == 768
        assert service.model_name == "text-embedding-3-small"

    def test_voyage_from_env(self, monkeypatch):
        from execution.juris_rag.embeddings import VoyageEmbeddingService, get_embedding_service
        monkeypatch.setenv("EMBEDDING_PROVIDER", "voyage")
        monkeypatch.delenv("VOYAGE_API_KEY", raising=False)

        service = get_embedding_service()
        assert isinstance(service, VoyageEmbeddingService)
        assert service.dimensions == 1024
