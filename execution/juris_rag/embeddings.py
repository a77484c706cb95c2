"""
Embedding Service for the Jurisprudence RAG pipeline

Provides fixed-dimension embeddings through an OpenAI-compatible gateway
(text-embedding-3-small at 768 dimensions) or Voyage AI. Input is truncated
to a character budget before submission so the provider never truncates on
its own.

Architecture:
    BaseEmbeddingService      -- truncation, dimension check, query cache, embed_documents
        OpenAIEmbeddingService    -- OpenAI-compatible /embeddings endpoint
        VoyageEmbeddingService    -- Voyage AI provider
    QueryEmbeddingCache       -- in-process LRU keyed by the normalized query text
    StoreQueryEmbeddingCache  -- same contract persisted in the query_embeddings_cache table

Only ``embed_query`` consults the cache: chunk bodies are long and rarely repeat.
"""

import os
import hashlib
import logging
from typing import Optional, Callable
from datetime import datetime, timedelta
from dataclasses import dataclass
from collections import OrderedDict

from .errors import EmbeddingUnavailable
from .models import QueryEmbeddingCacheEntry, utcnow

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "https://ai.gateway.lovable.dev/v1"


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"  # "openai" or "voyage"
    model: str = "text-embedding-3-small"
    dimensions: int = 768
    max_input_chars: int = 8000
    timeout_seconds: float = 30.0
    base_url: Optional[str] = None


# =============================================================================
# Query embedding cache
# =============================================================================

def make_query_key(text: str) -> str:
    """Cache key: sha256 of the lower-cased, trimmed query text."""
    return hashlib.sha256(text.lower().strip().encode("utf-8")).hexdigest()


class QueryEmbeddingCache:
    """
    In-process cache of query embeddings.

    Bounded by ``max_entries`` with least-recently-used eviction on
    ``last_used_at``; entries older than ``ttl_seconds`` (when set) are
    treated as misses. Writes are upserts on the text hash.
    """

    def __init__(
        self,
        max_entries: int = 10000,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._max_entries = max_entries
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._clock = clock or utcnow
        self._entries: "OrderedDict[str, QueryEmbeddingCacheEntry]" = OrderedDict()

    def _expired(self, entry: QueryEmbeddingCacheEntry, now: datetime) -> bool:
        return self._ttl is not None and now - entry.created_at > self._ttl

    def get(self, text: str) -> Optional[list[float]]:
        key = make_query_key(text)
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if self._expired(entry, now):
            del self._entries[key]
            return None

        entry.hit_count += 1
        entry.last_used_at = now
        self._entries.move_to_end(key)
        return entry.embedding

    def put(self, text: str, embedding: list[float]) -> None:
        key = make_query_key(text)
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            entry.embedding = embedding
            entry.last_used_at = now
            self._entries.move_to_end(key)
            return

        self._entries[key] = QueryEmbeddingCacheEntry(
            key=key,
            query_text=text[:1000],
            embedding=embedding,
            created_at=now,
            last_used_at=now,
        )
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted query embedding {evicted[:12]}")

    def get_entry(self, text: str) -> Optional[QueryEmbeddingCacheEntry]:
        return self._entries.get(make_query_key(text))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class StoreQueryEmbeddingCache:
    """Query embedding cache persisted through a store's query_embeddings_cache table."""

    def __init__(
        self,
        store,
        max_entries: int = 10000,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._max_entries = max_entries
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._clock = clock or utcnow

    def get(self, text: str) -> Optional[list[float]]:
        key = make_query_key(text)
        try:
            entry = self._store.get_query_embedding(key)
            if entry is None:
                return None
            now = self._clock()
            if self._ttl is not None and entry.created_at and now - entry.created_at > self._ttl:
                return None
            self._store.touch_query_embedding(key, now)
            return entry.embedding
        except Exception as e:
            logger.warning(f"Query embedding cache read failed: {e}")
            return None

    def put(self, text: str, embedding: list[float]) -> None:
        now = self._clock()
        entry = QueryEmbeddingCacheEntry(
            key=make_query_key(text),
            query_text=text[:1000],
            embedding=embedding,
            created_at=now,
            last_used_at=now,
        )
        try:
            self._store.upsert_query_embedding(entry)
            self._store.prune_query_embeddings(self._max_entries)
        except Exception as e:
            logger.warning(f"Query embedding cache write failed: {e}")

    def get_entry(self, text: str) -> Optional[QueryEmbeddingCacheEntry]:
        return self._store.get_query_embedding(make_query_key(text))


# =============================================================================
# Providers
# =============================================================================

class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Subclasses implement:
    - _init_client(): Initialize the provider-specific API client
    - _embed_texts(texts): Call the provider and return raw vectors

    And set these class attributes:
    - _provider_name: Human-readable provider name for error messages
    - _env_var_name: Environment variable name for the API key
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""

    def __init__(self, config: Optional[EmbeddingConfig] = None, query_cache=None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            query_cache: Optional QueryEmbeddingCache / StoreQueryEmbeddingCache
        """
        self.config = config or EmbeddingConfig()
        self.query_cache = query_cache
        self._client = None
        self._init_client()

    def _init_client(self):
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _embed_texts(self, texts: list[str], input_type: str) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _embed_texts()")

    def _prepare(self, text: str) -> str:
        return text[:self.config.max_input_chars]

    def _call(self, texts: list[str], input_type: str) -> list[list[float]]:
        if not self._client:
            raise EmbeddingUnavailable(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

        try:
            vectors = self._embed_texts([self._prepare(t) for t in texts], input_type)
        except EmbeddingUnavailable:
            raise
        except Exception as e:
            logger.error(f"{self._provider_name} embedding failed: {e}")
            raise EmbeddingUnavailable(f"{self._provider_name} embedding failed: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingUnavailable(
                f"{self._provider_name} returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        for vector in vectors:
            if len(vector) != self.config.dimensions:
                raise EmbeddingUnavailable(
                    f"{self._provider_name} returned {len(vector)} dimensions, "
                    f"expected {self.config.dimensions}"
                )
        return [list(v) for v in vectors]

    def embed(self, text: str) -> list[float]:
        """Embed a single chunk text (no caching)."""
        return self._call([text], "document")[0]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for document chunks.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors
        """
        if not texts:
            return []
        logger.info(f"Embedding {len(texts)} documents with {self._provider_name}")
        return self._call(texts, "document")

    def embed_query(self, query: str) -> list[float]:
        """
        Generate embedding for a search query, consulting the query cache first.

        Args:
            query: Search query string

        Returns:
            Embedding vector
        """
        if self.query_cache is not None:
            cached = self.query_cache.get(query)
            if cached is not None:
                logger.debug("Query embedding cache hit")
                return cached

        embedding = self._call([query], "query")[0]

        if self.query_cache is not None:
            self.query_cache.put(query, embedding)
        return embedding

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions

    @property
    def model_name(self) -> str:
        return self.config.model


class OpenAIEmbeddingService(BaseEmbeddingService):
    """
    Embeddings from an OpenAI-compatible endpoint.

    text-embedding-3-small is requested with ``dimensions=768`` so the
    vectors fit the store's VECTOR(768) column.
    """

    _provider_name = "OpenAI-compatible gateway"
    _env_var_name = "LLM_API_KEY"

    def _init_client(self):
        api_key = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")

        if not api_key:
            logger.warning(
                "LLM_API_KEY not found. Embeddings will fail. "
                "Set the environment variable or use a different provider."
            )
            return

        from openai import OpenAI
        self._client = OpenAI(
            base_url=self.config.base_url or os.getenv("LLM_BASE_URL", DEFAULT_GATEWAY_URL),
            api_key=api_key,
            timeout=self.config.timeout_seconds,
            max_retries=0,  # the worker retries with backoff
        )
        logger.info(f"Embedding client initialized with model {self.config.model}")

    def _embed_texts(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embeddings.create(
            model=self.config.model,
            input=texts,
            dimensions=self.config.dimensions,
        )
        return [item.embedding for item in response.data]


class VoyageEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using Voyage AI.

    voyage-multilingual-2 returns 1024-dimensional vectors and handles
    Portuguese well; the store's vector column must be sized to match.
    """

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"

    def _init_client(self):
        api_key = os.getenv("VOYAGE_API_KEY")

        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get your free API key at https://dash.voyageai.com/"
            )
            return

        try:
            import voyageai
            self._client = voyageai.Client(
                api_key=api_key,
                timeout=self.config.timeout_seconds,
                max_retries=0,  # the worker retries with backoff
            )
            logger.info(f"Voyage AI client initialized with model {self.config.model}")
        except ImportError:
            logger.error("voyageai package not installed. Run: pip install voyageai")
            raise

    def _embed_texts(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embed(
            texts=texts,
            model=self.config.model,
            input_type=input_type,
        )
        return response.embeddings


def get_embedding_service(
    provider: Optional[str] = None,
    language_config=None,
    query_cache=None,
) -> BaseEmbeddingService:
    """
    Factory function to get appropriate embedding service.

    Args:
        provider: "openai" (default) or "voyage"; falls back to EMBEDDING_PROVIDER
        language_config: Optional LanguageConfig supplying model and dimensions
        query_cache: Optional query embedding cache

    Returns:
        Configured embedding service
    """
    prov = provider or os.getenv("EMBEDDING_PROVIDER") or (
        language_config.embedding_provider if language_config else "openai"
    )

    if prov == "voyage":
        config = EmbeddingConfig(
            provider="voyage",
            model=os.getenv("VOYAGE_MODEL", "voyage-multilingual-2"),
            dimensions=1024,
        )
        return VoyageEmbeddingService(config, query_cache=query_cache)

    config = EmbeddingConfig(
        provider="openai",
        model=language_config.embedding_model if language_config else "text-embedding-3-small",
        dimensions=language_config.embedding_dimensions if language_config else 768,
    )
    return OpenAIEmbeddingService(config, query_cache=query_cache)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()
    print(f"Using embedding provider: {service.config.provider}")

    query = " ".join(sys.argv[1:]) if len(sys.argv) > 1 else "prazo recursal em agravo de instrumento"

    print(f"Query: {query}")
    embedding = service.embed_query(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
