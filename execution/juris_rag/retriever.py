"""
Hybrid Retriever for Legal Documents

Fuses semantic (pgvector cosine) and lexical (Postgres full-text) search
into one ranking:

    combined = vector_weight * similarity + lexical_weight * (text_rank / max_rank)

Similarity is clipped to [0, 1] and text rank is normalised by the best rank
in the candidate set, so both signals live on the same scale. A case number
in the query (e.g. 1234567-89.2024.8.26.0100) is a strong lexical signal that
pure vector search would miss.

Chunks below the similarity threshold are dropped before fusion, whatever
their lexical rank.
"""

import time
import logging
from copy import deepcopy
from typing import Optional, Callable
from dataclasses import dataclass
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor

from .models import ChunkMatch, SearchFilters

logger = logging.getLogger(__name__)


class QueryResultCache:
    """
    TTL + LRU cache of final search results.

    Built once per process and handed to the retriever. Keys carry the
    store's corpus version, and a local ingestion queue also clears it.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 500,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock or time.monotonic
        # {cache_key: (stored_at, results)}
        self._cache: OrderedDict = OrderedDict()

    def get(self, key: str) -> Optional[list[ChunkMatch]]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, results = entry
        if self._clock() - stored_at > self.ttl_seconds:
            self._cache.pop(key, None)
            return None
        self._cache.move_to_end(key)
        return deepcopy(results)

    def set(self, key: str, results: list[ChunkMatch]) -> None:
        self._cache.pop(key, None)
        while len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
        self._cache[key] = (self._clock(), deepcopy(results))

    def clear(self) -> None:
        """Clear the cache."""
        if self._cache:
            logger.info(f"Cleared {len(self._cache)} cached search results")
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


@dataclass
class RetrievalConfig:
    """Configuration for hybrid retrieval."""
    # Weight for vector vs lexical signal
    vector_weight: float = 0.6
    lexical_weight: float = 0.4

    # Candidates fetched from each search = max(limit * multiplier, min_candidates)
    candidate_multiplier: int = 3
    min_candidates: int = 20

    default_limit: int = 8
    max_limit: int = 50

    # Applied when search() is called without an explicit threshold
    similarity_threshold: Optional[float] = None


def _ranking_key(match: ChunkMatch):
    return (-match.combined_score, -match.similarity, match.chunk_index, match.chunk_id)


def fuse_results(
    vector_hits: list[ChunkMatch],
    lexical_hits: list[ChunkMatch],
    lexical_similarities: dict[str, float],
    config: RetrievalConfig,
    threshold: Optional[float] = None,
) -> list[ChunkMatch]:
    """
    Merge both candidate lists into one ranking (untruncated).

    Args:
        vector_hits: Results of vector_search, carrying similarity
        lexical_hits: Results of lexical_search, carrying text_rank
        lexical_similarities: Similarity of lexical-only hits, by chunk id
        config: Fusion weights
        threshold: Minimum similarity a chunk needs to be kept

    Returns:
        Matches sorted by combined score, then similarity, chunk index, chunk id
    """
    merged: dict[str, ChunkMatch] = {}
    for hit in vector_hits:
        merged[hit.chunk_id] = deepcopy(hit)

    for hit in lexical_hits:
        if hit.chunk_id in merged:
            merged[hit.chunk_id].text_rank = hit.text_rank
        else:
            match = deepcopy(hit)
            match.similarity = lexical_similarities.get(hit.chunk_id, 0.0)
            merged[hit.chunk_id] = match

    candidates = list(merged.values())
    if threshold is not None:
        candidates = [m for m in candidates if m.similarity >= threshold]

    max_rank = max((m.text_rank for m in candidates), default=0.0)
    for m in candidates:
        similarity = min(max(m.similarity, 0.0), 1.0)
        rank = m.text_rank / max_rank if max_rank > 0 else 0.0
        m.combined_score = config.vector_weight * similarity + config.lexical_weight * rank

    candidates.sort(key=_ranking_key)
    return candidates


class HybridRetriever:
    """
    Query-time ranking over the chunk store.

    Pipeline:
    1. Embed the query (query-embedding cache consulted first)
    2. Parallel vector and lexical search
    3. Similarity for lexical-only hits, threshold, weighted fusion
    """

    def __init__(
        self,
        store,
        embeddings,
        config: Optional[RetrievalConfig] = None,
        result_cache: Optional[QueryResultCache] = None,
    ):
        """
        Initialize retriever.

        Args:
            store: VectorStore or InMemoryStore
            embeddings: Embedding service providing embed_query()
            config: Optional retrieval configuration
            result_cache: Optional shared QueryResultCache
        """
        self.store = store
        self.embeddings = embeddings
        self.config = config or RetrievalConfig()
        self.result_cache = result_cache

    def _resolve(self, query_text: str, limit: Optional[int], threshold: Optional[float]):
        if not query_text or not query_text.strip():
            raise ValueError("Query text must not be empty")
        limit = limit if limit is not None else self.config.default_limit
        if not 1 <= limit <= self.config.max_limit:
            raise ValueError(f"limit must be between 1 and {self.config.max_limit}")
        if threshold is None:
            threshold = self.config.similarity_threshold
        return query_text.strip(), limit, threshold

    def _cache_key(self, mode: str, query: str, filters: Optional[SearchFilters], limit: int, threshold) -> str:
        # The corpus version is shared through the store, so ingestion in
        # another process still invalidates our entries.
        version = self.store.corpus_version()
        filter_key = filters.cache_key() if filters else "|"
        return f"{mode}:v{version}:{query.lower()}:{filter_key}:{limit}:{threshold}"

    def search(
        self,
        query_text: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> list[ChunkMatch]:
        """
        Hybrid search.

        Args:
            query_text: Natural-language query
            filters: Optional document / case-number restriction
            limit: Number of results (default from config)
            threshold: Minimum cosine similarity

        Returns:
            Ranked ChunkMatch list, at most ``limit`` long
        """
        query, limit, threshold = self._resolve(query_text, limit, threshold)

        cache_key = None
        if self.result_cache is not None:
            cache_key = self._cache_key("hybrid", query, filters, limit, threshold)
            cached = self.result_cache.get(cache_key)
            if cached is not None:
                logger.debug("Search result cache hit")
                return cached

        start_time = time.time()
        embedding = self.embeddings.embed_query(query)
        candidate_k = max(limit * self.config.candidate_multiplier, self.config.min_candidates)

        with ThreadPoolExecutor(max_workers=2) as executor:
            vector_future = executor.submit(
                self.store.vector_search, embedding, filters, candidate_k, threshold
            )
            lexical_future = executor.submit(
                self.store.lexical_search, query, filters, candidate_k
            )
            vector_hits = vector_future.result()
            try:
                lexical_hits = lexical_future.result()
            except Exception as e:
                logger.warning(f"Lexical search failed, using vector results only: {e}")
                lexical_hits = []

        vector_ids = {hit.chunk_id for hit in vector_hits}
        lexical_only = [hit.chunk_id for hit in lexical_hits if hit.chunk_id not in vector_ids]
        similarities = self.store.score_chunks(embedding, lexical_only) if lexical_only else {}

        results = fuse_results(vector_hits, lexical_hits, similarities, self.config, threshold)[:limit]

        logger.info(
            f"Hybrid search: {len(vector_hits)} vector + {len(lexical_hits)} lexical candidates "
            f"-> {len(results)} results in {time.time() - start_time:.2f}s"
        )

        if self.result_cache is not None:
            self.result_cache.set(cache_key, results)
        return results

    def vector_search(
        self,
        query_text: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> list[ChunkMatch]:
        """Pure semantic search; combined_score equals the similarity."""
        query, limit, threshold = self._resolve(query_text, limit, threshold)

        cache_key = None
        if self.result_cache is not None:
            cache_key = self._cache_key("vector", query, filters, limit, threshold)
            cached = self.result_cache.get(cache_key)
            if cached is not None:
                return cached

        embedding = self.embeddings.embed_query(query)
        results = self.store.vector_search(embedding, filters, limit, threshold)
        for match in results:
            match.combined_score = match.similarity

        if self.result_cache is not None:
            self.result_cache.set(cache_key, results)
        return results


def get_retriever(store, embeddings, config: Optional[RetrievalConfig] = None,
                  result_cache: Optional[QueryResultCache] = None) -> HybridRetriever:
    """Factory used by the API container."""
    return HybridRetriever(store, embeddings, config=config, result_cache=result_cache)
