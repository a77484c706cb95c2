"""
In-process store with the same contract as VectorStore.

Used for local development (JURIS_RAG_STORE=memory) and tests. Vector search
is numpy cosine similarity; lexical rank counts matched query terms, keeping
CNJ case numbers as single tokens. All state sits behind one lock so job
claiming stays exactly-once across worker threads.
"""

import re
import math
import uuid
import logging
import threading
from copy import deepcopy
from typing import Optional, Callable
from datetime import datetime

import numpy as np

from .errors import StoreWriteFailed
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
    utcnow,
)

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\d{7}-\d{2}\.\d{4}\.\d\.\d{2}\.\d{4}|\w+")

# Small stand-in for the Postgres 'portuguese' stopword list
STOPWORDS = frozenset({
    "a", "o", "as", "os", "de", "da", "do", "das", "dos", "e", "em", "no", "na",
    "nos", "nas", "um", "uma", "por", "para", "com", "que", "se", "ao", "aos",
    "à", "às", "é", "ou",
})


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKEN.findall(text.lower()) if t not in STOPWORDS]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    a_arr = np.asarray(a, dtype=float)
    b_arr = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


class InMemoryStore:
    """Documents, chunks, jobs and query cache held in dictionaries."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._documents: dict[str, Document] = {}
        self._bundles: dict[str, Bundle] = {}
        self._chunks: dict[str, StoredChunk] = {}
        self._jobs: dict[str, IngestionJob] = {}
        self._job_seq: dict[str, int] = {}
        self._query_cache: dict[str, QueryEmbeddingCacheEntry] = {}
        self._seq = 0
        self._corpus_version = 0

    def connect(self) -> None:
        pass

    def initialize_schema(self) -> None:
        pass

    def close(self) -> None:
        pass

    def ping(self) -> bool:
        return True

    # =========================================================================
    # Documents and bundles
    # =========================================================================

    def insert_document(self, document: Document) -> str:
        with self._lock:
            doc = deepcopy(document)
            doc.created_at = doc.created_at or self._clock()
            self._documents[doc.id] = doc
            return doc.id

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._documents.get(document_id)
            return deepcopy(doc) if doc else None

    def delete_document(self, document_id: str) -> bool:
        with self._lock:
            if self._documents.pop(document_id, None) is None:
                return False
            self._delete_chunks(lambda c: c.document_id == document_id)
            for job_id in [j.job_id for j in self._jobs.values() if j.document_id == document_id]:
                del self._jobs[job_id]
            return True

    def update_document(self, document_id: str, **fields) -> None:
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise StoreWriteFailed(f"Document {document_id} not found")
            for key, value in fields.items():
                setattr(doc, key, value)

    def insert_bundle(self, bundle: Bundle) -> str:
        with self._lock:
            b = deepcopy(bundle)
            b.created_at = b.created_at or self._clock()
            self._bundles[b.id] = b
            return b.id

    def get_bundle(self, bundle_id: str) -> Optional[Bundle]:
        with self._lock:
            b = self._bundles.get(bundle_id)
            return deepcopy(b) if b else None

    def update_bundle(self, bundle_id: str, **fields) -> None:
        with self._lock:
            b = self._bundles.get(bundle_id)
            if b is None:
                raise StoreWriteFailed(f"Bundle {bundle_id} not found")
            for key, value in fields.items():
                setattr(b, key, value)

    # =========================================================================
    # Chunks
    # =========================================================================

    def insert_chunk(self, chunk: StoredChunk) -> str:
        if (chunk.document_id is None) == (chunk.bundle_id is None):
            raise StoreWriteFailed("A chunk belongs to exactly one document or bundle")

        with self._lock:
            for existing in self._chunks.values():
                if (existing.document_id == chunk.document_id
                        and existing.bundle_id == chunk.bundle_id
                        and existing.chunk_index == chunk.chunk_index):
                    raise StoreWriteFailed(
                        f"Chunk index {chunk.chunk_index} already stored for {chunk.owner_id}"
                    )
            stored = deepcopy(chunk)
            stored.chunk_id = stored.chunk_id or str(uuid.uuid4())
            self._chunks[stored.chunk_id] = stored
            return stored.chunk_id

    def _delete_chunks(self, predicate) -> int:
        doomed = [cid for cid, c in self._chunks.items() if predicate(c)]
        for cid in doomed:
            del self._chunks[cid]
        for c in self._chunks.values():
            if c.parent_chunk_id in doomed:
                c.parent_chunk_id = None
        return len(doomed)

    def delete_by_document(self, document_id: str) -> int:
        with self._lock:
            return self._delete_chunks(lambda c: c.document_id == document_id)

    def delete_by_bundle(self, bundle_id: str) -> int:
        with self._lock:
            return self._delete_chunks(lambda c: c.bundle_id == bundle_id)

    def get_chunks(self, owner_id: str) -> list[StoredChunk]:
        with self._lock:
            chunks = [deepcopy(c) for c in self._chunks.values() if c.owner_id == owner_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    def get_chunk_context(self, chunk_id: str, window: int = 1) -> list[StoredChunk]:
        with self._lock:
            target = self._chunks.get(chunk_id)
            if target is None:
                return []
            context = [
                deepcopy(c) for c in self._chunks.values()
                if c.chunk_id == target.parent_chunk_id
                or (c.owner_id == target.owner_id
                    and abs(c.chunk_index - target.chunk_index) <= window)
            ]
        return sorted(context, key=lambda c: c.chunk_index)

    @staticmethod
    def _matches(chunk: StoredChunk, filters: Optional[SearchFilters]) -> bool:
        if filters is None:
            return True
        if filters.document_id and chunk.document_id != filters.document_id:
            return False
        if filters.process_number and chunk.process_number != filters.process_number:
            return False
        return True

    @staticmethod
    def _to_match(chunk: StoredChunk, **scores) -> ChunkMatch:
        return ChunkMatch(
            chunk_id=chunk.chunk_id,
            chunk_index=chunk.chunk_index,
            content=chunk.content,
            document_id=chunk.document_id,
            bundle_id=chunk.bundle_id,
            summary=chunk.summary,
            section=chunk.section,
            process_number=chunk.process_number,
            **scores,
        )

    def vector_search(
        self,
        query_embedding: list[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
        threshold: Optional[float] = None,
    ) -> list[ChunkMatch]:
        with self._lock:
            candidates = [
                c for c in self._chunks.values()
                if c.embedding is not None and self._matches(c, filters)
            ]
            scored = [(cosine_similarity(query_embedding, c.embedding), c) for c in candidates]

        if threshold is not None:
            scored = [(s, c) for s, c in scored if s >= threshold]
        scored.sort(key=lambda sc: (-sc[0], sc[1].chunk_index, sc[1].chunk_id))
        return [self._to_match(c, similarity=s) for s, c in scored[:limit]]

    def lexical_search(
        self,
        query_text: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
    ) -> list[ChunkMatch]:
        terms = set(tokenize(query_text))
        if not terms:
            return []

        scored = []
        with self._lock:
            for c in self._chunks.values():
                if not self._matches(c, filters):
                    continue
                tokens = tokenize(c.content)
                rank = 0.0
                for term in terms:
                    tf = tokens.count(term)
                    if tf:
                        rank += 1.0 + math.log(tf)
                if rank > 0:
                    scored.append((rank / len(terms), c))

        scored.sort(key=lambda sc: (-sc[0], sc[1].chunk_index, sc[1].chunk_id))
        return [self._to_match(c, text_rank=r) for r, c in scored[:limit]]

    def score_chunks(self, query_embedding: list[float], chunk_ids: list[str]) -> dict[str, float]:
        with self._lock:
            return {
                cid: cosine_similarity(query_embedding, self._chunks[cid].embedding)
                for cid in chunk_ids
                if cid in self._chunks and self._chunks[cid].embedding is not None
            }

    # =========================================================================
    # Ingestion jobs
    # =========================================================================

    def insert_job(self, job: IngestionJob) -> IngestionJob:
        with self._lock:
            stored = deepcopy(job)
            stored.created_at = stored.created_at or self._clock()
            self._seq += 1
            self._job_seq[stored.job_id] = self._seq
            self._jobs[stored.job_id] = stored
            return deepcopy(stored)

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return deepcopy(job) if job else None

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[IngestionJob]:
        with self._lock:
            jobs = [
                deepcopy(j) for j in self._jobs.values()
                if status is None or j.status == status
            ]
            jobs.sort(key=lambda j: (j.created_at, self._job_seq[j.job_id]), reverse=True)
        return jobs[:limit]

    def claim_next_job(self) -> Optional[IngestionJob]:
        with self._lock:
            pending = [j for j in self._jobs.values() if j.status == JobStatus.PENDING]
            if not pending:
                return None
            job = min(
                pending,
                key=lambda j: (-j.priority, j.created_at, self._job_seq[j.job_id]),
            )
            job.status = JobStatus.PROCESSING
            job.started_at = self._clock()
            job.finished_at = None
            return deepcopy(job)

    def update_job(
        self,
        job_id: str,
        expected_status: Optional[JobStatus] = None,
        **fields,
    ) -> Optional[IngestionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if expected_status is not None and job.status != expected_status:
                return None

            total = fields.get("total_chunks", job.total_chunks)
            done = fields.get("chunks_done", job.chunks_done)
            if not 0 <= done <= total:
                raise StoreWriteFailed(f"Job {job_id}: chunks_done {done} outside 0..{total}")

            for key, value in fields.items():
                if not hasattr(job, key):
                    raise ValueError(f"Unknown job field '{key}'")
                setattr(job, key, deepcopy(value))
            return deepcopy(job)

    # =========================================================================
    # Query embedding cache
    # =========================================================================

    def get_query_embedding(self, key: str) -> Optional[QueryEmbeddingCacheEntry]:
        with self._lock:
            entry = self._query_cache.get(key)
            return deepcopy(entry) if entry else None

    def upsert_query_embedding(self, entry: QueryEmbeddingCacheEntry) -> None:
        with self._lock:
            existing = self._query_cache.get(entry.key)
            if existing is not None:
                existing.embedding = list(entry.embedding)
                existing.last_used_at = entry.last_used_at
            else:
                self._query_cache[entry.key] = deepcopy(entry)

    def touch_query_embedding(self, key: str, used_at: datetime) -> None:
        with self._lock:
            entry = self._query_cache.get(key)
            if entry is not None:
                entry.hit_count += 1
                entry.last_used_at = used_at

    def prune_query_embeddings(self, max_entries: int) -> int:
        with self._lock:
            ordered = sorted(
                self._query_cache.values(),
                key=lambda e: e.last_used_at,
                reverse=True,
            )
            doomed = ordered[max_entries:]
            for entry in doomed:
                del self._query_cache[entry.key]
            return len(doomed)

    # =========================================================================
    # Corpus version
    # =========================================================================

    def corpus_version(self) -> int:
        with self._lock:
            return self._corpus_version

    def bump_corpus_version(self) -> int:
        with self._lock:
            self._corpus_version += 1
            return self._corpus_version

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> StoreStats:
        with self._lock:
            jobs_by_status = {s.value: 0 for s in JobStatus}
            for job in self._jobs.values():
                jobs_by_status[job.status.value] += 1
            return StoreStats(
                total_documents=len(self._documents),
                processed_documents=sum(
                    1 for d in self._documents.values() if d.status.value == "processed"
                ),
                total_chunks=len(self._chunks),
                chunks_with_embedding=sum(
                    1 for c in self._chunks.values() if c.embedding is not None
                ),
                jobs_by_status=jobs_by_status,
            )
