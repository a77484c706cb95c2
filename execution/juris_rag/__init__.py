"""
Juris RAG - Ingestion and hybrid retrieval for Brazilian legal documents

This module provides:
- Section-aware chunking of judicial texts and gazette publications
- Contextual enrichment and embedding of every chunk
- A durable, priority-ordered ingestion queue with cancel/reprocess
- Hybrid (vector + full-text) search fused into a single score
"""

from .chunker import LegalChunker
from .embeddings import get_embedding_service
from .enricher import ContextualEnricher
from .ingestion_queue import IngestionQueue
from .memory_store import InMemoryStore
from .vector_store import VectorStore
from .retriever import HybridRetriever, QueryResultCache
from .worker import IngestionWorker

__all__ = [
    "LegalChunker",
    "get_embedding_service",
    "ContextualEnricher",
    "IngestionQueue",
    "InMemoryStore",
    "VectorStore",
    "HybridRetriever",
    "QueryResultCache",
    "IngestionWorker",
]

__version__ = "0.1.0"
