"""
FastAPI Backend for Juris RAG

Endpoints for registering extracted text, monitoring and steering the
ingestion queue, and hybrid search over the knowledge base. Ingestion itself
runs in a separate worker process (execution/run_ingestion_worker.py); with
JURIS_RAG_STORE=memory the API runs a worker thread itself, since the store
only lives in this process.

Run with: uvicorn execution.juris_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import uuid
import logging
import threading
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .api_models import (
    BundleCreateRequest, BundleCreateResponse,
    DocumentCreateRequest, DocumentCreateResponse,
    IngestRequest, IngestResponse,
    JobInfo, ReprocessRequest,
    SearchRequest, SearchResponse, SearchResult,
    StatsResponse, HealthResponse,
)
from .errors import (
    EmbeddingUnavailable,
    InvalidJobTransition,
    JobNotFound,
    StoreWriteFailed,
)
from .models import Bundle, Document, DocumentOrigin, JobStatus, SearchFilters

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # An in-memory store is private to this process; nothing else can drain its queue.
    in_process_worker = os.getenv("JURIS_RAG_STORE", "postgres") == "memory"
    if in_process_worker:
        _container.start_background_worker()

    yield

    if in_process_worker:
        _container.stop_background_worker()


app = FastAPI(
    title="Juris RAG API",
    description="Ingestion queue and hybrid search for Brazilian legal documents",
    version=API_VERSION,
    lifespan=lifespan,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Service Container
# =============================================================================

class ServiceContainer:
    """Lazily builds and caches the store, embedding service, queue and retriever."""

    def __init__(self):
        self._store = None
        self._embeddings = None
        self._result_cache = None
        self._queue = None
        self._retriever = None
        self._worker_thread: Optional[threading.Thread] = None
        self._worker_stop = threading.Event()

    def get_store(self):
        if self._store is None:
            backend = os.getenv("JURIS_RAG_STORE", "postgres")
            if backend == "memory":
                from .memory_store import InMemoryStore
                self._store = InMemoryStore()
            else:
                from .vector_store import VectorStore
                self._store = VectorStore()
                self._store.connect()
                self._store.initialize_schema()
            logger.info(f"Using {backend} store")
        return self._store

    def get_embeddings(self):
        if self._embeddings is None:
            from .embeddings import StoreQueryEmbeddingCache, get_embedding_service
            query_cache = StoreQueryEmbeddingCache(self.get_store())
            self._embeddings = get_embedding_service(query_cache=query_cache)
        return self._embeddings

    def get_result_cache(self):
        if self._result_cache is None:
            from .retriever import QueryResultCache
            self._result_cache = QueryResultCache(
                ttl_seconds=float(os.getenv("SEARCH_CACHE_TTL", "300")),
            )
        return self._result_cache

    def get_queue(self):
        if self._queue is None:
            from .ingestion_queue import IngestionQueue
            self._queue = IngestionQueue(self.get_store(), result_cache=self.get_result_cache())
        return self._queue

    def get_retriever(self):
        if self._retriever is None:
            from .retriever import get_retriever
            self._retriever = get_retriever(
                self.get_store(),
                self.get_embeddings(),
                result_cache=self.get_result_cache(),
            )
        return self._retriever

    def start_background_worker(self, poll_interval: Optional[float] = None) -> None:
        """Process queued jobs on a daemon thread inside this process."""
        if self._worker_thread and self._worker_thread.is_alive():
            return

        from .chunker import LegalChunker
        from .enricher import ContextualEnricher, EnricherConfig
        from .language_config import LanguageConfig
        from .worker import IngestionWorker, WorkerConfig

        if poll_interval is None:
            poll_interval = float(os.getenv("WORKER_POLL_INTERVAL", "1.0"))
        language_config = LanguageConfig.for_language(os.getenv("JURIS_RAG_LANGUAGE", "pt"))
        worker = IngestionWorker(
            queue=self.get_queue(),
            store=self.get_store(),
            chunker=LegalChunker(language_config=language_config),
            enricher=ContextualEnricher(
                EnricherConfig(model=language_config.llm_model, enabled=bool(os.getenv("LLM_API_KEY"))),
                language_config=language_config,
            ),
            embeddings=self.get_embeddings(),
            config=WorkerConfig(poll_interval=poll_interval),
        )

        self._worker_stop.clear()
        self._worker_thread = threading.Thread(
            target=worker.run_forever,
            kwargs={"stop_event": self._worker_stop},
            name="ingestion-worker",
            daemon=True,
        )
        self._worker_thread.start()
        logger.info("In-process ingestion worker started")

    def stop_background_worker(self, timeout: float = 10.0) -> None:
        self._worker_stop.set()
        if self._worker_thread:
            self._worker_thread.join(timeout=timeout)
            self._worker_thread = None


_container = ServiceContainer()


# =============================================================================
# Error mapping
# =============================================================================

@app.exception_handler(JobNotFound)
async def _job_not_found(request: Request, exc: JobNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidJobTransition)
async def _invalid_transition(request: Request, exc: InvalidJobTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def _invalid_value(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(EmbeddingUnavailable)
async def _embedding_unavailable(request: Request, exc: EmbeddingUnavailable):
    logger.warning(f"Embedding provider unavailable: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Embedding service unavailable"})


@app.exception_handler(StoreWriteFailed)
async def _store_write_failed(request: Request, exc: StoreWriteFailed):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def _job_info(job) -> JobInfo:
    return JobInfo(**job.to_dict())


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    try:
        db_status = "connected" if _container.get_store().ping() else "disconnected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=API_VERSION, database=db_status)


@app.post("/api/v1/documents", response_model=DocumentCreateResponse, status_code=201)
def create_document(request: DocumentCreateRequest):
    """Register extracted text as a document and queue it for ingestion."""
    store = _container.get_store()
    document_id = str(uuid.uuid4())
    store.insert_document(Document(
        id=document_id,
        name=request.name,
        origin=DocumentOrigin(request.origin),
        raw_text=request.raw_text,
        tags=request.tags,
        size_bytes=len(request.raw_text.encode("utf-8")),
        process_number=request.process_number,
    ))
    job_id = _container.get_queue().enqueue(
        document_id=document_id,
        priority=request.priority,
        process_number=request.process_number,
    )
    return DocumentCreateResponse(document_id=document_id, job_id=job_id)


@app.post("/api/v1/bundles", response_model=BundleCreateResponse, status_code=201)
def create_bundle(request: BundleCreateRequest):
    """Register a gazette issue and queue it for ingestion."""
    store = _container.get_store()
    bundle_id = str(uuid.uuid4())
    store.insert_bundle(Bundle(id=bundle_id, title=request.title, raw_text=request.raw_text))
    job_id = _container.get_queue().enqueue(bundle_id=bundle_id, priority=request.priority)
    return BundleCreateResponse(bundle_id=bundle_id, job_id=job_id)


@app.post("/api/v1/ingest", response_model=IngestResponse, status_code=202)
def ingest(request: IngestRequest):
    """Queue an existing document or bundle."""
    job_id = _container.get_queue().enqueue(
        document_id=request.document_id,
        bundle_id=request.bundle_id,
        priority=request.priority,
        process_number=request.process_number,
    )
    return IngestResponse(job_id=job_id)


@app.get("/api/v1/jobs", response_model=list[JobInfo])
def list_jobs(status: Optional[JobStatus] = None, limit: int = 100):
    """List ingestion jobs, newest first."""
    return [_job_info(job) for job in _container.get_queue().list_jobs(status=status, limit=limit)]


@app.get("/api/v1/jobs/{job_id}", response_model=JobInfo)
def get_job(job_id: str):
    return _job_info(_container.get_queue().get_job(job_id))


@app.post("/api/v1/jobs/{job_id}/reprocess", response_model=JobInfo)
def reprocess_job(job_id: str, request: Optional[ReprocessRequest] = None):
    """Reset a finished job to pending, removing its previous chunks."""
    priority = request.priority if request else None
    return _job_info(_container.get_queue().reprocess(job_id, priority=priority))


@app.post("/api/v1/jobs/{job_id}/cancel", response_model=JobInfo)
def cancel_job(job_id: str):
    return _job_info(_container.get_queue().cancel(job_id))


@app.post("/api/v1/search", response_model=SearchResponse)
def search(request: SearchRequest):
    """Hybrid (default) or pure vector search over stored chunks."""
    start_time = time.time()
    retriever = _container.get_retriever()
    filters = None
    if request.document_id or request.process_number:
        filters = SearchFilters(
            document_id=request.document_id,
            process_number=request.process_number,
        )

    run = retriever.search if request.mode == "hybrid" else retriever.vector_search
    matches = run(request.query, filters=filters, limit=request.limit, threshold=request.threshold)

    return SearchResponse(
        results=[SearchResult(**m.to_dict()) for m in matches],
        latency_ms=round((time.time() - start_time) * 1000, 1),
    )


@app.get("/api/v1/stats", response_model=StatsResponse)
def get_stats():
    """Documents, chunks, embedding coverage and jobs per status."""
    return StatsResponse(**_container.get_store().get_stats().to_dict())
