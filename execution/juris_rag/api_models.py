"""
Pydantic models for the Juris RAG FastAPI backend.
"""

from typing import Literal, Optional
from pydantic import BaseModel, Field


class DocumentCreateRequest(BaseModel):
    """Register extracted document text and queue it for ingestion."""
    name: str = Field(..., min_length=1, max_length=500)
    raw_text: str = Field(..., min_length=1)
    origin: Literal["upload", "gazette", "manual"] = "upload"
    tags: list[str] = []
    process_number: Optional[str] = None
    priority: int = Field(default=5, ge=0, le=100)


class DocumentCreateResponse(BaseModel):
    document_id: str
    job_id: str


class BundleCreateRequest(BaseModel):
    """Register a downloaded gazette issue and queue it for ingestion."""
    title: str = Field(..., min_length=1, max_length=500)
    raw_text: str = Field(..., min_length=1)
    priority: int = Field(default=5, ge=0, le=100)


class BundleCreateResponse(BaseModel):
    bundle_id: str
    job_id: str


class IngestRequest(BaseModel):
    """Queue an already registered document or bundle."""
    document_id: Optional[str] = None
    bundle_id: Optional[str] = None
    priority: int = Field(default=5, ge=0, le=100)
    process_number: Optional[str] = None


class IngestResponse(BaseModel):
    job_id: str


class ReprocessRequest(BaseModel):
    priority: Optional[int] = Field(default=None, ge=0, le=100)


class ChunkFailureInfo(BaseModel):
    chunk_index: int
    error: str
    error_type: str


class JobInfo(BaseModel):
    """Ingestion job as shown on the monitoring screen."""
    id: str
    document_id: Optional[str] = None
    bundle_id: Optional[str] = None
    status: str
    priority: int
    progress: int
    chunks_done: int
    total_chunks: int
    error_message: Optional[str] = None
    failures: list[ChunkFailureInfo] = []
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class SearchRequest(BaseModel):
    """Request body for the search endpoint."""
    query: str = Field(..., min_length=1, max_length=2000)
    mode: Literal["hybrid", "vector"] = "hybrid"
    limit: int = Field(default=8, ge=1, le=50)
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    document_id: Optional[str] = None
    process_number: Optional[str] = None


class SearchResult(BaseModel):
    chunk_id: str
    chunk_index: int
    content: str
    summary: str = ""
    document_id: Optional[str] = None
    bundle_id: Optional[str] = None
    section: Optional[str] = None
    process_number: Optional[str] = None
    similarity: float
    text_rank: float
    combined_score: float


class SearchResponse(BaseModel):
    results: list[SearchResult]
    latency_ms: float


class StatsResponse(BaseModel):
    """Knowledge-base statistics."""
    total_documents: int
    processed_documents: int
    total_chunks: int
    chunks_with_embedding: int
    embedding_rate: int
    jobs_by_status: dict[str, int]


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str
