"""
Typed records for documents, chunks, ingestion jobs and search results.

Rows coming out of either store are parsed here (``from_row``) so the
rest of the pipeline never handles loosely-typed dicts.
"""

import json
from enum import Enum
from typing import Optional
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict


CANCELLED_MESSAGE = "Cancelado pelo usuário"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONCLUDED = "concluded"
    ERROR = "error"


class DocumentOrigin(str, Enum):
    UPLOAD = "upload"
    GAZETTE = "gazette"
    MANUAL = "manual"


def _str_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None


def _parse_vector(value) -> Optional[list[float]]:
    """pgvector returns '[0.1,0.2,...]' text unless an adapter is registered."""
    if value is None:
        return None
    if isinstance(value, str):
        return [float(v) for v in value.strip("[]").split(",") if v]
    return [float(v) for v in value]


def _parse_json(value, default):
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


@dataclass
class Document:
    """A legal document owned by the acquisition side; ingestion only touches its status."""
    id: str
    name: str
    origin: DocumentOrigin = DocumentOrigin.UPLOAD
    raw_text: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING
    embedding_processed: bool = False
    tags: list[str] = field(default_factory=list)
    size_bytes: int = 0
    bundle_id: Optional[str] = None
    process_number: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "Document":
        return cls(
            id=str(row["id"]),
            name=row["name"],
            origin=DocumentOrigin(row.get("origin") or "upload"),
            raw_text=row.get("raw_text"),
            status=DocumentStatus(row.get("status") or "pending"),
            embedding_processed=bool(row.get("embedding_processed")),
            tags=list(row.get("tags") or []),
            size_bytes=int(row.get("size_bytes") or 0),
            bundle_id=_str_or_none(row.get("bundle_id")),
            process_number=row.get("process_number"),
            error_message=row.get("error_message"),
            created_at=row.get("created_at"),
        )


@dataclass
class Bundle:
    """An externally acquired gazette issue processed as a single job."""
    id: str
    title: str
    raw_text: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "Bundle":
        return cls(
            id=str(row["id"]),
            title=row["title"],
            raw_text=row.get("raw_text"),
            status=DocumentStatus(row.get("status") or "pending"),
            error_message=row.get("error_message"),
            created_at=row.get("created_at"),
        )


@dataclass
class StoredChunk:
    """A persisted retrieval unit. Exactly one of document_id / bundle_id is set."""
    chunk_id: str
    chunk_index: int
    content: str
    document_id: Optional[str] = None
    bundle_id: Optional[str] = None
    summary: str = ""
    embedding: Optional[list[float]] = None
    embedding_dim: Optional[int] = None
    embedding_model: Optional[str] = None
    process_number: Optional[str] = None
    section: Optional[str] = None
    token_count: int = 0
    start_offset: int = 0
    end_offset: int = 0
    parent_chunk_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def owner_id(self) -> str:
        return self.document_id or self.bundle_id

    @classmethod
    def from_row(cls, row: dict) -> "StoredChunk":
        return cls(
            chunk_id=str(row["id"]),
            chunk_index=int(row["chunk_index"]),
            content=row["content"],
            document_id=_str_or_none(row.get("document_id")),
            bundle_id=_str_or_none(row.get("bundle_id")),
            summary=row.get("summary") or "",
            embedding=_parse_vector(row.get("embedding")),
            embedding_dim=row.get("embedding_dim"),
            embedding_model=row.get("embedding_model"),
            process_number=row.get("process_number"),
            section=row.get("section"),
            token_count=int(row.get("token_count") or 0),
            start_offset=int(row.get("start_offset") or 0),
            end_offset=int(row.get("end_offset") or 0),
            parent_chunk_id=_str_or_none(row.get("parent_chunk_id")),
            metadata=_parse_json(row.get("metadata"), {}),
        )


@dataclass
class ChunkFailure:
    """One chunk that could not be stored during a job's sweep."""
    chunk_index: int
    error: str
    error_type: str = "JurisRagError"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class IngestionJob:
    """One queued unit of work turning a document or bundle into stored chunks."""
    job_id: str
    document_id: Optional[str] = None
    bundle_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    total_chunks: int = 0
    chunks_done: int = 0
    error_message: Optional[str] = None
    process_number: Optional[str] = None
    failures: list[ChunkFailure] = field(default_factory=list)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def progress(self) -> int:
        if self.total_chunks <= 0:
            return 0
        return round(self.chunks_done / self.total_chunks * 100)

    @property
    def owner_id(self) -> str:
        return self.document_id or self.bundle_id

    @property
    def is_cancelled(self) -> bool:
        return self.status == JobStatus.ERROR and self.error_message == CANCELLED_MESSAGE

    @classmethod
    def from_row(cls, row: dict) -> "IngestionJob":
        failures = [
            ChunkFailure(**f) for f in _parse_json(row.get("failures"), [])
        ]
        return cls(
            job_id=str(row["id"]),
            document_id=_str_or_none(row.get("document_id")),
            bundle_id=_str_or_none(row.get("bundle_id")),
            status=JobStatus(row["status"]),
            priority=int(row.get("priority") or 0),
            total_chunks=int(row.get("total_chunks") or 0),
            chunks_done=int(row.get("chunks_done") or 0),
            error_message=row.get("error_message"),
            process_number=row.get("process_number"),
            failures=failures,
            created_at=row.get("created_at"),
            started_at=row.get("started_at"),
            finished_at=row.get("finished_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.job_id,
            "document_id": self.document_id,
            "bundle_id": self.bundle_id,
            "status": self.status.value,
            "priority": self.priority,
            "progress": self.progress,
            "chunks_done": self.chunks_done,
            "total_chunks": self.total_chunks,
            "error_message": self.error_message,
            "failures": [f.to_dict() for f in self.failures],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class QueryEmbeddingCacheEntry:
    key: str
    query_text: str
    embedding: list[float]
    hit_count: int = 0
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "QueryEmbeddingCacheEntry":
        return cls(
            key=row["query_hash"],
            query_text=row.get("query_text") or "",
            embedding=_parse_vector(row["embedding"]),
            hit_count=int(row.get("hit_count") or 0),
            created_at=row.get("created_at"),
            last_used_at=row.get("last_used_at"),
        )


@dataclass(frozen=True)
class SearchFilters:
    """Optional restrictions applied by both vector and lexical search."""
    document_id: Optional[str] = None
    process_number: Optional[str] = None

    def cache_key(self) -> str:
        return f"{self.document_id or ''}|{self.process_number or ''}"


@dataclass
class ChunkMatch:
    """A ranked chunk returned to answer synthesis."""
    chunk_id: str
    chunk_index: int
    content: str
    document_id: Optional[str] = None
    bundle_id: Optional[str] = None
    summary: str = ""
    section: Optional[str] = None
    process_number: Optional[str] = None
    similarity: float = 0.0
    text_rank: float = 0.0
    combined_score: float = 0.0

    @classmethod
    def from_row(cls, row: dict) -> "ChunkMatch":
        return cls(
            chunk_id=str(row["id"]),
            chunk_index=int(row["chunk_index"]),
            content=row["content"],
            document_id=_str_or_none(row.get("document_id")),
            bundle_id=_str_or_none(row.get("bundle_id")),
            summary=row.get("summary") or "",
            section=row.get("section"),
            process_number=row.get("process_number"),
            similarity=float(row.get("similarity") or 0.0),
            text_rank=float(row.get("text_rank") or 0.0),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StoreStats:
    """Knowledge-base counters shown on the monitoring screen."""
    total_documents: int = 0
    processed_documents: int = 0
    total_chunks: int = 0
    chunks_with_embedding: int = 0
    jobs_by_status: dict = field(default_factory=dict)

    @property
    def embedding_rate(self) -> int:
        if not self.total_chunks:
            return 0
        return round(self.chunks_with_embedding / self.total_chunks * 100)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["embedding_rate"] = self.embedding_rate
        return data
