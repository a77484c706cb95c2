"""
Shared fixtures and test utilities for Juris RAG tests.

Provides mock services, sample data, and reusable fixtures so that all tests
can run without API keys, databases, or external network access.
"""

import sys
import hashlib
from pathlib import Path
from datetime import datetime, timedelta, timezone

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

# ---------------------------------------------------------------------------
# Sample legal text
# ---------------------------------------------------------------------------

PROCESS_NUMBER = "1234567-89.2024.8.26.0100"

SAMPLE_ACORDAO = f"""EMENTA: APELAÇÃO CÍVEL. Processo {PROCESS_NUMBER}. Prazo recursal. \
Intimação eletrônica. Contagem em dias úteis. Recurso conhecido e provido.

RELATÓRIO

Trata-se de apelação interposta contra sentença que julgou intempestivo o recurso \
do autor. Sustenta o apelante que o prazo deve ser contado em dias úteis.

VOTO

O prazo recursal de quinze dias conta-se em dias úteis, nos termos do artigo 219 \
do Código de Processo Civil. Dou provimento ao recurso.

ACÓRDÃO

Vistos, relatados e discutidos estes autos, acordam os desembargadores em dar \
provimento ao recurso, por unanimidade.
"""

_FILLER_WORDS = (
    "o tribunal examinou os autos e concluiu que a pretensão recursal merece "
    "acolhimento diante da prova documental produzida pelas partes durante a "
    "instrução processual com observância do contraditório e da ampla defesa"
).split()


def make_paragraph(chars: int, opening: str = "Considerando") -> str:
    """Deterministic Portuguese-looking paragraph of roughly ``chars`` characters."""
    words = [opening]
    i = 0
    while len(" ".join(words)) < chars - 1:
        words.append(_FILLER_WORDS[i % len(_FILLER_WORDS)])
        i += 1
    return " ".join(words) + "."


def make_document(paragraphs: int, chars_each: int) -> str:
    return "\n\n".join(make_paragraph(chars_each) for _ in range(paragraphs))


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------

class FakeClock:
    """Datetime clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeTimer:
    """Monotonic float clock for TTL caches."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=8, fail_on=None):
        self._dimensions = dimensions
        self._call_count = 0
        self.query_calls = 0
        # Text -> vector overrides for ranking tests
        self.vectors = {}
        # Substring that makes embed() raise EmbeddingUnavailable
        self.fail_on = fail_on

    def _deterministic_embedding(self, text):
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        values = []
        for i in range(self._dimensions):
            h = hashlib.sha256(f"{text}:{i}".encode()).hexdigest()
            values.append(int(h[:8], 16) / 0xFFFFFFFF * 2 - 1)
        return values

    def embed(self, text):
        from execution.juris_rag.errors import EmbeddingUnavailable
        self._call_count += 1
        if self.fail_on and self.fail_on in text:
            raise EmbeddingUnavailable("mock provider timeout")
        return self._deterministic_embedding(text)

    def embed_documents(self, texts):
        return [self.embed(t) for t in texts]

    def embed_query(self, query):
        self.query_calls += 1
        return self._deterministic_embedding(query)

    @property
    def dimensions(self):
        return self._dimensions

    @property
    def model_name(self):
        return "mock-embedding"


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService(dimensions=8)


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store(clock):
    from execution.juris_rag.memory_store import InMemoryStore
    return InMemoryStore(clock=clock)


@pytest.fixture
def queue(store, clock):
    from execution.juris_rag.ingestion_queue import IngestionQueue
    return IngestionQueue(store, clock=clock)


@pytest.fixture
def chunker():
    """Return a default LegalChunker instance."""
    from execution.juris_rag.chunker import LegalChunker
    return LegalChunker()


@pytest.fixture
def disabled_enricher():
    from execution.juris_rag.enricher import ContextualEnricher, EnricherConfig
    return ContextualEnricher(EnricherConfig(enabled=False))


@pytest.fixture
def worker(queue, store, chunker, disabled_enricher, mock_embedding_service):
    from execution.juris_rag.worker import IngestionWorker, WorkerConfig
    return IngestionWorker(
        queue=queue,
        store=store,
        chunker=chunker,
        enricher=disabled_enricher,
        embeddings=mock_embedding_service,
        config=WorkerConfig(chunk_delay=0.0, retry_backoff=0.0),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def add_document(store):
    """Insert a document and return its id."""
    from execution.juris_rag.models import Document

    counter = {"n": 0}

    def _add(raw_text, name=None, process_number=None):
        counter["n"] += 1
        doc_id = f"00000000-0000-0000-0000-{counter['n']:012d}"
        store.insert_document(Document(
            id=doc_id,
            name=name or f"Documento {counter['n']}",
            raw_text=raw_text,
            size_bytes=len(raw_text.encode("utf-8")) if raw_text else 0,
            process_number=process_number,
        ))
        return doc_id

    return _add
