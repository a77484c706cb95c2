"""
Ingestion Worker

Claims jobs from the IngestionQueue and turns the owner's raw text into
stored, embedded chunks:

1. Load text (document or gazette bundle)
2. Chunk with section labels
3. Per chunk: contextual summary -> embedding -> insert
4. Record progress every few chunks, conclude the job at the end

A chunk that fails to embed or store is recorded and skipped; the job still
concludes. Cancellation is checked before every chunk.
"""

import time
import uuid
import logging
import threading
from typing import Optional, Callable
from dataclasses import dataclass, field

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log

from .chunker import LegalChunker, TextChunk, extract_process_number
from .enricher import ContextualEnricher, build_embedding_text
from .errors import (
    EmbeddingUnavailable,
    ExtractionFailed,
    InvalidJobTransition,
    JobCancelled,
    JurisRagError,
)
from .ingestion_queue import IngestionQueue
from .models import (
    CANCELLED_MESSAGE,
    ChunkFailure,
    DocumentStatus,
    IngestionJob,
    JobStatus,
    StoredChunk,
)

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Pacing and retry settings for the worker loop."""
    progress_every: int = 5
    chunk_delay: float = 0.1
    embed_retries: int = 2
    retry_backoff: float = 1.0  # exponential: backoff, 2 * backoff, 4 * backoff ...
    max_backoff: float = 10.0
    preview_chars: int = 3000
    poll_interval: float = 5.0


@dataclass
class IngestionReport:
    """Outcome of one job run."""
    job_id: str
    owner_id: str
    status: JobStatus = JobStatus.PROCESSING
    total_chunks: int = 0
    chunks_done: int = 0
    failures: list[ChunkFailure] = field(default_factory=list)
    error_message: Optional[str] = None
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    def summary(self) -> str:
        return f"{self.chunks_done}/{self.total_chunks} chunks processed"


@dataclass
class _Source:
    title: str
    text: str
    process_number: Optional[str] = None


class IngestionWorker:
    """Sequential per-job chunk processor."""

    def __init__(
        self,
        queue: IngestionQueue,
        store,
        chunker: LegalChunker,
        enricher: ContextualEnricher,
        embeddings,
        config: Optional[WorkerConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.store = store
        self.chunker = chunker
        self.enricher = enricher
        self.embeddings = embeddings
        self.config = config or WorkerConfig()
        self._sleep = sleep

    # =========================================================================
    # Loop
    # =========================================================================

    def run_once(self) -> Optional[IngestionReport]:
        """Claim and process one job; None when the queue is empty."""
        job = self.queue.claim_next()
        if job is None:
            return None
        return self.process_job(job)

    def run_forever(self, stop_event: Optional[threading.Event] = None, poll_interval: Optional[float] = None) -> None:
        """Process jobs until ``stop_event`` is set, idling when the queue is empty."""
        stop_event = stop_event or threading.Event()
        interval = poll_interval if poll_interval is not None else self.config.poll_interval
        logger.info("Ingestion worker started")

        while not stop_event.is_set():
            try:
                report = self.run_once()
            except JurisRagError as e:
                logger.error(f"Could not claim a job: {e}")
                report = None

            if report is None:
                stop_event.wait(interval)
            else:
                logger.info(f"Job {report.job_id} {report.status.value}: {report.summary()}")

        logger.info("Ingestion worker stopped")

    # =========================================================================
    # Job processing
    # =========================================================================

    def process_job(self, job: IngestionJob) -> IngestionReport:
        """
        Run a claimed job to completion, cancellation or failure.

        Args:
            job: Job already moved to 'processing' by claim_next()

        Returns:
            IngestionReport with per-chunk failures
        """
        report = IngestionReport(job_id=job.job_id, owner_id=job.owner_id)
        start_time = time.time()

        try:
            source = self._load_source(job)
            self._mark_owner_processing(job)

            chunks = self.chunker.chunk(source.text)
            job = self.queue.set_total(job, len(chunks))
            report.total_chunks = len(chunks)
            logger.info(f"Job {job.job_id}: {len(chunks)} chunks from '{source.title}'")

            preview = source.text[:self.config.preview_chars]
            for position, chunk in enumerate(chunks, start=1):
                if self.queue.is_cancelled(job.job_id):
                    raise JobCancelled(f"Job {job.job_id} was cancelled")

                try:
                    self._process_chunk(job, chunk, source, preview)
                    report.chunks_done += 1
                except JurisRagError as e:
                    failure = ChunkFailure(
                        chunk_index=chunk.index,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    report.failures.append(failure)
                    logger.warning(f"Job {job.job_id}: chunk {chunk.index} failed: {e}")

                if position < len(chunks):
                    if position % self.config.progress_every == 0:
                        job = self.queue.record_progress(job, report.chunks_done, report.failures)
                    self._sleep(self.config.chunk_delay)

            self.queue.conclude(job, report.chunks_done, report.failures)
            report.status = JobStatus.CONCLUDED

        except JobCancelled:
            report.status = JobStatus.ERROR
            report.cancelled = True
            report.error_message = CANCELLED_MESSAGE
            logger.info(f"Job {job.job_id} stopped after cancellation ({report.summary()})")

        except ExtractionFailed as e:
            self._fail(job, str(e), report)

        except Exception as e:
            logger.error(f"Job {job.job_id} crashed: {e}", exc_info=True)
            self._fail(job, str(e), report)

        report.elapsed_seconds = time.time() - start_time
        return report

    def _load_source(self, job: IngestionJob) -> _Source:
        if job.document_id:
            document = self.store.get_document(job.document_id)
            if document is None:
                raise ExtractionFailed(f"Document {job.document_id} not found")
            if not document.raw_text or not document.raw_text.strip():
                raise ExtractionFailed(f"Document '{document.name}' has no extracted text")
            return _Source(document.name, document.raw_text, document.process_number)

        bundle = self.store.get_bundle(job.bundle_id)
        if bundle is None:
            raise ExtractionFailed(f"Bundle {job.bundle_id} not found")
        if not bundle.raw_text or not bundle.raw_text.strip():
            raise ExtractionFailed(f"Bundle '{bundle.title}' has no extracted text")
        return _Source(bundle.title, bundle.raw_text)

    def _mark_owner_processing(self, job: IngestionJob) -> None:
        if job.document_id:
            self.store.update_document(job.document_id, status=DocumentStatus.PROCESSING, error_message=None)
        else:
            self.store.update_bundle(job.bundle_id, status=DocumentStatus.PROCESSING, error_message=None)

    def _process_chunk(self, job: IngestionJob, chunk: TextChunk, source: _Source, preview: str) -> str:
        summary = self.enricher.enrich(chunk.content, preview, source.title)
        embedding = self._embed_with_retry(build_embedding_text(summary, chunk.content))

        process_number = (
            job.process_number
            or source.process_number
            or extract_process_number(chunk.content)
        )

        return self.store.insert_chunk(StoredChunk(
            chunk_id=str(uuid.uuid4()),
            chunk_index=chunk.index,
            content=chunk.content,
            document_id=job.document_id,
            bundle_id=job.bundle_id,
            summary=summary,
            embedding=embedding,
            embedding_dim=len(embedding),
            embedding_model=self.embeddings.model_name,
            process_number=process_number,
            section=chunk.section,
            token_count=chunk.token_count,
            start_offset=chunk.start_offset,
            end_offset=chunk.end_offset,
            metadata={"title": source.title},
        ))

    def _embed_with_retry(self, text: str) -> list[float]:
        @retry(
            stop=stop_after_attempt(self.config.embed_retries + 1),
            wait=wait_exponential(multiplier=self.config.retry_backoff, max=self.config.max_backoff),
            retry=retry_if_exception_type(EmbeddingUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        def _embed():
            return self.embeddings.embed(text)

        return _embed()

    def _fail(self, job: IngestionJob, message: str, report: IngestionReport) -> None:
        report.status = JobStatus.ERROR
        report.error_message = message
        try:
            self.queue.fail(job, message)
        except JobCancelled:
            report.cancelled = True
            report.error_message = CANCELLED_MESSAGE
        except InvalidJobTransition as e:
            logger.warning(f"Job {job.job_id} could not be marked as failed: {e}")
