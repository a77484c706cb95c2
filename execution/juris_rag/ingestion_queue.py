"""
Ingestion Queue

Durable, priority-ordered list of ingestion jobs backed by a store. Each
job targets exactly one document or one gazette bundle and moves through

    pending -> processing -> concluded
    pending | processing -> error
    error | concluded -> pending      (explicit reprocess only)

Every status write is guarded by the status the caller expects, so a job
cancelled while a worker is mid-sweep cannot be overwritten by that worker.
Observers subscribe to status changes through a JobStatusWatcher.
"""

import uuid
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional, Callable
from dataclasses import dataclass

from .errors import InvalidJobTransition, JobCancelled, JobNotFound, StoreWriteFailed
from .models import (
    CANCELLED_MESSAGE,
    ChunkFailure,
    DocumentStatus,
    IngestionJob,
    JobStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.ERROR},
    JobStatus.PROCESSING: {JobStatus.CONCLUDED, JobStatus.ERROR},
    JobStatus.ERROR: {JobStatus.PENDING},
    JobStatus.CONCLUDED: {JobStatus.PENDING},
}


class IngestionQueue:
    """Job lifecycle operations on top of a VectorStore or InMemoryStore."""

    def __init__(self, store, result_cache=None, clock=None):
        """
        Args:
            store: Store implementing the job, document and chunk operations
            result_cache: Optional QueryResultCache cleared when the corpus changes
            clock: Callable returning the current UTC datetime
        """
        self.store = store
        self.result_cache = result_cache
        self._clock = clock or utcnow

    # =========================================================================
    # Helpers
    # =========================================================================

    def get_job(self, job_id: str) -> IngestionJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _check_transition(self, job: IngestionJob, target: JobStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidJobTransition(job.job_id, job.status.value, target.value)

    def _guarded_update(self, job: IngestionJob, **fields) -> IngestionJob:
        """Apply ``fields`` only if the job still has the status we read."""
        updated = self.store.update_job(job.job_id, expected_status=job.status, **fields)
        if updated is None:
            self._raise_for_lost_race(job.job_id, job.status)
        return updated

    def _raise_for_lost_race(self, job_id: str, expected: JobStatus):
        current = self.get_job(job_id)
        if current.is_cancelled:
            raise JobCancelled(f"Job {job_id} was cancelled")
        raise InvalidJobTransition(job_id, current.status.value, expected.value)

    def _set_owner_status(self, job: IngestionJob, status: DocumentStatus, **fields) -> None:
        if job.document_id:
            self.store.update_document(job.document_id, status=status, **fields)
        else:
            fields.pop("embedding_processed", None)
            self.store.update_bundle(job.bundle_id, status=status, **fields)

    def _corpus_changed(self) -> None:
        """Invalidate cached search results here and in every other process."""
        try:
            self.store.bump_corpus_version()
        except StoreWriteFailed as e:
            logger.warning(f"Could not bump corpus version, cached results expire by TTL: {e}")
        if self.result_cache is not None:
            self.result_cache.clear()

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(
        self,
        document_id: Optional[str] = None,
        bundle_id: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
        process_number: Optional[str] = None,
    ) -> str:
        """
        Queue a document or a bundle for ingestion.

        Args:
            document_id: Document to ingest
            bundle_id: Gazette bundle to ingest (mutually exclusive with document_id)
            priority: Higher values are processed first
            process_number: Case number applied to every chunk instead of extraction

        Returns:
            The new job id
        """
        if (document_id is None) == (bundle_id is None):
            raise ValueError("A job references exactly one of document_id or bundle_id")

        if document_id and self.store.get_document(document_id) is None:
            raise ValueError(f"Document {document_id} not found")
        if bundle_id and self.store.get_bundle(bundle_id) is None:
            raise ValueError(f"Bundle {bundle_id} not found")

        job = self.store.insert_job(IngestionJob(
            job_id=str(uuid.uuid4()),
            document_id=document_id,
            bundle_id=bundle_id,
            status=JobStatus.PENDING,
            priority=priority,
            process_number=process_number,
        ))
        logger.info(f"Enqueued job {job.job_id} for {job.owner_id} (priority={priority})")
        return job.job_id

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[IngestionJob]:
        return self.store.list_jobs(status=status, limit=limit)

    def stats(self) -> dict[str, int]:
        """Number of jobs per status."""
        return self.store.get_stats().jobs_by_status

    # =========================================================================
    # Worker side
    # =========================================================================

    def claim_next(self) -> Optional[IngestionJob]:
        """Claim the next pending job (priority desc, then oldest first)."""
        job = self.store.claim_next_job()
        if job:
            logger.info(f"Claimed job {job.job_id} (priority={job.priority})")
        return job

    def set_total(self, job: IngestionJob, total_chunks: int) -> IngestionJob:
        return self._guarded_update(job, total_chunks=total_chunks, chunks_done=0)

    def record_progress(
        self,
        job: IngestionJob,
        chunks_done: int,
        failures: Optional[list[ChunkFailure]] = None,
    ) -> IngestionJob:
        """Persist progress; raises JobCancelled if the job left 'processing'."""
        if chunks_done < job.chunks_done or chunks_done > job.total_chunks:
            raise ValueError(
                f"Job {job.job_id}: chunks_done {chunks_done} must stay within "
                f"{job.chunks_done}..{job.total_chunks}"
            )
        fields = {"chunks_done": chunks_done}
        if failures is not None:
            fields["failures"] = failures
        return self._guarded_update(job, **fields)

    def conclude(
        self,
        job: IngestionJob,
        chunks_done: int,
        failures: Optional[list[ChunkFailure]] = None,
    ) -> IngestionJob:
        """Mark a full sweep complete and flag the owner as processed."""
        self._check_transition(job, JobStatus.CONCLUDED)
        concluded = self._guarded_update(
            job,
            status=JobStatus.CONCLUDED,
            chunks_done=chunks_done,
            failures=failures or [],
            error_message=None,
            finished_at=self._clock(),
        )
        self._set_owner_status(
            concluded,
            DocumentStatus.PROCESSED,
            embedding_processed=True,
            error_message=None,
        )
        self._corpus_changed()
        logger.info(
            f"Job {job.job_id} concluded: {chunks_done}/{concluded.total_chunks} chunks processed"
        )
        return concluded

    def fail(self, job: IngestionJob, message: str) -> IngestionJob:
        """Move the job and its owner to error with the same message."""
        self._check_transition(job, JobStatus.ERROR)
        failed = self._guarded_update(
            job,
            status=JobStatus.ERROR,
            error_message=message,
            finished_at=self._clock(),
        )
        self._set_owner_status(failed, DocumentStatus.ERROR, error_message=message)
        logger.error(f"Job {job.job_id} failed: {message}")
        return failed

    def is_cancelled(self, job_id: str) -> bool:
        job = self.store.get_job(job_id)
        return job is None or job.status != JobStatus.PROCESSING

    # =========================================================================
    # Operator commands
    # =========================================================================

    def cancel(self, job_id: str) -> IngestionJob:
        """
        Cancel a pending or processing job.

        The worker notices between chunks and stops; chunks already stored
        are kept.
        """
        job = self.get_job(job_id)
        self._check_transition(job, JobStatus.ERROR)
        cancelled = self._guarded_update(
            job,
            status=JobStatus.ERROR,
            error_message=CANCELLED_MESSAGE,
            finished_at=self._clock(),
        )
        self._set_owner_status(cancelled, DocumentStatus.ERROR, error_message=CANCELLED_MESSAGE)
        self._corpus_changed()
        logger.info(f"Job {job_id} cancelled")
        return cancelled

    def reprocess(self, job_id: str, priority: Optional[int] = None) -> IngestionJob:
        """
        Reset a finished job to pending and clear its previous chunks.

        Safe to call repeatedly: a job that is already pending is returned
        unchanged (apart from an optional priority boost).

        Args:
            job_id: Job to reprocess
            priority: Optional new priority (e.g. boosted for user-triggered runs)
        """
        job = self.get_job(job_id)

        if job.status == JobStatus.PENDING:
            if priority is not None and priority != job.priority:
                return self._guarded_update(job, priority=priority)
            return job

        self._check_transition(job, JobStatus.PENDING)

        # Stale chunks and the owner go first; a worker can only claim the
        # job once it is pending again.
        if job.document_id:
            removed = self.store.delete_by_document(job.document_id)
            self.store.update_document(
                job.document_id,
                status=DocumentStatus.PENDING,
                embedding_processed=False,
                error_message=None,
            )
        else:
            removed = self.store.delete_by_bundle(job.bundle_id)
            self.store.update_bundle(job.bundle_id, status=DocumentStatus.PENDING, error_message=None)
        self._corpus_changed()

        fields = dict(
            status=JobStatus.PENDING,
            total_chunks=0,
            chunks_done=0,
            error_message=None,
            failures=[],
            started_at=None,
            finished_at=None,
        )
        if priority is not None:
            fields["priority"] = priority
        reset = self._guarded_update(job, **fields)

        logger.info(f"Job {job_id} reset for reprocessing ({removed} stale chunks removed)")
        return reset


# =============================================================================
# Status observation
# =============================================================================

@dataclass
class JobStatusChange:
    """A job whose status or progress differs from the last observation."""
    job: IngestionJob
    previous_status: Optional[JobStatus]
    previous_chunks_done: Optional[int] = None


class JobStatusWatcher(ABC):
    """Subscribe to job status changes; delivery is eventual, not immediate."""

    def __init__(self):
        self._subscribers: list[Callable[[JobStatusChange], None]] = []
        self._sub_lock = threading.Lock()

    def subscribe(self, callback: Callable[[JobStatusChange], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        with self._sub_lock:
            self._subscribers.append(callback)

        def _unsubscribe():
            with self._sub_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _emit(self, change: JobStatusChange) -> None:
        with self._sub_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(change)
            except Exception as e:
                logger.warning(f"Job status subscriber failed: {e}")

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class PollingJobStatusWatcher(JobStatusWatcher):
    """Polls ``list_jobs`` on a daemon thread (default every 5 seconds)."""

    def __init__(
        self,
        queue: IngestionQueue,
        interval_seconds: float = 5.0,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ):
        super().__init__()
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.status = status
        self.limit = limit
        self._seen: dict[str, tuple[JobStatus, int]] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> list[JobStatusChange]:
        """Compare the current job list with the last poll and emit the differences."""
        changes = []
        for job in self.queue.list_jobs(status=self.status, limit=self.limit):
            previous = self._seen.get(job.job_id)
            current = (job.status, job.chunks_done)
            if previous != current:
                changes.append(JobStatusChange(
                    job=job,
                    previous_status=previous[0] if previous else None,
                    previous_chunks_done=previous[1] if previous else None,
                ))
                self._seen[job.job_id] = current

        for change in changes:
            self._emit(change)
        return changes

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.warning(f"Job status poll failed: {e}")
            self._stop_event.wait(self.interval_seconds)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="job-status-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.interval_seconds + 1)
            self._thread = None
