"""
Error taxonomy for the ingestion and retrieval pipeline.

Chunk-level errors (EmbeddingUnavailable, StoreWriteFailed) fail a single
chunk and are recorded on the job. Job-level errors (ExtractionFailed) move
the job and its document to the error status. JobCancelled is a cooperative
stop, not a fault.
"""


class JurisRagError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False


class ExtractionFailed(JurisRagError):
    """No usable text is available for a job, so it cannot start."""


class EnrichmentFailed(JurisRagError):
    """The generative model could not produce a contextual summary."""


class EmbeddingUnavailable(JurisRagError):
    """The embedding capability is unreachable or returned an error."""

    retryable = True


class StoreWriteFailed(JurisRagError):
    """A chunk or job write was rejected by the store."""

    retryable = True


class JobCancelled(JurisRagError):
    """The job was cancelled externally while it was being processed."""


class InvalidJobTransition(JurisRagError):
    """The requested status change is not allowed from the job's current status."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: cannot move from '{current}' to '{target}'")


class JobNotFound(JurisRagError):
    """No ingestion job exists with the given id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")
