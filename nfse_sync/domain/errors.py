"""Exception hierarchy shared by the ingestion pipeline."""
from __future__ import annotations


class IngestionError(RuntimeError):
    """Base class for every error raised by the ingestion pipeline."""


class PermanentJobError(IngestionError):
    """Failure that will not go away by running the job again."""


class InvalidPayload(PermanentJobError):
    """Raised when job parameters are missing, unknown or malformed."""


class NotFound(PermanentJobError):
    """Raised when a job, tenant or stored document does not exist."""


class JobNotFound(NotFound):
    pass


class TenantNotFound(NotFound):
    pass


class DocumentNotFound(NotFound):
    pass


class TenantInactive(PermanentJobError):
    """Raised when work is requested for a disabled tenant or credential."""


class InvalidTransition(IngestionError):
    """Raised when a job state change is not allowed by the lifecycle."""


class ClaimConflict(InvalidTransition):
    """The job left the running state while a worker still held it."""


class RetryExhausted(IngestionError):
    """Raised when a failed job has no retries left."""


class ExternalFetchError(IngestionError):
    """Raised when the fiscal document API cannot be reached or answers an error."""


class StorageWriteError(IngestionError):
    """Raised when the object store rejects a write."""


class JobCancelled(IngestionError):
    """Raised by handlers that observed their cancellation token."""


class UnknownJobKind(PermanentJobError):
    """Raised by the processor when no handler is registered for a kind."""


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` should lead to a scheduled retry."""

    if isinstance(exc, (PermanentJobError, JobCancelled, InvalidTransition, RetryExhausted)):
        return False
    return True
