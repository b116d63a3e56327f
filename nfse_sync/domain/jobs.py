"""Job entities, typed parameters and lifecycle transitions."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, constr

from .errors import ClaimConflict, InvalidPayload, InvalidTransition, RetryExhausted

DEFAULT_MAX_RETRIES = 3

# lower number runs sooner
PRIORITY_MANUAL = 1
PRIORITY_SCHEDULED = 5
PRIORITY_REPORT = 10

Period = constr(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


class JobKind(str, Enum):
    SYNC_DOCUMENTS = "sync_documents"
    PROCESS_DOCUMENT = "process_document"
    GENERATE_REPORT = "generate_report"
    CONSULT_PERIOD = "consult_period"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})
FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


# ----------------------------------------------------------------------
# typed parameters
# ----------------------------------------------------------------------
class JobParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_id: constr(min_length=1)

    def unit_key(self) -> str:
        raise NotImplementedError


class SyncDocumentsParams(JobParams):
    period: Period | None = None
    force_refresh: bool = False

    def unit_key(self) -> str:
        return self.period or "*"


class ConsultPeriodParams(JobParams):
    period: Period
    force_refresh: bool = False

    def unit_key(self) -> str:
        return self.period


class ProcessDocumentParams(JobParams):
    period: Period
    document_number: constr(min_length=1)

    def unit_key(self) -> str:
        return f"{self.period}:{self.document_number}"


class GenerateReportParams(JobParams):
    period: Period
    batch_id: constr(pattern=r"^[A-Za-z0-9_-]+$") | None = None
    format: Literal["csv", "xlsx", "txt"] = "csv"

    def resolved_batch_id(self) -> str:
        return self.batch_id or self.period.replace("-", "")

    def unit_key(self) -> str:
        return f"{self.resolved_batch_id()}.{self.format}"


PARAMS_BY_KIND: dict[JobKind, type[JobParams]] = {
    JobKind.SYNC_DOCUMENTS: SyncDocumentsParams,
    JobKind.CONSULT_PERIOD: ConsultPeriodParams,
    JobKind.PROCESS_DOCUMENT: ProcessDocumentParams,
    JobKind.GENERATE_REPORT: GenerateReportParams,
}


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def parse_params(kind: JobKind | str, tenant_id: str, payload: dict[str, Any] | None) -> JobParams:
    """Validate ``payload`` against the parameter model registered for ``kind``."""

    try:
        job_kind = JobKind(kind)
    except ValueError as exc:
        raise InvalidPayload(f"unknown job kind: {kind}") from exc
    if not isinstance(payload, dict):
        raise InvalidPayload("job parameters must be a JSON object")
    model = PARAMS_BY_KIND[job_kind]
    try:
        params = model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidPayload(f"invalid {job_kind.value} parameters: {_describe_validation_error(exc)}") from exc
    if params.tenant_id != tenant_id:
        raise InvalidPayload(
            f"parameters reference tenant {params.tenant_id!r} but the job belongs to {tenant_id!r}"
        )
    return params


# ----------------------------------------------------------------------
# entity
# ----------------------------------------------------------------------
class Job(BaseModel):
    """Snapshot of a queued unit of background work."""

    id: str
    sequence: int
    tenant_id: str
    kind: JobKind
    unit_key: str
    status: JobStatus = JobStatus.PENDING
    priority: int = PRIORITY_SCHEDULED
    scheduled_at: datetime
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and self.retry_count < self.max_retries

    @property
    def is_terminal(self) -> bool:
        if self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return True
        return self.status == JobStatus.FAILED and not self.can_retry()

    def params(self) -> JobParams:
        return parse_params(self.kind, self.tenant_id, self.parameters)


def new_job(
    *,
    sequence: int,
    tenant_id: str,
    kind: JobKind,
    params: JobParams,
    priority: int,
    not_before: datetime,
    max_retries: int,
    now: datetime,
) -> Job:
    return Job(
        id=str(uuid4()),
        sequence=sequence,
        tenant_id=tenant_id,
        kind=kind,
        unit_key=params.unit_key(),
        priority=priority,
        scheduled_at=not_before,
        max_retries=max_retries,
        parameters=params.model_dump(mode="json"),
        created_at=now,
        updated_at=now,
    )


# ----------------------------------------------------------------------
# lifecycle transitions
# ----------------------------------------------------------------------
def start(job: Job, now: datetime) -> Job:
    if job.status != JobStatus.PENDING:
        raise InvalidTransition(f"job {job.id} is {job.status.value}, cannot start")
    return job.model_copy(
        update={
            "status": JobStatus.RUNNING,
            "started_at": now,
            "completed_at": None,
            "updated_at": now,
        },
        deep=True,
    )


def complete(job: Job, result: dict[str, Any] | None, now: datetime) -> Job:
    if job.status == JobStatus.COMPLETED:
        return job
    if job.status in (JobStatus.PENDING, JobStatus.CANCELLED):
        raise ClaimConflict(f"job {job.id} is {job.status.value}, no longer held by a worker")
    if job.status != JobStatus.RUNNING:
        raise InvalidTransition(f"job {job.id} is {job.status.value}, cannot complete")
    return job.model_copy(
        update={
            "status": JobStatus.COMPLETED,
            "result": dict(result or {}),
            "error_message": None,
            "completed_at": now,
            "updated_at": now,
        },
        deep=True,
    )


def fail(job: Job, error_message: str, now: datetime) -> Job:
    if job.status in (JobStatus.PENDING, JobStatus.CANCELLED):
        raise ClaimConflict(f"job {job.id} is {job.status.value}, no longer held by a worker")
    if job.status != JobStatus.RUNNING:
        raise InvalidTransition(f"job {job.id} is {job.status.value}, cannot fail")
    return job.model_copy(
        update={
            "status": JobStatus.FAILED,
            "error_message": error_message,
            "completed_at": now,
            "updated_at": now,
        },
        deep=True,
    )


def retry(job: Job, retry_at: datetime, now: datetime) -> Job:
    if job.status != JobStatus.FAILED:
        raise InvalidTransition(f"job {job.id} is {job.status.value}, only failed jobs can be retried")
    if job.retry_count >= job.max_retries:
        raise RetryExhausted(f"job {job.id} used {job.retry_count} of {job.max_retries} retries")
    return job.model_copy(
        update={
            "status": JobStatus.PENDING,
            "retry_count": job.retry_count + 1,
            "scheduled_at": retry_at,
            "started_at": None,
            "completed_at": None,
            "updated_at": now,
        },
        deep=True,
    )


def cancel(job: Job, now: datetime) -> Job:
    if job.status not in ACTIVE_STATUSES:
        raise InvalidTransition(f"job {job.id} is {job.status.value}, cannot cancel")
    return job.model_copy(
        update={
            "status": JobStatus.CANCELLED,
            "completed_at": now,
            "updated_at": now,
        },
        deep=True,
    )


def merge_request(job: Job, params: JobParams, priority: int, now: datetime) -> Job:
    """Fold a repeated request for the same unit of work into a pending job.

    The job keeps the more urgent priority and a requested ``force_refresh``
    sticks. The schedule is kept.
    Running jobs are returned unchanged.
    """

    if job.status != JobStatus.PENDING:
        return job
    update: dict[str, Any] = {}
    if priority < job.priority:
        update["priority"] = priority
    if getattr(params, "force_refresh", False) and not job.parameters.get("force_refresh"):
        update["parameters"] = {**job.parameters, "force_refresh": True}
    if not update:
        return job
    update["updated_at"] = now
    return job.model_copy(update=update, deep=True)


def requeue(job: Job, now: datetime) -> Job:
    if job.status != JobStatus.RUNNING:
        raise InvalidTransition(f"job {job.id} is {job.status.value}, cannot requeue")
    return job.model_copy(
        update={
            "status": JobStatus.PENDING,
            "started_at": None,
            "updated_at": now,
        },
        deep=True,
    )


def claim_order(job: Job) -> tuple[int, datetime, int]:
    return (job.priority, job.scheduled_at, job.sequence)
