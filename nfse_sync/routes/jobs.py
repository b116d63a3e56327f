from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from nfse_sync.application import get_job_service
from nfse_sync.domain import Job
from nfse_sync.domain.errors import (
    IngestionError,
    InvalidPayload,
    InvalidTransition,
    NotFound,
    RetryExhausted,
    TenantInactive,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def to_http_error(exc: IngestionError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidPayload, TenantInactive)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (InvalidTransition, RetryExhausted)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def serialise_job(job: Job) -> dict:
    return job.model_dump(mode="json")


@router.get("")
async def list_jobs(
    tenant_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    kind: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
) -> dict:
    service = get_job_service()
    try:
        items, total = service.list_jobs(tenant_id=tenant_id, status=status, kind=kind, page=page, per_page=per_page)
    except IngestionError as exc:
        raise to_http_error(exc) from exc
    return {
        "items": [serialise_job(job) for job in items],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


@router.get("/{job_id}")
async def get_job(job_id: str) -> dict:
    service = get_job_service()
    try:
        job = service.get_job(job_id)
    except IngestionError as exc:
        raise to_http_error(exc) from exc
    return serialise_job(job)


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str) -> dict:
    service = get_job_service()
    try:
        job = service.cancel_job(job_id)
    except IngestionError as exc:
        raise to_http_error(exc) from exc
    return serialise_job(job)


@router.post("/{job_id}/retry")
async def retry_job(job_id: str) -> dict:
    service = get_job_service()
    try:
        job = service.retry_job(job_id)
    except IngestionError as exc:
        raise to_http_error(exc) from exc
    return serialise_job(job)
