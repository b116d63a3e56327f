from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from nfse_sync.application import get_job_service
from nfse_sync.domain.errors import IngestionError

from .jobs import serialise_job, to_http_error

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post("/{tenant_id}/sync")
async def request_sync(tenant_id: str, payload: dict | None = None) -> dict:
    payload = payload or {}
    service = get_job_service()
    try:
        job = service.request_sync(
            tenant_id,
            period=payload.get("period"),
            force_refresh=bool(payload.get("force_refresh", False)),
        )
    except IngestionError as exc:
        raise to_http_error(exc) from exc
    return serialise_job(job)


@router.post("/{tenant_id}/reports")
async def request_report(tenant_id: str, payload: dict) -> dict:
    period = payload.get("period")
    if not period:
        raise HTTPException(status_code=400, detail="period is required")
    service = get_job_service()
    try:
        job = service.request_report(
            tenant_id,
            period=period,
            fmt=str(payload.get("format") or "csv"),
            batch_id=payload.get("batch_id"),
        )
    except IngestionError as exc:
        raise to_http_error(exc) from exc
    return serialise_job(job)


@router.post("/{tenant_id}/documents/{document_number}/process")
async def request_processing(tenant_id: str, document_number: str, payload: dict) -> dict:
    period = payload.get("period")
    if not period:
        raise HTTPException(status_code=400, detail="period is required")
    service = get_job_service()
    try:
        job = service.request_processing(tenant_id, period=period, document_number=document_number)
    except IngestionError as exc:
        raise to_http_error(exc) from exc
    return serialise_job(job)


@router.get("/{tenant_id}/documents")
async def list_documents(tenant_id: str, period: str = Query(...)) -> dict:
    service = get_job_service()
    try:
        documents = service.list_documents(tenant_id, period)
    except IngestionError as exc:
        raise to_http_error(exc) from exc
    return {
        "tenant_id": tenant_id,
        "period": period,
        "items": [
            {
                "number": document.number,
                "kind": document.kind.value,
                "version": document.version,
                "emission_date": document.emission_date.isoformat(),
                "key": document.key,
            }
            for document in documents
        ],
    }
