"""Processing reports over the documents stored for a tenant period."""
from __future__ import annotations

import io
import logging
from datetime import datetime
from typing import Any

import pandas as pd
from openpyxl import Workbook

from nfse_sync.domain import DocumentKind, StoredDocument
from nfse_sync.domain.errors import InvalidPayload, NotFound

from .parser import parse_nfse
from .storage import StorageOrganizer

logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
    "number",
    "kind",
    "version",
    "emission_date",
    "key",
    "verification_code",
    "provider_cnpj",
    "taker_document",
    "service_value",
    "iss_value",
    "is_cancelled",
    "parse_error",
]

HEADERS = {
    "number": "Número",
    "kind": "Tipo",
    "version": "Versão",
    "emission_date": "Emissão",
    "key": "Chave no storage",
    "verification_code": "Código verificação",
    "provider_cnpj": "CNPJ prestador",
    "taker_document": "Documento tomador",
    "service_value": "Valor serviços",
    "iss_value": "Valor ISS",
    "is_cancelled": "Cancelada",
    "parse_error": "Erro",
}


def collect_rows(organizer: StorageOrganizer, tenant_external_id: str, period: str) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for document in organizer.list_documents(tenant_external_id, period):
        rows.append(_row_for(organizer, tenant_external_id, period, document))
    return rows


def _row_for(
    organizer: StorageOrganizer, tenant: str, period: str, document: StoredDocument
) -> dict[str, Any]:
    row: dict[str, Any] = {column: None for column in REPORT_COLUMNS}
    row.update(
        number=document.number,
        kind=document.kind.value,
        version=document.version,
        emission_date=document.emission_date.isoformat(),
        key=document.key,
    )
    if document.kind != DocumentKind.XML:
        return row
    try:
        parsed = parse_nfse(organizer.fetch(tenant, period, document.number, document.kind))
    except (InvalidPayload, NotFound) as exc:
        row["parse_error"] = str(exc)
        return row
    row.update(
        verification_code=parsed.verification_code,
        provider_cnpj=parsed.provider_cnpj,
        taker_document=parsed.taker_document,
        service_value=str(parsed.service_value),
        iss_value=str(parsed.iss_value),
        is_cancelled=parsed.is_cancelled,
    )
    return row


def render_csv(rows: list[dict[str, Any]]) -> bytes:
    frame = pd.DataFrame(rows, columns=REPORT_COLUMNS)
    return frame.to_csv(index=False).encode("utf-8")


def render_xlsx(rows: list[dict[str, Any]], *, title: str) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = title[:31]
    ws.append([HEADERS[column] for column in REPORT_COLUMNS])
    for row in rows:
        ws.append([row.get(column) for column in REPORT_COLUMNS])
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def render_text(
    rows: list[dict[str, Any]], *, tenant: str, period: str, batch_id: str, generated_at: datetime
) -> bytes:
    errors = [row for row in rows if row.get("parse_error")]
    lines = [
        "NFS-e processing report",
        f"tenant: {tenant}",
        f"period: {period}",
        f"batch: {batch_id}",
        f"generated_at: {generated_at.isoformat()}",
        f"documents: {len(rows)}",
        f"errors: {len(errors)}",
        "",
    ]
    for row in rows:
        status = f"ERROR {row['parse_error']}" if row.get("parse_error") else "ok"
        lines.append(f"{row['number']}\t{row['kind']}\tv{row['version']}\t{row['key']}\t{status}")
    return ("\n".join(lines) + "\n").encode("utf-8")


def build_report(
    organizer: StorageOrganizer,
    *,
    tenant_external_id: str,
    period: str,
    batch_id: str,
    fmt: str,
    generated_at: datetime,
) -> tuple[bytes, int]:
    """Render the report for ``period`` and return its bytes with the row count."""

    rows = collect_rows(organizer, tenant_external_id, period)
    if fmt == "csv":
        payload = render_csv(rows)
    elif fmt == "xlsx":
        payload = render_xlsx(rows, title=f"NFS-e {period}")
    elif fmt == "txt":
        payload = render_text(
            rows, tenant=tenant_external_id, period=period, batch_id=batch_id, generated_at=generated_at
        )
    else:
        raise InvalidPayload(f"unsupported report format: {fmt!r}")
    logger.debug("rendered %s report for %s %s with %d rows", fmt, tenant_external_id, period, len(rows))
    return payload, len(rows)
