"""Domain layer definitions."""

from .documents import (
    CONTENT_TYPES,
    DocumentKind,
    FetchedDocument,
    StoredDocument,
    StoredObject,
    StoreResult,
    content_type_for,
)
from .jobs import (
    DEFAULT_MAX_RETRIES,
    PRIORITY_MANUAL,
    PRIORITY_REPORT,
    PRIORITY_SCHEDULED,
    ConsultPeriodParams,
    GenerateReportParams,
    Job,
    JobKind,
    JobParams,
    JobStatus,
    ProcessDocumentParams,
    SyncDocumentsParams,
    parse_params,
)
from .tenants import Tenant, TenantCredential

__all__ = [
    "CONTENT_TYPES",
    "ConsultPeriodParams",
    "DEFAULT_MAX_RETRIES",
    "DocumentKind",
    "FetchedDocument",
    "GenerateReportParams",
    "Job",
    "JobKind",
    "JobParams",
    "JobStatus",
    "PRIORITY_MANUAL",
    "PRIORITY_REPORT",
    "PRIORITY_SCHEDULED",
    "ProcessDocumentParams",
    "StoreResult",
    "StoredDocument",
    "StoredObject",
    "SyncDocumentsParams",
    "Tenant",
    "TenantCredential",
    "content_type_for",
    "parse_params",
]
