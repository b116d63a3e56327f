"""Infrastructure layer exports."""

from .duckdb_jobs import DuckDBJobStore
from .fiscal_api import DocumentFetcher, HttpDocumentFetcher
from .jobs import InMemoryJobStore, JobStore
from .objects import InMemoryObjectStore, LocalObjectStore, ObjectStore
from .tenants import InMemoryTenantRegistry, TenantRegistry

__all__ = [
    "DocumentFetcher",
    "DuckDBJobStore",
    "HttpDocumentFetcher",
    "InMemoryJobStore",
    "InMemoryObjectStore",
    "InMemoryTenantRegistry",
    "JobStore",
    "LocalObjectStore",
    "ObjectStore",
    "TenantRegistry",
]
