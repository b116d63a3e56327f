"""Application services."""

from .consultation import ConsultationResult, ConsultationService
from .handlers import Handler, JobContext, JobHandlers
from .jobs import JobService, configure_job_service, get_job_service
from .parser import ParsedNFSe, parse_nfse
from .storage import StorageOrganizer, parse_document_key

__all__ = [
    "ConsultationResult",
    "ConsultationService",
    "Handler",
    "JobContext",
    "JobHandlers",
    "JobService",
    "ParsedNFSe",
    "StorageOrganizer",
    "configure_job_service",
    "get_job_service",
    "parse_document_key",
    "parse_nfse",
]
