"""Multi-tenant NFS-e ingestion pipeline."""

__version__ = "0.1.0"
