"""Wiring of stores, services, processor and scheduler from :class:`Settings`."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from nfse_sync.application import ConsultationService, JobHandlers, JobService, StorageOrganizer
from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.core.config import Settings
from nfse_sync.infrastructure import (
    DocumentFetcher,
    DuckDBJobStore,
    HttpDocumentFetcher,
    InMemoryJobStore,
    InMemoryTenantRegistry,
    JobStore,
    LocalObjectStore,
    ObjectStore,
    TenantRegistry,
)

from .processor import JobProcessor
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    store: JobStore
    registry: TenantRegistry
    objects: ObjectStore
    fetcher: DocumentFetcher
    organizer: StorageOrganizer
    processor: JobProcessor
    scheduler: Scheduler
    service: JobService

    def start(self) -> None:
        self.processor.start()
        if self.settings.scheduler_enabled:
            self.scheduler.start()
        else:
            logger.info("automatic sync disabled, scheduler not started")

    def stop(self, timeout: float | None = 30.0) -> None:
        self.scheduler.stop(timeout)
        self.processor.stop(timeout)
        for resource in (self.fetcher, self.store):
            close = getattr(resource, "close", None)
            if callable(close):
                close()


def build_runtime(
    settings: Settings | None = None,
    *,
    store: JobStore | None = None,
    registry: TenantRegistry | None = None,
    objects: ObjectStore | None = None,
    fetcher: DocumentFetcher | None = None,
    clock: Clock = utc_now,
) -> Runtime:
    """Assemble a :class:`Runtime`; any collaborator passed in replaces the configured one."""

    settings = settings or Settings()

    if store is None:
        if settings.job_db_path:
            store = DuckDBJobStore(settings.job_db_path, clock=clock, default_max_retries=settings.max_retries)
        else:
            store = InMemoryJobStore(clock=clock, default_max_retries=settings.max_retries)
    if registry is None:
        if settings.tenants_file:
            registry = InMemoryTenantRegistry.from_yaml(settings.tenants_file)
        else:
            registry = InMemoryTenantRegistry()
    if objects is None:
        objects = LocalObjectStore(settings.storage_root)
    if fetcher is None:
        fetcher = HttpDocumentFetcher(
            base_url=settings.fiscal_api_base_url,
            timeout=settings.fiscal_api_timeout,
            max_pages=settings.fetch_max_pages,
            page_delay=settings.fetch_page_delay,
        )

    organizer = StorageOrganizer(objects, clock=clock)
    consultation = ConsultationService(registry, fetcher, organizer, clock=clock)
    handlers = JobHandlers(registry, consultation, organizer, clock=clock)
    processor = JobProcessor(
        store,
        handlers.mapping(),
        interval=settings.processor_interval,
        batch_size=settings.batch_size,
        base_backoff=settings.retry_base_backoff,
        clock=clock,
    )
    scheduler = Scheduler(
        store,
        registry,
        discovery_interval=settings.sync_discovery_interval,
        credential_cleanup_interval=settings.credential_cleanup_interval,
        job_cleanup_interval=settings.job_cleanup_interval,
        job_retention_days=settings.job_retention_days,
        reaper_interval=settings.reaper_interval,
        running_job_timeout=settings.running_job_timeout,
        clock=clock,
    )
    service = JobService(store, registry, organizer, clock=clock, on_cancel=processor.signal_cancel)
    return Runtime(
        settings=settings,
        store=store,
        registry=registry,
        objects=objects,
        fetcher=fetcher,
        organizer=organizer,
        processor=processor,
        scheduler=scheduler,
        service=service,
    )
