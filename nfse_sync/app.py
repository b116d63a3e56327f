from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nfse_sync import __version__
from nfse_sync.application import configure_job_service
from nfse_sync.core.config import load_settings
from nfse_sync.routes import jobs, tenants
from nfse_sync.workers import Runtime, build_runtime


def create_app(runtime: Runtime | None = None, *, start_workers: bool = True) -> FastAPI:
    """Build the HTTP API around ``runtime``.

    The job queue lives inside this process, so by default the processor
    and scheduler run for the lifetime of the application and execute the
    jobs the API enqueues. ``start_workers=False`` leaves them stopped,
    which is only useful when the caller drives ``runtime.processor``
    itself.
    """

    runtime = runtime or build_runtime(load_settings())
    configure_job_service(runtime.service)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if start_workers:
            runtime.start()
        try:
            yield
        finally:
            if start_workers:
                runtime.stop()

    app = FastAPI(title="NFS-e Sync API", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs.router, prefix="/api")
    app.include_router(tenants.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "NFS-e Sync API",
                "docs": "/docs",
                "health": "/api/jobs",
            }
        )

    return app
