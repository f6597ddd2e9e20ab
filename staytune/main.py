"""ASGI entrypoint: ``uvicorn staytune.main:app``.

The lifespan owns the process-wide resources.  Logging is configured
first so startup failures are logged in the deployed format.  The database
engine comes before the worker pool because workers open their own
sessions.  On shutdown, queued training tasks are drained before the
engine is disposed.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from staytune import __version__
from staytune.api.deps import get_client_factory
from staytune.api.training import router as training_router
from staytune.config import get_settings
from staytune.database import close_db, get_session_factory, init_db
from staytune.infra.background_worker import BackgroundWorkerPool, get_worker_pool, set_worker_pool
from staytune.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    configure_logging(
        json_logs=settings.json_logs,
        log_level="DEBUG" if settings.debug else "INFO",
    )
    log.info(
        "app.starting",
        environment=settings.environment,
        db_url=settings.database_url.split("@")[-1],
        workers=settings.background_worker_concurrency,
    )

    init_db(settings)
    worker_pool = BackgroundWorkerPool(
        session_factory=get_session_factory(),
        client_factory=get_client_factory(),
        settings=settings,
        max_workers=settings.background_worker_concurrency,
        max_retries=settings.background_worker_max_retries,
    )
    await worker_pool.start()
    set_worker_pool(worker_pool)
    log.info("app.started")

    try:
        yield
    finally:
        log.info("app.stopping")
        await worker_pool.shutdown(drain=True)
        set_worker_pool(None)
        await close_db()
        log.info("app.stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="StayTune",
        description="Continuous fine-tuning pipeline for hotel assistants",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url=None,
    )
    app.add_middleware(RequestIdMiddleware)
    app.include_router(training_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        """Liveness plus whether the training workers are accepting tasks."""
        try:
            workers = "running" if get_worker_pool().is_running else "stopped"
        except RuntimeError:
            workers = "not_started"
        return {"status": "ok", "version": __version__, "workers": workers}

    return app


app = create_app()
