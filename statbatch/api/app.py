from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from statbatch.api.routes.batches import router as batches_router
from statbatch.api.routes.health import router as health_router
from statbatch.api.routes.maintenance import router as maintenance_router
from statbatch.api.routes.worker import router as worker_router
from statbatch.batches.activity import ActivityLog
from statbatch.batches.health import BatchHealthService
from statbatch.batches.orchestrator import BatchOrchestrator
from statbatch.batches.poller import ProgressPoller
from statbatch.batches.store import BatchStore
from statbatch.core.config import get_settings
from statbatch.core.logging import configure_logging
from statbatch.db.init_db import initialize_database
from statbatch.db.session import get_session_factory
from statbatch.worker.trigger import HttpWorkerTrigger, WorkerTrigger

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    initialize_database()

    store = BatchStore(settings=settings, session_factory=get_session_factory())
    poller = ProgressPoller(
        store.refresh_batches,
        interval_seconds=settings.poll_interval_seconds,
        stop_timeout_seconds=settings.poll_stop_timeout_seconds,
        max_finished_views=settings.poll_finished_views,
    )
    activity_log = ActivityLog(settings.activity_log_size)
    poller.subscribe(activity_log)

    http_trigger: HttpWorkerTrigger | None = None
    trigger: WorkerTrigger | None = app.state.worker_trigger
    if trigger is None:
        http_trigger = HttpWorkerTrigger(settings)
        trigger = http_trigger

    orchestrator = BatchOrchestrator(settings=settings, store=store, trigger=trigger, poller=poller)
    orchestrator.on_sync(activity_log.record_sync)

    app.state.store = store
    app.state.poller = poller
    app.state.activity_log = activity_log
    app.state.orchestrator = orchestrator
    app.state.health_service = BatchHealthService(settings=settings, store=store)

    orchestrator.resume_watching()
    try:
        yield
    finally:
        orchestrator.close()
        poller.close()
        if http_trigger is not None:
            http_trigger.close()
        logger.info("statbatch shut down")


def create_app(worker_trigger: WorkerTrigger | None = None) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.worker_trigger = worker_trigger
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(batches_router, prefix="/api/v1")
    app.include_router(worker_router, prefix="/api/v1")
    app.include_router(maintenance_router, prefix="/api/v1")
    return app
