from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lrs.api.errors import install_error_handlers
from lrs.api.health import router as health_router
from lrs.api.metrics_endpoint import router as metrics_router
from lrs.api.progress import router as progress_router
from lrs.api.verbs import router as verbs_router
from lrs.api.xapi import router as xapi_router
from lrs.core.config import SETTINGS
from lrs.core.logging import setup_logging
from lrs.db.engine import lifespan_db
from lrs.db.redis import lifespan_redis, redis_pool
from lrs.middleware.metrics import MetricsMiddleware
from lrs.middleware.request_context import RequestContextMiddleware
from lrs.services.lrs_service import learning_record_service
from lrs.worker import drain, run_worker

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _in_process_worker() -> AsyncGenerator[None, None]:
    """Without Redis the queue lives in this process, so the worker does too."""
    if redis_pool is not None:
        yield
        return

    stop = asyncio.Event()
    task = asyncio.create_task(run_worker(learning_record_service, stop))
    try:
        yield
    finally:
        stop.set()
        await task
        # Whatever was queued after the last poll still gets derived
        processed = await drain(learning_record_service)
        if processed:
            logger.info("Drained %d queued tasks at shutdown", processed)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Teardown runs in reverse order: worker, then Redis, then the DB engine
    async with lifespan_db():
        async with lifespan_redis():
            await learning_record_service.start()
            async with _in_process_worker():
                yield


app = FastAPI(
    title="learning-record-service",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last-added runs first: RequestContext -> Metrics -> CORS -> route
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

install_error_handlers(app)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(xapi_router)
app.include_router(progress_router)
app.include_router(verbs_router)

logger.info(
    "learning-record-service started  env=%s log_level=%s port=%d docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
)
