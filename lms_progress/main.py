from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lms_progress.api.admin import router as admin_router
from lms_progress.api.completions import router as completions_router
from lms_progress.api.health import router as health_router
from lms_progress.api.metrics_endpoint import router as metrics_router
from lms_progress.api.progress import router as progress_router
from lms_progress.core.config import SETTINGS
from lms_progress.core.logging import setup_logging
from lms_progress.db.engine import lifespan_db
from lms_progress.db.redis import lifespan_redis
from lms_progress.errors import (
    CompletionValidationError,
    SnapshotNotFoundError,
    TransientStoreError,
)
from lms_progress.middleware.metrics import MetricsMiddleware
from lms_progress.middleware.request_context import RequestContextMiddleware
from lms_progress.services.sessions import session_registry

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Sessions are disposed before Redis and the engine go away; their
    # pending attempts stay in the durable log for the next start.
    async with lifespan_db():
        async with lifespan_redis():
            try:
                yield
            finally:
                await session_registry.dispose_all()


app = FastAPI(
    title="lms-progress-service",
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

# Last-added runs first: RequestContext → Metrics → CORS → route handler.
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(CompletionValidationError)
async def _validation_error(_request: Request, exc: CompletionValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(SnapshotNotFoundError)
async def _snapshot_not_found(_request: Request, exc: SnapshotNotFoundError) -> JSONResponse:
    # KeyError.__str__ adds quotes, so read the audit id from args.
    return JSONResponse(status_code=404, content={"detail": f"Snapshot {exc.args[0]} not found"})


@app.exception_handler(TransientStoreError)
async def _store_unavailable(_request: Request, exc: TransientStoreError) -> JSONResponse:
    logger.warning("Store unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Store temporarily unavailable"})


app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(completions_router)
app.include_router(progress_router)
app.include_router(admin_router)

logger.info(
    "lms-progress-service started  env=%s log_level=%s port=%d docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
)
