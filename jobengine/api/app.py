from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from jobengine.api.errors import (
    APIError,
    api_error_handler,
    job_error_handler,
    rate_limit_exceeded_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from jobengine.api.rate_limit import configure_execute_limit, limiter
from jobengine.runtime.bootstrap import Runtime, build_runtime
from jobengine.runtime.errors import JobEngineError
from jobengine.runtime.worker import JobWorker
from jobengine.storage.sqlite_store import SQLiteStore

from .routers.agents import router as agents_router
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("JOBENGINE_CORS_ORIGINS", "").strip()
    if not raw:
        return ["http://localhost:3000", "http://127.0.0.1:3000"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime()
        configure_execute_limit(app.state.runtime.config.execute)

        # Jobs left 'processing' by a previous process can never finish.
        if _env_bool("JOBENGINE_RECONCILE_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                app.state.reconciled_processing_jobs = store.reconcile_processing_jobs(
                    older_than_s=app.state.runtime.config.worker.processing_lease_s,
                )
            finally:
                store.close()
            if app.state.reconciled_processing_jobs:
                logger.warning("reconciled %d stale processing job(s)", app.state.reconciled_processing_jobs)
        else:
            app.state.reconciled_processing_jobs = 0

        # Single background worker (single-instance assumption).
        if _env_bool("JOBENGINE_ENABLE_WORKER", True):
            worker = JobWorker(app.state.runtime)
            worker.start()
            app.state.job_worker = worker
        try:
            yield
        finally:
            worker = getattr(app.state, "job_worker", None)
            if worker is not None:
                worker.stop()

    app = FastAPI(title="jobengine API", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.limiter = limiter

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(JobEngineError, job_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(agents_router, prefix="/api/v1", tags=["agents"])
    return app


app = create_app()
