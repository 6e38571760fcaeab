from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends, Request

from jobengine.api.dependencies import get_runtime
from jobengine.runtime.bootstrap import Runtime
from jobengine.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "jobengine",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "pydantic": _pkg_version("pydantic"),
            "openai": _pkg_version("openai"),
        },
        "ts": time.time(),
    }


@router.get("/system/worker")
def system_worker(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    worker = getattr(request.app.state, "job_worker", None)
    worker_snapshot: dict[str, Any] = {"enabled": worker is not None, "running": False}
    if worker is not None:
        worker_snapshot.update(worker.status_snapshot())

    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "worker": worker_snapshot,
            "queue": {"jobs_by_status": store.count_jobs_by_status()},
            "startup": {
                "reconciled_processing_jobs": getattr(request.app.state, "reconciled_processing_jobs", 0),
                **runtime.startup_report(),
            },
        }
    finally:
        store.close()
