# Annotations stay eagerly evaluated: FastAPI resolves the rate-limited route through slowapi's wrapper,
# whose module globals cannot see the names imported here.
import math
import time
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from jobengine.api.dependencies import check_runner_secret, get_runtime
from jobengine.api.errors import APIError, job_api_error
from jobengine.api.rate_limit import execute_limit, limiter
from jobengine.runtime.bootstrap import Runtime
from jobengine.runtime.errors import JobNotFoundError
from jobengine.storage.sqlite_store import JOB_KINDS, JOB_STATUSES, JobRecord, SQLiteStore


router = APIRouter()


class CreateJobRequest(BaseModel):
    kind: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = Field(default=None, max_length=320)
    delay_s: float | None = Field(default=None, ge=0, description="Schedule the job this many seconds from now.")


class ActorRequest(BaseModel):
    actor: str | None = Field(default=None, max_length=320)


def _get_job_or_404(store: SQLiteStore, job_id: str) -> JobRecord:
    job = store.get_job(job_id)
    if job is None:
        raise job_api_error(JobNotFoundError(job_id))
    return job


@router.post("/jobs")
def create_job(req: CreateJobRequest) -> dict[str, Any]:
    kind = req.kind.strip()
    if kind not in JOB_KINDS:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"Unknown job kind: {kind}",
            details={"allowed": list(JOB_KINDS)},
        )

    store = SQLiteStore()
    try:
        scheduled_for = time.time() + req.delay_s if req.delay_s else None
        job = store.create_job(
            kind=kind,
            payload=req.payload,
            created_by=req.created_by,
            scheduled_for=scheduled_for,
        )
        return {"job": job.to_dict()}
    finally:
        store.close()


@router.get("/jobs")
def list_jobs(
    status: list[str] | None = Query(default=None),
    kind: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    jobs_cfg = runtime.config.jobs
    page_size = int(limit or jobs_cfg.list_default_limit)
    if page_size > jobs_cfg.list_max_limit:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"limit must be <= {jobs_cfg.list_max_limit}.",
        )
    bad = [s for s in (status or []) if s not in JOB_STATUSES]
    if bad:
        raise APIError(status_code=400, code="invalid_argument", message=f"Unknown status: {', '.join(bad)}")

    store = SQLiteStore()
    try:
        items, total = store.list_jobs_page(statuses=status or None, kind=kind, limit=page_size, offset=offset)
        return {
            "items": [j.to_dict() for j in items],
            "pagination": {
                "total": total,
                "limit": page_size,
                "offset": offset,
                "total_pages": math.ceil(total / page_size) if total else 0,
                "page": offset // page_size + 1,
            },
        }
    finally:
        store.close()


@router.post("/jobs/run-next")
@limiter.limit(execute_limit)
def run_next_job(
    request: Request,
    kind: str | None = Query(default=None),
    x_job_runner_secret: str | None = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    """Claim and execute the oldest due job (external scheduler entry point).

    The rate limit is checked before the secret, so guessing secrets also spends the budget.
    """
    check_runner_secret(x_job_runner_secret)
    store = SQLiteStore()
    try:
        report = runtime.runner(store).run_next(kind=kind)
        return {"executed": report is not None, "report": report.to_dict() if report is not None else None}
    finally:
        store.close()


@router.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"job": _get_job_or_404(store, job_id).to_dict()}
    finally:
        store.close()


@router.get("/jobs/{job_id}/progress")
def get_job_progress(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job = _get_job_or_404(store, job_id)
        percent: float | None = None
        if job.total_items:
            percent = round(100.0 * min(job.processed_items, job.total_items) / job.total_items, 1)
        elif job.status == "completed":
            percent = 100.0
        return {
            "job_id": job.job_id,
            "status": job.status,
            "total_items": job.total_items,
            "processed_items": job.processed_items,
            "failed_items": job.failed_items,
            "percent": percent,
        }
    finally:
        store.close()


@router.get("/jobs/{job_id}/logs")
def get_job_logs(job_id: str, limit: int = Query(default=200, ge=1, le=1000)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        _get_job_or_404(store, job_id)
        return {"job_id": job_id, "items": [log.to_dict() for log in store.list_job_logs(job_id, limit=limit)]}
    finally:
        store.close()


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, req: ActorRequest | None = None) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        cancelled = store.cancel_job(job_id, cancelled_by=req.actor if req else None)
        return {"cancelled": cancelled, "job": _get_job_or_404(store, job_id).to_dict()}
    finally:
        store.close()


@router.post("/jobs/{job_id}/retry")
def retry_job(job_id: str, req: ActorRequest | None = None) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job = store.retry_failed_job(job_id, created_by=req.actor if req else None)
        return {"job": job.to_dict(), "retried_from": job_id}
    finally:
        store.close()
