from __future__ import annotations

import hmac
import logging
import os
import threading

from fastapi import Request

from jobengine.api.errors import APIError
from jobengine.runtime.bootstrap import Runtime, build_runtime


logger = logging.getLogger(__name__)

_RUNTIME_INIT_LOCK = threading.Lock()


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency: the process-wide Runtime (built once, cached on `app.state`)."""
    cached = getattr(request.app.state, "runtime", None)
    if isinstance(cached, Runtime):
        return cached

    with _RUNTIME_INIT_LOCK:
        cached2 = getattr(request.app.state, "runtime", None)
        if isinstance(cached2, Runtime):
            return cached2
        runtime = build_runtime()
        request.app.state.runtime = runtime
        return runtime


def check_runner_secret(provided: str | None) -> None:
    """Constant-time check of the execution trigger's shared secret."""
    expected = os.getenv("JOB_RUNNER_SECRET", "")
    if not expected:
        logger.error("JOB_RUNNER_SECRET is not configured; refusing to execute jobs")
        raise APIError(status_code=500, code="internal", message="Job runner not configured.")

    if not hmac.compare_digest((provided or "").encode("utf-8"), expected.encode("utf-8")):
        raise APIError(status_code=401, code="unauthorized", message="Invalid job runner secret.")
