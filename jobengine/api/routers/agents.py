from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from jobengine.api.dependencies import get_runtime
from jobengine.runtime.bootstrap import Runtime


router = APIRouter()


@router.get("/agents")
def list_agents(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    missing = runtime.agents.validate_pipeline()
    return {
        "agents": runtime.agents.agent_info(),
        "pipeline_ready": not missing,
        "missing": missing,
        "max_iterations": runtime.config.pipeline.max_iterations,
    }
