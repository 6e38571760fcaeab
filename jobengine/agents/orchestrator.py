from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from jobengine.runtime.errors import AgentError, MisconfiguredPipelineError
from jobengine.storage.sqlite_store import SQLiteStore

from .registry import AgentRegistry
from .types import PIPELINE_ORDER, REVISION_STAGES, Agent, AgentType, PipelineContext


logger = logging.getLogger(__name__)


class PipelineRunNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class PipelineResult:
    run_id: str
    success: bool
    context: PipelineContext
    failed_stage: str | None = None
    error: str | None = None

    @property
    def iterations(self) -> int:
        return self.context.iteration

    def summary(self) -> dict[str, Any]:
        qa = self.context.output(AgentType.QA) or {}
        pm = self.context.output(AgentType.PROJECT_MANAGER) or {}
        article = self.context.output(AgentType.WRITER) or {}
        return {
            "run_id": self.run_id,
            "success": self.success,
            "keyword": self.context.keyword,
            "iterations": self.context.iteration,
            "completed_stages": list(self.context.completed_stages),
            "failed_stage": self.failed_stage,
            "error": self.error,
            "title": article.get("title"),
            "slug": article.get("slug"),
            "qa_passed": qa.get("passed"),
            "ready_for_publish": pm.get("ready_for_publish"),
            "total_tokens": self.context.total_tokens,
        }


class PipelineOrchestrator:
    """Runs Research -> Writer -> SEO -> QA -> ProjectManager over one context.

    After each successful stage the context is checkpointed to `pipeline_runs`, so `resume(run_id)`
    continues after the last completed stage. When QA does not pass and iterations remain,
    Writer, SEO and QA run again with the QA feedback before ProjectManager.
    """

    def __init__(self, stages: list[Agent], store: SQLiteStore, *, max_iterations: int = 3) -> None:
        if [AgentType(a.agent_type) for a in stages] != list(PIPELINE_ORDER):
            raise MisconfiguredPipelineError([t.value for t in PIPELINE_ORDER])
        self._stages = stages
        self._store = store
        self._max_iterations = max(1, int(max_iterations))

    @classmethod
    def build(cls, registry: AgentRegistry, store: SQLiteStore, *, max_iterations: int = 3) -> PipelineOrchestrator:
        missing = registry.validate_pipeline()
        if missing:
            raise MisconfiguredPipelineError(missing)
        return cls(registry.pipeline_agents(), store, max_iterations=max_iterations)

    def run(self, *, keyword: str, settings: dict[str, Any] | None = None, job_id: str | None = None) -> PipelineResult:
        kw = (keyword or "").strip()
        if not kw:
            raise ValueError("keyword is required.")
        ctx = PipelineContext(keyword=kw, settings=dict(settings or {}))
        run_id = self._store.create_pipeline_run(keyword=kw, settings=ctx.settings, job_id=job_id)
        logger.info("pipeline run %s started for %r", run_id, kw)
        return self._execute(run_id, ctx, job_id=job_id)

    def resume(self, run_id: str, *, job_id: str | None = None) -> PipelineResult:
        run = self._store.get_pipeline_run(run_id)
        if run is None:
            raise PipelineRunNotFoundError(run_id)

        saved = run["context"]
        ctx = (
            PipelineContext.from_dict(saved)
            if saved
            else PipelineContext(keyword=run["keyword"], settings=run["settings"])
        )
        if run["status"] == "completed":
            return PipelineResult(run_id=run_id, success=True, context=ctx)

        if job_id and job_id != run["job_id"]:
            self._store.set_pipeline_run_job(run_id, job_id)
        self._store.set_pipeline_run_status(run_id, "processing")
        logger.info("pipeline run %s resumed after %s", run_id, run["last_completed_stage"] or "<start>")
        return self._execute(run_id, ctx, job_id=job_id or run["job_id"])

    def _needs_revision(self, ctx: PipelineContext) -> bool:
        qa = ctx.output(AgentType.QA) or {}
        return not bool(qa.get("passed")) and ctx.iteration < self._max_iterations

    def _execute(self, run_id: str, ctx: PipelineContext, *, job_id: str | None) -> PipelineResult:
        while True:
            revised = False
            for agent in self._stages:
                stage = AgentType(agent.agent_type).value
                if stage in ctx.completed_stages:
                    continue

                error = self._run_stage(run_id, agent, ctx)
                if error is not None:
                    self._store.set_pipeline_run_status(run_id, "failed", error=error, failed_stage=stage)
                    if job_id:
                        self._store.append_job_log(
                            job_id,
                            level="error",
                            action="pipeline.stage_failed",
                            message=f"Stage {stage} failed: {error}",
                            data={"run_id": run_id, "stage": stage, "iteration": ctx.iteration},
                        )
                    logger.warning("pipeline run %s failed at %s: %s", run_id, stage, error)
                    return PipelineResult(run_id=run_id, success=False, context=ctx, failed_stage=stage, error=error)

                ctx.completed_stages.append(stage)
                if stage == AgentType.QA.value and self._needs_revision(ctx):
                    qa = ctx.output(AgentType.QA) or {}
                    ctx.qa_feedback = str(qa.get("feedback") or "")
                    ctx.iteration += 1
                    redo = {t.value for t in REVISION_STAGES}
                    ctx.completed_stages = [s for s in ctx.completed_stages if s not in redo]
                    revised = True

                self._store.save_pipeline_checkpoint(run_id, context=ctx.to_dict(), last_completed_stage=stage)
                if job_id:
                    self._store.append_job_log(
                        job_id,
                        action="pipeline.stage_completed",
                        message=f"Stage {stage} completed (iteration {ctx.iteration})",
                        data={"run_id": run_id, "stage": stage, "revision_requested": revised},
                    )
                if revised:
                    break
            if not revised:
                break

        self._store.set_pipeline_run_status(run_id, "completed")
        logger.info("pipeline run %s completed in %d iteration(s)", run_id, ctx.iteration)
        return PipelineResult(run_id=run_id, success=True, context=ctx)

    def _run_stage(self, run_id: str, agent: Agent, ctx: PipelineContext) -> str | None:
        stage = AgentType(agent.agent_type).value
        step_id = self._store.start_pipeline_step(
            run_id,
            agent_type=stage,
            iteration=ctx.iteration,
            inputs={"keyword": ctx.keyword, "completed_stages": list(ctx.completed_stages)},
        )
        try:
            updated = agent.run(ctx)
        except AgentError as e:
            self._store.finish_pipeline_step(step_id, error=str(e))
            return str(e)
        except Exception as e:
            msg = f"{type(e).__name__}: {e}"
            logger.exception("agent %s raised in run %s", stage, run_id)
            self._store.finish_pipeline_step(step_id, error=msg)
            return msg

        if updated is not ctx:
            # Merge outputs when an agent hands back a fresh context.
            ctx.outputs.update(updated.outputs)
        self._store.finish_pipeline_step(step_id, output=ctx.outputs.get(stage) or {})
        return None
