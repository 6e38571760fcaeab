from __future__ import annotations

import logging
from typing import Any

from jobengine.agents.orchestrator import PipelineOrchestrator, PipelineResult
from jobengine.agents.registry import AgentRegistry
from jobengine.agents.types import PIPELINE_ORDER
from jobengine.config.load_config import AppConfig
from jobengine.llm.openai_compat import ChatClient
from jobengine.runtime.errors import ExecutionFailedError
from jobengine.runtime.job_runner import Completed, ExecutionContext, ExecutionOutcome, RateLimited, RetryableBatch
from jobengine.storage.sqlite_store import JobRecord
from jobengine.tools.image_fetch import BatchOutcome, BatchRateLimited, FetchItem, RateLimitedImageFetcher
from jobengine.utils.json_extract import extract_first_json_object
from jobengine.utils.template import render_template


logger = logging.getLogger(__name__)


DEFAULT_SERVICE_TYPES = (
    "roofing",
    "plumbing",
    "electrical",
    "hvac",
    "landscaping",
    "painting",
    "flooring",
    "remodeling",
    "concrete",
    "fencing",
)


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ExecutionFailedError(f"Invalid payload: '{key}' must be a non-empty string")
    return value.strip()


def _attempt_number(payload: dict[str, Any]) -> int:
    value = payload.get("attempt_number", 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ExecutionFailedError("Invalid payload: 'attempt_number' must be a non-negative integer")
    return value


def _record_batch(ctx: ExecutionContext, contractor_id: str, outcome: BatchOutcome) -> None:
    for d in outcome.downloaded:
        ctx.store.record_contractor_media(
            contractor_id=contractor_id,
            source_url=d.source_url,
            storage_path=d.storage_path,
            public_url=d.public_url,
        )
    done = len(outcome.downloaded) + len(outcome.failed)
    ctx.progress(processed_items=done, failed_items=len(outcome.failed))


class ImageEnrichmentExecutor:
    """Downloads contractor gallery images; serves both `image_enrichment` and its retry kind.

    Payload: {"contractor_id": str, "images": [url, ...], "attempt_number": int (retries only)}.
    """

    retry_kind = "image_enrichment_retry"

    def __init__(self, fetcher: RateLimitedImageFetcher, *, prefix: str) -> None:
        self._fetcher = fetcher
        self._prefix = prefix

    def execute(self, job: JobRecord, ctx: ExecutionContext) -> ExecutionOutcome:
        contractor_id = _require_str(job.payload, "contractor_id")
        images = job.payload.get("images")
        if not isinstance(images, list) or not all(isinstance(u, str) and u.strip() for u in images):
            raise ExecutionFailedError("Invalid payload: 'images' must be a list of URLs")
        attempt = _attempt_number(job.payload)

        ctx.progress(total_items=len(images))
        ctx.log("fetch.batch_started", f"Fetching {len(images)} image(s)", data={"attempt_number": attempt})

        items = [FetchItem(url=u.strip(), owner_id=contractor_id) for u in images]
        outcome = self._fetcher.fetch_batch(items, prefix=self._prefix)
        _record_batch(ctx, contractor_id, outcome)

        result: dict[str, Any] = {
            "contractor_id": contractor_id,
            "downloaded": [d.source_url for d in outcome.downloaded],
            "media": [d.public_url for d in outcome.downloaded],
            "failed": [{"url": f.source_url, "error": f.error} for f in outcome.failed],
            "attempt_number": attempt,
        }

        if isinstance(outcome, BatchRateLimited):
            remaining = [i.url for i in outcome.remaining]
            result["deferred"] = remaining
            ctx.log(
                "fetch.rate_limited",
                f"Rate limited at {outcome.rate_limited_url}; {len(remaining)} image(s) deferred",
                level="warn",
                data={"remaining": remaining},
            )
            return RateLimited(
                result=result,
                remainder=RetryableBatch(items=remaining, attempt_number=attempt + 1),
                retry_kind=self.retry_kind,
                continuation_payload={"contractor_id": contractor_id, "images": remaining},
            )
        return Completed(result)


class ReviewerImageExecutor:
    """Downloads reviewer profile photos; serves `review_enrichment` and `reviewer_image_retry`.

    `review_enrichment` payload: {"contractor_id", "reviews": [{"review_id", "reviewer_photo_url"}]}.
    Retry payload: {"contractor_id", "images": [{"review_id", "url"}], "attempt_number"}.
    """

    retry_kind = "reviewer_image_retry"

    def __init__(self, fetcher: RateLimitedImageFetcher) -> None:
        self._fetcher = fetcher

    @staticmethod
    def _photo_items(payload: dict[str, Any], contractor_id: str) -> list[FetchItem]:
        if "images" in payload:
            raw = payload.get("images")
            url_key = "url"
        else:
            raw = payload.get("reviews")
            url_key = "reviewer_photo_url"
        if not isinstance(raw, list):
            raise ExecutionFailedError("Invalid payload: expected a 'reviews' or 'images' list")

        items: list[FetchItem] = []
        for entry in raw:
            if not isinstance(entry, dict) or not str(entry.get("review_id") or "").strip():
                raise ExecutionFailedError("Invalid payload: every entry needs a 'review_id'")
            url = str(entry.get(url_key) or "").strip()
            if url:
                items.append(FetchItem(url=url, owner_id=contractor_id, ref=str(entry["review_id"])))
        return items

    def execute(self, job: JobRecord, ctx: ExecutionContext) -> ExecutionOutcome:
        contractor_id = _require_str(job.payload, "contractor_id")
        attempt = _attempt_number(job.payload)
        items = self._photo_items(job.payload, contractor_id)

        ctx.progress(total_items=len(items))
        outcome = self._fetcher.fetch_batch(items)
        _record_batch(ctx, contractor_id, outcome)

        result: dict[str, Any] = {
            "contractor_id": contractor_id,
            "downloaded": [d.source_url for d in outcome.downloaded],
            "photos": {d.ref: d.public_url for d in outcome.downloaded if d.ref},
            "failed": [{"review_id": f.ref, "url": f.source_url, "error": f.error} for f in outcome.failed],
            "attempt_number": attempt,
        }

        if isinstance(outcome, BatchRateLimited):
            remaining = [{"review_id": i.ref, "url": i.url} for i in outcome.remaining]
            result["deferred"] = remaining
            ctx.log(
                "fetch.rate_limited",
                f"Rate limited; {len(remaining)} reviewer photo(s) deferred",
                level="warn",
                data={"remaining": len(remaining)},
            )
            return RateLimited(
                result=result,
                remainder=RetryableBatch(items=remaining, attempt_number=attempt + 1),
                retry_kind=self.retry_kind,
                continuation_payload={"contractor_id": contractor_id, "images": remaining},
            )
        return Completed(result)


class ContractorEnrichmentExecutor:
    """Classifies contractors into service types with the LLM.

    Payload: {"contractors": [{"id", "name", "description"}], "service_types": [...] (optional)}.
    Per-contractor failures are recorded and do not fail the job.
    """

    def __init__(self, llm: ChatClient, config: AppConfig) -> None:
        self._llm = llm
        self._prompt = config.prompts.contractor_enrichment
        self._temperature = config.pipeline.temperature
        self._batch_size = config.jobs.contractor_batch_size

    def _classify(self, contractor: dict[str, Any], allowed: list[str]) -> dict[str, Any]:
        prompt = render_template(
            self._prompt,
            {
                "name": contractor.get("name") or "",
                "description": contractor.get("description") or "",
                "service_types": allowed,
            },
        )
        resp = self._llm.chat(system="Reply with JSON only.", user=prompt, temperature=self._temperature)
        data = extract_first_json_object(resp.content)
        picked = [str(s).strip().lower() for s in (data.get("service_types") or []) if isinstance(s, str)]
        return {
            "service_types": [s for s in dict.fromkeys(picked) if s in allowed],
            "confidence": float(data.get("confidence") or 0.0),
            "tokens": int((resp.usage or {}).get("total_tokens") or 0),
        }

    def execute(self, job: JobRecord, ctx: ExecutionContext) -> ExecutionOutcome:
        contractors = job.payload.get("contractors")
        if not isinstance(contractors, list) or not all(isinstance(c, dict) for c in contractors):
            raise ExecutionFailedError("Invalid payload: 'contractors' must be a list of objects")
        allowed_raw = job.payload.get("service_types") or list(DEFAULT_SERVICE_TYPES)
        allowed = [str(s).strip().lower() for s in allowed_raw if str(s).strip()]

        batch = contractors[: self._batch_size]
        ctx.progress(total_items=len(batch))

        results: list[dict[str, Any]] = []
        failed = 0
        total_tokens = 0
        for idx, contractor in enumerate(batch, start=1):
            cid = str(contractor.get("id") or "").strip()
            entry: dict[str, Any] = {"contractor_id": cid}
            if not cid or not str(contractor.get("description") or "").strip():
                entry.update(status="skipped", reason="missing id or description")
            else:
                try:
                    classified = self._classify(contractor, allowed)
                except Exception as e:
                    logger.warning("classification failed for contractor %s: %s", cid, e)
                    entry.update(status="failed", reason=f"{type(e).__name__}: {e}")
                    failed += 1
                else:
                    total_tokens += classified.pop("tokens")
                    entry.update(status="success", **classified)
            results.append(entry)
            ctx.progress(processed_items=idx, failed_items=failed)
            ctx.log(
                "enrichment.contractor_done",
                f"{entry['status']}: {cid or '<missing id>'}",
                level="warn" if entry["status"] == "failed" else "info",
                data=entry,
            )

        return Completed(
            {
                "processed": len(results),
                "successful": sum(1 for r in results if r["status"] == "success"),
                "skipped": sum(1 for r in results if r["status"] == "skipped"),
                "failed": failed,
                "not_processed": max(0, len(contractors) - len(batch)),
                "total_tokens": total_tokens,
                "results": results,
            }
        )


class ArticlePipelineExecutor:
    """Runs the article pipeline for `article_pipeline` jobs.

    Payload: {"keyword": str, "settings": {...}, "resume_run_id": str (optional)}.
    A job created by retrying a failed pipeline job resumes that job's last run.
    """

    def __init__(self, agents: AgentRegistry, config: AppConfig) -> None:
        self._agents = agents
        self._max_iterations = config.pipeline.max_iterations

    def _resumable_run_id(self, job: JobRecord, ctx: ExecutionContext) -> str | None:
        explicit = job.payload.get("resume_run_id")
        if isinstance(explicit, str) and explicit.strip():
            return explicit.strip()
        if job.parent_job_id:
            prior = ctx.store.get_latest_pipeline_run_for_job(job.parent_job_id)
            if prior is not None and prior["status"] != "completed":
                return str(prior["run_id"])
        return None

    def execute(self, job: JobRecord, ctx: ExecutionContext) -> ExecutionOutcome:
        keyword = _require_str(job.payload, "keyword")
        settings = job.payload.get("settings") or {}
        if not isinstance(settings, dict):
            raise ExecutionFailedError("Invalid payload: 'settings' must be an object")

        orchestrator = PipelineOrchestrator.build(self._agents, ctx.store, max_iterations=self._max_iterations)
        ctx.progress(total_items=len(PIPELINE_ORDER))

        run_id = self._resumable_run_id(job, ctx)
        result: PipelineResult
        if run_id is not None:
            ctx.log("pipeline.resumed", f"Resuming pipeline run {run_id}", data={"run_id": run_id})
            result = orchestrator.resume(run_id, job_id=job.job_id)
        else:
            result = orchestrator.run(keyword=keyword, settings=settings, job_id=job.job_id)

        done = len(set(result.context.completed_stages))
        ctx.progress(processed_items=done)
        if not result.success:
            raise ExecutionFailedError(
                f"Pipeline failed at stage {result.failed_stage}: {result.error}",
                details=result.summary(),
            )
        return Completed({**result.summary(), "outputs": result.context.outputs})
