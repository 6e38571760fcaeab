from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from jobengine.agents.content_agents import build_content_agents
from jobengine.agents.registry import AgentRegistry
from jobengine.config.load_config import AppConfig, load_app_config
from jobengine.llm.openai_compat import ChatClient, OpenAICompatibleChatClient, llm_configured
from jobengine.runtime.executor_registry import ExecutorRegistry
from jobengine.runtime.executors import (
    ArticlePipelineExecutor,
    ContractorEnrichmentExecutor,
    ImageEnrichmentExecutor,
    ReviewerImageExecutor,
)
from jobengine.runtime.job_runner import JobRunner
from jobengine.storage.object_store import LocalObjectStore
from jobengine.storage.sqlite_store import JOB_KINDS, SQLiteStore
from jobengine.tools.email_sender import EmailSender, build_email_sender
from jobengine.tools.image_fetch import RateLimitedImageFetcher


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything built once at startup and shared (by reference) by the API, worker and scripts."""

    config: AppConfig
    executors: ExecutorRegistry
    agents: AgentRegistry
    object_store: LocalObjectStore
    email_sender: EmailSender
    missing_executors: list[str] = field(default_factory=list)
    missing_agents: list[str] = field(default_factory=list)

    def runner(self, store: SQLiteStore) -> JobRunner:
        return JobRunner(
            store,
            self.executors,
            self.config.jobs,
            email_sender=self.email_sender,
            notify_on_failure=self.config.email.notify_on_permanent_failure,
        )

    def startup_report(self) -> dict[str, Any]:
        return {
            "registered_kinds": self.executors.registered_kinds(),
            "missing_executors": list(self.missing_executors),
            "missing_agents": list(self.missing_agents),
        }


def build_runtime(
    config: AppConfig | None = None,
    *,
    llm: ChatClient | None = None,
    email_sender: EmailSender | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Runtime:
    cfg = config or load_app_config()
    object_store = LocalObjectStore(cfg.storage.object_store_dir, public_base_url=cfg.storage.public_base_url)
    fetcher = RateLimitedImageFetcher(cfg.fetch, object_store, sleep=sleep)

    executors = ExecutorRegistry()
    images = ImageEnrichmentExecutor(fetcher, prefix=cfg.fetch.contractor_image_prefix)
    executors.register("image_enrichment", images)
    executors.register("image_enrichment_retry", images)
    reviewer = ReviewerImageExecutor(fetcher)
    executors.register("review_enrichment", reviewer)
    executors.register("reviewer_image_retry", reviewer)

    agents = AgentRegistry()
    if llm is None and llm_configured():
        llm = OpenAICompatibleChatClient()
    if llm is not None:
        for agent in build_content_agents(llm, cfg):
            agents.register(agent)
        executors.register("contractor_enrichment", ContractorEnrichmentExecutor(llm, cfg))
    else:
        logger.warning("OPENAI_API_KEY not set: LLM-backed job kinds are disabled")

    missing_agents = agents.validate_pipeline()
    if missing_agents:
        logger.warning("article pipeline misconfigured, missing agents: %s", ", ".join(missing_agents))
    else:
        executors.register("article_pipeline", ArticlePipelineExecutor(agents, cfg))

    missing_executors = executors.validate_complete(JOB_KINDS)
    if missing_executors:
        logger.warning("no executor registered for job kinds: %s", ", ".join(missing_executors))
    executors.freeze()

    return Runtime(
        config=cfg,
        executors=executors,
        agents=agents,
        object_store=object_store,
        email_sender=email_sender or build_email_sender(cfg.email),
        missing_executors=missing_executors,
        missing_agents=missing_agents,
    )
