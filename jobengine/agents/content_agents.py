from __future__ import annotations

import re
from typing import Any

from jobengine.config.load_config import AppConfig
from jobengine.llm.openai_compat import ChatClient
from jobengine.runtime.errors import AgentError
from jobengine.utils.json_extract import JSONExtractionError, extract_first_json_object
from jobengine.utils.template import render_template

from .types import AgentType, PipelineContext


SYSTEM_PROMPT = "You are one stage of a content pipeline for a contractor directory. Reply with JSON only."


def _slugify(text: str) -> str:
    s = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return s[:80].rstrip("-")


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def _clamp_int(value: Any, lo: int, hi: int, *, default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, n))


def _truncate(text: str, limit: int) -> str:
    t = (text or "").strip()
    return t if len(t) <= limit else t[: limit - 1].rstrip() + "…"


class LLMAgent:
    """Shared prompt -> LLM -> JSON -> validated output flow for the content agents."""

    agent_type: AgentType
    description = ""

    def __init__(self, llm: ChatClient, prompt_template: str, *, temperature: float) -> None:
        self._llm = llm
        self._template = prompt_template
        self._temperature = float(temperature)

    def _fail(self, message: str) -> AgentError:
        return AgentError(self.agent_type.value, message)

    def _require(self, ctx: PipelineContext, upstream: AgentType) -> dict[str, Any]:
        out = ctx.output(upstream)
        if out is None:
            raise self._fail(f"missing {upstream.value} output in context")
        return out

    def variables(self, ctx: PipelineContext) -> dict[str, Any]:
        return {"keyword": ctx.keyword, "settings": ctx.settings, "iteration": ctx.iteration}

    def parse(self, data: dict[str, Any], ctx: PipelineContext) -> dict[str, Any]:
        raise NotImplementedError

    def run(self, ctx: PipelineContext) -> PipelineContext:
        prompt = render_template(self._template, self.variables(ctx))
        try:
            resp = self._llm.chat(system=SYSTEM_PROMPT, user=prompt, temperature=self._temperature)
        except Exception as e:
            raise self._fail(f"LLM call failed: {type(e).__name__}: {e}") from e
        try:
            data = extract_first_json_object(resp.content)
        except JSONExtractionError as e:
            raise self._fail(f"invalid JSON output: {e}") from e

        ctx.outputs[self.agent_type.value] = self.parse(data, ctx)
        ctx.total_tokens += int((resp.usage or {}).get("total_tokens") or 0)
        return ctx


class ResearchAgent(LLMAgent):
    agent_type = AgentType.RESEARCH
    description = "Keyword research: related keywords, reader questions and content gaps."

    def parse(self, data: dict[str, Any], ctx: PipelineContext) -> dict[str, Any]:
        return {
            "keyword": str(data.get("keyword") or ctx.keyword),
            "related_keywords": _str_list(data.get("related_keywords")),
            "questions": _str_list(data.get("questions")),
            "content_gaps": _str_list(data.get("content_gaps")),
            "recommended_word_count": _clamp_int(data.get("recommended_word_count"), 300, 10000, default=0) or None,
        }


class WriterAgent(LLMAgent):
    agent_type = AgentType.WRITER
    description = "Drafts (or revises, given QA feedback) the article body."

    def __init__(self, llm: ChatClient, prompt_template: str, *, temperature: float, default_word_count: int) -> None:
        super().__init__(llm, prompt_template, temperature=temperature)
        self._default_word_count = int(default_word_count)

    def target_word_count(self, ctx: PipelineContext) -> int:
        research = ctx.output(AgentType.RESEARCH) or {}
        return int(
            ctx.settings.get("target_word_count")
            or research.get("recommended_word_count")
            or self._default_word_count
        )

    def variables(self, ctx: PipelineContext) -> dict[str, Any]:
        return {
            **super().variables(ctx),
            "research": self._require(ctx, AgentType.RESEARCH),
            "target_word_count": self.target_word_count(ctx),
            "qa_feedback": ctx.qa_feedback,
        }

    def parse(self, data: dict[str, Any], ctx: PipelineContext) -> dict[str, Any]:
        title = str(data.get("title") or "").strip()
        content = str(data.get("content") or "").strip()
        if not title or not content:
            raise self._fail("article must have a title and content")
        headings = [
            {"level": _clamp_int(h.get("level"), 1, 6, default=2), "text": str(h.get("text") or "").strip()}
            for h in (data.get("headings") or [])
            if isinstance(h, dict) and str(h.get("text") or "").strip()
        ]
        return {
            "title": _truncate(title, 60),
            "slug": _slugify(str(data.get("slug") or "")) or _slugify(title),
            "excerpt": _truncate(str(data.get("excerpt") or ""), 160),
            "content": content,
            "headings": headings,
            "word_count": len(content.split()),
        }


class SEOAgent(LLMAgent):
    agent_type = AgentType.SEO
    description = "Checks the draft against the keyword and proposes meta title/description."

    def variables(self, ctx: PipelineContext) -> dict[str, Any]:
        return {**super().variables(ctx), "article": self._require(ctx, AgentType.WRITER)}

    def parse(self, data: dict[str, Any], ctx: PipelineContext) -> dict[str, Any]:
        article = ctx.output(AgentType.WRITER) or {}
        try:
            density = float(data.get("keyword_density") or 0.0)
        except (TypeError, ValueError):
            density = 0.0
        return {
            "meta_title": _truncate(str(data.get("meta_title") or article.get("title") or ""), 60),
            "meta_description": _truncate(str(data.get("meta_description") or article.get("excerpt") or ""), 160),
            "keyword_density": density,
            "issues": _str_list(data.get("issues")),
            "optimization_score": _clamp_int(data.get("optimization_score"), 0, 100, default=0),
        }


class QAAgent(LLMAgent):
    agent_type = AgentType.QA
    description = "Scores the draft and decides whether another revision is needed."

    def variables(self, ctx: PipelineContext) -> dict[str, Any]:
        return {
            **super().variables(ctx),
            "article": self._require(ctx, AgentType.WRITER),
            "seo": self._require(ctx, AgentType.SEO),
        }

    def parse(self, data: dict[str, Any], ctx: PipelineContext) -> dict[str, Any]:
        if not isinstance(data.get("passed"), bool):
            raise self._fail("QA output must include a boolean 'passed'")
        issues = [
            {
                "category": str(i.get("category") or "general"),
                "severity": str(i.get("severity") or "minor"),
                "description": str(i.get("description") or ""),
                "suggestion": str(i.get("suggestion") or ""),
            }
            for i in (data.get("issues") or [])
            if isinstance(i, dict)
        ]
        return {
            "passed": data["passed"],
            "overall_score": _clamp_int(data.get("overall_score"), 0, 100, default=0),
            "issues": issues,
            "feedback": str(data.get("feedback") or ""),
        }


class ProjectManagerAgent(LLMAgent):
    agent_type = AgentType.PROJECT_MANAGER
    description = "Final review: publish readiness and follow-up tasks."

    def variables(self, ctx: PipelineContext) -> dict[str, Any]:
        return {
            **super().variables(ctx),
            "article": self._require(ctx, AgentType.WRITER),
            "seo": self._require(ctx, AgentType.SEO),
            "qa": self._require(ctx, AgentType.QA),
        }

    def parse(self, data: dict[str, Any], ctx: PipelineContext) -> dict[str, Any]:
        return {
            "ready_for_publish": bool(data.get("ready_for_publish")),
            "summary": str(data.get("summary") or ""),
            "follow_ups": _str_list(data.get("follow_ups")),
        }


def build_content_agents(llm: ChatClient, config: AppConfig) -> list[LLMAgent]:
    prompts = config.prompts
    temperature = config.pipeline.temperature
    return [
        ResearchAgent(llm, prompts.get(AgentType.RESEARCH.value), temperature=temperature),
        WriterAgent(
            llm,
            prompts.get(AgentType.WRITER.value),
            temperature=temperature,
            default_word_count=config.pipeline.default_word_count,
        ),
        SEOAgent(llm, prompts.get(AgentType.SEO.value), temperature=temperature),
        QAAgent(llm, prompts.get(AgentType.QA.value), temperature=temperature),
        ProjectManagerAgent(llm, prompts.get(AgentType.PROJECT_MANAGER.value), temperature=temperature),
    ]
