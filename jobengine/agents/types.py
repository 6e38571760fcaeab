from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class AgentType(str, Enum):
    RESEARCH = "research"
    WRITER = "writer"
    SEO = "seo"
    QA = "qa"
    PROJECT_MANAGER = "project_manager"


PIPELINE_ORDER: tuple[AgentType, ...] = (
    AgentType.RESEARCH,
    AgentType.WRITER,
    AgentType.SEO,
    AgentType.QA,
    AgentType.PROJECT_MANAGER,
)

# Stages re-run when QA asks for a revision.
REVISION_STAGES: tuple[AgentType, ...] = (AgentType.WRITER, AgentType.SEO, AgentType.QA)


@dataclass
class PipelineContext:
    """Work item shared by the stages of one pipeline run (owned by that run only)."""

    keyword: str
    settings: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    completed_stages: list[str] = field(default_factory=list)
    iteration: int = 1
    qa_feedback: str = ""
    total_tokens: int = 0

    def output(self, agent_type: AgentType) -> dict[str, Any] | None:
        return self.outputs.get(agent_type.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyword": self.keyword,
            "settings": self.settings,
            "outputs": self.outputs,
            "completed_stages": list(self.completed_stages),
            "iteration": self.iteration,
            "qa_feedback": self.qa_feedback,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineContext:
        outputs = data.get("outputs")
        return cls(
            keyword=str(data.get("keyword") or ""),
            settings=dict(data.get("settings") or {}),
            outputs={str(k): dict(v) for k, v in outputs.items()} if isinstance(outputs, dict) else {},
            completed_stages=[str(s) for s in (data.get("completed_stages") or [])],
            iteration=int(data.get("iteration") or 1),
            qa_feedback=str(data.get("qa_feedback") or ""),
            total_tokens=int(data.get("total_tokens") or 0),
        )


class Agent(Protocol):
    agent_type: AgentType
    description: str

    def run(self, ctx: PipelineContext) -> PipelineContext: ...
