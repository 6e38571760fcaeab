from __future__ import annotations

from typing import Any

from jobengine.runtime.errors import DuplicateRegistrationError

from .types import PIPELINE_ORDER, Agent, AgentType


class AgentRegistry:
    """Agent type -> agent instance. Built once at startup and handed to the orchestrator."""

    def __init__(self) -> None:
        self._agents: dict[AgentType, Agent] = {}

    def register(self, agent: Agent) -> None:
        agent_type = AgentType(agent.agent_type)
        existing = self._agents.get(agent_type)
        if existing is agent:
            return
        if existing is not None:
            raise DuplicateRegistrationError(f"An agent is already registered for {agent_type.value!r}.")
        self._agents[agent_type] = agent

    def get(self, agent_type: AgentType | str) -> Agent | None:
        return self._agents.get(AgentType(agent_type))

    def validate_pipeline(self) -> list[str]:
        """Pipeline agent types that are not registered yet, in pipeline order."""
        return [t.value for t in PIPELINE_ORDER if t not in self._agents]

    def pipeline_agents(self) -> list[Agent]:
        return [self._agents[t] for t in PIPELINE_ORDER if t in self._agents]

    def agent_info(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for position, t in enumerate(PIPELINE_ORDER, start=1):
            agent = self._agents.get(t)
            out.append(
                {
                    "agent_type": t.value,
                    "position": position,
                    "registered": agent is not None,
                    "description": getattr(agent, "description", "") if agent is not None else "",
                }
            )
        return out
