from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol


logger = logging.getLogger(__name__)


class LLMConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatCompletionResult:
    content: str
    model: str
    usage: dict[str, Any]


class ChatClient(Protocol):
    def chat(self, *, system: str, user: str, temperature: float) -> ChatCompletionResult: ...


class OpenAICompatibleChatClient:
    """Thin wrapper over the OpenAI SDK for any OpenAI-compatible gateway.

    Agents only need system+user -> text; usage is kept so pipeline steps can record token counts.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float | None = 60.0,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.timeout_s = timeout_s

        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        from openai import OpenAI

        self._client = OpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s)

    def chat(self, *, system: str, user: str, temperature: float) -> ChatCompletionResult:
        resp = self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=float(temperature),
        )
        content = (resp.choices[0].message.content or "").strip()
        usage = resp.usage.model_dump() if resp.usage is not None else {}
        logger.debug("llm chat: model=%s usage=%s", self.model, usage)
        return ChatCompletionResult(content=content, model=str(resp.model or self.model), usage=usage)


def llm_configured() -> bool:
    return bool(os.getenv("OPENAI_API_KEY"))
