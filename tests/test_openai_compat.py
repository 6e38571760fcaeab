from __future__ import annotations

from types import SimpleNamespace

import openai
import pytest

from jobengine.llm.openai_compat import LLMConfigError, OpenAICompatibleChatClient, llm_configured


def test_missing_api_key_is_a_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert llm_configured() is False
    with pytest.raises(LLMConfigError):
        OpenAICompatibleChatClient()


def test_chat_returns_content_and_usage(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict = {}

    class FakeUsage:
        def model_dump(self) -> dict:
            return {"prompt_tokens": 7, "completion_tokens": 5, "total_tokens": 12}

    class FakeCompletions:
        def create(self, **kwargs):  # noqa: ANN003, ANN201
            captured.update(kwargs)
            message = SimpleNamespace(content='  {"ok": true}  ')
            return SimpleNamespace(choices=[SimpleNamespace(message=message)], model="gw-model", usage=FakeUsage())

    class FakeOpenAI:
        def __init__(self, **kwargs) -> None:  # noqa: ANN003
            captured["client"] = kwargs
            self.chat = SimpleNamespace(completions=FakeCompletions())

    monkeypatch.setattr(openai, "OpenAI", FakeOpenAI)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_API_BASE", "http://gateway.local/v1")
    monkeypatch.setenv("LLM_MODEL", "gw-model")

    client = OpenAICompatibleChatClient()
    result = client.chat(system="sys", user="hello", temperature=0.3)

    assert llm_configured() is True
    assert captured["client"]["base_url"] == "http://gateway.local/v1"
    assert captured["model"] == "gw-model"
    assert captured["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "hello"}]
    assert result.content == '{"ok": true}'
    assert result.model == "gw-model"
    assert result.usage["total_tokens"] == 12
