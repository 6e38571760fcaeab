from __future__ import annotations

import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest


# Ensure `import jobengine...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from jobengine.config.load_config import AppConfig, load_app_config  # noqa: E402
from jobengine.llm.openai_compat import ChatCompletionResult  # noqa: E402
from jobengine.runtime.errors import RateLimitedError  # noqa: E402
from jobengine.storage.sqlite_store import SQLiteStore  # noqa: E402
import jobengine.tools.image_fetch as image_fetch  # noqa: E402


PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 16


DEFAULT_AGENT_REPLIES: dict[str, dict[str, Any]] = {
    "research": {
        "keyword": "roof repair",
        "related_keywords": ["roof leak", "shingle replacement"],
        "questions": ["How much does roof repair cost?"],
        "content_gaps": ["seasonal maintenance"],
        "recommended_word_count": 1200,
    },
    "writer": {
        "title": "Roof Repair Guide",
        "slug": "roof-repair-guide",
        "excerpt": "Everything about roof repair.",
        "content": "## Intro\nRoof repair basics for homeowners.",
        "headings": [{"level": 2, "text": "Intro"}],
    },
    "seo": {
        "meta_title": "Roof Repair Guide",
        "meta_description": "Learn roof repair.",
        "keyword_density": 1.4,
        "issues": [],
        "optimization_score": 82,
    },
    "qa": {"passed": True, "overall_score": 88, "issues": [], "feedback": ""},
    "project_manager": {"ready_for_publish": True, "summary": "Looks good.", "follow_ups": []},
    "contractor_enrichment": {"service_types": ["roofing"], "confidence": 0.9},
}

_ROLE_MARKERS = (
    ("research agent", "research"),
    ("writer agent", "writer"),
    ("SEO agent", "seo"),
    ("QA agent", "qa"),
    ("project manager agent", "project_manager"),
    ("Classify the services", "contractor_enrichment"),
)


class ScriptedLLM:
    """Chat client double: answers each agent prompt from a per-role script of replies."""

    def __init__(self, replies: dict[str, Any] | None = None) -> None:
        self.script: dict[str, list[Any]] = {}
        merged = {**DEFAULT_AGENT_REPLIES, **(replies or {})}
        for role, reply in merged.items():
            self.script[role] = list(reply) if isinstance(reply, list) else [reply]
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def role_of(prompt: str) -> str:
        for marker, role in _ROLE_MARKERS:
            if marker in prompt:
                return role
        raise AssertionError(f"unrecognized prompt: {prompt[:80]!r}")

    def chat(self, *, system: str, user: str, temperature: float) -> ChatCompletionResult:
        role = self.role_of(user)
        self.calls.append((role, user))
        queue = self.script[role]
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return ChatCompletionResult(content=content, model="scripted", usage={"total_tokens": 10})

    def roles_called(self) -> list[str]:
        return [r for r, _ in self.calls]


class FakeHTTP:
    """Stand-in for `image_fetch._http_get`: url -> (body, content_type) or an exception to raise."""

    def __init__(self) -> None:
        self.responses: dict[str, Any] = {}
        self.calls: list[str] = []

    def ok(self, url: str, body: bytes = PNG, content_type: str = "image/png") -> None:
        self.responses[url] = (body, content_type)

    def rate_limited(self, url: str) -> None:
        self.responses[url] = RateLimitedError(url)

    def error(self, url: str, message: str = "HTTP 404") -> None:
        self.responses[url] = image_fetch.FetchError(f"{message} for {url}")

    def __call__(self, url: str, *, timeout_s: float, user_agent: str) -> tuple[bytes, str]:
        self.calls.append(url)
        resp = self.responses[url]
        if isinstance(resp, Exception):
            raise resp
        return resp


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    cfg = load_app_config()
    return replace(cfg, storage=replace(cfg.storage, object_store_dir=str(tmp_path / "objects")))


@pytest.fixture
def store(tmp_path: Path):  # noqa: ANN201
    s = SQLiteStore(tmp_path / "jobs.db")
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def fake_http(monkeypatch: pytest.MonkeyPatch) -> FakeHTTP:
    fake = FakeHTTP()
    monkeypatch.setattr(image_fetch, "_http_get", fake)
    return fake


@pytest.fixture
def scripted_llm() -> type[ScriptedLLM]:
    return ScriptedLLM
