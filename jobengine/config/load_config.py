from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _as_positive_int(value: Any, *, key: str) -> int:
    n = _as_int(value, key=key)
    if n < 1:
        raise ConfigError(f"Invalid {key}: must be >= 1, got {n}")
    return n


def _as_backoff_minutes(value: Any, *, key: str) -> tuple[int, ...]:
    """Parse the rate-limit backoff schedule (minutes per attempt).

    The schedule must be non-empty and non-decreasing: later attempts never wait less.
    """
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Invalid {key}: expected a non-empty list of minutes")
    out = tuple(_as_positive_int(v, key=key) for v in value)
    for prev, cur in zip(out, out[1:]):
        if cur < prev:
            raise ConfigError(f"Invalid {key}: delays must be non-decreasing, got {list(out)}")
    return out


def _resolve_dir(value: Any, *, key: str, base_dir: Path) -> str:
    p = Path(_as_str(value, key=key)).expanduser()
    if not p.is_absolute():
        p = (base_dir / p).resolve()
    return str(p)


@dataclass(frozen=True)
class JobsConfig:
    backoff_minutes: tuple[int, ...]
    max_rate_limit_attempts: int
    list_default_limit: int
    list_max_limit: int
    contractor_batch_size: int


@dataclass(frozen=True)
class FetchConfig:
    delay_ms: int
    timeout_s: float
    user_agent: str
    storage_prefix: str
    contractor_image_prefix: str


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_s: float
    # A processing job older than this at startup is treated as orphaned.
    processing_lease_s: float


@dataclass(frozen=True)
class ExecuteConfig:
    max_requests: int
    window_s: int


@dataclass(frozen=True)
class StorageConfig:
    object_store_dir: str
    public_base_url: str


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool
    sender: str
    smtp_host: str
    smtp_port: int
    notify_on_permanent_failure: bool


@dataclass(frozen=True)
class PipelineConfig:
    max_iterations: int
    default_word_count: int
    temperature: float


@dataclass(frozen=True)
class PromptConfig:
    """Agent type -> prompt template (rendered with `render_template`)."""

    by_agent: dict[str, str]
    contractor_enrichment: str

    def get(self, agent_type: str, default: str = "") -> str:
        return self.by_agent.get(agent_type, default)


@dataclass(frozen=True)
class AppConfig:
    jobs: JobsConfig
    fetch: FetchConfig
    worker: WorkerConfig
    execute: ExecuteConfig
    storage: StorageConfig
    email: EmailConfig
    pipeline: PipelineConfig
    prompts: PromptConfig


def default_config_path() -> Path:
    repo_default = Path(__file__).resolve().parents[2] / "config" / "default.toml"
    raw = os.getenv("JOBENGINE_CONFIG_PATH", "").strip()
    return Path(raw).expanduser().resolve() if raw else repo_default


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    import tomllib

    raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))

    jobs = raw.get("jobs", {})
    fetch = raw.get("fetch", {})
    worker = raw.get("worker", {})
    execute = raw.get("execute", {})
    storage = raw.get("storage", {})
    email = raw.get("email", {})
    pipeline = raw.get("pipeline", {})
    prompts = raw.get("prompts", {})

    # Relative directories are interpreted against the repo root (config lives in `<repo>/config/`).
    base_dir = cfg_path.parent.parent

    delay_ms = _as_int(fetch.get("delay_ms"), key="fetch.delay_ms")
    if delay_ms < 0:
        raise ConfigError(f"Invalid fetch.delay_ms: must be >= 0, got {delay_ms}")
    timeout_s = _as_float(fetch.get("timeout_s"), key="fetch.timeout_s")
    if timeout_s <= 0:
        raise ConfigError(f"Invalid fetch.timeout_s: must be > 0, got {timeout_s}")

    list_default_limit = _as_positive_int(jobs.get("list_default_limit"), key="jobs.list_default_limit")
    list_max_limit = _as_positive_int(jobs.get("list_max_limit"), key="jobs.list_max_limit")
    if list_default_limit > list_max_limit:
        raise ConfigError("jobs.list_default_limit must not exceed jobs.list_max_limit")

    agent_types = ("research", "writer", "seo", "qa", "project_manager")

    return AppConfig(
        jobs=JobsConfig(
            backoff_minutes=_as_backoff_minutes(jobs.get("backoff_minutes"), key="jobs.backoff_minutes"),
            max_rate_limit_attempts=_as_positive_int(
                jobs.get("max_rate_limit_attempts"), key="jobs.max_rate_limit_attempts"
            ),
            list_default_limit=list_default_limit,
            list_max_limit=list_max_limit,
            contractor_batch_size=_as_positive_int(
                jobs.get("contractor_batch_size"), key="jobs.contractor_batch_size"
            ),
        ),
        fetch=FetchConfig(
            delay_ms=delay_ms,
            timeout_s=timeout_s,
            user_agent=_as_str(fetch.get("user_agent"), key="fetch.user_agent"),
            storage_prefix=_as_str(fetch.get("storage_prefix"), key="fetch.storage_prefix").strip("/"),
            contractor_image_prefix=_as_str(
                fetch.get("contractor_image_prefix", "contractors"), key="fetch.contractor_image_prefix"
            ).strip("/"),
        ),
        worker=WorkerConfig(
            poll_interval_s=_as_float(worker.get("poll_interval_s"), key="worker.poll_interval_s"),
            processing_lease_s=_as_float(
                worker.get("processing_lease_s", 3600), key="worker.processing_lease_s"
            ),
        ),
        execute=ExecuteConfig(
            max_requests=_as_positive_int(execute.get("max_requests"), key="execute.max_requests"),
            window_s=_as_positive_int(execute.get("window_s"), key="execute.window_s"),
        ),
        storage=StorageConfig(
            object_store_dir=_resolve_dir(
                os.getenv("JOBENGINE_OBJECT_STORE_DIR") or storage.get("object_store_dir"),
                key="storage.object_store_dir",
                base_dir=base_dir,
            ),
            public_base_url=_as_str(storage.get("public_base_url"), key="storage.public_base_url").rstrip("/"),
        ),
        email=EmailConfig(
            enabled=_as_bool(email.get("enabled", False), key="email.enabled"),
            sender=_as_str(email.get("sender"), key="email.sender"),
            smtp_host=_as_str(email.get("smtp_host"), key="email.smtp_host"),
            smtp_port=_as_int(email.get("smtp_port"), key="email.smtp_port"),
            notify_on_permanent_failure=_as_bool(
                email.get("notify_on_permanent_failure", False), key="email.notify_on_permanent_failure"
            ),
        ),
        pipeline=PipelineConfig(
            max_iterations=_as_positive_int(pipeline.get("max_iterations"), key="pipeline.max_iterations"),
            default_word_count=_as_positive_int(
                pipeline.get("default_word_count"), key="pipeline.default_word_count"
            ),
            temperature=_as_float(pipeline.get("temperature"), key="pipeline.temperature"),
        ),
        prompts=PromptConfig(
            by_agent={t: _as_str(prompts.get(t), key=f"prompts.{t}") for t in agent_types},
            contractor_enrichment=_as_str(
                prompts.get("contractor_enrichment"), key="prompts.contractor_enrichment"
            ),
        ),
    )
