from __future__ import annotations

from typing import Any


class JobEngineError(RuntimeError):
    """Base class for job engine failures that callers are expected to handle."""


class JobConflictError(JobEngineError):
    """An active (pending/processing) job of the same kind already exists."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"A {kind} job is already pending or processing.")
        self.kind = kind


class JobNotFoundError(JobEngineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobNotCancellableError(JobEngineError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Job {job_id} cannot be cancelled while {status}.")
        self.job_id = job_id
        self.status = status


class ExecutionFailedError(JobEngineError):
    """Executor-level failure; the job is recorded as failed with this message."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class DuplicateRegistrationError(JobEngineError):
    pass


class RegistryFrozenError(JobEngineError):
    pass


class MisconfiguredPipelineError(JobEngineError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Pipeline is missing required agents: {', '.join(missing)}")
        self.missing = list(missing)


class InvalidTransitionError(JobEngineError):
    def __init__(self, job_id: str, status: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {status} to {target}.")
        self.job_id = job_id
        self.status = status
        self.target = target


class RateLimitedError(JobEngineError):
    """HTTP 429 from an upstream host; handled inside the fetch layer."""

    def __init__(self, url: str, *, retry_after: str | None = None) -> None:
        super().__init__(f"Rate limited by upstream for {url}")
        self.url = url
        self.retry_after = retry_after


class AgentError(JobEngineError):
    def __init__(self, agent_type: str, message: str) -> None:
        super().__init__(f"{agent_type}: {message}")
        self.agent_type = agent_type
