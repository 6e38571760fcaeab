from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, Protocol, Sequence

from jobengine.config.load_config import JobsConfig
from jobengine.runtime.errors import ExecutionFailedError, JobConflictError
from jobengine.storage.sqlite_store import JobRecord, SQLiteStore
from jobengine.tools.email_sender import EmailSender, send_safely

if TYPE_CHECKING:
    from jobengine.runtime.executor_registry import ExecutorRegistry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryableBatch:
    """Items a rate-limited job did not get to, and which continuation attempt would carry them."""

    items: list[Any]
    attempt_number: int


@dataclass(frozen=True)
class Completed:
    result: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimited:
    """Partial success: `result` covers the processed items, `remainder` goes to a `retry_kind` job.

    `continuation_payload` is the new job's payload; the runner adds `attempt_number`.
    """

    result: dict[str, Any]
    remainder: RetryableBatch
    retry_kind: str
    continuation_payload: dict[str, Any]


ExecutionOutcome = Completed | RateLimited


class ProgressCallback(Protocol):
    def __call__(
        self,
        *,
        total_items: int | None = None,
        processed_items: int | None = None,
        failed_items: int | None = None,
    ) -> None: ...


@dataclass
class ExecutionContext:
    """What an executor may touch while running one claimed job."""

    job: JobRecord
    store: SQLiteStore
    progress: ProgressCallback

    def log(self, action: str, message: str, *, level: str = "info", data: dict[str, Any] | None = None) -> None:
        self.store.append_job_log(self.job.job_id, action=action, message=message, level=level, data=data)


class JobExecutor(Protocol):
    def execute(self, job: JobRecord, ctx: ExecutionContext) -> ExecutionOutcome: ...


def backoff(attempt: int, *, schedule: Sequence[int], max_attempts: int) -> timedelta | None:
    """Delay before continuation `attempt` (1-based), or None once attempts are exhausted.

    Attempts past the end of `schedule` reuse its last entry.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if attempt > max_attempts:
        return None
    idx = min(attempt, len(schedule)) - 1
    return timedelta(minutes=schedule[idx])


@dataclass(frozen=True)
class RunReport:
    job_id: str
    kind: str
    status: str
    error: str | None = None
    continuation_job_id: str | None = None
    scheduled_for: float | None = None
    abandoned: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status,
            "error": self.error,
            "continuation_job_id": self.continuation_job_id,
            "scheduled_for": self.scheduled_for,
            "abandoned": self.abandoned,
        }


class JobRunner:
    """Claims one due job, dispatches it to its executor and records the outcome."""

    def __init__(
        self,
        store: SQLiteStore,
        registry: ExecutorRegistry,
        jobs_config: JobsConfig,
        *,
        email_sender: EmailSender | None = None,
        notify_on_failure: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._registry = registry
        self._jobs_config = jobs_config
        self._email_sender = email_sender
        self._notify_on_failure = notify_on_failure
        self._clock = clock

    def backoff(self, attempt: int) -> timedelta | None:
        return backoff(
            attempt,
            schedule=self._jobs_config.backoff_minutes,
            max_attempts=self._jobs_config.max_rate_limit_attempts,
        )

    def run_next(self, *, kind: str | None = None) -> RunReport | None:
        job = self._store.claim_next_job(kind=kind, now=self._clock())
        if job is None:
            return None
        return self.execute_claimed(job)

    def execute_claimed(self, job: JobRecord) -> RunReport:
        executor = self._registry.resolve(job.kind)
        if executor is None:
            return self._fail(job, f"No executor registered for kind: {job.kind}")

        def progress(
            *,
            total_items: int | None = None,
            processed_items: int | None = None,
            failed_items: int | None = None,
        ) -> None:
            self._store.update_job_progress(
                job.job_id,
                total_items=total_items,
                processed_items=processed_items,
                failed_items=failed_items,
            )

        logger.info("executing job %s (%s)", job.job_id, job.kind)
        try:
            ctx = ExecutionContext(job=job, store=self._store, progress=progress)
            outcome = executor.execute(job, ctx)
        except ExecutionFailedError as e:
            logger.warning("job %s (%s) failed: %s", job.job_id, job.kind, e)
            return self._fail(job, f"{type(e).__name__}: {e}", details=e.details)
        except Exception as e:
            logger.exception("executor for %s raised on job %s", job.kind, job.job_id)
            return self._fail(job, f"{type(e).__name__}: {e}")

        if isinstance(outcome, RateLimited):
            return self._settle_rate_limited(job, outcome)
        if isinstance(outcome, Completed):
            if not self._store.complete_job(job.job_id, outcome.result):
                return self._unsettled(job, dropped=[])
            return RunReport(job_id=job.job_id, kind=job.kind, status="completed")
        return self._fail(job, f"Executor returned an unsupported outcome: {type(outcome).__name__}")

    def _settle_rate_limited(self, job: JobRecord, outcome: RateLimited) -> RunReport:
        remainder = outcome.remainder
        delay = self.backoff(remainder.attempt_number)

        if delay is None:
            result = {**outcome.result, "abandoned": list(remainder.items)}
            with self._store.transaction():
                settled = self._store.complete_job(job.job_id, result)
                if settled:
                    self._store.append_job_log(
                        job.job_id,
                        level="warn",
                        action="job.retries_exhausted",
                        message=(
                            f"Gave up on {len(remainder.items)} item(s) after "
                            f"{remainder.attempt_number - 1} rate-limited continuation(s)"
                        ),
                        data={"abandoned": list(remainder.items), "attempt_number": remainder.attempt_number},
                    )
            if not settled:
                return self._unsettled(job, dropped=remainder.items)
            self._notify(
                job,
                template="job_abandoned_items",
                variables={"job_id": job.job_id, "kind": job.kind, "count": len(remainder.items)},
            )
            return RunReport(
                job_id=job.job_id,
                kind=job.kind,
                status="completed",
                abandoned=len(remainder.items),
            )

        scheduled_for = self._clock() + delay.total_seconds()
        payload = {**outcome.continuation_payload, "attempt_number": remainder.attempt_number}
        try:
            continuation = self._store.complete_with_continuation(
                job.job_id,
                result=outcome.result,
                kind=outcome.retry_kind,
                payload=payload,
                scheduled_for=scheduled_for,
            )
        except JobConflictError as e:
            return self._fail(job, f"Could not schedule continuation: {e}")

        if continuation is None:
            return self._unsettled(job, dropped=remainder.items)

        logger.info(
            "job %s rate limited; %d item(s) continue in %s at %.0f",
            job.job_id,
            len(remainder.items),
            continuation.job_id,
            scheduled_for,
        )
        return RunReport(
            job_id=job.job_id,
            kind=job.kind,
            status="completed",
            continuation_job_id=continuation.job_id,
            scheduled_for=scheduled_for,
        )

    def _unsettled(self, job: JobRecord, *, dropped: list[Any]) -> RunReport:
        """The job went terminal elsewhere (cancel or reconcile) while this runner was executing it."""
        current = self._store.get_job(job.job_id)
        status = current.status if current else "unknown"
        logger.warning(
            "job %s was already %s when its outcome arrived; %d deferred item(s) not carried forward",
            job.job_id,
            status,
            len(dropped),
        )
        if dropped:
            self._notify(
                job,
                template="job_abandoned_items",
                variables={"job_id": job.job_id, "kind": job.kind, "count": len(dropped)},
            )
        return RunReport(job_id=job.job_id, kind=job.kind, status=status, abandoned=len(dropped))

    def _fail(self, job: JobRecord, error: str, *, details: dict[str, Any] | None = None) -> RunReport:
        if not self._store.fail_job(job.job_id, error, details=details):
            return self._unsettled(job, dropped=[])
        self._notify(job, template="job_failed", variables={"job_id": job.job_id, "kind": job.kind, "error": error})
        return RunReport(job_id=job.job_id, kind=job.kind, status="failed", error=error)

    def _notify(self, job: JobRecord, *, template: str, variables: dict[str, Any]) -> None:
        if not self._notify_on_failure:
            return
        recipient = job.created_by if job.created_by and "@" in job.created_by else None
        send_safely(self._email_sender, template=template, recipient=recipient, variables=variables)
