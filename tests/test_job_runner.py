from __future__ import annotations

import logging
import time
from typing import Any

import pytest

from jobengine.config.load_config import AppConfig
from jobengine.runtime.executor_registry import ExecutorRegistry
from jobengine.runtime.executors import ImageEnrichmentExecutor, ReviewerImageExecutor
from jobengine.runtime.errors import ExecutionFailedError
from jobengine.runtime.job_runner import Completed, JobRunner, RateLimited, RetryableBatch
from jobengine.storage.object_store import LocalObjectStore
from jobengine.storage.sqlite_store import SQLiteStore
import jobengine.tools.image_fetch as image_fetch
from jobengine.tools.email_sender import LoggingEmailSender
from jobengine.tools.image_fetch import RateLimitedImageFetcher


A = "https://img.example/a.png"
B = "https://img.example/b.png"
C = "https://img.example/c.png"


class Clock:
    def __init__(self) -> None:
        self.t = time.time() + 1.0

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def _registry(app_config: AppConfig) -> ExecutorRegistry:
    objects = LocalObjectStore(app_config.storage.object_store_dir, public_base_url="http://media.test")
    fetcher = RateLimitedImageFetcher(app_config.fetch, objects, sleep=lambda s: None)
    registry = ExecutorRegistry()
    images = ImageEnrichmentExecutor(fetcher, prefix="contractors")
    registry.register("image_enrichment", images)
    registry.register("image_enrichment_retry", images)
    reviewer = ReviewerImageExecutor(fetcher)
    registry.register("review_enrichment", reviewer)
    registry.register("reviewer_image_retry", reviewer)
    registry.freeze()
    return registry


def _runner(
    store: SQLiteStore,
    app_config: AppConfig,
    clock: Clock,
    *,
    email: LoggingEmailSender | None = None,
    registry: ExecutorRegistry | None = None,
) -> JobRunner:
    return JobRunner(
        store,
        registry or _registry(app_config),
        app_config.jobs,
        email_sender=email,
        clock=clock,
    )


def _actions(store: SQLiteStore, job_id: str) -> list[str]:
    return [log.action for log in store.list_job_logs(job_id)]


def test_rate_limited_batch_completes_and_schedules_remainder(store, app_config, fake_http) -> None:
    fake_http.ok(A, body=b"\x89PNG-a")
    fake_http.ok(B, body=b"\x89PNG-b")
    fake_http.rate_limited(C)
    clock = Clock()

    job = store.create_job(kind="image_enrichment", payload={"contractor_id": "c1", "images": [A, B, C]})
    report = _runner(store, app_config, clock).run_next()

    assert report is not None
    assert report.status == "completed"
    assert report.continuation_job_id is not None

    done = store.get_job(job.job_id)
    assert done.status == "completed"
    assert done.result["downloaded"] == [A, B]
    assert done.result["deferred"] == [C]
    assert done.processed_items == 2

    cont = store.get_job(report.continuation_job_id)
    assert cont.kind == "image_enrichment_retry"
    assert cont.status == "pending"
    assert cont.parent_job_id == job.job_id
    assert cont.payload == {"contractor_id": "c1", "images": [C], "attempt_number": 1}
    assert cont.scheduled_for == pytest.approx(clock.t + 15 * 60)

    assert len(store.list_contractor_media("c1")) == 2
    assert "fetch.rate_limited" in _actions(store, job.job_id)
    assert fake_http.calls == [A, B, C]


def test_continuation_is_not_due_before_its_backoff(store, app_config, fake_http) -> None:
    fake_http.rate_limited(A)
    clock = Clock()
    store.create_job(kind="image_enrichment", payload={"contractor_id": "c1", "images": [A]})
    runner = _runner(store, app_config, clock)

    first = runner.run_next()
    assert first.continuation_job_id is not None

    clock.advance(14 * 60)
    assert runner.run_next() is None

    fake_http.ok(A)
    clock.advance(2 * 60)
    second = runner.run_next()
    assert second.job_id == first.continuation_job_id
    assert second.status == "completed"
    assert second.continuation_job_id is None
    assert store.get_job(second.job_id).result["downloaded"] == [A]


def test_each_continuation_carries_the_next_attempt_and_delay(store, app_config, fake_http) -> None:
    fake_http.rate_limited(A)
    clock = Clock()
    store.create_job(kind="image_enrichment", payload={"contractor_id": "c1", "images": [A]})
    runner = _runner(store, app_config, clock)

    chain: list[str] = []
    expected_minutes = [15, 60, 120, 240, 240]
    for attempt, minutes in enumerate(expected_minutes, start=1):
        report = runner.run_next()
        assert report is not None
        if chain:
            assert report.job_id == chain[-1]
        cont = store.get_job(report.continuation_job_id)
        assert cont.payload["attempt_number"] == attempt
        assert cont.scheduled_for == pytest.approx(clock.t + minutes * 60)
        assert cont.parent_job_id == report.job_id
        chain.append(cont.job_id)
        clock.advance(minutes * 60)

    # Exactly one active job at any time: the latest link of the chain.
    items, total = store.list_jobs_page(statuses=["pending", "processing"])
    assert total == 1
    assert items[0].job_id == chain[-1]


def test_exhausted_attempts_complete_with_abandoned_items(store, app_config, fake_http) -> None:
    fake_http.ok(A)
    fake_http.rate_limited(B)
    email = LoggingEmailSender()
    clock = Clock()

    job = store.create_job(
        kind="image_enrichment_retry",
        payload={"contractor_id": "c1", "images": [A, B], "attempt_number": 5},
        created_by="ops@example.com",
    )
    report = _runner(store, app_config, clock, email=email).run_next()

    assert report.status == "completed"
    assert report.continuation_job_id is None
    assert report.abandoned == 1

    done = store.get_job(job.job_id)
    assert done.status == "completed"
    assert done.result["downloaded"] == [A]
    assert done.result["abandoned"] == [B]
    assert store.count_jobs_by_status() == {"completed": 1}

    exhausted = [log for log in store.list_job_logs(job.job_id) if log.action == "job.retries_exhausted"]
    assert len(exhausted) == 1
    assert exhausted[0].level == "warn"

    assert [m["template"] for m in email.sent] == ["job_abandoned_items"]
    assert email.sent[0]["recipient"] == "ops@example.com"


def test_missing_executor_fails_job(store, app_config) -> None:
    email = LoggingEmailSender()
    job = store.create_job(kind="contractor_enrichment", payload={"contractors": []}, created_by="ops@example.com")

    report = _runner(store, app_config, Clock(), email=email).run_next()

    assert report.status == "failed"
    assert report.error == "No executor registered for kind: contractor_enrichment"
    failed = store.get_job(job.job_id)
    assert failed.status == "failed"
    assert failed.error == report.error
    assert email.sent[0]["template"] == "job_failed"


def test_executor_exception_fails_job_with_type_and_message(store, app_config, fake_http) -> None:
    job = store.create_job(kind="image_enrichment", payload={"images": [A]})

    report = _runner(store, app_config, Clock()).run_next()

    assert report.status == "failed"
    assert report.error.startswith("ExecutionFailedError: Invalid payload")
    assert store.get_job(job.job_id).status == "failed"
    assert fake_http.calls == []


def test_no_email_without_an_address(store, app_config) -> None:
    email = LoggingEmailSender()
    store.create_job(kind="contractor_enrichment", created_by="cron")
    _runner(store, app_config, Clock(), email=email).run_next()
    assert email.sent == []


def test_continuation_conflict_fails_the_job(store, app_config, fake_http) -> None:
    fake_http.rate_limited(A)
    clock = Clock()
    blocker = store.create_job(kind="image_enrichment_retry", scheduled_for=clock.t + 86400)
    job = store.create_job(kind="image_enrichment", payload={"contractor_id": "c1", "images": [A]})

    report = _runner(store, app_config, clock).run_next()

    assert report.job_id == job.job_id
    assert report.status == "failed"
    assert report.error.startswith("Could not schedule continuation")
    assert store.get_job(blocker.job_id).status == "pending"


def test_reviewer_photos_are_keyed_by_review(store, app_config, fake_http) -> None:
    fake_http.ok(A, body=b"\x89PNG-a")
    fake_http.error(B)
    fake_http.rate_limited(C)
    clock = Clock()

    job = store.create_job(
        kind="review_enrichment",
        payload={
            "contractor_id": "c9",
            "reviews": [
                {"review_id": "r1", "reviewer_photo_url": A},
                {"review_id": "r2", "reviewer_photo_url": B},
                {"review_id": "r3", "reviewer_photo_url": None},
                {"review_id": "r4", "reviewer_photo_url": C},
            ],
        },
    )
    report = _runner(store, app_config, clock).run_next()

    result = store.get_job(job.job_id).result
    assert list(result["photos"]) == ["r1"]
    assert result["photos"]["r1"].startswith("http://media.test/reviews/c9/")
    assert result["failed"][0]["review_id"] == "r2"

    cont = store.get_job(report.continuation_job_id)
    assert cont.kind == "reviewer_image_retry"
    assert cont.payload["images"] == [{"review_id": "r4", "url": C}]
    assert cont.payload["attempt_number"] == 1


def test_run_next_on_empty_queue_returns_none(store, app_config) -> None:
    assert _runner(store, app_config, Clock()).run_next() is None


class _EchoExecutor:
    def __init__(self) -> None:
        self.seen: list[dict[str, Any]] = []

    def execute(self, job, ctx):  # noqa: ANN001, ANN201
        self.seen.append(job.payload)
        ctx.progress(total_items=1, processed_items=1)
        ctx.log("echo.done", "echoed")
        return Completed({"echo": job.payload})


def test_completed_outcome_stores_result_and_progress(store, app_config) -> None:
    registry = ExecutorRegistry()
    echo = _EchoExecutor()
    registry.register("article_pipeline", echo)
    job = store.create_job(kind="article_pipeline", payload={"keyword": "decks"})

    report = _runner(store, app_config, Clock(), registry=registry).run_next(kind="article_pipeline")

    assert report.status == "completed"
    done = store.get_job(job.job_id)
    assert done.result == {"echo": {"keyword": "decks"}}
    assert (done.total_items, done.processed_items) == (1, 1)
    assert _actions(store, job.job_id) == ["job.created", "job.started", "echo.done", "job.completed"]


def test_malformed_url_lands_in_failed_and_job_completes(store, app_config, monkeypatch: pytest.MonkeyPatch) -> None:
    class _Response:
        headers = {"Content-Type": "image/png"}

        def __enter__(self):  # noqa: ANN204
            return self

        def __exit__(self, *exc):  # noqa: ANN002, ANN204
            return False

        def read(self) -> bytes:
            return b"\x89PNG-a"

    monkeypatch.setattr(image_fetch.urllib.request, "urlopen", lambda req, timeout: _Response())
    job = store.create_job(kind="image_enrichment", payload={"contractor_id": "c1", "images": ["not-a-url", A]})

    report = _runner(store, app_config, Clock()).run_next()

    assert report.status == "completed"
    done = store.get_job(job.job_id)
    assert done.result["downloaded"] == [A]
    assert [f["url"] for f in done.result["failed"]] == ["not-a-url"]
    assert "unknown url type" in done.result["failed"][0]["error"]
    assert (done.processed_items, done.failed_items) == (2, 1)


class _SettledElsewhere:
    """Executor whose job is failed by another process (e.g. a startup reconcile) mid-run."""

    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome

    def execute(self, job, ctx):  # noqa: ANN001, ANN201
        ctx.store.fail_job(job.job_id, "server_restarted")
        return self.outcome


def _single(kind: str, executor: Any) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(kind, executor)
    return registry


def test_rate_limited_remainder_on_a_settled_job_is_reported(store, app_config, caplog) -> None:
    email = LoggingEmailSender()
    outcome = RateLimited(
        result={"downloaded": [A]},
        remainder=RetryableBatch(items=[B, C], attempt_number=1),
        retry_kind="image_enrichment_retry",
        continuation_payload={"contractor_id": "c1", "images": [B, C]},
    )
    job = store.create_job(kind="image_enrichment", created_by="ops@example.com")
    registry = _single("image_enrichment", _SettledElsewhere(outcome))
    runner = _runner(store, app_config, Clock(), email=email, registry=registry)

    with caplog.at_level(logging.WARNING, logger="jobengine.runtime.job_runner"):
        report = runner.run_next()

    assert report.status == "failed"
    assert report.continuation_job_id is None
    assert report.abandoned == 2
    assert store.get_job(job.job_id).error == "server_restarted"
    assert store.count_jobs_by_status() == {"failed": 1}
    assert [m["template"] for m in email.sent] == ["job_abandoned_items"]
    assert "not carried forward" in caplog.text


def test_exhausted_attempts_on_a_settled_job_write_no_exhausted_log(store, app_config) -> None:
    outcome = RateLimited(
        result={},
        remainder=RetryableBatch(items=[A], attempt_number=app_config.jobs.max_rate_limit_attempts + 1),
        retry_kind="image_enrichment_retry",
        continuation_payload={"contractor_id": "c1", "images": [A]},
    )
    job = store.create_job(kind="image_enrichment_retry")
    registry = _single("image_enrichment_retry", _SettledElsewhere(outcome))

    report = _runner(store, app_config, Clock(), registry=registry).run_next()

    assert report.status == "failed"
    assert report.abandoned == 1
    assert "job.retries_exhausted" not in _actions(store, job.job_id)
    assert _actions(store, job.job_id)[-1] == "job.failed"


def test_completed_outcome_on_a_settled_job_keeps_its_status(store, app_config) -> None:
    job = store.create_job(kind="article_pipeline")
    registry = _single("article_pipeline", _SettledElsewhere(Completed({"ok": True})))

    report = _runner(store, app_config, Clock(), registry=registry).run_next()

    assert report.status == "failed"
    done = store.get_job(job.job_id)
    assert done.result is None
    assert "job.completed" not in _actions(store, job.job_id)


def test_execution_failure_details_are_kept_in_the_failure_log(store, app_config) -> None:
    class _Failing:
        def execute(self, job, ctx):  # noqa: ANN001, ANN201
            raise ExecutionFailedError("Pipeline failed at stage seo", details={"failed_stage": "seo", "iterations": 1})

    job = store.create_job(kind="article_pipeline")

    report = _runner(store, app_config, Clock(), registry=_single("article_pipeline", _Failing())).run_next()

    assert report.error == "ExecutionFailedError: Pipeline failed at stage seo"
    [failure] = [log for log in store.list_job_logs(job.job_id) if log.action == "job.failed"]
    assert failure.data["details"] == {"failed_stage": "seo", "iterations": 1}
    assert failure.data["error"] == report.error
