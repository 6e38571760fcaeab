from __future__ import annotations

from datetime import timedelta

import pytest

from jobengine.runtime.job_runner import backoff


SCHEDULE = [15, 60, 120, 240]


@pytest.mark.parametrize(
    ("attempt", "minutes"),
    [(1, 15), (2, 60), (3, 120), (4, 240), (5, 240)],
)
def test_backoff_follows_schedule_and_reuses_last_entry(attempt: int, minutes: int) -> None:
    assert backoff(attempt, schedule=SCHEDULE, max_attempts=5) == timedelta(minutes=minutes)


def test_backoff_is_none_once_attempts_are_exhausted() -> None:
    assert backoff(6, schedule=SCHEDULE, max_attempts=5) is None
    assert backoff(2, schedule=SCHEDULE, max_attempts=1) is None


def test_backoff_rejects_non_positive_attempts() -> None:
    with pytest.raises(ValueError):
        backoff(0, schedule=SCHEDULE, max_attempts=5)
