from __future__ import annotations

import threading
from pathlib import Path

from jobengine.storage.sqlite_store import JOB_KINDS, SQLiteStore


def test_concurrent_workers_never_claim_the_same_job(tmp_path: Path) -> None:
    db_path = tmp_path / "jobs.db"
    setup = SQLiteStore(db_path)
    created = {setup.create_job(kind=k).job_id for k in JOB_KINDS}
    setup.close()

    claimed: list[str] = []
    lock = threading.Lock()
    errors: list[BaseException] = []

    def worker() -> None:
        store = SQLiteStore(db_path)
        try:
            while True:
                job = store.claim_next_job()
                if job is None:
                    return
                with lock:
                    claimed.append(job.job_id)
        except BaseException as e:  # surfaced to the main thread below
            errors.append(e)
        finally:
            store.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert sorted(claimed) == sorted(created)
    assert len(set(claimed)) == len(claimed)


def test_racing_claims_on_a_single_job_have_one_winner(tmp_path: Path) -> None:
    db_path = tmp_path / "jobs.db"
    setup = SQLiteStore(db_path)
    job = setup.create_job(kind="image_enrichment")
    setup.close()

    n = 5
    barrier = threading.Barrier(n)
    results: list[str | None] = []
    lock = threading.Lock()

    def worker() -> None:
        store = SQLiteStore(db_path)
        try:
            barrier.wait(timeout=10)
            got = store.claim_next_job()
            with lock:
                results.append(got.job_id if got else None)
        finally:
            store.close()

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert results.count(job.job_id) == 1
    assert results.count(None) == n - 1

    check = SQLiteStore(db_path)
    try:
        assert check.get_job(job.job_id).status == "processing"
        started = [log for log in check.list_job_logs(job.job_id) if log.action == "job.started"]
        assert len(started) == 1
    finally:
        check.close()
