from __future__ import annotations

import logging
import threading
import time
import traceback
from typing import Any

from jobengine.runtime.bootstrap import Runtime
from jobengine.storage.sqlite_store import SQLiteStore, default_db_path


logger = logging.getLogger(__name__)


class JobWorker:
    """Single-threaded background worker that executes due jobs."""

    def __init__(self, runtime: Runtime, *, db_path: str | None = None) -> None:
        self._runtime = runtime
        self._db_path = db_path or default_db_path()
        self._poll_interval_s = float(runtime.config.worker.poll_interval_s)
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._executed = 0
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "poll_interval_s": self._poll_interval_s,
            "db_path": self._db_path,
            "executed": self._executed,
            "last_error": self._last_error,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="jobengine-worker", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def _run_loop(self) -> None:
        # Connections are per-thread: the worker owns its own store.
        store = SQLiteStore(self._db_path)
        runner = self._runtime.runner(store)
        try:
            while not self._stop.is_set():
                try:
                    report = runner.run_next()
                except Exception as e:
                    # Storage-level failure outside any executor; keep polling.
                    self._last_error = f"{type(e).__name__}: {e}"
                    logger.error("worker iteration failed: %s\n%s", e, traceback.format_exc())
                    self._stop.wait(self._poll_interval_s)
                    continue

                if report is None:
                    self._stop.wait(self._poll_interval_s)
                    continue
                self._executed += 1
                logger.info("job %s (%s) -> %s", report.job_id, report.kind, report.status)
        finally:
            store.close()


def run_until_idle(runtime: Runtime, store: SQLiteStore, *, max_jobs: int = 100) -> list[dict[str, Any]]:
    """Drain due jobs synchronously (scripts and tests); stops when nothing is due."""
    runner = runtime.runner(store)
    reports: list[dict[str, Any]] = []
    started = time.time()
    while len(reports) < max_jobs:
        report = runner.run_next()
        if report is None:
            break
        reports.append(report.to_dict())
    logger.debug("drained %d job(s) in %.2fs", len(reports), time.time() - started)
    return reports
