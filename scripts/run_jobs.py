#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from jobengine.runtime.bootstrap import build_runtime  # noqa: E402
from jobengine.runtime.worker import run_until_idle  # noqa: E402
from jobengine.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Execute due background jobs once and exit (cron-friendly).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env JOBENGINE_SQLITE_PATH or data/jobs.db).")
    p.add_argument("--max-jobs", type=int, default=1, help="Stop after this many jobs (default: 1).")
    p.add_argument("--enqueue", default="", help="Create a job of this kind before running.")
    p.add_argument("--payload", default="{}", help="JSON payload for --enqueue.")
    p.add_argument("-v", "--verbose", action="store_true")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    runtime = build_runtime()
    store = SQLiteStore(args.db_path or None)
    try:
        if args.enqueue:
            job = store.create_job(kind=str(args.enqueue), payload=json.loads(args.payload), created_by="cli")
            print(f"enqueued {job.job_id}", file=sys.stderr)
        reports = run_until_idle(runtime, store, max_jobs=max(1, int(args.max_jobs)))
        print(json.dumps(reports, ensure_ascii=False, indent=2))
        return 0 if all(r["status"] != "failed" for r in reports) else 2
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
