#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from jobengine.runtime.errors import JobNotCancellableError, JobNotFoundError  # noqa: E402
from jobengine.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cancel a pending background job (SQLite-backed).")
    p.add_argument("--job-id", required=True, help="Job id to cancel (e.g. job_<uuid>).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env JOBENGINE_SQLITE_PATH or data/jobs.db).")
    p.add_argument("--actor", default="cli", help="Who requested the cancellation (recorded in the audit log).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        try:
            cancelled = store.cancel_job(str(args.job_id), cancelled_by=str(args.actor))
        except (JobNotFoundError, JobNotCancellableError) as e:
            print(str(e), file=sys.stderr)
            return 1
        job = store.get_job(str(args.job_id))
        print(f"{args.job_id} {job.status if job else 'unknown'}{'' if cancelled else ' (unchanged)'}")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
