from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from jobengine.runtime.errors import (
    InvalidTransitionError,
    JobConflictError,
    JobNotCancellableError,
    JobNotFoundError,
)


SCHEMA_VERSION = 2

JOB_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
ACTIVE_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

JOB_KINDS = (
    "image_enrichment",
    "image_enrichment_retry",
    "contractor_enrichment",
    "review_enrichment",
    "reviewer_image_retry",
    "article_pipeline",
)

LOG_LEVELS = ("debug", "info", "warn", "error")


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_obj(raw: Any) -> dict[str, Any]:
    try:
        obj = json.loads(str(raw or "{}"))
    except json.JSONDecodeError:
        return {}
    return obj if isinstance(obj, dict) else {}


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def default_db_path() -> str:
    return os.getenv("JOBENGINE_SQLITE_PATH", "data/jobs.db")


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    kind: str
    status: str
    payload: dict[str, Any]
    result: dict[str, Any] | None
    scheduled_for: float
    created_by: str | None
    created_at: float
    started_at: float | None
    completed_at: float | None
    error: str | None
    total_items: int | None
    processed_items: int
    failed_items: int
    parent_job_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status,
            "payload": self.payload,
            "result": self.result,
            "scheduled_for": self.scheduled_for,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "failed_items": self.failed_items,
            "parent_job_id": self.parent_job_id,
        }


@dataclass(frozen=True)
class JobLogRecord:
    log_id: str
    job_id: str
    created_at: float
    level: str
    action: str
    message: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_id": self.log_id,
            "job_id": self.job_id,
            "created_at": self.created_at,
            "level": self.level,
            "action": self.action,
            "message": self.message,
            "data": self.data,
        }


_JOB_COLUMNS = """
  job_id, kind, status, payload_json, result_json, scheduled_for, created_by,
  created_at, started_at, completed_at, error, total_items, processed_items,
  failed_items, parent_job_id
"""


def _row_to_job(r: sqlite3.Row) -> JobRecord:
    result = _json_obj(r["result_json"]) if r["result_json"] is not None else None
    return JobRecord(
        job_id=str(r["job_id"]),
        kind=str(r["kind"]),
        status=str(r["status"]),
        payload=_json_obj(r["payload_json"]),
        result=result,
        scheduled_for=float(r["scheduled_for"]),
        created_by=str(r["created_by"]) if r["created_by"] is not None else None,
        created_at=float(r["created_at"]),
        started_at=_opt_float(r["started_at"]),
        completed_at=_opt_float(r["completed_at"]),
        error=str(r["error"]) if r["error"] is not None else None,
        total_items=int(r["total_items"]) if r["total_items"] is not None else None,
        processed_items=int(r["processed_items"]),
        failed_items=int(r["failed_items"]),
        parent_job_id=str(r["parent_job_id"]) if r["parent_job_id"] is not None else None,
    )


class SQLiteStore:
    """SQLite-backed row store for background jobs, their audit log and pipeline state.

    Correctness rests on two storage-level guarantees rather than on application checks:
    - a partial unique index allows at most one pending/processing job per kind;
    - every status transition is a conditional UPDATE on the expected current status,
      and claims run inside `BEGIN IMMEDIATE` (single writer).

    One store (connection) per thread. Concurrent workers open their own stores on the same file.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: single statements commit immediately, multi-statement
        # writes go through `transaction()`.
        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._in_tx = False
        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Explicit SQLite transaction; nested use joins the outer transaction."""
        if self._in_tx:
            yield
            return
        self._conn.execute(f"BEGIN {mode};")
        self._in_tx = True
        try:
            yield
            self._conn.execute("COMMIT;")
        except BaseException:
            self._conn.execute("ROLLBACK;")
            raise
        finally:
            self._in_tx = False

    def _init_schema(self) -> None:
        with self.transaction():
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                  job_id TEXT PRIMARY KEY,
                  kind TEXT NOT NULL,
                  status TEXT NOT NULL
                    CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
                  payload_json TEXT NOT NULL,
                  result_json TEXT,
                  scheduled_for REAL NOT NULL,
                  created_by TEXT,
                  created_at REAL NOT NULL,
                  started_at REAL,
                  completed_at REAL,
                  error TEXT,
                  total_items INTEGER,
                  processed_items INTEGER NOT NULL DEFAULT 0,
                  failed_items INTEGER NOT NULL DEFAULT 0,
                  parent_job_id TEXT
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_logs (
                  log_id TEXT PRIMARY KEY,
                  job_id TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  level TEXT NOT NULL,
                  action TEXT NOT NULL,
                  message TEXT NOT NULL,
                  data_json TEXT NOT NULL,
                  FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
                );
                """
            )
            # At most one active job per kind: the insert itself is the existence check.
            self._conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active_per_kind
                ON jobs(kind) WHERE status IN ('pending', 'processing');
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_pending_sched ON jobs(status, scheduled_for, created_at);"
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at DESC);")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_job_logs_job_ts ON job_logs(job_id, created_at);")
            self._conn.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
                ("schema_version", "1"),
            )

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        with self.transaction():
            while current < target:
                if current == 1:
                    self._migrate_1_to_2()
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")

    def _migrate_1_to_2(self) -> None:
        # Content pipeline checkpoints + downloaded contractor media.
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pipeline_runs (
              run_id TEXT PRIMARY KEY,
              job_id TEXT,
              keyword TEXT NOT NULL,
              status TEXT NOT NULL,
              settings_json TEXT NOT NULL,
              context_json TEXT NOT NULL,
              last_completed_stage TEXT,
              error TEXT,
              failed_stage TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pipeline_steps (
              step_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              agent_type TEXT NOT NULL,
              iteration INTEGER NOT NULL,
              status TEXT NOT NULL,
              input_json TEXT NOT NULL,
              output_json TEXT,
              error TEXT,
              started_at REAL NOT NULL,
              completed_at REAL,
              FOREIGN KEY (run_id) REFERENCES pipeline_runs(run_id) ON DELETE CASCADE
            );
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_pipeline_runs_job ON pipeline_runs(job_id, created_at);")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_pipeline_steps_run ON pipeline_steps(run_id, started_at);")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS contractor_media (
              media_id TEXT PRIMARY KEY,
              contractor_id TEXT NOT NULL,
              source_url TEXT NOT NULL,
              storage_path TEXT NOT NULL,
              public_url TEXT NOT NULL,
              created_at REAL NOT NULL,
              UNIQUE (contractor_id, source_url)
            );
            """
        )

    # --- Jobs
    def _get_job_row(self, job_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ? LIMIT 1;",
            (job_id,),
        ).fetchone()

    def get_job(self, job_id: str) -> JobRecord | None:
        jid = (job_id or "").strip()
        if not jid:
            return None
        row = self._get_job_row(jid)
        return _row_to_job(row) if row is not None else None

    def create_job(
        self,
        *,
        kind: str,
        payload: dict[str, Any] | None = None,
        created_by: str | None = None,
        scheduled_for: float | None = None,
        parent_job_id: str | None = None,
    ) -> JobRecord:
        """Insert a pending job plus its `job.created` log entry in one transaction.

        Raises JobConflictError when the partial unique index rejects the insert.
        """
        cleaned_kind = (kind or "").strip()
        if not cleaned_kind:
            raise ValueError("kind is required.")

        job_id = _new_id("job")
        ts = _utc_ts()
        sched = float(scheduled_for) if scheduled_for is not None else ts
        message = f"Job {cleaned_kind} created"
        if scheduled_for is not None and sched > ts:
            message += f" (scheduled for {sched:.0f})"

        with self.transaction():
            try:
                self._conn.execute(
                    """
                    INSERT INTO jobs(
                      job_id, kind, status, payload_json, scheduled_for, created_by, created_at, parent_job_id
                    ) VALUES(?, ?, 'pending', ?, ?, ?, ?, ?);
                    """,
                    (job_id, cleaned_kind, _json_dumps(payload or {}), sched, created_by, ts, parent_job_id),
                )
            except sqlite3.IntegrityError as e:
                if "jobs.kind" in str(e):
                    raise JobConflictError(cleaned_kind) from e
                raise
            self._insert_log(
                job_id,
                level="info",
                action="job.created",
                message=message,
                data={"kind": cleaned_kind, "created_by": created_by, "parent_job_id": parent_job_id},
            )

        job = self.get_job(job_id)
        assert job is not None
        return job

    def list_jobs_page(
        self,
        *,
        statuses: list[str] | None = None,
        kind: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        where = ["1=1"]
        params: list[Any] = []
        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)
        if kind:
            where.append("kind = ?")
            params.append(kind)
        where_sql = " AND ".join(where)

        total_row = self._conn.execute(f"SELECT COUNT(*) AS n FROM jobs WHERE {where_sql};", params).fetchone()
        rows = self._conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM jobs
            WHERE {where_sql}
            ORDER BY created_at DESC, job_id DESC
            LIMIT ? OFFSET ?;
            """,
            (*params, int(limit), int(offset)),
        ).fetchall()
        return [_row_to_job(r) for r in rows], int(total_row["n"])

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Queue helpers (single-writer safe claims)
    def claim_next_job(self, *, kind: str | None = None, now: float | None = None) -> JobRecord | None:
        """Atomically claim the oldest eligible pending job and mark it as processing.

        Eligible means `scheduled_for <= now`. Safe with several workers on the same DB:
        the UPDATE is conditional on `status = 'pending'` inside an IMMEDIATE transaction.
        """
        ts = _utc_ts() if now is None else float(now)
        where = ["status = 'pending'", "scheduled_for <= ?"]
        params: list[Any] = [ts]
        if kind:
            where.append("kind = ?")
            params.append(kind)

        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                f"""
                SELECT job_id, kind
                FROM jobs
                WHERE {" AND ".join(where)}
                ORDER BY scheduled_for ASC, created_at ASC, job_id ASC
                LIMIT 1;
                """,
                params,
            ).fetchone()
            if row is None:
                return None

            job_id = str(row["job_id"])
            updated = self._conn.execute(
                """
                UPDATE jobs
                SET
                  status = 'processing',
                  started_at = COALESCE(started_at, ?)
                WHERE job_id = ? AND status = 'pending';
                """,
                (_utc_ts(), job_id),
            )
            if updated.rowcount != 1:
                return None

            self._insert_log(
                job_id,
                level="info",
                action="job.started",
                message=f"Job {row['kind']} claimed for execution",
                data={},
            )
            return self.get_job(job_id)

    def _transition(
        self,
        job_id: str,
        *,
        target: str,
        allowed_from: tuple[str, ...],
        sets: str,
        params: tuple[Any, ...],
        log_level: str,
        log_action: str,
        log_message: str,
        log_data: dict[str, Any],
    ) -> bool:
        """Conditional status transition; returns False (no-op) if the job is already terminal."""
        row = self._get_job_row(job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        status = str(row["status"])
        if status in TERMINAL_STATUSES:
            return False
        if status not in allowed_from:
            raise InvalidTransitionError(job_id, status, target)

        placeholders = ",".join(["?"] * len(allowed_from))
        updated = self._conn.execute(
            f"UPDATE jobs SET status = ?, {sets} WHERE job_id = ? AND status IN ({placeholders});",
            (target, *params, job_id, *allowed_from),
        )
        if updated.rowcount != 1:
            # Lost a race against another terminal transition.
            return False
        self._insert_log(job_id, level=log_level, action=log_action, message=log_message, data=log_data)
        return True

    def complete_job(self, job_id: str, result: dict[str, Any] | None = None) -> bool:
        """processing -> completed. Returns False when the job was already terminal."""
        with self.transaction():
            return self._transition(
                job_id,
                target="completed",
                allowed_from=("processing",),
                sets="result_json = ?, completed_at = COALESCE(completed_at, ?)",
                params=(_json_dumps(result or {}), _utc_ts()),
                log_level="info",
                log_action="job.completed",
                log_message="Job completed",
                log_data={"result": result or {}},
            )

    def fail_job(self, job_id: str, error: str, *, details: dict[str, Any] | None = None) -> bool:
        """pending|processing -> failed. Returns False when the job was already terminal.

        `details` lands next to the error in the `job.failed` log entry.
        """
        msg = (error or "").strip() or "unknown_error"
        log_data: dict[str, Any] = {"error": msg}
        if details:
            log_data["details"] = details
        with self.transaction():
            return self._transition(
                job_id,
                target="failed",
                allowed_from=("pending", "processing"),
                sets="error = ?, completed_at = COALESCE(completed_at, ?)",
                params=(msg, _utc_ts()),
                log_level="error",
                log_action="job.failed",
                log_message=msg,
                log_data=log_data,
            )

    def cancel_job(self, job_id: str, *, cancelled_by: str | None = None) -> bool:
        """pending -> cancelled. A processing job is not cancellable mid-flight."""
        with self.transaction():
            row = self._get_job_row(job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            if str(row["status"]) == "processing":
                raise JobNotCancellableError(job_id, "processing")
            return self._transition(
                job_id,
                target="cancelled",
                allowed_from=("pending",),
                sets="completed_at = COALESCE(completed_at, ?)",
                params=(_utc_ts(),),
                log_level="info",
                log_action="job.cancelled",
                log_message="Job cancelled",
                log_data={"cancelled_by": cancelled_by},
            )

    def complete_with_continuation(
        self,
        job_id: str,
        *,
        result: dict[str, Any],
        kind: str,
        payload: dict[str, Any],
        scheduled_for: float,
    ) -> JobRecord | None:
        """Complete a job and insert its continuation in one transaction.

        Completing first frees the unique slot, so a retry job may schedule another job of its own kind.
        Returns None (and changes nothing) if the job was already terminal.
        """
        with self.transaction():
            done = self.complete_job(job_id, result)
            if not done:
                return None
            continuation = self.create_job(
                kind=kind,
                payload=payload,
                scheduled_for=scheduled_for,
                parent_job_id=job_id,
            )
            self._insert_log(
                job_id,
                level="warn",
                action="job.rescheduled",
                message=f"Continuation {continuation.job_id} scheduled",
                data={"continuation_job_id": continuation.job_id, "kind": kind, "scheduled_for": scheduled_for},
            )
            return continuation

    def retry_failed_job(self, job_id: str, *, created_by: str | None = None) -> JobRecord:
        """Create a NEW pending job from a failed one; the failed record stays untouched."""
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != "failed":
            raise InvalidTransitionError(job_id, job.status, "pending")
        return self.create_job(kind=job.kind, payload=job.payload, created_by=created_by, parent_job_id=job.job_id)

    def update_job_progress(
        self,
        job_id: str,
        *,
        total_items: int | None = None,
        processed_items: int | None = None,
        failed_items: int | None = None,
    ) -> None:
        # Progress only moves while processing; terminal rows are never rewritten.
        self._conn.execute(
            """
            UPDATE jobs
            SET
              total_items = COALESCE(?, total_items),
              processed_items = COALESCE(?, processed_items),
              failed_items = COALESCE(?, failed_items)
            WHERE job_id = ? AND status = 'processing';
            """,
            (total_items, processed_items, failed_items, job_id),
        )

    # --- Reconcile (startup safety)
    def reconcile_processing_jobs(
        self,
        *,
        reason: str = "server_restarted",
        older_than_s: float = 0.0,
        now: float | None = None,
    ) -> int:
        """Mark 'processing' jobs left by a previous process as failed.

        Only jobs claimed at least `older_than_s` seconds ago are touched, so a job another
        live runner is still executing survives. Returns the number of jobs reconciled.
        """
        cutoff = (_utc_ts() if now is None else float(now)) - max(0.0, float(older_than_s))
        rows = self._conn.execute(
            "SELECT job_id FROM jobs WHERE status = 'processing' AND COALESCE(started_at, 0) <= ?;",
            (cutoff,),
        ).fetchall()
        n = 0
        for r in rows:
            if self.fail_job(str(r["job_id"]), reason):
                n += 1
        return n

    # --- Audit log
    def _insert_log(self, job_id: str, *, level: str, action: str, message: str, data: dict[str, Any]) -> str:
        if level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {level!r}")
        log_id = _new_id("log")
        self._conn.execute(
            """
            INSERT INTO job_logs(log_id, job_id, created_at, level, action, message, data_json)
            VALUES(?, ?, ?, ?, ?, ?, ?);
            """,
            (log_id, job_id, _utc_ts(), level, action, message, _json_dumps(data)),
        )
        return log_id

    def append_job_log(
        self,
        job_id: str,
        *,
        action: str,
        message: str,
        level: str = "info",
        data: dict[str, Any] | None = None,
    ) -> str:
        return self._insert_log(job_id, level=level, action=action, message=message, data=data or {})

    def list_job_logs(self, job_id: str, *, limit: int = 200) -> list[JobLogRecord]:
        rows = self._conn.execute(
            """
            SELECT log_id, job_id, created_at, level, action, message, data_json
            FROM job_logs
            WHERE job_id = ?
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?;
            """,
            (job_id, int(limit)),
        ).fetchall()
        return [
            JobLogRecord(
                log_id=str(r["log_id"]),
                job_id=str(r["job_id"]),
                created_at=float(r["created_at"]),
                level=str(r["level"]),
                action=str(r["action"]),
                message=str(r["message"]),
                data=_json_obj(r["data_json"]),
            )
            for r in rows
        ]

    # --- Pipeline runs (checkpointed agent context)
    def create_pipeline_run(self, *, keyword: str, settings: dict[str, Any], job_id: str | None = None) -> str:
        run_id = _new_id("prun")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO pipeline_runs(
              run_id, job_id, keyword, status, settings_json, context_json, created_at, updated_at
            ) VALUES(?, ?, ?, 'processing', ?, '{}', ?, ?);
            """,
            (run_id, job_id, keyword, _json_dumps(settings), ts, ts),
        )
        return run_id

    def get_pipeline_run(self, run_id: str) -> dict[str, Any] | None:
        r = self._conn.execute(
            """
            SELECT run_id, job_id, keyword, status, settings_json, context_json, last_completed_stage,
                   error, failed_stage, created_at, updated_at
            FROM pipeline_runs
            WHERE run_id = ?
            LIMIT 1;
            """,
            (run_id,),
        ).fetchone()
        if r is None:
            return None
        return {
            "run_id": str(r["run_id"]),
            "job_id": str(r["job_id"]) if r["job_id"] is not None else None,
            "keyword": str(r["keyword"]),
            "status": str(r["status"]),
            "settings": _json_obj(r["settings_json"]),
            "context": _json_obj(r["context_json"]),
            "last_completed_stage": r["last_completed_stage"],
            "error": r["error"],
            "failed_stage": r["failed_stage"],
            "created_at": float(r["created_at"]),
            "updated_at": float(r["updated_at"]),
        }

    def get_latest_pipeline_run_for_job(self, job_id: str) -> dict[str, Any] | None:
        r = self._conn.execute(
            "SELECT run_id FROM pipeline_runs WHERE job_id = ? ORDER BY created_at DESC, run_id DESC LIMIT 1;",
            (job_id,),
        ).fetchone()
        return self.get_pipeline_run(str(r["run_id"])) if r is not None else None

    def set_pipeline_run_job(self, run_id: str, job_id: str) -> None:
        """Hand a run over to the job now executing it, so the next retry of that job finds it."""
        self._conn.execute(
            "UPDATE pipeline_runs SET job_id = ?, updated_at = ? WHERE run_id = ?;",
            (job_id, _utc_ts(), run_id),
        )

    def save_pipeline_checkpoint(self, run_id: str, *, context: dict[str, Any], last_completed_stage: str) -> None:
        self._conn.execute(
            """
            UPDATE pipeline_runs
            SET context_json = ?, last_completed_stage = ?, updated_at = ?
            WHERE run_id = ?;
            """,
            (_json_dumps(context), last_completed_stage, _utc_ts(), run_id),
        )

    def set_pipeline_run_status(
        self,
        run_id: str,
        status: str,
        *,
        error: str | None = None,
        failed_stage: str | None = None,
    ) -> None:
        self._conn.execute(
            """
            UPDATE pipeline_runs
            SET status = ?, error = ?, failed_stage = ?, updated_at = ?
            WHERE run_id = ?;
            """,
            (status, error, failed_stage, _utc_ts(), run_id),
        )

    def start_pipeline_step(self, run_id: str, *, agent_type: str, iteration: int, inputs: dict[str, Any]) -> str:
        step_id = _new_id("step")
        self._conn.execute(
            """
            INSERT INTO pipeline_steps(step_id, run_id, agent_type, iteration, status, input_json, started_at)
            VALUES(?, ?, ?, ?, 'running', ?, ?);
            """,
            (step_id, run_id, agent_type, int(iteration), _json_dumps(inputs), _utc_ts()),
        )
        return step_id

    def finish_pipeline_step(
        self,
        step_id: str,
        *,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        status = "failed" if error is not None else "completed"
        self._conn.execute(
            """
            UPDATE pipeline_steps
            SET status = ?, output_json = ?, error = ?, completed_at = ?
            WHERE step_id = ? AND status = 'running';
            """,
            (status, _json_dumps(output) if output is not None else None, error, _utc_ts(), step_id),
        )

    def list_pipeline_steps(self, run_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT step_id, run_id, agent_type, iteration, status, output_json, error, started_at, completed_at
            FROM pipeline_steps
            WHERE run_id = ?
            ORDER BY started_at ASC, rowid ASC;
            """,
            (run_id,),
        ).fetchall()
        return [
            {
                "step_id": str(r["step_id"]),
                "run_id": str(r["run_id"]),
                "agent_type": str(r["agent_type"]),
                "iteration": int(r["iteration"]),
                "status": str(r["status"]),
                "output": _json_obj(r["output_json"]) if r["output_json"] is not None else None,
                "error": r["error"],
                "started_at": float(r["started_at"]),
                "completed_at": _opt_float(r["completed_at"]),
            }
            for r in rows
        ]

    # --- Contractor media
    def record_contractor_media(
        self,
        *,
        contractor_id: str,
        source_url: str,
        storage_path: str,
        public_url: str,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO contractor_media(media_id, contractor_id, source_url, storage_path, public_url, created_at)
            VALUES(?, ?, ?, ?, ?, ?)
            ON CONFLICT(contractor_id, source_url) DO NOTHING;
            """,
            (_new_id("media"), contractor_id, source_url, storage_path, public_url, _utc_ts()),
        )

    def list_contractor_media(self, contractor_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT media_id, contractor_id, source_url, storage_path, public_url, created_at
            FROM contractor_media
            WHERE contractor_id = ?
            ORDER BY created_at ASC, rowid ASC;
            """,
            (contractor_id,),
        ).fetchall()
        return [dict(r) for r in rows]
