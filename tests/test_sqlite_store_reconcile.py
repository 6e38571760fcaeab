from __future__ import annotations

import sqlite3
import tempfile

from jobengine.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def test_reconcile_processing_jobs_marks_failed_and_records_log() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            job = store.create_job(kind="image_enrichment", payload={"contractor_id": "c1", "images": []})
            idle = store.create_job(kind="article_pipeline", scheduled_for=4102444800.0)
            claimed = store.claim_next_job(kind="image_enrichment")
            assert claimed is not None

            reconciled = store.reconcile_processing_jobs(reason="server_restarted")
            assert reconciled == 1

            row = store.get_job(job.job_id)
            assert row is not None
            assert row.status == "failed"
            assert row.error == "server_restarted"
            assert store.get_job(idle.job_id).status == "pending"

            logs = store.list_job_logs(job.job_id)
            assert logs[-1].action == "job.failed"
            assert logs[-1].data["error"] == "server_restarted"

            # A second pass finds nothing left to reconcile.
            assert store.reconcile_processing_jobs() == 0
        finally:
            store.close()


def test_reconcile_leaves_recently_claimed_jobs_alone() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            job = store.create_job(kind="image_enrichment")
            claimed = store.claim_next_job()
            assert claimed.started_at is not None

            started = claimed.started_at
            assert store.reconcile_processing_jobs(older_than_s=3600, now=started + 60) == 0
            assert store.get_job(job.job_id).status == "processing"
            assert store.complete_job(job.job_id, {"ok": True}) is True

            other = store.create_job(kind="review_enrichment")
            claimed = store.claim_next_job()
            assert store.reconcile_processing_jobs(older_than_s=3600, now=claimed.started_at + 3601) == 1
            assert store.get_job(other.job_id).status == "failed"
        finally:
            store.close()


def test_reconciled_kind_accepts_new_jobs() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            store.create_job(kind="review_enrichment")
            store.claim_next_job()
            store.reconcile_processing_jobs()
            fresh = store.create_job(kind="review_enrichment")
            assert fresh.status == "pending"
        finally:
            store.close()


def test_migration_creates_pipeline_and_media_tables() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            for table in ("jobs", "job_logs", "pipeline_runs", "pipeline_steps", "contractor_media"):
                assert _table_exists(store._conn, table)
            row = store._conn.execute("SELECT value FROM meta WHERE key = 'schema_version';").fetchone()
            assert int(row["value"]) == SCHEMA_VERSION
        finally:
            store.close()

        # Reopening an up-to-date database is a no-op.
        again = SQLiteStore(db_path)
        again.close()


def test_contractor_media_is_recorded_once_per_source_url() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            for _ in range(2):
                store.record_contractor_media(
                    contractor_id="c1",
                    source_url="https://img.example/a.png",
                    storage_path="contractors/c1/abc.png",
                    public_url="http://localhost/objects/contractors/c1/abc.png",
                )
            media = store.list_contractor_media("c1")
            assert len(media) == 1
            assert media[0]["storage_path"] == "contractors/c1/abc.png"
        finally:
            store.close()
