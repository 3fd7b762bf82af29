"""Integration tests for PgProgressStore and the API sync chain.

These tests run against an ephemeral PostgreSQL database with the full
schema applied via the db_conn fixture in conftest.py.  The remote API is a
MagicMock client; everything else is real.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import psycopg

from appointment_etl.config import Settings
from appointment_etl.progress import (
    KIND_IMPORT,
    KIND_SYNC,
    STATE_COMPLETE,
    STATE_ERROR,
    PgProgressStore,
    ProgressState,
)
from appointment_etl.service import IngestionService
from appointment_etl.shared import TransientFetchError
from appointment_etl.staging import StagedFileStore
from appointment_etl.sync_api import SyncCursor, SyncRunner
from appointment_etl.worker import WorkerPool


def _rows(n: int, offset: int = 0) -> list[dict]:
    return [
        {
            "patient_full_name": f"Patient {offset + i}",
            "date_of_service": "2026-02-03T00:00:00Z",
            "appointment_status": "Scheduled",
            "charges": "10.00",
        }
        for i in range(n)
    ]


def _client(pages: dict[int, list[dict]]) -> MagicMock:
    client = MagicMock()
    client.authenticate.return_value = "tok"
    client.fetch_page.side_effect = lambda token, page, window: pages.get(page, [])
    client.retries = 0
    return client


def _settings(dsn: str, **overrides) -> Settings:
    values = dict(
        db_dsn=dsn,
        api_login_url="https://login.test/auth/token",
        api_url="https://data.test/report/general-visit",
        api_from_date="2026-01-01",
        api_to_date="2026-02-24",
        backoff_base_seconds=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def _count(conn) -> int:
    return conn.execute("SELECT count(*) FROM appointments").fetchone()[0]


# ---------------------------------------------------------------------------
# PgProgressStore
# ---------------------------------------------------------------------------

class TestPgProgressStore:
    def test_begin_get_latest(self, db_conn):
        _, dsn = db_conn
        store = PgProgressStore(dsn)
        store.begin(ProgressState(run_id="r1", kind=KIND_SYNC, cursor={"page": 1, "batch": 0}))

        got = store.get("r1")
        assert got.kind == KIND_SYNC
        assert got.cursor == {"page": 1, "batch": 0}
        assert store.latest(KIND_SYNC).run_id == "r1"
        assert store.latest(KIND_IMPORT) is None

    def test_put_updates_without_moving_latest(self, db_conn):
        _, dsn = db_conn
        store = PgProgressStore(dsn)
        first = ProgressState(run_id="r1", kind=KIND_IMPORT)
        store.begin(first)
        store.begin(ProgressState(run_id="r2", kind=KIND_IMPORT))
        store.put(first.advance(state=STATE_COMPLETE, imported=7))

        assert store.get("r1").imported == 7
        assert store.latest(KIND_IMPORT).run_id == "r2"

    def test_expired_reads_as_absent(self, db_conn):
        _, dsn = db_conn
        store = PgProgressStore(dsn, ttl_seconds=0)
        store.begin(ProgressState(run_id="r1", kind=KIND_IMPORT))
        assert store.get("r1") is None
        assert store.latest(KIND_IMPORT) is None
        assert store.purge_expired() == 1

    def test_begin_purges_expired_rows(self, db_conn):
        conn, dsn = db_conn
        PgProgressStore(dsn, ttl_seconds=0).begin(ProgressState(run_id="r1", kind=KIND_IMPORT))
        store = PgProgressStore(dsn)
        store.begin(ProgressState(run_id="r2", kind=KIND_SYNC))

        run_ids = [r[0] for r in conn.execute("SELECT run_id FROM ingestion_progress").fetchall()]
        assert run_ids == ["r2"]
        assert store.latest(KIND_SYNC).run_id == "r2"
        assert store.purge_expired() == 0


# ---------------------------------------------------------------------------
# Sync chain against a real store
# ---------------------------------------------------------------------------

def _runner(dsn, settings, progress, client) -> SyncRunner:
    return SyncRunner(
        settings, progress, connect=lambda: psycopg.connect(dsn),
        client_factory=lambda s: client,
    )


class TestSyncChain:
    def test_two_batches_store_every_row(self, db_conn):
        conn, dsn = db_conn
        settings = _settings(dsn, pages_per_batch=1)
        progress = PgProgressStore(dsn)
        client = _client({1: _rows(100), 2: _rows(40, 100)})
        svc = IngestionService(
            settings, progress, StagedFileStore(settings.staging_dir),
            WorkerPool(inline=True),
            sync_runner=_runner(dsn, settings, progress, client),
        )

        run_id = svc.trigger_sync()

        assert _count(conn) == 140
        status = svc.sync_progress()
        assert status["run_id"] == run_id
        assert status["state"] == STATE_COMPLETE
        assert status["unit"] == 2
        assert status["imported"] == 140

    def test_resync_updates_not_duplicates(self, db_conn):
        conn, dsn = db_conn
        settings = _settings(dsn)
        progress = PgProgressStore(dsn)
        runner = _runner(dsn, settings, progress, _client({1: _rows(30)}))

        runner.step("a", SyncCursor())
        runner.step("b", SyncCursor())

        assert _count(conn) == 30
        assert progress.get("b").imported == 30

    def test_error_then_resume(self, db_conn):
        conn, dsn = db_conn
        settings = _settings(dsn, pages_per_batch=1)
        progress = PgProgressStore(dsn)
        pages = {1: _rows(100), 2: _rows(25, 100)}
        client = _client(pages)
        fail = {"on": True}

        def fetch(token, page, window):
            if page == 2 and fail["on"]:
                raise TransientFetchError("API data fetch failed (page 2) after 3 attempts: HTTP 503")
            return pages.get(page, [])

        client.fetch_page.side_effect = fetch
        svc = IngestionService(
            settings, progress, StagedFileStore(settings.staging_dir),
            WorkerPool(inline=True),
            sync_runner=_runner(dsn, settings, progress, client),
        )

        run_id = svc.trigger_sync()
        status = svc.sync_progress(run_id)
        assert status["state"] == STATE_ERROR
        assert status["cursor"] == {"page": 2, "batch": 1}
        assert _count(conn) == 100

        fail["on"] = False
        svc.resume_sync(run_id)
        status = svc.sync_progress(run_id)
        assert status["state"] == STATE_COMPLETE
        assert status["imported"] == 125
        assert _count(conn) == 125
