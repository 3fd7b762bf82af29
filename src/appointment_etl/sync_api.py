"""appointment_etl.sync_api

API Sync Orchestrator.

One logical sync is a chain of short batches:

    idle → running → (complete | error)

run_sync_batch() handles one batch: resolve the date window, authenticate,
fetch up to pages_per_batch pages starting at cursor.page (stopping at the
first short page), map, and upsert in chunks.  SyncRunner.step() wraps a
batch as one worker unit: it merges counts into the run's cumulative
ProgressState, persists the next cursor, and returns it so the worker pool
enqueues the next batch.  Any exception stops the chain in the error state;
resume() restarts from the last persisted cursor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, ContextManager

import psycopg

from appointment_etl.api_client import ApiClient, map_api_record, resolve_date_window
from appointment_etl.config import Settings
from appointment_etl.progress import (
    KIND_SYNC,
    STATE_COMPLETE,
    STATE_ERROR,
    STATE_RUNNING,
    ProgressState,
    ProgressStore,
)
from appointment_etl.shared import CanonicalRecord, RunCounters
from appointment_etl.upsert import API_UPDATE_COLUMNS, upsert_appointments

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncCursor:
    page: int = 1
    batch: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"page": self.page, "batch": self.batch}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncCursor":
        if not data:
            return cls()
        return cls(page=int(data.get("page", 1)), batch=int(data.get("batch", 0)))


@dataclass
class BatchResult:
    first_page: int
    last_page: int
    has_more: bool
    counters: RunCounters

    @property
    def next_cursor(self) -> SyncCursor | None:
        return None if not self.has_more else SyncCursor(page=self.last_page + 1)


# ---------------------------------------------------------------------------
# One batch
# ---------------------------------------------------------------------------

def run_sync_batch(
    conn: psycopg.Connection,
    client: ApiClient,
    settings: Settings,
    cursor: SyncCursor,
    today: date | None = None,
) -> BatchResult:
    settings.require_api()
    window = resolve_date_window(settings.api_from_date, settings.api_to_date, today)
    token = client.authenticate()

    counters = RunCounters(batches_processed=1)
    raw_rows: list[dict[str, Any]] = []
    page = cursor.page
    has_more = False
    for page in range(cursor.page, cursor.page + settings.pages_per_batch):
        rows = client.fetch_page(token, page, window)
        counters.pages_fetched += 1
        raw_rows.extend(rows)
        if len(rows) < settings.per_page:
            has_more = False
            break
        has_more = True
    counters.fetch_retries = client.retries

    log.info(
        "Sync batch %d fetched pages %d..%d (%d raw records, window %s..%s)",
        cursor.batch, cursor.page, page, len(raw_rows), window[0], window[1],
    )

    candidates: list[CanonicalRecord] = []
    for raw in raw_rows:
        counters.rows_read += 1
        rec = map_api_record(raw)
        if rec is None:
            counters.remote_records_skipped += 1
            continue
        candidates.append(rec)

    for start in range(0, len(candidates), settings.upsert_chunk):
        chunk = candidates[start:start + settings.upsert_chunk]
        result = upsert_appointments(conn, chunk, API_UPDATE_COLUMNS)
        counters.rows_inserted += result.inserted
        counters.rows_updated += result.updated
        counters.duplicates_collapsed += result.collapsed
        counters.chunks_processed += 1

    return BatchResult(
        first_page=cursor.page, last_page=page, has_more=has_more, counters=counters
    )


# ---------------------------------------------------------------------------
# Chain driver
# ---------------------------------------------------------------------------

class SyncRunner:
    """Runs sync batches as worker units and keeps the chain's progress."""

    def __init__(
        self,
        settings: Settings,
        progress: ProgressStore,
        connect: Callable[[], ContextManager[psycopg.Connection]],
        client_factory: Callable[[Settings], ApiClient] = ApiClient,
    ) -> None:
        self._settings = settings
        self._progress = progress
        self._connect = connect
        self._client_factory = client_factory

    def initial_state(self, run_id: str) -> ProgressState:
        return ProgressState(
            run_id=run_id, kind=KIND_SYNC, state=STATE_RUNNING,
            cursor=SyncCursor().to_dict(),
        )

    def step(self, run_id: str, cursor: SyncCursor) -> SyncCursor | None:
        """Run one batch; return the next cursor, or None when the chain ends."""
        state = self._progress.get(run_id) or self.initial_state(run_id)
        try:
            client = self._client_factory(self._settings)
            with self._connect() as conn:
                result = run_sync_batch(conn, client, self._settings, cursor)
        except Exception as exc:
            log.exception("[%s] sync batch %d failed", run_id, cursor.batch)
            self._progress.put(state.advance(state=STATE_ERROR, error=str(exc)))
            return None

        c = result.counters
        nxt = result.next_cursor
        if nxt is not None:
            nxt = SyncCursor(page=nxt.page, batch=cursor.batch + 1)
        self._progress.put(state.advance(
            state=STATE_RUNNING if nxt is not None else STATE_COMPLETE,
            unit=cursor.batch + 1,
            imported=state.imported + c.imported,
            skipped=state.skipped + c.skipped,
            cursor=(nxt or SyncCursor(page=result.last_page + 1, batch=cursor.batch + 1)).to_dict(),
            error=None,
        ))
        log.info(
            "[%s] sync batch %d: pages %d..%d, imported=%d skipped=%d%s",
            run_id, cursor.batch, result.first_page, result.last_page,
            c.imported, c.skipped, "" if nxt else " (complete)",
        )
        return nxt

    def chain_step(self, run_id: str) -> Callable[[SyncCursor], SyncCursor | None]:
        return lambda cursor: self.step(run_id, cursor)

    def resume_cursor(self, run_id: str) -> SyncCursor | None:
        """Cursor to restart an errored or interrupted chain from, if any."""
        state = self._progress.get(run_id)
        if state is None or state.kind != KIND_SYNC or state.state == STATE_COMPLETE:
            return None
        return SyncCursor.from_dict(state.cursor)
