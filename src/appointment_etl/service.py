"""appointment_etl.service

Ingestion surface consumed by the dashboard (or the CLI):

  preview_upload(filename, stream)   stage + classify, nothing written
  confirm_import(handle, mode)       enqueue the import of a previewed file
  import_upload(filename, stream)    stage + enqueue, mode "all"
  import_progress(run_id=None)       progress dict ({"state": "idle"} if none)
  sync_progress(run_id=None)
  trigger_sync()                     start a sync chain
  resume_sync(run_id)                restart a chain from its persisted cursor

Trigger calls return a run_id as soon as the initial ProgressState is
published and the work is submitted to the worker pool.
"""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Callable, ContextManager

import psycopg

from appointment_etl.api_client import resolve_date_window
from appointment_etl.config import Settings
from appointment_etl.import_file import IMPORT_MODES, MODE_ALL, ImportRunner
from appointment_etl.layouts import Layout
from appointment_etl.preview import preview_file
from appointment_etl.progress import IDLE, KIND_IMPORT, KIND_SYNC, STATE_RUNNING, ProgressStore
from appointment_etl.shared import (
    IngestionError,
    StagedFileNotFound,
    SyncAlreadyRunningError,
)
from appointment_etl.staging import StagedFileStore
from appointment_etl.sync_api import SyncCursor, SyncRunner
from appointment_etl.worker import WorkerPool

log = logging.getLogger(__name__)


def new_run_id() -> str:
    return str(uuid.uuid4())


class IngestionService:
    def __init__(
        self,
        settings: Settings,
        progress: ProgressStore,
        staging: StagedFileStore,
        pool: WorkerPool,
        connect: Callable[[], ContextManager[psycopg.Connection]] | None = None,
        sync_runner: SyncRunner | None = None,
    ) -> None:
        self._settings = settings
        self._progress = progress
        self._staging = staging
        self._pool = pool
        self._connect = connect or (lambda: psycopg.connect(settings.require_db()))
        self._importer = ImportRunner(settings, progress, staging, self._connect)
        self._syncer = sync_runner or SyncRunner(settings, progress, self._connect)
        self._trigger_lock = threading.Lock()

    # ------------------------------------------------------------------
    # file path
    # ------------------------------------------------------------------

    def preview_upload(
        self, filename: str, stream: BinaryIO, layout: Layout | None = None
    ) -> dict[str, Any]:
        handle = self._staging.stage(filename, stream)
        try:
            with self._connect() as conn:
                result = preview_file(conn, self._staging.path_for(handle), layout)
        except Exception:
            self._staging.release(handle)
            raise
        if result.is_empty:
            self._staging.release(handle)
            result.file_handle = None
        else:
            result.file_handle = handle
        log.info(
            "Preview %s: new=%d update=%d skip=%d rejected=%d",
            filename, len(result.new), len(result.update),
            result.skip_count, result.rejected,
        )
        return result.to_dict()

    def confirm_import(
        self,
        handle: str,
        mode: str = MODE_ALL,
        layout: Layout | None = None,
        rejects_path: Path | None = None,
        run_id: str | None = None,
    ) -> str:
        if mode not in IMPORT_MODES:
            raise ValueError(f"Unknown import mode '{mode}'. Must be one of {IMPORT_MODES}.")
        if not self._staging.exists(handle):
            raise StagedFileNotFound(f"Staged file not found: {handle!r}")
        run_id = run_id or new_run_id()
        self._progress.begin(self._importer.initial_state(run_id))
        self._pool.submit(
            self._importer.run, run_id, handle, mode, layout, rejects_path
        )
        log.info("[%s] import queued (mode=%s, handle=%s)", run_id, mode, handle)
        return run_id

    def import_upload(
        self,
        filename: str,
        stream: BinaryIO,
        layout: Layout | None = None,
        rejects_path: Path | None = None,
        run_id: str | None = None,
    ) -> str:
        handle = self._staging.stage(filename, stream)
        return self.confirm_import(handle, MODE_ALL, layout, rejects_path, run_id)

    def import_progress(self, run_id: str | None = None) -> dict[str, Any]:
        return self._read_progress(KIND_IMPORT, run_id)

    # ------------------------------------------------------------------
    # API path
    # ------------------------------------------------------------------

    def trigger_sync(self, run_id: str | None = None) -> str:
        self._check_sync_config()
        with self._trigger_lock:
            self._refuse_running_sync()
            run_id = run_id or new_run_id()
            self._progress.begin(self._syncer.initial_state(run_id))
        self._pool.submit_chain(self._syncer.chain_step(run_id), SyncCursor())
        log.info("[%s] sync chain started", run_id)
        return run_id

    def resume_sync(self, run_id: str) -> str:
        self._check_sync_config()
        with self._trigger_lock:
            self._refuse_running_sync(run_id)
            cursor = self._syncer.resume_cursor(run_id)
            if cursor is None:
                raise IngestionError(f"Sync {run_id} has no resumable cursor.")
            state = self._progress.get(run_id)
            self._progress.begin(state.advance(state=STATE_RUNNING, error=None))
        self._pool.submit_chain(self._syncer.chain_step(run_id), cursor)
        log.info("[%s] sync chain resumed at page %d batch %d", run_id, cursor.page, cursor.batch)
        return run_id

    def sync_progress(self, run_id: str | None = None) -> dict[str, Any]:
        return self._read_progress(KIND_SYNC, run_id)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every submitted unit, chained ones included, has finished."""
        return self._pool.wait(timeout)

    # ------------------------------------------------------------------

    def _check_sync_config(self) -> None:
        self._settings.require_api()
        resolve_date_window(self._settings.api_from_date, self._settings.api_to_date)

    def _refuse_running_sync(self, run_id: str | None = None) -> None:
        current = self._progress.latest(KIND_SYNC)
        if current is not None and current.is_running:
            raise SyncAlreadyRunningError(
                f"Sync {current.run_id} is still running (batch {current.unit})."
            )
        target = self._progress.get(run_id) if run_id else None
        if target is not None and target.is_running:
            raise SyncAlreadyRunningError(
                f"Sync {run_id} is still running (batch {target.unit})."
            )

    def _read_progress(self, kind: str, run_id: str | None) -> dict[str, Any]:
        state = self._progress.get(run_id) if run_id else self._progress.latest(kind)
        if state is None or state.kind != kind:
            return dict(IDLE)
        return state.to_dict()
