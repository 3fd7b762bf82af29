"""appointment_etl.import_file

Import Orchestrator: drives one staged export end-to-end as a background
unit with bounded memory.

Per chunk (import_chunk rows):
  normalize → mode filter → upsert (FILE_UPDATE_COLUMNS) → publish progress

Modes:
  all           write every accepted row
  new_only      write only rows whose fingerprint is not stored yet
  updates_only  write only stored rows whose modification marker changed

new_only / updates_only re-run classify_records() per chunk against the
live store; nothing from an earlier preview is reused.  They first count
fingerprints over the whole file so only the last occurrence of a duplicate
reaches classification, the same row the preview shows.

Transient failures (psycopg.OperationalError, OSError) restart the run from
row 0 up to import_max_attempts times, with exponential backoff between
attempts; the fingerprint-keyed upsert makes the replay idempotent.  The staged file is released exactly once, whatever
the outcome.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Callable, ContextManager

import psycopg

from appointment_etl.api_client import Backoff
from appointment_etl.config import Settings
from appointment_etl.layouts import Layout
from appointment_etl.preview import classify_records, normalize_chunk, open_export
from appointment_etl.progress import (
    KIND_IMPORT,
    STATE_COMPLETE,
    STATE_ERROR,
    STATE_RUNNING,
    ProgressState,
    ProgressStore,
)
from appointment_etl.shared import CanonicalRecord, RejectWriter, RunCounters
from appointment_etl.staging import StagedFileStore, iter_chunks
from appointment_etl.upsert import FILE_UPDATE_COLUMNS, upsert_appointments

log = logging.getLogger(__name__)

MODE_ALL = "all"
MODE_NEW_ONLY = "new_only"
MODE_UPDATES_ONLY = "updates_only"
IMPORT_MODES = (MODE_ALL, MODE_NEW_ONLY, MODE_UPDATES_ONLY)

TRANSIENT_ERRORS = (psycopg.OperationalError, OSError)


def keep_last_occurrences(
    records: list[CanonicalRecord], remaining: Counter[str]
) -> tuple[list[CanonicalRecord], int]:
    """Drop records whose fingerprint occurs again later in the file.

    remaining holds the not-yet-seen occurrences per fingerprint and is
    consumed as chunks go by.  Returns (kept, dropped_count).
    """
    kept: list[CanonicalRecord] = []
    dropped = 0
    for rec in records:
        remaining[rec.fingerprint] -= 1
        if remaining[rec.fingerprint] > 0:
            dropped += 1
        else:
            kept.append(rec)
    return kept, dropped


class ImportRunner:
    def __init__(
        self,
        settings: Settings,
        progress: ProgressStore,
        staging: StagedFileStore,
        connect: Callable[[], ContextManager[psycopg.Connection]],
    ) -> None:
        self._settings = settings
        self._progress = progress
        self._staging = staging
        self._connect = connect

    def initial_state(self, run_id: str) -> ProgressState:
        return ProgressState(run_id=run_id, kind=KIND_IMPORT, state=STATE_RUNNING)

    # ------------------------------------------------------------------
    # one pass over the file
    # ------------------------------------------------------------------

    def _fingerprint_counts(self, path: Path, layout: Layout) -> Counter[str]:
        _, rows = open_export(path, layout)
        counts: Counter[str] = Counter()
        for chunk in iter_chunks(rows, self._settings.import_chunk):
            for rec in normalize_chunk(chunk, layout, RunCounters()):
                counts[rec.fingerprint] += 1
        return counts

    def _run_once(
        self,
        run_id: str,
        path: Path,
        mode: str,
        layout: Layout | None,
        counters: RunCounters,
        rejects: RejectWriter,
        state: ProgressState,
    ) -> ProgressState:
        resolved, rows = open_export(path, layout)
        if resolved is None:
            return state
        remaining = None if mode == MODE_ALL else self._fingerprint_counts(path, resolved)

        for unit, chunk in enumerate(iter_chunks(rows, self._settings.import_chunk), 1):
            records = normalize_chunk(chunk, resolved, counters, rejects)
            if remaining is not None:
                records, dropped = keep_last_occurrences(records, remaining)
                counters.duplicates_collapsed += dropped
            with self._connect() as conn:
                if mode != MODE_ALL and records:
                    cls = classify_records(conn, records)
                    counters.duplicates_collapsed += cls.collapsed
                    counters.rows_filtered += len(cls.skipped)
                    if mode == MODE_NEW_ONLY:
                        records = cls.new
                        counters.rows_filtered += len(cls.updates)
                    else:
                        records = [rec for rec, _ in cls.updates]
                        counters.rows_filtered += len(cls.new)
                result = upsert_appointments(conn, records, FILE_UPDATE_COLUMNS)
            counters.rows_inserted += result.inserted
            counters.rows_updated += result.updated
            counters.duplicates_collapsed += result.collapsed
            counters.chunks_processed += 1

            state = state.advance(
                unit=unit,
                imported=counters.imported,
                skipped=counters.skipped,
                rejected=counters.rows_rejected,
                cursor={"rows": counters.rows_read, "attempt": counters.attempts},
            )
            self._progress.put(state)
            log.info(
                "[%s] chunk %d: %d rows read, imported=%d skipped=%d rejected=%d",
                run_id, unit, counters.rows_read, counters.imported,
                counters.skipped, counters.rows_rejected,
            )
        return state

    # ------------------------------------------------------------------
    # public entry point (one worker unit)
    # ------------------------------------------------------------------

    def run(
        self,
        run_id: str,
        handle: str,
        mode: str = MODE_ALL,
        layout: Layout | None = None,
        rejects_path: Path | None = None,
    ) -> RunCounters:
        """Import a staged file; progress and errors land in the progress store."""
        base = self._progress.get(run_id) or self.initial_state(run_id)
        counters = RunCounters()
        state = base
        try:
            if mode not in IMPORT_MODES:
                raise ValueError(
                    f"Unknown import mode '{mode}'. Must be one of {IMPORT_MODES}."
                )
            path = self._staging.path_for(handle)
            max_attempts = self._settings.import_max_attempts
            backoff = Backoff(
                base_delay=self._settings.backoff_base_seconds, max_attempts=max_attempts
            )
            for attempt in range(1, max_attempts + 1):
                counters = RunCounters(attempts=attempt)
                rejects = RejectWriter(rejects_path)
                try:
                    state = self._run_once(
                        run_id, path, mode, layout, counters, rejects, base
                    )
                    break
                except TRANSIENT_ERRORS as exc:
                    if backoff.on_failure():
                        raise
                    log.warning(
                        "[%s] import attempt %d/%d failed (%s); restarting from row 0",
                        run_id, attempt, max_attempts, exc,
                    )
                finally:
                    rejects.close()
                backoff.sleep()

            self._progress.put(state.advance(
                state=STATE_COMPLETE,
                imported=counters.imported,
                skipped=counters.skipped,
                rejected=counters.rows_rejected,
            ))
            log.info(
                "[%s] import complete: imported=%d skipped=%d rejected=%d",
                run_id, counters.imported, counters.skipped, counters.rows_rejected,
            )
        except Exception as exc:
            log.exception("[%s] import failed", run_id)
            counters.warnings.append(str(exc))
            self._progress.put(base.advance(
                state=STATE_ERROR,
                imported=counters.imported,
                skipped=counters.skipped,
                rejected=counters.rows_rejected,
                error=str(exc),
            ))
        finally:
            self._staging.release(handle)
        return counters
