"""appointment_etl.cli

Unified appointment ingestion CLI.

    appointment-etl --mode preview --file-path export.xlsx
    appointment-etl --mode import --handle <staged handle> --import-mode new_only
    appointment-etl --mode import --file-path export.csv
    appointment-etl --mode sync
    appointment-etl --mode resume_sync --run-id <run id>
    appointment-etl --mode progress --kind sync
    appointment-etl --mode rebuild_fingerprints

Units run inline (the CLI waits for them) and progress is written to the
same ingestion_progress tables the dashboard polls.  API credentials come
from the environment only.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from appointment_etl.config import Settings, load_settings
from appointment_etl.fingerprint import rebuild_fingerprints, stale_fingerprint_count
from appointment_etl.import_file import IMPORT_MODES, MODE_ALL
from appointment_etl.layouts import Layout, layout_from_name
from appointment_etl.progress import KINDS, STATE_ERROR, PgProgressStore
from appointment_etl.service import IngestionService
from appointment_etl.shared import IngestionError, write_run_report
from appointment_etl.staging import StagedFileStore
from appointment_etl.worker import WorkerPool

MODES = ("preview", "import", "sync", "resume_sync", "progress", "rebuild_fingerprints")


def _build_service(settings: Settings) -> IngestionService:
    dsn = settings.require_db()
    return IngestionService(
        settings=settings,
        progress=PgProgressStore(dsn, settings.progress_ttl_seconds),
        staging=StagedFileStore(settings.staging_dir, settings.max_upload_bytes),
        pool=WorkerPool(inline=True),
    )


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_preview_flags(file_path: str | None, run_id: str) -> None:
    if not file_path:
        _fatal(run_id, "--file-path is required for preview")


def _validate_import_flags(
    file_path: str | None, handle: str | None, import_mode: str, run_id: str
) -> None:
    if bool(file_path) == bool(handle):
        _fatal(run_id, "import needs exactly one of --file-path or --handle")
    if file_path and import_mode != MODE_ALL:
        _fatal(run_id, "--import-mode other than 'all' requires a previewed --handle")


def _validate_resume_flags(given_run_id: str | None, run_id: str) -> None:
    if not given_run_id:
        _fatal(run_id, "--run-id is required for resume_sync")


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice(MODES),
    help="Ingestion mode",
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (default: $DB_DSN)")
@click.option("--config-path", default=None, type=click.Path(exists=True), help="YAML settings file")
@click.option("--file-path", default=None, type=click.Path(exists=True), help="[preview|import] CSV or XLSX export")
@click.option("--handle", default=None, help="[import] Staged-file handle returned by preview")
@click.option(
    "--import-mode",
    default=MODE_ALL,
    type=click.Choice(IMPORT_MODES),
    show_default=True,
    help="[import] Which classified rows to write",
)
@click.option(
    "--layout",
    default=None,
    type=click.Choice([l.value for l in Layout]),
    help="[preview|import] Export layout (default: detect from header)",
)
@click.option(
    "--rejects-path",
    default=None,
    type=click.Path(),
    help="[import] CSV for rejected rows (default: ./artifacts/rejects/<run_id>.csv)",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation; [resume_sync|progress] run to act on")
@click.option("--kind", default="import", type=click.Choice(KINDS), show_default=True, help="[progress] Run kind")
@click.option("--dry-run", is_flag=True, default=False, help="[import|rebuild_fingerprints] Report only; write nothing")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str | None,
    config_path: str | None,
    file_path: str | None,
    handle: str | None,
    import_mode: str,
    layout: str | None,
    rejects_path: str | None,
    run_id: str | None,
    kind: str,
    dry_run: bool,
    log_level: str,
) -> None:
    """Unified appointment ingestion CLI."""
    logging.basicConfig(
        level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    given_run_id = run_id
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    try:
        settings = load_settings(Path(config_path) if config_path else None)
    except IngestionError as exc:
        _fatal(run_id, str(exc))
    if db_dsn:
        settings.db_dsn = db_dsn
    chosen_layout = layout_from_name(layout) if layout else None

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        if mode == "progress":
            service = _build_service(settings)
            state = (
                service.sync_progress(given_run_id) if kind == "sync"
                else service.import_progress(given_run_id)
            )
            click.echo(json.dumps(state, indent=2, default=str))
            return

        if mode == "rebuild_fingerprints":
            with psycopg.connect(settings.require_db()) as conn:
                stale = stale_fingerprint_count(conn)
                click.echo(f"[{run_id}] {stale} rows carry an older fingerprint version")
                if dry_run:
                    click.echo(f"[{run_id}] [dry-run] No changes made.")
                    return
                rehashed, collapsed = rebuild_fingerprints(conn)
            click.echo(f"[{run_id}] Rehashed {rehashed} rows, collapsed {collapsed} duplicates")
            return

        if mode == "preview" or (mode == "import" and dry_run):
            _validate_preview_flags(file_path, run_id)
            service = _build_service(settings)
            path = Path(file_path)
            with open(path, "rb") as fh:
                result = service.preview_upload(path.name, fh, chosen_layout)
            click.echo(
                f"[{run_id}] new={len(result['new'])} update={len(result['update'])} "
                f"skip={result['skip_count']} rejected={result['rejected']} "
                f"of {result['total_rows']} rows (layout={result['layout']})"
            )
            if result["file_handle"]:
                click.echo(f"[{run_id}] Staged as {result['file_handle']}")
            click.echo(json.dumps(result, indent=2, default=str))
            return

        service = _build_service(settings)
        if mode == "import":
            _validate_import_flags(file_path, handle, import_mode, run_id)
            rejects = Path(rejects_path) if rejects_path else Path(f"./artifacts/rejects/{run_id}.csv")
            if handle:
                service.confirm_import(handle, import_mode, chosen_layout, rejects, run_id=run_id)
            else:
                path = Path(file_path)
                with open(path, "rb") as fh:
                    service.import_upload(path.name, fh, chosen_layout, rejects, run_id=run_id)
            service.wait()
            state = service.import_progress(run_id)
        elif mode == "sync":
            service.trigger_sync(run_id=run_id)
            service.wait()
            state = service.sync_progress(run_id)
        else:
            _validate_resume_flags(given_run_id, run_id)
            service.resume_sync(given_run_id)
            service.wait()
            state = service.sync_progress(given_run_id)
    except IngestionError as exc:
        _fatal(run_id, str(exc))

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"file_path": file_path, "handle": handle},
        state,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(state, indent=2, default=str))
    if state.get("state") == STATE_ERROR:
        click.echo(f"[{run_id}] Run ended in error: {state.get('error')}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


if __name__ == "__main__":
    main()
