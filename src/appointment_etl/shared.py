"""appointment_etl.shared

Shared types and utilities used by both the file-import and API-sync paths.
Includes the exception hierarchy, CanonicalRecord, RejectWriter,
RunCounters and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class IngestionError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class ConfigurationError(IngestionError):
    """Missing endpoints, bad settings or a misordered date window."""


class LayoutDetectionError(ConfigurationError):
    """Raised when an upload header matches none of the known layouts."""


class AuthenticationError(IngestionError):
    """The external API refused the login or returned no token."""


class TransientFetchError(IngestionError):
    """An HTTP fetch kept failing after every retry was spent."""


class UploadRejectedError(IngestionError):
    """Upload is too large or has an unsupported extension."""


class StagedFileNotFound(IngestionError):
    """The staged-file handle does not resolve to a stored file."""


class SyncAlreadyRunningError(IngestionError):
    """A sync chain is already running; a second one is not started."""


# ---------------------------------------------------------------------------
# CanonicalRecord
# ---------------------------------------------------------------------------

@dataclass
class CanonicalRecord:
    """Source-agnostic appointment ready for fingerprinting and storage."""

    patient_name: str
    date_of_service: date | None
    appointment_status: str = "New"
    patient_external_id: str | None = None
    patient_dob: date | None = None
    patient_email: str | None = None
    provider: str = ""
    visit_type: str | None = None
    location: str | None = None
    invoice_no: str | None = None
    invoice_status: str | None = None
    current_responsibility: str | None = None
    claim_created: bool = False
    charges: Decimal = Decimal("0")
    payments: Decimal = Decimal("0")
    units: int = 0
    authorization_number: str | None = None
    scheduled_visits: int | None = None
    total_visits: int | None = None
    expiration_date: date | None = None
    created_by: str | None = None
    cancellation_reason: str | None = None
    modification_history: str | None = None
    modification_marker: str | None = None
    fingerprint: str | None = None

    def to_row(self) -> dict[str, Any]:
        """Column → value mapping for the appointments table."""
        return asdict(self)


RECORD_COLUMNS: tuple[str, ...] = tuple(f.name for f in fields(CanonicalRecord))


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        self.count += 1
        if self._path is None:
            return
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


def cells_to_row(cells: list[Any] | tuple[Any, ...]) -> dict[str, Any]:
    """Positional cells → {'col_0': ..., 'col_1': ...} for reject output."""
    return {f"col_{i}": ("" if c is None else c) for i, c in enumerate(cells)}


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Read / normalize
    rows_read: int = 0
    rows_rejected: int = 0
    # Reconciliation
    duplicates_collapsed: int = 0
    rows_filtered: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    # Units of work
    chunks_processed: int = 0
    pages_fetched: int = 0
    batches_processed: int = 0
    remote_records_skipped: int = 0
    fetch_retries: int = 0
    attempts: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return self.rows_inserted + self.rows_updated

    @property
    def skipped(self) -> int:
        return self.duplicates_collapsed + self.rows_filtered + self.remote_records_skipped

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["imported"] = self.imported
        d["skipped"] = self.skipped
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str | None],
    counters: RunCounters | dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    """Write ./artifacts/reports/{run_id}.json and return its path."""
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters if isinstance(counters, dict) else counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
