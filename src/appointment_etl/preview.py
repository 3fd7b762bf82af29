"""appointment_etl.preview

Diff / Preview Engine for the interactive file path.

classify_records() is the single definition of "new / update / skip" and is
shared by the preview and by the import orchestrator's new_only /
updates_only filters, so what an operator previews is what a confirm
commits.  Ordering is collapse-then-check: in-batch duplicates are folded
(last wins) before the store is consulted.

Nothing here writes to the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Sequence

import psycopg

from appointment_etl.fingerprint import attach_fingerprint
from appointment_etl.layouts import Layout, Rejected, detect_layout, normalize_row
from appointment_etl.shared import CanonicalRecord, RejectWriter, RunCounters, cells_to_row
from appointment_etl.staging import iter_rows
from appointment_etl.upsert import collapse_duplicates

log = logging.getLogger(__name__)

AUTH_ACTIVE = "Auth Active"
AUTH_FOR_REVIEW = "For Review"


# ---------------------------------------------------------------------------
# Reading + normalizing
# ---------------------------------------------------------------------------

def open_export(
    path: Path, layout: Layout | None = None
) -> tuple[Layout | None, Iterator[tuple[Any, ...]]]:
    """Consume the header row and settle the layout for the whole run.

    Returns (None, empty iterator) for a file with no rows at all.
    """
    rows = iter_rows(path)
    header = next(rows, None)
    if header is None:
        return layout, iter(())
    if layout is None:
        layout = detect_layout(header)
        log.info("Detected layout %s for %s", layout.value, path.name)
    return layout, rows


def normalize_chunk(
    rows: Sequence[Sequence[Any]],
    layout: Layout,
    counters: RunCounters,
    rejects: RejectWriter | None = None,
) -> list[CanonicalRecord]:
    """Normalize and fingerprint a chunk; rejected rows are counted, not raised."""
    out: list[CanonicalRecord] = []
    for cells in rows:
        counters.rows_read += 1
        result = normalize_row(cells, layout)
        if isinstance(result, Rejected):
            counters.rows_rejected += 1
            if rejects is not None:
                rejects.write(cells_to_row(cells), result.reason)
            continue
        out.append(attach_fingerprint(result))
    return out


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@dataclass
class Classification:
    new: list[CanonicalRecord] = field(default_factory=list)
    # (candidate, stored marker)
    updates: list[tuple[CanonicalRecord, str | None]] = field(default_factory=list)
    skipped: list[CanonicalRecord] = field(default_factory=list)
    collapsed: int = 0

    @property
    def skip_count(self) -> int:
        return self.collapsed + len(self.skipped)


def fetch_existing_markers(
    conn: psycopg.Connection, fingerprints: Sequence[str]
) -> dict[str, str | None]:
    if not fingerprints:
        return {}
    rows = conn.execute(
        "SELECT fingerprint, modification_marker FROM appointments WHERE fingerprint = ANY(%s)",
        (list(fingerprints),),
    ).fetchall()
    return {fp: marker for fp, marker in rows}


def classify_records(
    conn: psycopg.Connection, records: Sequence[CanonicalRecord]
) -> Classification:
    """Split a batch into new / update / skip against the store.

    A stored row is an update only when the candidate carries a
    modification marker that differs from the stored one; a blank candidate
    marker never triggers an update.
    """
    unique, collapsed = collapse_duplicates(records)
    result = Classification(collapsed=collapsed)
    existing = fetch_existing_markers(conn, [r.fingerprint for r in unique])
    for rec in unique:
        if rec.fingerprint not in existing:
            result.new.append(rec)
            continue
        stored = existing[rec.fingerprint]
        if rec.modification_marker is None or rec.modification_marker == stored:
            result.skipped.append(rec)
        else:
            result.updates.append((rec, stored))
    return result


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

def review_fields(rec: CanonicalRecord) -> dict[str, Any]:
    """Per-row fields shown to the operator before confirming."""
    return {
        "patient_id": rec.patient_external_id,
        "name": rec.patient_name,
        "dos": rec.date_of_service.isoformat() if rec.date_of_service else None,
        "status": rec.appointment_status,
        "provider": rec.provider,
        "visit_type": rec.visit_type,
        "location": rec.location,
        "authorization_number": rec.authorization_number,
        "expiration_date": rec.expiration_date.isoformat() if rec.expiration_date else None,
        "auth_tag": AUTH_ACTIVE if rec.expiration_date else AUTH_FOR_REVIEW,
    }


@dataclass
class PreviewResult:
    new: list[dict[str, Any]] = field(default_factory=list)
    update: list[dict[str, Any]] = field(default_factory=list)
    skip_count: int = 0
    total_rows: int = 0
    rejected: int = 0
    layout: str | None = None
    file_handle: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.new and not self.update

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def preview_file(
    conn: psycopg.Connection,
    path: Path,
    layout: Layout | None = None,
    rejects: RejectWriter | None = None,
) -> PreviewResult:
    """Read a whole export and report what a confirm would do, writing nothing."""
    resolved, rows = open_export(path, layout)
    if resolved is None:
        return PreviewResult()

    counters = RunCounters()
    records = normalize_chunk(list(rows), resolved, counters, rejects)
    cls = classify_records(conn, records)

    update_rows = []
    for rec, stored in cls.updates:
        row = review_fields(rec)
        row["existing_modification"] = stored
        row["new_modification"] = rec.modification_marker
        update_rows.append(row)

    return PreviewResult(
        new=[review_fields(r) for r in cls.new],
        update=update_rows,
        skip_count=cls.skip_count,
        total_rows=counters.rows_read,
        rejected=counters.rows_rejected,
        layout=resolved.value,
    )
