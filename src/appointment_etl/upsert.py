"""appointment_etl.upsert

Batch Upsert Engine: one set-based INSERT ... ON CONFLICT (fingerprint)
statement per batch, overwriting only an explicit allow-list of
source-controlled columns.  Operator-entered columns (insurance, eligibility,
collections, notes) are never named in an UPDATE SET clause.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import psycopg

from appointment_etl.fingerprint import FINGERPRINT_VERSION, attach_fingerprint
from appointment_etl.shared import RECORD_COLUMNS, CanonicalRecord

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Column contracts
# ---------------------------------------------------------------------------

OPERATOR_COLUMNS = frozenset({
    "primary_insurance", "primary_insurance_id", "secondary_insurance",
    "insurance_type", "insurance_status", "auth_status", "referral_status",
    "eligibility_status", "provider_credentialed", "collection_status",
    "credits", "deductible", "oop", "collected_amount", "collected_method",
    "collected_receipt_no", "psc_code", "psc_description", "notes",
})

KEY_COLUMNS = frozenset({
    "id", "fingerprint", "fingerprint_version", "created_at", "updated_at",
})

FILE_UPDATE_COLUMNS: tuple[str, ...] = (
    "appointment_status", "provider", "visit_type", "location",
    "invoice_no", "invoice_status", "current_responsibility", "claim_created",
    "charges", "payments", "units", "created_by", "cancellation_reason",
    "modification_history", "modification_marker",
    "patient_external_id", "patient_dob", "authorization_number",
    "scheduled_visits", "total_visits", "expiration_date",
)

API_UPDATE_COLUMNS: tuple[str, ...] = (
    "appointment_status", "patient_email", "provider", "visit_type", "location",
    "invoice_no", "invoice_status", "current_responsibility", "claim_created",
    "charges", "payments", "units", "created_by", "cancellation_reason",
)

# Incoming NULL keeps the stored value for these: older layouts simply do not
# carry the column, and a blank modification cell is not a change.
NULL_PRESERVING_COLUMNS = frozenset({
    "modification_history", "modification_marker", "patient_external_id",
    "patient_dob", "patient_email", "authorization_number",
    "scheduled_visits", "total_visits", "expiration_date",
})

ELIGIBILITY_DEFAULT = "Verification Pending"

_INSERT_COLUMNS: tuple[str, ...] = RECORD_COLUMNS + ("fingerprint_version", "eligibility_status")


def check_allow_list(columns: Iterable[str]) -> tuple[str, ...]:
    """Validate an overwrite allow-list; raise ValueError on forbidden names."""
    cols = tuple(columns)
    forbidden = sorted(set(cols) & (OPERATOR_COLUMNS | KEY_COLUMNS))
    if forbidden:
        raise ValueError(f"allow-list names protected columns: {forbidden}")
    unknown = sorted(set(cols) - set(RECORD_COLUMNS))
    if unknown:
        raise ValueError(f"allow-list names unknown columns: {unknown}")
    if not cols:
        raise ValueError("allow-list is empty")
    return cols


# ---------------------------------------------------------------------------
# In-batch collapse
# ---------------------------------------------------------------------------

def collapse_duplicates(
    records: Sequence[CanonicalRecord],
) -> tuple[list[CanonicalRecord], int]:
    """Keep the last record per fingerprint.  Returns (unique, collapsed)."""
    by_fp: dict[str, CanonicalRecord] = {}
    for rec in records:
        if rec.fingerprint is None:
            attach_fingerprint(rec)
        by_fp[rec.fingerprint] = rec
    return list(by_fp.values()), len(records) - len(by_fp)


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------

@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    collapsed: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


def _update_clause(allow_list: Sequence[str]) -> str:
    parts = []
    for col in allow_list:
        if col in NULL_PRESERVING_COLUMNS:
            parts.append(f"{col} = COALESCE(EXCLUDED.{col}, appointments.{col})")
        else:
            parts.append(f"{col} = EXCLUDED.{col}")
    parts.append("updated_at = now()")
    return ", ".join(parts)


def upsert_appointments(
    conn: psycopg.Connection,
    records: Sequence[CanonicalRecord],
    allow_list: Sequence[str],
) -> UpsertResult:
    """Insert-or-update a batch atomically.

    Duplicate fingerprints inside the batch are collapsed first (last wins),
    since ON CONFLICT cannot touch the same row twice in one statement.
    Any constraint violation rolls back the whole batch.
    """
    cols = check_allow_list(allow_list)
    unique, collapsed = collapse_duplicates(records)
    result = UpsertResult(collapsed=collapsed)
    if not unique:
        return result

    row_ph = "(" + ", ".join(["%s"] * len(_INSERT_COLUMNS)) + ")"
    values_sql = ", ".join([row_ph] * len(unique))
    params: list = []
    for rec in unique:
        row = rec.to_row()
        params.extend(row[c] for c in RECORD_COLUMNS)
        params.extend([FINGERPRINT_VERSION, ELIGIBILITY_DEFAULT])

    sql = f"""
        INSERT INTO appointments ({", ".join(_INSERT_COLUMNS)})
        VALUES {values_sql}
        ON CONFLICT (fingerprint) DO UPDATE
            SET {_update_clause(cols)}
        RETURNING (xmax = 0) AS was_inserted
    """
    with conn.transaction():
        rows = conn.execute(sql, params).fetchall()

    result.inserted = sum(1 for (was_inserted,) in rows if was_inserted)
    result.updated = len(rows) - result.inserted
    log.debug(
        "upsert: %d inserted, %d updated, %d collapsed",
        result.inserted, result.updated, result.collapsed,
    )
    return result
