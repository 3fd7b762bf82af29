"""appointment_etl.fingerprint

Deterministic identity for one logical appointment.

    fingerprint = sha256(lower(trim(name)) | dos-or-'null-date' | lower(trim(status)))

The same value is the idempotency key for retries, the merge key between the
file and API sources, and the unique key of the appointments table.

The formula is versioned.  Changing its inputs means bumping
FINGERPRINT_VERSION and running rebuild_fingerprints() once: it rehashes
every stored row with fingerprint() and collapses rows that now share a
fingerprint (highest id wins).
"""

from __future__ import annotations

import hashlib
import logging
from datetime import date

import psycopg

from appointment_etl.shared import CanonicalRecord

log = logging.getLogger(__name__)

FINGERPRINT_VERSION = 2
NULL_DATE = "null-date"


def fingerprint(name: str, date_of_service: date | None, status: str | None) -> str:
    """sha256(lower(trim(name))|dos_or_null-date|lower(trim(status)))"""
    dos = date_of_service.isoformat() if date_of_service is not None else NULL_DATE
    key = f"{name.strip().lower()}|{dos}|{(status or '').strip().lower()}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def attach_fingerprint(rec: CanonicalRecord) -> CanonicalRecord:
    rec.fingerprint = fingerprint(
        rec.patient_name, rec.date_of_service, rec.appointment_status
    )
    return rec


# ---------------------------------------------------------------------------
# Versioned migration
# ---------------------------------------------------------------------------

def stale_fingerprint_count(conn: psycopg.Connection) -> int:
    """Rows written under an older formula version."""
    row = conn.execute(
        "SELECT count(*) FROM appointments WHERE fingerprint_version <> %s",
        (FINGERPRINT_VERSION,),
    ).fetchone()
    return int(row[0])


def rebuild_fingerprints(conn: psycopg.Connection) -> tuple[int, int]:
    """Backfill every row with the current formula and collapse duplicates.

    Runs in one transaction:
      1. drop the unique constraint so the rehash cannot trip on transient
         collisions
      2. rehash every row with fingerprint(), updating by id
      3. delete rows sharing a fingerprint, keeping the highest id
      4. restore the unique constraint

    Returns (rows_rehashed, rows_collapsed).
    """
    with conn.transaction():
        conn.execute(
            "ALTER TABLE appointments DROP CONSTRAINT IF EXISTS appointments_fingerprint_key"
        )
        rows = conn.execute(
            """
            SELECT id, patient_name, date_of_service, appointment_status
            FROM appointments
            ORDER BY id
            """
        ).fetchall()
        params = [
            (fingerprint(name, dos, status), FINGERPRINT_VERSION, row_id)
            for row_id, name, dos, status in rows
        ]
        with conn.cursor() as cur:
            cur.executemany(
                """
                UPDATE appointments
                SET fingerprint = %s,
                    fingerprint_version = %s
                WHERE id = %s
                """,
                params,
            )
        rehashed = len(params)
        collapsed = conn.execute(
            """
            DELETE FROM appointments a
            USING appointments b
            WHERE a.fingerprint = b.fingerprint
              AND a.id < b.id
            """
        ).rowcount
        conn.execute(
            """
            ALTER TABLE appointments
              ADD CONSTRAINT appointments_fingerprint_key UNIQUE (fingerprint)
            """
        )
    log.info(
        "Fingerprint rebuild v%s: %s rows rehashed, %s duplicates collapsed",
        FINGERPRINT_VERSION, rehashed, collapsed,
    )
    return rehashed, collapsed
