"""appointment_etl.layouts

Row Normalizer for scheduling-system exports.

The export's column layout has changed five times.  Each historical layout is
one member of the closed Layout enum; its LayoutSpec carries the header
signature, the column-index table derived from it, and the defaults applied
when a column is absent or blank.  The layout is chosen once per run
(explicitly or via detect_layout on the header row), never per row.

Layouts (oldest first):
  legacy_basic:    11 columns, no responsibility/claim/audit columns
  billing_v2:      16 columns, adds responsibility, claim, created-by,
                   cancellation reason, modification history
  patient_id_v3:   billing_v2 prefixed with Patient ID
  patient_dob_v4:  patient_id_v3 with Date of Birth after the name
  visit_auth_v5:   patient_dob_v4 plus authorization number, scheduled /
                   total visits and expiration date
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from appointment_etl.normalize import (
    cell_text,
    is_totals_row,
    normalize_space,
    parse_int,
    parse_modification_stamp,
    parse_numeric,
    parse_optional_date,
    parse_service_date,
    parse_yes,
)
from appointment_etl.shared import CanonicalRecord, LayoutDetectionError

# ---------------------------------------------------------------------------
# Header → field contract
# ---------------------------------------------------------------------------

HEADER_FIELDS: dict[str, str] = {
    "patient id": "patient_external_id",
    "patient name": "patient_name",
    "date of birth": "patient_dob",
    "date of service": "date_of_service",
    "appointment status": "appointment_status",
    "provider": "provider",
    "service": "visit_type",
    "location": "location",
    "invoice no": "invoice_no",
    "invoice status": "invoice_status",
    "current responsibility": "current_responsibility",
    "claim created": "claim_created",
    "charges": "charges",
    "payments": "payments",
    "units": "units",
    "created by": "created_by",
    "cancellation reason": "cancellation_reason",
    "modification history": "modification_history",
    "authorization number": "authorization_number",
    "scheduled visits": "scheduled_visits",
    "total visits": "total_visits",
    "expiration date": "expiration_date",
}

_BILLING_TAIL = (
    "Invoice No.", "Invoice Status", "Current Responsibility", "Claim Created",
    "Charges", "Payments", "Units", "Created by", "Cancellation Reason",
    "Modification History",
)
_SCHEDULING = ("Appointment Status", "Provider", "Service", "Location")


def normalize_header(value: Any) -> str:
    """'  Invoice No. ' → 'invoice no'"""
    v = normalize_space(value) or ""
    return re.sub(r"[.:#]+$", "", v).strip().lower()


@dataclass(frozen=True)
class LayoutSpec:
    headers: tuple[str, ...]
    defaults: dict[str, Any] = field(default_factory=dict)

    @property
    def signature(self) -> tuple[str, ...]:
        return tuple(normalize_header(h) for h in self.headers)

    @property
    def columns(self) -> dict[str, int]:
        return {HEADER_FIELDS[h]: idx for idx, h in enumerate(self.signature)}


_COMMON_DEFAULTS = {"appointment_status": "New", "provider": ""}


class Layout(enum.Enum):
    LEGACY_BASIC = "legacy_basic"
    BILLING_V2 = "billing_v2"
    PATIENT_ID_V3 = "patient_id_v3"
    PATIENT_DOB_V4 = "patient_dob_v4"
    VISIT_AUTH_V5 = "visit_auth_v5"

    @property
    def spec(self) -> LayoutSpec:
        return _LAYOUT_SPECS[self]


_LAYOUT_SPECS: dict[Layout, LayoutSpec] = {
    Layout.LEGACY_BASIC: LayoutSpec(
        headers=(
            "Patient Name", "Date of Service", *_SCHEDULING,
            "Invoice No.", "Invoice Status", "Charges", "Payments", "Units",
        ),
        defaults={**_COMMON_DEFAULTS, "current_responsibility": "Unidentified"},
    ),
    Layout.BILLING_V2: LayoutSpec(
        headers=("Patient Name", "Date of Service", *_SCHEDULING, *_BILLING_TAIL),
        defaults=dict(_COMMON_DEFAULTS),
    ),
    Layout.PATIENT_ID_V3: LayoutSpec(
        headers=(
            "Patient ID", "Patient Name", "Date of Service", *_SCHEDULING,
            *_BILLING_TAIL,
        ),
        defaults=dict(_COMMON_DEFAULTS),
    ),
    Layout.PATIENT_DOB_V4: LayoutSpec(
        headers=(
            "Patient ID", "Patient Name", "Date of Birth", "Date of Service",
            *_SCHEDULING, *_BILLING_TAIL,
        ),
        defaults=dict(_COMMON_DEFAULTS),
    ),
    Layout.VISIT_AUTH_V5: LayoutSpec(
        headers=(
            "Patient ID", "Patient Name", "Date of Birth", "Date of Service",
            *_SCHEDULING,
            "Authorization Number", "Scheduled Visits", "Total Visits",
            "Expiration Date",
            *_BILLING_TAIL,
        ),
        defaults=dict(_COMMON_DEFAULTS),
    ),
}


def detect_layout(header_cells: Sequence[Any]) -> Layout:
    """Match an upload's header row against every known layout signature.

    Trailing blank header cells (common in spreadsheet exports) are ignored.
    """
    normalized = [normalize_header(c) for c in header_cells]
    while normalized and not normalized[-1]:
        normalized.pop()
    found = tuple(normalized)
    for layout in Layout:
        if layout.spec.signature == found:
            return layout
    raise LayoutDetectionError(f"unrecognized_header:{list(found)!r}")


def layout_from_name(name: str) -> Layout:
    try:
        return Layout(name)
    except ValueError:
        raise LayoutDetectionError(
            f"Unknown layout '{name}'. Must be one of {[l.value for l in Layout]}."
        ) from None


# ---------------------------------------------------------------------------
# Row normalization
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rejected:
    reason: str


_TEXT_FIELDS = (
    "patient_external_id", "appointment_status", "provider", "visit_type",
    "location", "invoice_no", "invoice_status", "current_responsibility",
    "authorization_number", "created_by", "cancellation_reason",
)


def normalize_row(cells: Sequence[Any], layout: Layout) -> CanonicalRecord | Rejected:
    """Map one positional row to a CanonicalRecord, or say why not.

    Rejects: blank name, totals footer, missing or unparseable date of
    service.  Pure function; fingerprints are attached later.
    """
    spec = layout.spec
    cols = spec.columns

    def cell(field_name: str) -> Any:
        idx = cols.get(field_name)
        if idx is None or idx >= len(cells):
            return None
        return cells[idx]

    name = normalize_space(cell("patient_name"))
    if name is None:
        return Rejected("blank_patient_name")
    if is_totals_row(name):
        return Rejected("totals_row")

    raw_dos = cell("date_of_service")
    if cell_text(raw_dos) is None:
        return Rejected("missing_date_of_service")
    dos = parse_service_date(raw_dos)
    if dos is None:
        return Rejected(f"invalid_date_of_service:{cell_text(raw_dos)}")

    values: dict[str, Any] = {}
    for fname in _TEXT_FIELDS:
        v = normalize_space(cell(fname))
        if v is None:
            v = spec.defaults.get(fname)
        if v is not None:
            values[fname] = v

    for fname in ("charges", "payments"):
        amount = parse_numeric(cell(fname))
        if amount is not None:
            values[fname] = amount
    units = parse_int(cell("units"))
    if units is not None:
        values["units"] = units

    history = cell_text(cell("modification_history"))
    stamp = parse_modification_stamp(history)

    return CanonicalRecord(
        patient_name=name,
        date_of_service=dos,
        patient_dob=parse_optional_date(cell("patient_dob")),
        claim_created=parse_yes(cell("claim_created")),
        scheduled_visits=parse_int(cell("scheduled_visits")),
        total_visits=parse_int(cell("total_visits")),
        expiration_date=parse_optional_date(cell("expiration_date")),
        modification_history=history,
        modification_marker=stamp.marker,
        **values,
    )
