"""Normalization functions for appointment ingestion.

All functions accept raw cell values (str, number, date or None) and return
the appropriate type or None.  Nothing here defaults an unparseable value to
"today" or any other guess: ambiguous input comes back as None.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

# Spreadsheet serial day 0 (Lotus 1-2-3 leap-year bug already folded in).
_SERIAL_EPOCH = date(1899, 12, 30)
_SERIAL_MAX = 2958465  # 9999-12-31

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%m-%d-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d-%b-%Y",
    "%d-%b-%y",
)

_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %I:%M:%S %p",
)

TOTALS_SENTINELS = frozenset({"total", "totals", "grand total"})


# ---------------------------------------------------------------------------
# Rule 1: cell_text / trim
# ---------------------------------------------------------------------------

def cell_text(value: Any) -> str | None:
    """Render any cell as stripped text; blank → None.

    Spreadsheet readers hand back floats for integer-looking cells
    ("1001.0"), so whole floats are rendered without the fraction.
    """
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return trim(str(value))


def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = cell_text(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def is_totals_row(name: str | None) -> bool:
    """True for the footer row scheduling exports append ("Total", ...)."""
    return name is not None and name.strip().lower() in TOTALS_SENTINELS


# ---------------------------------------------------------------------------
# Rule 3: parse_numeric / parse_int
# ---------------------------------------------------------------------------

def parse_numeric(value: Any) -> Decimal | None:
    """Parse a decimal amount ("1,250.00", "$80", 80.0), None on failure."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None
    v = trim(str(value))
    if v is None:
        return None
    v = v.replace(",", "").replace("$", "")
    if v.startswith("(") and v.endswith(")"):
        v = "-" + v[1:-1]
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def parse_int(value: Any) -> int | None:
    """Parse a whole number; fractional or non-numeric input → None."""
    d = parse_numeric(value)
    if d is None or d != d.to_integral_value():
        return None
    return int(d)


def parse_yes(value: Any) -> bool:
    """'Yes' (any case) → True; everything else → False."""
    v = cell_text(value)
    return v is not None and v.lower() == "yes"


# ---------------------------------------------------------------------------
# Rule 4: parse_service_date
# ---------------------------------------------------------------------------

def _from_serial(serial: float) -> date | None:
    if serial < 1 or serial > _SERIAL_MAX:
        return None
    return _SERIAL_EPOCH + timedelta(days=int(serial))


def parse_service_date(value: Any) -> date | None:
    """Parse a date-of-service cell.

    Accepts:
    - date / datetime objects (XLSX cells)
    - spreadsheet serial numbers, as numbers or numeric strings ("45700")
    - free text in one of the known export formats

    Impossible calendar dates ("2/30/2026") and unknown shapes → None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return _from_serial(value)

    v = trim(str(value))
    if v is None:
        return None
    if re.fullmatch(r"\d+(\.\d+)?", v):
        return _from_serial(float(v))
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


def parse_optional_date(value: Any) -> date | None:
    """Same rules as parse_service_date, for non-key dates (DOB, expiry)."""
    return parse_service_date(value)


# ---------------------------------------------------------------------------
# Rule 5: parse_modification_stamp
# ---------------------------------------------------------------------------

STAMP_TIMESTAMP = "timestamp"
STAMP_RAW = "raw"
STAMP_ABSENT = "absent"

_MARKER_FORMAT = "%Y-%m-%d %H:%M"

_US_STAMP_RE = re.compile(
    r"(?P<mon>\d{1,2})/(?P<day>\d{1,2})/(?P<year>\d{4}|\d{2})"
    r"(?:[\s,]+(?:at\s+)?(?P<hour>\d{1,2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?"
    r"\s*(?P<ampm>[AaPp]\.?[Mm]\.?)?)?"
)
_ISO_STAMP_RE = re.compile(
    r"(?P<year>\d{4})-(?P<mon>\d{2})-(?P<day>\d{2})"
    r"(?:[T\s](?P<hour>\d{2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?)?"
)


@dataclass(frozen=True)
class ModificationStamp:
    """Outcome of parsing a free-text modification-history cell.

    kind is one of:
      timestamp: marker is the most recent embedded timestamp
                 ("YYYY-MM-DD HH:MM")
      raw:       no timestamp pattern matched; marker is the trimmed text
      absent:    the cell was empty; marker is None
    """

    kind: str
    marker: str | None

    @property
    def is_absent(self) -> bool:
        return self.kind == STAMP_ABSENT


def _stamp_from_match(m: re.Match[str]) -> datetime | None:
    parts = m.groupdict()
    year = int(parts["year"])
    if year < 100:
        year += 2000
    hour = int(parts["hour"]) if parts.get("hour") else 0
    minute = int(parts["minute"]) if parts.get("minute") else 0
    ampm = (parts.get("ampm") or "").replace(".", "").lower()
    if ampm:
        if hour < 1 or hour > 12:
            return None
        if ampm == "pm" and hour != 12:
            hour += 12
        elif ampm == "am" and hour == 12:
            hour = 0
    try:
        return datetime(year, int(parts["mon"]), int(parts["day"]), hour, minute)
    except ValueError:
        return None


def parse_modification_stamp(value: Any) -> ModificationStamp:
    """Extract the most recent timestamp from a modification-history cell.

    The source writes entries like
    "Edited by J. Doe on 02/14/2026 10:32 AM; Created by Front Desk 2026-02-01 09:00"
    with no fixed format.  Every date-shaped token is tried; invalid ones
    (month 13, Feb 30) are ignored.
    """
    text = cell_text(value)
    if text is None:
        return ModificationStamp(STAMP_ABSENT, None)

    found: list[datetime] = []
    for pattern in (_US_STAMP_RE, _ISO_STAMP_RE):
        for m in pattern.finditer(text):
            ts = _stamp_from_match(m)
            if ts is not None:
                found.append(ts)

    if not found:
        return ModificationStamp(STAMP_RAW, text)
    return ModificationStamp(STAMP_TIMESTAMP, max(found).strftime(_MARKER_FORMAT))
