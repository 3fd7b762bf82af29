"""appointment_etl.api_client

HTTP client for the scheduling system's reporting API.

Contract:
  - login:  POST {username, password} to the login URL; the bearer token is
            read from accessToken / access_token / token, top level or under
            "data".  Non-2xx or no token → AuthenticationError (not retried).
  - data:   GET data URL with from, to, page, per_page.  Rows come from
            "docs", "data", "rows", "items" or a bare JSON list.  Timeouts,
            connection errors, 429 and 5xx are retried with exponential
            backoff; exhaustion → TransientFetchError.
"""

from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

import requests

from appointment_etl.config import Settings
from appointment_etl.normalize import (
    normalize_space,
    parse_int,
    parse_numeric,
    parse_service_date,
    parse_yes,
)
from appointment_etl.shared import (
    AuthenticationError,
    CanonicalRecord,
    ConfigurationError,
    IngestionError,
    TransientFetchError,
)

log = logging.getLogger(__name__)

DEFAULT_FROM_DATE = date(2026, 1, 1)
TOKEN_KEYS = ("accessToken", "access_token", "token")
ROW_KEYS = ("docs", "data", "rows", "items")

_ISO_PREFIX_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ]")


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

@dataclass
class Backoff:
    """Exponential backoff between attempts at one request."""

    base_delay: float = 2.0
    jitter: float = 0.0
    max_attempts: int = 3
    _failures: int = field(default=0, init=False, repr=False)
    _mult: float = field(default=1.0, init=False, repr=False)

    def sleep(self) -> None:
        """Block for base_delay * mult ± jitter seconds."""
        delay = self.base_delay * self._mult
        if self.jitter:
            delay += random.uniform(-self.jitter, self.jitter)
        if delay > 0:
            time.sleep(delay)

    def on_success(self) -> None:
        self._failures = 0
        self._mult = 1.0

    def on_failure(self) -> bool:
        """Record a failure. Returns True once no attempts remain."""
        self._failures += 1
        self._mult = min(self._mult * 2.0, 32.0)
        return self._failures >= self.max_attempts

    @property
    def failures(self) -> int:
        return self._failures


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def extract_token(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for scope in (payload, payload.get("data")):
        if not isinstance(scope, dict):
            continue
        for key in TOKEN_KEYS:
            val = scope.get(key)
            if isinstance(val, str) and val.strip():
                return val.strip()
    return None


def extract_rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        rows = next(
            (payload[k] for k in ROW_KEYS if isinstance(payload.get(k), list)), []
        )
    else:
        rows = []
    return [r for r in rows if isinstance(r, dict)]


def resolve_date_window(
    from_value: str | None,
    to_value: str | None,
    today: date | None = None,
) -> tuple[date, date]:
    """[from, to] with defaults 2026-01-01 .. today; validated for order."""
    today = today or date.today()

    def _parse(value: str | None, default: date, env_name: str) -> date:
        if value is None or not str(value).strip():
            return default
        parsed = parse_service_date(value)
        if parsed is None:
            raise ConfigurationError(f"{env_name} '{value}' is not a valid date.")
        return parsed

    start = _parse(from_value, DEFAULT_FROM_DATE, "APPOINTMENTS_API_FROM_DATE")
    end = _parse(to_value, today, "APPOINTMENTS_API_TO_DATE")
    if start > end:
        raise ConfigurationError(
            "APPOINTMENTS_API_FROM_DATE cannot be after APPOINTMENTS_API_TO_DATE."
        )
    return start, end


def _remote_date(value: Any) -> date | None:
    if isinstance(value, str):
        m = _ISO_PREFIX_RE.match(value.strip())
        if m:
            value = m.group(1)
    return parse_service_date(value)


def map_api_record(raw: dict[str, Any]) -> CanonicalRecord | None:
    """Map one remote record; None when it carries no patient identity."""
    name = normalize_space(raw.get("patient_full_name"))
    if name is None:
        first = normalize_space(raw.get("patient_first_name")) or ""
        last = normalize_space(raw.get("patient_last_name")) or ""
        name = normalize_space(f"{first} {last}")
    if name is None:
        return None

    claim = raw.get("claim_created_info")
    return CanonicalRecord(
        patient_name=name,
        date_of_service=_remote_date(raw.get("date_of_service")),
        appointment_status=normalize_space(raw.get("appointment_status")) or "New",
        patient_email=normalize_space(raw.get("patient_email")),
        provider=normalize_space(raw.get("provider_name")) or "",
        visit_type=normalize_space(raw.get("service_name")),
        location=normalize_space(raw.get("location_name")),
        invoice_no=normalize_space(raw.get("invoice_number")),
        invoice_status=normalize_space(raw.get("invoice_status")),
        current_responsibility=normalize_space(raw.get("current_responsibility")),
        claim_created=claim if isinstance(claim, bool) else parse_yes(claim),
        charges=parse_numeric(raw.get("charges")) or Decimal("0"),
        payments=parse_numeric(raw.get("payments")) or Decimal("0"),
        units=parse_int(raw.get("units")) or 0,
        created_by=normalize_space(raw.get("created_by")),
        cancellation_reason=normalize_space(raw.get("reason")),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ApiClient:
    def __init__(
        self,
        settings: Settings,
        session: requests.Session | None = None,
    ) -> None:
        settings.require_api()
        self._settings = settings
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        self._session.verify = settings.verify_tls
        self.retries = 0

    def authenticate(self) -> str:
        s = self._settings
        try:
            resp = self._session.post(
                s.api_login_url,
                json={"username": s.api_username, "password": s.api_password},
                timeout=s.login_timeout,
            )
        except requests.RequestException as exc:
            raise AuthenticationError(f"API login failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise AuthenticationError(f"API login failed: HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        token = extract_token(payload)
        if token is None:
            raise AuthenticationError("API login response did not contain a token.")
        log.info("Authenticated against %s", s.api_login_url)
        return token

    def fetch_page(
        self, token: str, page: int, window: tuple[date, date]
    ) -> list[dict[str, Any]]:
        """GET one page, retrying transient failures with backoff."""
        s = self._settings
        params = {
            "from": window[0].isoformat(),
            "to": window[1].isoformat(),
            "page": page,
            "per_page": s.per_page,
        }
        headers = {"Authorization": f"Bearer {token}"}
        backoff = Backoff(
            base_delay=s.backoff_base_seconds, max_attempts=s.fetch_max_attempts
        )
        last_error = ""
        while True:
            try:
                resp = self._session.get(
                    s.api_url, params=params, headers=headers, timeout=s.http_timeout
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                last_error = str(exc)
            else:
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                elif not 200 <= resp.status_code < 300:
                    raise IngestionError(
                        f"API data fetch failed (page {page}): HTTP {resp.status_code}"
                    )
                else:
                    backoff.on_success()
                    try:
                        return extract_rows(resp.json())
                    except ValueError as exc:
                        raise TransientFetchError(
                            f"API data fetch failed (page {page}): invalid JSON"
                        ) from exc

            if backoff.on_failure():
                raise TransientFetchError(
                    f"API data fetch failed (page {page}) after "
                    f"{backoff.failures} attempts: {last_error}"
                )
            self.retries += 1
            log.warning("Page %d fetch failed (%s); retrying", page, last_error)
            backoff.sleep()
