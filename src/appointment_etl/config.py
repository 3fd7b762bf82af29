"""appointment_etl.config

Settings for the ingestion service.

Sources, lowest precedence first:
  1. built-in defaults (Settings field defaults)
  2. optional YAML file (--config-path), validated by validate_settings_data
  3. environment variables (ENV_KEYS)

API credentials are read from the environment only; a YAML file that names
them is rejected.

Example YAML:

    per_page: 100
    pages_per_batch: 20
    upsert_chunk: 2000
    staging_dir: /var/lib/appointment-etl/staging
    api_url: https://scheduling.example.com/api/appointments
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from appointment_etl.shared import ConfigurationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ENV_KEYS: dict[str, str] = {
    "APPOINTMENTS_API_LOGIN_URL": "api_login_url",
    "APPOINTMENTS_API_URL": "api_url",
    "APPOINTMENTS_API_USERNAME": "api_username",
    "APPOINTMENTS_API_PASSWORD": "api_password",
    "APPOINTMENTS_API_FROM_DATE": "api_from_date",
    "APPOINTMENTS_API_TO_DATE": "api_to_date",
    "DB_DSN": "db_dsn",
}

SECRET_KEYS = frozenset({"api_username", "api_password"})

POSITIVE_INT_KEYS = frozenset({
    "per_page", "pages_per_batch", "upsert_chunk", "import_chunk",
    "progress_ttl_seconds", "max_upload_bytes", "fetch_max_attempts",
    "import_max_attempts", "worker_threads",
})
POSITIVE_FLOAT_KEYS = frozenset({"http_timeout", "login_timeout"})


@dataclass
class Settings:
    db_dsn: str | None = None
    api_login_url: str | None = None
    api_url: str | None = None
    api_username: str | None = None
    api_password: str | None = None
    api_from_date: str | None = None
    api_to_date: str | None = None
    per_page: int = 100
    pages_per_batch: int = 20
    upsert_chunk: int = 2000
    import_chunk: int = 2000
    progress_ttl_seconds: int = 3600
    max_upload_bytes: int = 50 * 1024 * 1024
    http_timeout: float = 60.0
    login_timeout: float = 15.0
    fetch_max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    import_max_attempts: int = 3
    staging_dir: Path = Path("./artifacts/staging")
    worker_threads: int = 2
    verify_tls: bool = True

    def require_api(self) -> None:
        """Raise ConfigurationError unless both API endpoints are set."""
        missing = [
            env for env, key in ENV_KEYS.items()
            if key in ("api_login_url", "api_url") and not getattr(self, key)
        ]
        if missing:
            raise ConfigurationError(
                f"API sync is not configured; set {', '.join(missing)}."
            )

    def require_db(self) -> str:
        if not self.db_dsn:
            raise ConfigurationError("No database DSN; pass --db-dsn or set DB_DSN.")
        return self.db_dsn


_FIELD_NAMES = frozenset(f.name for f in fields(Settings))


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def validate_settings_data(data: Any) -> None:
    """Raise ConfigurationError if a YAML settings mapping is malformed."""
    if not isinstance(data, dict):
        raise ConfigurationError("YAML root must be a mapping.")

    unknown = set(data) - _FIELD_NAMES
    if unknown:
        raise ConfigurationError(f"Unknown settings keys: {sorted(unknown)}")

    secrets = set(data) & SECRET_KEYS
    if secrets:
        raise ConfigurationError(
            f"Credentials must come from the environment, not YAML: {sorted(secrets)}"
        )

    for key in POSITIVE_INT_KEYS & set(data):
        val = data[key]
        if isinstance(val, bool) or not isinstance(val, int):
            raise ConfigurationError(f"Setting '{key}' value '{val}' is not an integer.")
        if val < 1:
            raise ConfigurationError(f"Setting '{key}' value {val} must be >= 1.")

    for key in POSITIVE_FLOAT_KEYS & set(data):
        try:
            fval = float(data[key])
        except (TypeError, ValueError):
            raise ConfigurationError(f"Setting '{key}' value '{data[key]}' is not numeric.")
        if fval <= 0:
            raise ConfigurationError(f"Setting '{key}' value {fval} must be > 0.")

    if "backoff_base_seconds" in data:
        try:
            backoff = float(data["backoff_base_seconds"])
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Setting 'backoff_base_seconds' value '{data['backoff_base_seconds']}' is not numeric."
            )
        if backoff < 0:
            raise ConfigurationError("Setting 'backoff_base_seconds' must be >= 0.")

    if "verify_tls" in data and not isinstance(data["verify_tls"], bool):
        raise ConfigurationError("Setting 'verify_tls' must be true or false.")


def load_settings(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from defaults, an optional YAML file and the environment."""
    env = os.environ if env is None else env
    values: dict[str, Any] = {}

    if config_path is not None:
        try:
            raw = Path(config_path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read config file {config_path}: {exc}") from exc
        data = yaml.safe_load(raw) or {}
        validate_settings_data(data)
        values.update(data)

    for env_key, field_name in ENV_KEYS.items():
        val = env.get(env_key)
        if val is not None and val.strip():
            values[field_name] = val.strip()

    for key in POSITIVE_FLOAT_KEYS | {"backoff_base_seconds"}:
        if key in values:
            values[key] = float(values[key])
    if "staging_dir" in values:
        values["staging_dir"] = Path(values["staging_dir"])

    return Settings(**values)
