"""Unit tests for appointment_etl.config."""

from __future__ import annotations

from pathlib import Path

import pytest

from appointment_etl.config import Settings, load_settings, validate_settings_data
from appointment_etl.shared import ConfigurationError


class TestDefaults:
    def test_defaults(self):
        s = load_settings(env={})
        assert s.per_page == 100
        assert s.pages_per_batch == 20
        assert s.upsert_chunk == 2000
        assert s.progress_ttl_seconds == 3600
        assert s.max_upload_bytes == 50 * 1024 * 1024
        assert s.http_timeout == 60.0
        assert s.login_timeout == 15.0
        assert s.db_dsn is None

    def test_require_api_names_missing_vars(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Settings(api_url="https://data.test").require_api()
        assert str(exc_info.value).endswith("set APPOINTMENTS_API_LOGIN_URL.")

    def test_require_db(self):
        with pytest.raises(ConfigurationError):
            Settings().require_db()
        assert Settings(db_dsn="dbname=x").require_db() == "dbname=x"


class TestEnvironment:
    def test_env_values(self):
        s = load_settings(env={
            "APPOINTMENTS_API_LOGIN_URL": " https://login.test ",
            "APPOINTMENTS_API_URL": "https://data.test",
            "APPOINTMENTS_API_USERNAME": "user",
            "APPOINTMENTS_API_PASSWORD": "pass",
            "APPOINTMENTS_API_FROM_DATE": "2026-02-01",
            "DB_DSN": "dbname=appts",
        })
        assert s.api_login_url == "https://login.test"
        assert s.api_username == "user"
        assert s.api_from_date == "2026-02-01"
        assert s.api_to_date is None
        assert s.db_dsn == "dbname=appts"
        s.require_api()

    def test_blank_env_ignored(self):
        assert load_settings(env={"DB_DSN": "  "}).db_dsn is None


class TestYamlFile:
    def test_yaml_overrides_defaults(self, tmp_path: Path):
        cfg = tmp_path / "settings.yaml"
        cfg.write_text(
            "per_page: 50\npages_per_batch: 5\nhttp_timeout: 30\n"
            "staging_dir: /tmp/staging\nverify_tls: false\n"
        )
        s = load_settings(cfg, env={})
        assert s.per_page == 50
        assert s.pages_per_batch == 5
        assert s.http_timeout == 30.0
        assert s.staging_dir == Path("/tmp/staging")
        assert s.verify_tls is False

    def test_env_beats_yaml(self, tmp_path: Path):
        cfg = tmp_path / "settings.yaml"
        cfg.write_text("api_url: https://yaml.test\n")
        s = load_settings(cfg, env={"APPOINTMENTS_API_URL": "https://env.test"})
        assert s.api_url == "https://env.test"

    def test_empty_file(self, tmp_path: Path):
        cfg = tmp_path / "settings.yaml"
        cfg.write_text("")
        assert load_settings(cfg, env={}).per_page == 100

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_settings(tmp_path / "nope.yaml", env={})


class TestValidateSettingsData:
    def test_root_must_be_mapping(self):
        with pytest.raises(ConfigurationError, match="mapping"):
            validate_settings_data(["per_page"])

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError, match="Unknown"):
            validate_settings_data({"page_size": 10})

    def test_secret_in_yaml(self):
        with pytest.raises(ConfigurationError, match="environment"):
            validate_settings_data({"api_password": "hunter2"})

    @pytest.mark.parametrize("value", [0, -1])
    def test_non_positive_int(self, value):
        with pytest.raises(ConfigurationError, match=">= 1"):
            validate_settings_data({"per_page": value})

    @pytest.mark.parametrize("value", ["100", True, 1.5])
    def test_non_int(self, value):
        with pytest.raises(ConfigurationError, match="not an integer"):
            validate_settings_data({"pages_per_batch": value})

    def test_non_positive_timeout(self):
        with pytest.raises(ConfigurationError, match="> 0"):
            validate_settings_data({"http_timeout": 0})

    def test_negative_backoff(self):
        with pytest.raises(ConfigurationError):
            validate_settings_data({"backoff_base_seconds": -1})

    def test_verify_tls_must_be_bool(self):
        with pytest.raises(ConfigurationError, match="verify_tls"):
            validate_settings_data({"verify_tls": "no"})

    def test_valid(self):
        validate_settings_data({"per_page": 10, "backoff_base_seconds": 0, "http_timeout": 5})
