"""
Unit tests for collector daemon configuration (CollectorSettings).

Tests verify:
- Config loads from environment variables with correct defaults.
- A device source (static addresses or discovery) is required.
- INFLUX_URL must be http(s).
- Numeric constraints are enforced (intervals, thresholds, buffer sizes).
- BACKOFF_CEILING_S defaults to 10x POLL_INTERVAL_S when not set.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-100)

TODO:
- None
"""

import pytest
from collector.src.config import CollectorSettings
from pydantic import ValidationError


class TestCollectorSettingsLoadsFromEnv:
    """Config loads all values from environment variables."""

    def test_loads_all_env_vars(self, env_vars_full: dict[str, str]) -> None:
        """All env vars are read and assigned correctly."""
        settings = CollectorSettings()

        assert settings.address_list == ["192.168.1.50", "192.168.1.51:8080"]
        assert settings.discover is True
        assert settings.discovery_network == env_vars_full["DISCOVERY_NETWORK"]
        assert settings.discovery_interval_s == 600
        assert settings.discovery_prune is True
        assert settings.influx_url == env_vars_full["INFLUX_URL"]
        assert settings.influx_database == env_vars_full["INFLUX_DATABASE"]
        assert settings.influx_token == env_vars_full["INFLUX_TOKEN"]
        assert settings.measurement == "shelly_power"
        assert settings.poll_interval_s == 30
        assert settings.probe_timeout_s == 3
        assert settings.failure_threshold == 4
        assert settings.backoff_ceiling_s == 120
        assert settings.poll_jitter_ratio == pytest.approx(0.2)
        assert settings.buffer_capacity == 2000
        assert settings.flush_interval_s == 5
        assert settings.flush_size == 100
        assert settings.batch_size == 250
        assert settings.write_max_retries == 3
        assert settings.write_retry_backoff_s == pytest.approx(0.5)
        assert settings.write_retry_backoff_max_s == 8
        assert settings.write_timeout_s == 4
        assert settings.spool_path == env_vars_full["SPOOL_PATH"]
        assert settings.health_path == env_vars_full["HEALTH_PATH"]
        assert settings.health_interval_s == 15
        assert settings.log_level == "DEBUG"

    def test_defaults_applied_when_optional_vars_missing(
        self, env_vars_required_only: dict[str, str]
    ) -> None:
        """Optional variables use default values when not set."""
        settings = CollectorSettings()

        assert settings.address_list == ["192.168.1.50"]
        assert settings.discover is False
        assert settings.discovery_network == "192.168.1.0/24"
        assert settings.influx_url == "http://localhost:8086"
        assert settings.influx_database == "shelly_data"
        assert settings.influx_token == ""
        assert settings.measurement == "power"
        assert settings.poll_interval_s == 60
        assert settings.probe_timeout_s == 5
        assert settings.failure_threshold == 5
        assert settings.poll_jitter_ratio == pytest.approx(0.1)
        assert settings.buffer_capacity == 10_000
        assert settings.flush_interval_s == 10
        assert settings.flush_size == 500
        assert settings.batch_size == 500
        assert settings.write_max_retries == 5
        assert settings.spool_path == "/data/spool.db"
        assert settings.health_path == "/data/health.json"
        assert settings.log_level == "INFO"


class TestDeviceSource:
    """Either static addresses or discovery must be configured."""

    def test_no_source_raises(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            CollectorSettings()
        assert "shelly_addresses" in str(exc_info.value).lower()

    def test_discovery_alone_is_enough(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DISCOVER", "1")

        settings = CollectorSettings()
        assert settings.discover is True
        assert settings.address_list == []

    def test_whitespace_separated_addresses(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Addresses may be separated by commas and/or whitespace; duplicates drop."""
        monkeypatch.setenv("SHELLY_ADDRESSES", "10.0.0.5  10.0.0.6,\n10.0.0.5")

        settings = CollectorSettings()
        assert settings.address_list == ["10.0.0.5", "10.0.0.6"]


class TestInfluxUrlValidation:
    """INFLUX_URL must be an http(s) URL."""

    def test_https_url_accepted(
        self, env_vars_required_only: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Trailing slashes are stripped from the base URL."""
        monkeypatch.setenv("INFLUX_URL", "https://influx.example.com/")

        settings = CollectorSettings()
        assert settings.influx_url == "https://influx.example.com"

    def test_ftp_url_rejected(
        self, env_vars_required_only: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("INFLUX_URL", "ftp://influx.example.com")

        with pytest.raises(ValidationError) as exc_info:
            CollectorSettings()
        assert "influx_url" in str(exc_info.value).lower()


class TestBackoffCeiling:
    """BACKOFF_CEILING_S defaults to 10x the poll interval."""

    def test_default_is_ten_times_poll_interval(
        self, env_vars_required_only: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("POLL_INTERVAL_S", "15")

        settings = CollectorSettings()
        assert settings.backoff_ceiling_s == 150

    def test_ceiling_below_interval_rejected(
        self, env_vars_required_only: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("POLL_INTERVAL_S", "60")
        monkeypatch.setenv("BACKOFF_CEILING_S", "30")

        with pytest.raises(ValidationError) as exc_info:
            CollectorSettings()
        assert "backoff_ceiling_s" in str(exc_info.value).lower()


class TestNumericConstraints:
    """Numeric configuration values must be within valid ranges."""

    @pytest.mark.parametrize(
        ("var", "value"),
        [
            ("POLL_INTERVAL_S", "0.5"),
            ("PROBE_TIMEOUT_S", "0"),
            ("FAILURE_THRESHOLD", "0"),
            ("POLL_JITTER_RATIO", "0.6"),
            ("POLL_JITTER_RATIO", "-0.1"),
            ("BUFFER_CAPACITY", "0"),
            ("BATCH_SIZE", "0"),
            ("BATCH_SIZE", "5001"),
            ("WRITE_MAX_RETRIES", "0"),
            ("WRITE_RETRY_BACKOFF_S", "-1"),
            ("LOG_LEVEL", "chatty"),
        ],
    )
    def test_out_of_range_rejected(
        self,
        env_vars_required_only: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
        var: str,
        value: str,
    ) -> None:
        monkeypatch.setenv(var, value)

        with pytest.raises(ValidationError) as exc_info:
            CollectorSettings()
        assert var.lower() in str(exc_info.value).lower()

    def test_flush_size_above_capacity_rejected(
        self, env_vars_required_only: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("BUFFER_CAPACITY", "100")
        monkeypatch.setenv("FLUSH_SIZE", "200")

        with pytest.raises(ValidationError) as exc_info:
            CollectorSettings()
        assert "flush_size" in str(exc_info.value).lower()

    def test_valid_custom_numeric_values(
        self, env_vars_required_only: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Custom valid numeric values are accepted."""
        monkeypatch.setenv("POLL_INTERVAL_S", "10")
        monkeypatch.setenv("BATCH_SIZE", "100")
        monkeypatch.setenv("FAILURE_THRESHOLD", "3")

        settings = CollectorSettings()
        assert settings.poll_interval_s == 10
        assert settings.batch_size == 100
        assert settings.failure_threshold == 3
