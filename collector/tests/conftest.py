"""
Shared test fixtures for collector daemon tests.

Provides environment variable fixtures for CollectorSettings configuration
tests.  All collector env vars are cleaned before each test to ensure
isolation.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-100)

TODO:
- None
"""

from __future__ import annotations

import pytest

# All CollectorSettings environment variable names, used for cleanup.
_ALL_COLLECTOR_ENV_VARS = (
    "SHELLY_ADDRESSES",
    "DISCOVER",
    "DISCOVERY_NETWORK",
    "DISCOVERY_INTERVAL_S",
    "DISCOVERY_PRUNE",
    "INFLUX_URL",
    "INFLUX_DATABASE",
    "INFLUX_TOKEN",
    "MEASUREMENT",
    "POLL_INTERVAL_S",
    "PROBE_TIMEOUT_S",
    "FAILURE_THRESHOLD",
    "BACKOFF_CEILING_S",
    "POLL_JITTER_RATIO",
    "BUFFER_CAPACITY",
    "FLUSH_INTERVAL_S",
    "FLUSH_SIZE",
    "BATCH_SIZE",
    "WRITE_MAX_RETRIES",
    "WRITE_RETRY_BACKOFF_S",
    "WRITE_RETRY_BACKOFF_MAX_S",
    "WRITE_TIMEOUT_S",
    "SPOOL_PATH",
    "HEALTH_PATH",
    "HEALTH_INTERVAL_S",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_collector_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all collector env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_COLLECTOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set every CollectorSettings environment variable.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "SHELLY_ADDRESSES": "192.168.1.50,192.168.1.51:8080",
        "DISCOVER": "true",
        "DISCOVERY_NETWORK": "10.0.0.0/24",
        "DISCOVERY_INTERVAL_S": "600",
        "DISCOVERY_PRUNE": "true",
        "INFLUX_URL": "http://influx.lan:8086",
        "INFLUX_DATABASE": "telemetry",
        "INFLUX_TOKEN": "secret-token",
        "MEASUREMENT": "shelly_power",
        "POLL_INTERVAL_S": "30",
        "PROBE_TIMEOUT_S": "3",
        "FAILURE_THRESHOLD": "4",
        "BACKOFF_CEILING_S": "120",
        "POLL_JITTER_RATIO": "0.2",
        "BUFFER_CAPACITY": "2000",
        "FLUSH_INTERVAL_S": "5",
        "FLUSH_SIZE": "100",
        "BATCH_SIZE": "250",
        "WRITE_MAX_RETRIES": "3",
        "WRITE_RETRY_BACKOFF_S": "0.5",
        "WRITE_RETRY_BACKOFF_MAX_S": "8",
        "WRITE_TIMEOUT_S": "4",
        "SPOOL_PATH": "/tmp/test-spool.db",
        "HEALTH_PATH": "/tmp/test-health.json",
        "HEALTH_INTERVAL_S": "15",
        "LOG_LEVEL": "debug",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only a static device address; everything else falls back to defaults."""
    env = {"SHELLY_ADDRESSES": "192.168.1.50"}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
