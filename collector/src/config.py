"""
Collector daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded device addresses or credentials.

CHANGELOG:
- 2026-10-11: Add spool/health paths and LOG_LEVEL
- 2026-10-05: Add write buffer tuning (capacity, flush, retries)
- 2026-10-02: Initial creation (STORY-100)

TODO:
- None
"""

import logging

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from collector.src.discovery import parse_address_list


class CollectorSettings(BaseSettings):
    """Collector configuration for the Shelly-to-InfluxDB pipeline.

    All values are loaded from environment variables. Optional variables
    have sensible defaults.

    Attributes:
        shelly_addresses: Static device addresses (``host`` or ``host:port``),
            comma or whitespace separated.
        discover: Scan ``discovery_network`` with nmap for Shelly devices.
        discovery_network: CIDR range scanned when ``discover`` is enabled.
        discovery_interval_s: Seconds between discovery refreshes
            (0 = discover once at startup).
        discovery_prune: Deregister devices missing from a refresh.
        influx_url: InfluxDB base URL.
        influx_database: Target database name.
        influx_token: Optional API token.
        measurement: Measurement name for written points.
        poll_interval_s: Base seconds between polls of a healthy device.
        probe_timeout_s: Timeout for one device probe.
        failure_threshold: Consecutive failures before a device is unreachable.
        backoff_ceiling_s: Maximum backed-off poll interval
            (0 = 10x ``poll_interval_s``).
        poll_jitter_ratio: Relative jitter on every poll interval.
        buffer_capacity: Maximum points held in the write buffer.
        flush_interval_s: Maximum seconds between flushes.
        flush_size: Buffered point count that triggers a flush.
        batch_size: Maximum points per write request.
        write_max_retries: Total write attempts per batch before dropping it.
        write_retry_backoff_s: Delay before the second write attempt.
        write_retry_backoff_max_s: Cap on the write retry delay.
        write_timeout_s: Timeout for one write request.
        spool_path: SQLite file for points left over at shutdown
            (empty disables spooling).
        health_path: Health JSON file path.
        health_interval_s: Seconds between health file updates.
        log_level: Root log level.
    """

    shelly_addresses: str = ""
    discover: bool = False
    discovery_network: str = "192.168.1.0/24"
    discovery_interval_s: float = 3600.0
    discovery_prune: bool = False

    influx_url: str = "http://localhost:8086"
    influx_database: str = "shelly_data"
    influx_token: str = ""
    measurement: str = "power"

    poll_interval_s: float = 60.0
    probe_timeout_s: float = 5.0
    failure_threshold: int = 5
    backoff_ceiling_s: float = 0.0
    poll_jitter_ratio: float = 0.1

    buffer_capacity: int = 10_000
    flush_interval_s: float = 10.0
    flush_size: int = 500
    batch_size: int = 500
    write_max_retries: int = 5
    write_retry_backoff_s: float = 1.0
    write_retry_backoff_max_s: float = 30.0
    write_timeout_s: float = 10.0

    spool_path: str = "/data/spool.db"
    health_path: str = "/data/health.json"
    health_interval_s: float = 30.0
    log_level: str = "INFO"

    @property
    def address_list(self) -> list[str]:
        """Static addresses parsed from ``shelly_addresses``."""
        return parse_address_list(self.shelly_addresses)

    @model_validator(mode="after")
    def _require_device_source(self) -> "CollectorSettings":
        """Require static addresses or discovery."""
        if not self.discover and not self.address_list:
            raise ValueError(
                "Either set SHELLY_ADDRESSES or enable DISCOVER to find devices"
            )
        return self

    @model_validator(mode="after")
    def _default_backoff_ceiling(self) -> "CollectorSettings":
        """Default backoff_ceiling_s to 10x poll_interval_s when not set."""
        if self.backoff_ceiling_s == 0:
            self.backoff_ceiling_s = self.poll_interval_s * 10
        elif self.backoff_ceiling_s < self.poll_interval_s:
            raise ValueError("BACKOFF_CEILING_S must be >= POLL_INTERVAL_S")
        return self

    @model_validator(mode="after")
    def _flush_size_within_capacity(self) -> "CollectorSettings":
        if self.flush_size > self.buffer_capacity:
            raise ValueError("FLUSH_SIZE must be <= BUFFER_CAPACITY")
        return self

    @field_validator("influx_url")
    @classmethod
    def influx_url_must_be_http(cls, v: str) -> str:
        """Validate that the InfluxDB URL uses http or https."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(f"INFLUX_URL must start with http:// or https:// (got: '{v}')")
        return v.rstrip("/")

    @field_validator("poll_interval_s")
    @classmethod
    def poll_interval_must_be_positive(cls, v: float) -> float:
        """Minimum 1-second interval to avoid hammering devices."""
        if v < 1:
            raise ValueError("POLL_INTERVAL_S must be >= 1")
        return v

    @field_validator("probe_timeout_s", "flush_interval_s", "write_timeout_s")
    @classmethod
    def timeouts_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and intervals must be > 0")
        return v

    @field_validator("failure_threshold")
    @classmethod
    def failure_threshold_must_be_valid(cls, v: int) -> int:
        if v < 1:
            raise ValueError("FAILURE_THRESHOLD must be >= 1")
        return v

    @field_validator("poll_jitter_ratio")
    @classmethod
    def jitter_must_be_valid(cls, v: float) -> float:
        """Validate jitter ratio is between 0 and 0.5."""
        if v < 0 or v > 0.5:
            raise ValueError("POLL_JITTER_RATIO must be >= 0 and <= 0.5")
        return v

    @field_validator("buffer_capacity", "flush_size")
    @classmethod
    def buffer_sizes_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("BUFFER_CAPACITY and FLUSH_SIZE must be >= 1")
        return v

    @field_validator("batch_size")
    @classmethod
    def batch_size_must_be_valid(cls, v: int) -> int:
        """Validate batch size is between 1 and 5000."""
        if v < 1 or v > 5000:
            raise ValueError("BATCH_SIZE must be >= 1 and <= 5000")
        return v

    @field_validator("write_max_retries")
    @classmethod
    def write_max_retries_must_be_valid(cls, v: int) -> int:
        if v < 1:
            raise ValueError("WRITE_MAX_RETRIES must be >= 1")
        return v

    @field_validator(
        "write_retry_backoff_s", "write_retry_backoff_max_s", "discovery_interval_s"
    )
    @classmethod
    def delays_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must be >= 0")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"LOG_LEVEL '{v}' is not a logging level")
        return level

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
