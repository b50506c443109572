"""
Unit tests for the collector health writer module.

Tests verify:
- HealthWriter.record_poll() writes health.json with last_poll_ts.
- HealthWriter.update() reports device health counts, unreachable device ids,
  buffered points, dropped points and the last successful flush.
- Health file always contains every field, even before any event.

CHANGELOG:
- 2026-10-10: Cover device health counts and drop counters (STORY-111)
- 2026-02-14: Initial creation (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from collector.src.buffer import BufferStats
from collector.src.health import HealthWriter
from collector.src.models import DeviceDescriptor, DeviceHealth

_EXPECTED_KEYS = {
    "last_poll_ts",
    "last_flush_ts",
    "buffered_points",
    "dropped_points",
    "devices",
    "unreachable",
}


def _device(address: str, health: DeviceHealth) -> DeviceDescriptor:
    return DeviceDescriptor(device_id=address, address=address, health=health)


# ---------------------------------------------------------------------------
# Test: record_poll writes health file with last_poll_ts
# ---------------------------------------------------------------------------


class TestRecordPoll:
    """record_poll() creates/updates the health JSON file."""

    def test_record_poll_writes_health_file(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.record_poll(datetime(2026, 10, 10, 9, 30, tzinfo=UTC))

        data = json.loads(health_path.read_text())
        assert data["last_poll_ts"] == "2026-10-10T09:30:00+00:00"

    def test_record_poll_defaults_to_now(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(str(health_path))

        writer.record_poll()

        data = json.loads(health_path.read_text())
        assert "T" in data["last_poll_ts"]


# ---------------------------------------------------------------------------
# Test: update reports devices and buffer
# ---------------------------------------------------------------------------


class TestUpdate:
    """update() reflects the registry snapshot and buffer counters."""

    def test_device_counts_and_unreachable_ids(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)
        devices = [
            _device("10.0.0.3", DeviceHealth.UNREACHABLE),
            _device("10.0.0.1", DeviceHealth.HEALTHY),
            _device("10.0.0.2", DeviceHealth.UNREACHABLE),
            _device("10.0.0.4", DeviceHealth.DEGRADED),
        ]

        writer.update(devices, BufferStats(), buffered=0)

        data = json.loads(health_path.read_text())
        assert data["devices"] == {
            "discovered": 0,
            "polling": 0,
            "healthy": 1,
            "degraded": 1,
            "unreachable": 2,
        }
        assert data["unreachable"] == ["10.0.0.2", "10.0.0.3"]

    def test_buffer_counters(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)
        flushed_at = datetime(2026, 10, 10, 9, 31, tzinfo=UTC)
        stats = BufferStats(
            dropped_overflow=7, dropped_points=5, last_flush_at=flushed_at
        )

        writer.update([], stats, buffered=42)

        data = json.loads(health_path.read_text())
        assert data["buffered_points"] == 42
        assert data["dropped_points"] == 12
        assert data["last_flush_ts"] == flushed_at.isoformat()

    def test_update_preserves_poll_timestamp(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)
        writer.record_poll(datetime(2026, 10, 10, 9, 30, tzinfo=UTC))

        writer.update([], BufferStats(), buffered=0)

        data = json.loads(health_path.read_text())
        assert data["last_poll_ts"] == "2026-10-10T09:30:00+00:00"
        assert data["last_flush_ts"] is None


class TestHealthFileContainsAllFields:
    def test_defaults_before_any_flush(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.update([], BufferStats(), buffered=0)

        data = json.loads(health_path.read_text())
        assert set(data) == _EXPECTED_KEYS
        assert data["last_poll_ts"] is None
        assert data["unreachable"] == []
