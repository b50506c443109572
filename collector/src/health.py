"""
Health file writer for the collector daemon.

Writes a JSON health file at a configurable path with these fields:
- last_poll_ts: ISO timestamp of the most recent device poll.
- last_flush_ts: ISO timestamp of the most recent successful sink write.
- buffered_points: Points currently waiting in the write buffer.
- dropped_points: Points dropped so far (overflow + exhausted/rejected batches).
- devices: Number of devices per health state.
- unreachable: Device ids currently marked unreachable.

The file is rewritten on every update, providing a simple liveness signal
that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-10: Report device health counts and drop counters (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from collector.src.models import DeviceDescriptor, DeviceHealth

if TYPE_CHECKING:
    from collector.src.buffer import BufferStats


class HealthWriter:
    """Writes collector health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_poll_ts: str | None = None
        self._last_flush_ts: str | None = None
        self._buffered_points: int = 0
        self._dropped_points: int = 0
        self._devices: dict[str, int] = {state.value: 0 for state in DeviceHealth}
        self._unreachable: list[str] = []

    def record_poll(self, at: datetime | None = None) -> None:
        """Record a poll event and write health file."""
        self._last_poll_ts = (at or datetime.now(tz=UTC)).isoformat()
        self._write()

    def update(
        self,
        devices: Iterable[DeviceDescriptor],
        stats: BufferStats,
        buffered: int,
    ) -> None:
        """Refresh device and buffer state and write health file.

        Args:
            devices: Registry snapshot.
            stats: Write buffer counters.
            buffered: Current write buffer length.
        """
        counts = {state.value: 0 for state in DeviceHealth}
        unreachable: list[str] = []
        for descriptor in devices:
            counts[descriptor.health.value] += 1
            if descriptor.health is DeviceHealth.UNREACHABLE:
                unreachable.append(descriptor.device_id)
        self._devices = counts
        self._unreachable = sorted(unreachable)
        self._buffered_points = buffered
        self._dropped_points = stats.total_dropped
        if stats.last_flush_at is not None:
            self._last_flush_ts = stats.last_flush_at.isoformat()
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_poll_ts": self._last_poll_ts,
            "last_flush_ts": self._last_flush_ts,
            "buffered_points": self._buffered_points,
            "dropped_points": self._dropped_points,
            "devices": self._devices,
            "unreachable": self._unreachable,
        }
        self.path.write_text(json.dumps(data))
