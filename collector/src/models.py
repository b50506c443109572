"""
Pydantic models shared by every stage of the collection pipeline.

Defines the canonical MetricPoint written to InfluxDB, the DeviceDescriptor
kept by the registry, the DescriptorFragment a probe reports about a device,
and the closed DeviceHealth enum driving the registry's state machine.

All models are frozen: the registry replaces descriptors with ``model_copy``
instead of mutating them, so snapshots handed to other components can never
change underneath the reader.

CHANGELOG:
- 2026-10-06: Add hardware_id/firmware/hostname metadata to DeviceDescriptor
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

CANONICAL_FIELDS: frozenset[str] = frozenset(
    {"power_w", "voltage_v", "current_a", "energy_wh", "temperature_c"}
)
"""Field names a MetricPoint may carry."""

DEFAULT_MEASUREMENT = "power"


class DeviceHealth(StrEnum):
    """Health states of a monitored device."""

    DISCOVERED = "discovered"
    POLLING = "polling"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class MetricPoint(BaseModel):
    """A single canonical telemetry sample.

    Attributes:
        measurement: InfluxDB measurement name (default ``"power"``).
        tags: Ordered tag set. Always contains a non-empty ``device_id``,
            optionally ``channel`` for multi-channel devices.
        fields: Canonical readings actually reported by the device. Absent
            readings are omitted, never defaulted to zero.
        timestamp: Sample time (device-reported when available, otherwise
            collection time). Must be timezone-aware.
    """

    model_config = ConfigDict(frozen=True)

    measurement: str = DEFAULT_MEASUREMENT
    tags: dict[str, str]
    fields: dict[str, float]
    timestamp: datetime

    @field_validator("measurement")
    @classmethod
    def measurement_must_be_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("measurement must be non-empty")
        return v

    @field_validator("tags")
    @classmethod
    def tags_must_carry_device_id(cls, v: dict[str, str]) -> dict[str, str]:
        """Every point is attributable to exactly one device."""
        if not v.get("device_id"):
            raise ValueError("tags must include a non-empty 'device_id'")
        return v

    @field_validator("fields")
    @classmethod
    def fields_must_be_canonical(cls, v: dict[str, float]) -> dict[str, float]:
        """Require at least one canonical, finite field."""
        if not v:
            raise ValueError("a metric point needs at least one field")
        unknown = set(v) - CANONICAL_FIELDS
        if unknown:
            raise ValueError(f"non-canonical field(s): {sorted(unknown)}")
        for name, value in v.items():
            if not math.isfinite(value):
                raise ValueError(f"field '{name}' is not finite: {value}")
        return v

    @field_validator("timestamp")
    @classmethod
    def timestamp_must_be_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        return v


class DescriptorFragment(BaseModel):
    """Identity details a probe learns about a device.

    Attributes:
        model: Payload schema tag resolved from the device type (e.g.
            ``"single-relay"``), or the raw type when no schema is known.
        device_type: Raw type/model string the device reports.
        hardware_id: MAC address (lowercase, no separators) when reported.
        firmware: Firmware version string when reported.
        generation: Shelly API generation (1 or 2+).
        capabilities: Channel names the device currently exposes.
    """

    model_config = ConfigDict(frozen=True)

    model: str
    device_type: str
    hardware_id: str | None = None
    firmware: str | None = None
    generation: int = 1
    capabilities: frozenset[str] = frozenset()


class DeviceDescriptor(BaseModel):
    """Registry record of one monitored device.

    Attributes:
        device_id: Stable identifier derived from the address at registration.
        address: ``host`` or ``host:port``.
        model: Payload schema tag, ``None`` until the first successful probe.
        capabilities: Channel names the device exposes.
        health: Current health state.
        consecutive_failures: Probe failures since the last success.
        last_success_at: Time of the most recent successful probe.
        hardware_id: MAC reported by the device.
        device_type: Raw device type string.
        firmware: Firmware version.
        hostname: Hostname reported by discovery, if any.
        registered_at: Time the registry first admitted the device.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    address: str
    model: str | None = None
    capabilities: frozenset[str] = frozenset()
    health: DeviceHealth = DeviceHealth.DISCOVERED
    consecutive_failures: int = Field(default=0, ge=0)
    last_success_at: datetime | None = None
    hardware_id: str | None = None
    device_type: str | None = None
    firmware: str | None = None
    hostname: str | None = None
    registered_at: datetime | None = None
