"""
Pure normalizer that converts raw Shelly status payloads into MetricPoints.

Takes a model tag, the raw JSON payload returned by the probe, and a
collection timestamp, and returns one canonical MetricPoint per channel.
Normalizers are selected from a dispatch table keyed by model tag; every
catalog model in :mod:`collector.src.device_models` is registered
automatically via its declarative field map.

Readings a device does not report are omitted (never defaulted to zero --
zero is a valid reading).  If the payload cannot be parsed against the
model schema the normalizer fails closed with a NormalizationError and emits
nothing.

This is a pure function: no side effects, no I/O, no clock.  The device_id
and timestamp are accepted as parameters so they can be injected by the caller.

CHANGELOG:
- 2026-10-09: Prefer device-reported unix time over collection time
- 2026-10-07: Switch to dispatch table keyed by model tag
- 2026-10-03: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from collector.src.device_models import (
    ALL_MODELS,
    DeviceModel,
    FieldDef,
    iter_channels,
    lookup,
)
from collector.src.errors import MalformedPayloadError, UnknownModelError
from collector.src.models import DEFAULT_MEASUREMENT, MetricPoint

logger = logging.getLogger(__name__)

Normalizer = Callable[..., list[MetricPoint]]
"""``(payload, *, device_id, ts, measurement) -> list[MetricPoint]``"""


# ---------------------------------------------------------------------------
# Value extraction
# ---------------------------------------------------------------------------


def _extract_number(
    obj: Mapping[str, Any],
    field_def: FieldDef,
) -> float | None:
    """Extract and scale one numeric value.

    Returns ``None`` when the value is absent or ``null``.

    Raises:
        MalformedPayloadError: If the value is present but not a finite number.
    """
    raw = lookup(obj, field_def.path)
    if raw is None:
        return None
    # bool is an int subclass; a relay "ison": true is not a reading.
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise MalformedPayloadError(
            f"'{'.'.join(field_def.path)}' must be numeric, got {raw!r}"
        )
    value = float(raw) * field_def.scale
    if not math.isfinite(value):
        raise MalformedPayloadError(
            f"'{'.'.join(field_def.path)}' is not finite: {raw!r}"
        )
    return value


def _sample_time(
    model: DeviceModel,
    payload: Mapping[str, Any],
    ts: datetime,
) -> datetime:
    """Return the device-reported time if present and plausible, else *ts*."""
    if model.timestamp_path is None:
        return ts
    raw = lookup(payload, model.timestamp_path)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        return ts
    try:
        return datetime.fromtimestamp(raw, tz=UTC)
    except (OverflowError, OSError, ValueError):
        logger.debug("Ignoring implausible device timestamp %r", raw)
        return ts


# ---------------------------------------------------------------------------
# Declarative normalizer built from a DeviceModel
# ---------------------------------------------------------------------------


def _catalog_normalizer(model: DeviceModel) -> Normalizer:
    """Build a normalizer for a catalog model."""

    def _normalize(
        payload: Mapping[str, Any],
        *,
        device_id: str,
        ts: datetime,
        measurement: str = DEFAULT_MEASUREMENT,
    ) -> list[MetricPoint]:
        sample_ts = _sample_time(model, payload, ts)

        shared: dict[str, float] = {}
        for field_def in model.shared_fields:
            value = _extract_number(payload, field_def)
            if value is not None:
                shared[field_def.field] = value

        points: list[MetricPoint] = []
        for channel, obj in iter_channels(model, payload):
            fields: dict[str, float] = {}
            for field_def in model.fields:
                value = _extract_number(obj, field_def)
                if value is not None:
                    fields[field_def.field] = value
            for name, value in shared.items():
                fields.setdefault(name, value)

            if not fields:
                logger.debug(
                    "Device %s channel %s reported no readings", device_id, channel
                )
                continue

            tags = {"device_id": device_id}
            if channel is not None:
                tags["channel"] = channel
            points.append(
                MetricPoint(
                    measurement=measurement,
                    tags=tags,
                    fields=fields,
                    timestamp=sample_ts,
                )
            )
        return points

    _normalize.__name__ = f"normalize_{model.name.replace('-', '_')}"
    return _normalize


NORMALIZERS: dict[str, Normalizer] = {
    name: _catalog_normalizer(model) for name, model in ALL_MODELS.items()
}
"""Model tag -> normalizer."""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize(
    model: str,
    raw: Any,
    *,
    device_id: str,
    ts: datetime,
    measurement: str = DEFAULT_MEASUREMENT,
) -> list[MetricPoint]:
    """Convert a raw status payload into canonical MetricPoints.

    This is a **pure function**: it performs no I/O, has no side effects,
    and does not access the system clock.  Normalizing the same payload
    twice yields equal point lists.

    Args:
        model: Model tag of the device (selects the normalizer).
        raw: Decoded JSON status payload, as returned by the probe.
        device_id: Device identifier to tag every point with.
        ts: Collection timestamp, used when the device reports no time.
        measurement: Measurement name for the emitted points.

    Returns:
        One MetricPoint per channel that reported at least one reading.

    Raises:
        UnknownModelError: If no normalizer is registered for *model*.
        MalformedPayloadError: If *raw* does not match the model schema.
    """
    normalizer = NORMALIZERS.get(model)
    if normalizer is None:
        raise UnknownModelError(model)
    if not isinstance(raw, dict):
        raise MalformedPayloadError(
            f"payload for model '{model}' must be an object, got {type(raw).__name__}"
        )
    return normalizer(raw, device_id=device_id, ts=ts, measurement=measurement)
