"""
Shelly device model catalog -- single source of truth for payload schemas.

Defines, per supported model tag, which HTTP status endpoint the probe reads,
how channels are laid out in the status payload, and how raw payload keys map
onto canonical MetricPoint fields (with unit scaling).  Device type strings
reported by ``GET /shelly`` are resolved to a model tag via ``GEN1_TYPE_MODELS``
(Gen1) or the ``gen`` field (Gen2+).

Adding a new device model is additive: declare a :class:`DeviceModel` and list
it in :data:`ALL_MODELS`; the normalizer dispatch table picks it up.

References:
    - Shelly Gen1 API: https://shelly-api-docs.shelly.cloud/gen1/
    - Shelly Gen2+ API: https://shelly-api-docs.shelly.cloud/gen2/

CHANGELOG:
- 2026-10-17: Resolve Gen2+ switch models by model-code family; /meter/0
  ``timestamp`` is local counter time, not sample time, so it is not used
- 2026-10-09: Gen1 meter ``total`` is watt-minutes; scale to Wh (1/60)
- 2026-10-06: Add emeter (SHEM, SHEM-3) and gen2-switch models
- 2026-10-03: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from collector.src.errors import MalformedPayloadError

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------

LAYOUT_SINGLE = "single"
"""The whole payload is one channel (no channel tag)."""

LAYOUT_ARRAY = "array"
"""Channels are entries of a list under ``channel_key`` (Gen1)."""

LAYOUT_COMPONENT = "component"
"""Channels are ``<channel_key>:<n>`` components (Gen2+ RPC)."""

WATT_MINUTES_TO_WH = 1.0 / 60.0


@dataclass(frozen=True, slots=True)
class FieldDef:
    """Mapping of one raw payload value onto a canonical field.

    Attributes:
        path: Key path into the channel object, e.g. ``("aenergy", "total")``.
        field: Canonical MetricPoint field name (e.g. ``"energy_wh"``).
        scale: Multiplicative factor applied to the raw number.
    """

    path: tuple[str, ...]
    field: str
    scale: float = 1.0


@dataclass(frozen=True, slots=True)
class DeviceModel:
    """Payload schema of one device model.

    Attributes:
        name: Model tag stored on the device descriptor.
        status_path: HTTP path the probe reads the raw payload from.
        layout: One of :data:`LAYOUT_SINGLE`, :data:`LAYOUT_ARRAY`,
            :data:`LAYOUT_COMPONENT`.
        fields: Per-channel field mappings.
        channel_key: List key (array layout) or component prefix
            (component layout).  ``None`` for the single layout.
        shared_fields: Top-level payload values copied onto every channel
            (e.g. device temperature on a Shelly 2.5).
        timestamp_path: Key path to a device-reported unix time, if any.
        description: Free-text description.
    """

    name: str
    status_path: str
    layout: str
    fields: tuple[FieldDef, ...]
    channel_key: str | None = None
    shared_fields: tuple[FieldDef, ...] = ()
    timestamp_path: tuple[str, ...] | None = None
    description: str = ""


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

SINGLE_RELAY = DeviceModel(
    name="single-relay",
    status_path="/meter/0",
    layout=LAYOUT_SINGLE,
    fields=(
        FieldDef(("power",), "power_w"),
        FieldDef(("voltage",), "voltage_v"),
        FieldDef(("current",), "current_a"),
        FieldDef(("total",), "energy_wh", WATT_MINUTES_TO_WH),
        FieldDef(("temperature",), "temperature_c"),
    ),
    description="Gen1 single meter (Plug S, 1PM) read from /meter/0",
)

MULTI_RELAY = DeviceModel(
    name="multi-relay",
    status_path="/status",
    layout=LAYOUT_ARRAY,
    channel_key="meters",
    fields=(
        FieldDef(("power",), "power_w"),
        FieldDef(("total",), "energy_wh", WATT_MINUTES_TO_WH),
    ),
    shared_fields=(
        FieldDef(("voltage",), "voltage_v"),
        FieldDef(("temperature",), "temperature_c"),
    ),
    timestamp_path=("unixtime",),
    description="Gen1 multi-relay meters (Shelly 2.5, 4Pro) read from /status",
)

EMETER = DeviceModel(
    name="emeter",
    status_path="/status",
    layout=LAYOUT_ARRAY,
    channel_key="emeters",
    fields=(
        FieldDef(("power",), "power_w"),
        FieldDef(("voltage",), "voltage_v"),
        FieldDef(("current",), "current_a"),
        FieldDef(("total",), "energy_wh"),
    ),
    timestamp_path=("unixtime",),
    description="Gen1 energy meter phases (Shelly EM, 3EM) read from /status",
)

GEN2_SWITCH = DeviceModel(
    name="gen2-switch",
    status_path="/rpc/Shelly.GetStatus",
    layout=LAYOUT_COMPONENT,
    channel_key="switch",
    fields=(
        FieldDef(("apower",), "power_w"),
        FieldDef(("voltage",), "voltage_v"),
        FieldDef(("current",), "current_a"),
        FieldDef(("aenergy", "total"), "energy_wh"),
        FieldDef(("temperature", "tC"), "temperature_c"),
    ),
    timestamp_path=("sys", "unixtime"),
    description="Gen2+ Plus/Pro switch components read via Shelly.GetStatus",
)

ALL_MODELS: dict[str, DeviceModel] = {
    m.name: m for m in (SINGLE_RELAY, MULTI_RELAY, EMETER, GEN2_SWITCH)
}
"""Model tag -> definition."""

GEN1_TYPE_MODELS: dict[str, str] = {
    "SHPLG-S": SINGLE_RELAY.name,
    "SHPLG-1": SINGLE_RELAY.name,
    "SHPLG2-1": SINGLE_RELAY.name,
    "SHPLG-U1": SINGLE_RELAY.name,
    "SHSW-PM": SINGLE_RELAY.name,
    "SHSW-25": MULTI_RELAY.name,
    "SHSW-44": MULTI_RELAY.name,
    "SHEM": EMETER.name,
    "SHEM-3": EMETER.name,
}
"""Gen1 ``type`` string (from ``GET /shelly``) -> model tag."""

DEFAULT_STATUS_PATH = "/status"
"""Status path used for device types without a catalog entry."""

GEN2_SWITCH_FAMILIES = frozenset({"SW", "PL"})
"""Gen2+ model-code families with ``switch:N`` components (``SNSW-``, ``SNPL-``).

Other families (``SPEM-`` Pro EM, ``SNPM-`` Plus PM Mini, ...) expose
``em:N``/``pm1:N`` components instead and are reported as unknown models.
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def resolve_model(info: Mapping[str, Any]) -> tuple[str, str, int] | None:
    """Resolve a ``GET /shelly`` identity response to a model tag.

    Returns:
        ``(model, device_type, generation)``, where *model* falls back to the
        raw device type when the catalog has no entry for it, or ``None`` if
        the response carries no recognisable device type at all.
    """
    gen = info.get("gen")
    if isinstance(gen, int) and not isinstance(gen, bool) and gen >= 2:
        device_type = info.get("model") or info.get("app") or ""
        if not isinstance(device_type, str) or not device_type:
            return None
        code = info.get("model")
        if isinstance(code, str) and code[2:4].upper() in GEN2_SWITCH_FAMILIES:
            return GEN2_SWITCH.name, device_type, gen
        return device_type, device_type, gen

    device_type = info.get("type")
    if not isinstance(device_type, str) or not device_type:
        return None
    return GEN1_TYPE_MODELS.get(device_type, device_type), device_type, 1


def status_path_for(model: str, generation: int = 1) -> str:
    """Return the status endpoint for *model*.

    Models outside the catalog are read from the generation's generic status
    endpoint so the normalizer can report them.
    """
    definition = ALL_MODELS.get(model)
    if definition is not None:
        return definition.status_path
    return GEN2_SWITCH.status_path if generation >= 2 else DEFAULT_STATUS_PATH


def iter_channels(
    model: DeviceModel,
    payload: Mapping[str, Any],
) -> Iterator[tuple[str | None, Mapping[str, Any]]]:
    """Yield ``(channel_name, channel_object)`` pairs from a status payload.

    The channel name is ``None`` for single-layout models.

    Raises:
        MalformedPayloadError: If the channel container has the wrong shape.
    """
    if model.layout == LAYOUT_SINGLE:
        yield None, payload
        return

    if model.layout == LAYOUT_ARRAY:
        entries = payload.get(model.channel_key)
        if entries is None:
            return
        if not isinstance(entries, list):
            raise MalformedPayloadError(
                f"'{model.channel_key}' must be a list, got {type(entries).__name__}"
            )
        for idx, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise MalformedPayloadError(
                    f"'{model.channel_key}[{idx}]' must be an object"
                )
            yield str(idx), entry
        return

    prefix = f"{model.channel_key}:"
    components = sorted(
        (key for key in payload if key.startswith(prefix)),
        key=lambda key: (len(key), key),
    )
    for key in components:
        entry = payload[key]
        if not isinstance(entry, dict):
            raise MalformedPayloadError(f"component '{key}' must be an object")
        yield key[len(prefix) :], entry


def channel_names(model: DeviceModel, payload: Mapping[str, Any]) -> frozenset[str]:
    """Return the set of channel names present in *payload*.

    Malformed payloads yield an empty set; the normalizer reports them.
    """
    try:
        return frozenset(
            name for name, _ in iter_channels(model, payload) if name is not None
        )
    except MalformedPayloadError:
        return frozenset()


def lookup(payload: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    """Follow *path* through nested objects; ``None`` if any step is missing."""
    node: Any = payload
    for key in path:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node
