"""
Async HTTP probe for Shelly power-monitoring devices.

Queries a device's identity endpoint (``GET /shelly``) to resolve its model,
then reads the model's status endpoint and returns the raw JSON payload
together with a DescriptorFragment.  Designed to be safely called
concurrently for many addresses:

- One pooled httpx.AsyncClient is shared; the probe keeps no per-device state.
- The whole probe (both requests) is bounded by ``timeout_s``.
- Failures are raised as ProbeError subclasses so the poll loop can update
  device health; nothing else escapes.

CHANGELOG:
- 2026-10-17: Read unknown Gen2+ models from the RPC status endpoint
- 2026-10-08: Bound both requests with a single overall timeout
- 2026-10-03: Replace Modbus poller with Shelly HTTP probe (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from collector.src.device_models import (
    ALL_MODELS,
    channel_names,
    resolve_model,
    status_path_for,
)
from collector.src.errors import (
    DeviceUnreachableError,
    ProbeTimeoutError,
    ProtocolError,
)
from collector.src.models import DescriptorFragment

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PROBE_TIMEOUT_S: float = 5.0
"""Default timeout for a complete probe (identity + status request)."""

IDENTITY_PATH = "/shelly"


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of a successful probe.

    Attributes:
        fragment: Identity details reported by the device.
        payload: Raw decoded status payload.
        collected_at: UTC time the status payload was received.
    """

    fragment: DescriptorFragment
    payload: dict[str, Any]
    collected_at: datetime


def _normalize_mac(mac: Any) -> str | None:
    if not isinstance(mac, str) or not mac:
        return None
    return mac.replace(":", "").replace("-", "").lower()


class DeviceProbe:
    """Shelly device probe over HTTP.

    Args:
        timeout_s: Upper bound for one complete probe in seconds.
        client: Optional pre-built httpx.AsyncClient (tests inject one with
            a MockTransport).  When omitted a pooled client is created and
            owned by the probe.
    """

    def __init__(
        self,
        *,
        timeout_s: float = PROBE_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_keepalive_connections=32),
            follow_redirects=False,
        )

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    async def close(self) -> None:
        """Close the HTTP client if the probe created it."""
        if self._owns_client:
            await self._client.aclose()

    async def probe(self, address: str) -> ProbeResult:
        """Probe the device at *address* (``host`` or ``host:port``).

        Raises:
            DeviceUnreachableError: On connection or transport failure.
            ProbeTimeoutError: When the device does not answer in time.
            ProtocolError: On non-2xx status or an unrecognised response.
        """
        try:
            return await asyncio.wait_for(
                self._probe(address), timeout=self._timeout_s
            )
        except TimeoutError as exc:
            raise ProbeTimeoutError(
                address, f"no response within {self._timeout_s:.1f}s"
            ) from exc

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _probe(self, address: str) -> ProbeResult:
        info = await self._get_json(address, IDENTITY_PATH)

        resolved = resolve_model(info)
        if resolved is None:
            raise ProtocolError(address, "identity response has no device type")
        model, device_type, generation = resolved

        payload = await self._get_json(address, status_path_for(model, generation))
        collected_at = datetime.now(tz=UTC)

        definition = ALL_MODELS.get(model)
        capabilities = (
            channel_names(definition, payload) if definition is not None else frozenset()
        )
        firmware = info.get("fw") or info.get("ver")

        fragment = DescriptorFragment(
            model=model,
            device_type=device_type,
            hardware_id=_normalize_mac(info.get("mac")),
            firmware=firmware if isinstance(firmware, str) else None,
            generation=generation,
            capabilities=capabilities,
        )
        logger.debug(
            "Probed %s: model=%s type=%s channels=%s",
            address,
            model,
            device_type,
            sorted(capabilities),
        )
        return ProbeResult(fragment=fragment, payload=payload, collected_at=collected_at)

    async def _get_json(self, address: str, path: str) -> dict[str, Any]:
        """GET ``http://{address}{path}`` and decode a JSON object."""
        url = f"http://{address}{path}"
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as exc:
            raise ProbeTimeoutError(address, f"timeout on {path}") from exc
        except httpx.TransportError as exc:
            raise DeviceUnreachableError(address, f"{type(exc).__name__} on {path}") from exc

        if not response.is_success:
            raise ProtocolError(address, f"HTTP {response.status_code} on {path}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ProtocolError(address, f"invalid JSON on {path}") from exc

        if not isinstance(body, dict):
            raise ProtocolError(address, f"expected a JSON object on {path}")
        return body
