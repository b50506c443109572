"""
Tests for the Shelly HTTP probe.

Verifies identity resolution via ``GET /shelly``, the status request for the
resolved model, DescriptorFragment contents, and the mapping of transport,
timeout, HTTP and decoding failures onto ProbeError subclasses.  Tests use an
httpx.AsyncClient backed by httpx.MockTransport.

CHANGELOG:
- 2026-10-08: Cover overall probe timeout
- 2026-10-03: Initial creation -- replaces Modbus poller tests (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
import pytest
from collector.src.errors import (
    DeviceUnreachableError,
    ProbeError,
    ProbeTimeoutError,
    ProtocolError,
)
from collector.src.probe import DeviceProbe

_ADDRESS = "192.168.1.50"

_PLUG_IDENTITY = {
    "type": "SHPLG-S",
    "mac": "C4:5B:BE:6A:01:02",
    "auth": False,
    "fw": "20230913-112003/v1.14.0-gcb84623",
}
_PLUG_METER = {
    "power": 42.5,
    "is_valid": True,
    "timestamp": 1_700_000_000,
    "total": 6000,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _routes_handler(
    routes: dict[str, httpx.Response | Exception],
) -> Callable[[httpx.Request], httpx.Response]:
    """Build a MockTransport handler answering by URL path."""

    def handler(request: httpx.Request) -> httpx.Response:
        outcome = routes.get(request.url.path)
        if outcome is None:
            return httpx.Response(404)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return handler


def _make_probe(
    routes: dict[str, httpx.Response | Exception], timeout_s: float = 1.0
) -> DeviceProbe:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_routes_handler(routes)))
    return DeviceProbe(timeout_s=timeout_s, client=client)


# ---------------------------------------------------------------------------
# Successful probes
# ---------------------------------------------------------------------------


class TestProbeSuccess:
    """A reachable device yields its payload and a DescriptorFragment."""

    @pytest.mark.asyncio
    async def test_gen1_plug(self) -> None:
        probe = _make_probe(
            {
                "/shelly": httpx.Response(200, json=_PLUG_IDENTITY),
                "/meter/0": httpx.Response(200, json=_PLUG_METER),
            }
        )

        result = await probe.probe(_ADDRESS)

        assert result.payload == _PLUG_METER
        assert result.fragment.model == "single-relay"
        assert result.fragment.device_type == "SHPLG-S"
        assert result.fragment.hardware_id == "c45bbe6a0102"
        assert result.fragment.firmware == _PLUG_IDENTITY["fw"]
        assert result.fragment.generation == 1
        assert result.fragment.capabilities == frozenset()
        assert result.collected_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_gen2_switch_reports_channels(self) -> None:
        status = {
            "switch:0": {"id": 0, "apower": 10.0},
            "switch:1": {"id": 1, "apower": 0.0},
            "sys": {"unixtime": 1_700_000_000},
        }
        probe = _make_probe(
            {
                "/shelly": httpx.Response(
                    200,
                    json={
                        "gen": 2,
                        "model": "SPSW-202XE16EU",
                        "mac": "A8032ABE5C10",
                        "ver": "1.0.8",
                    },
                ),
                "/rpc/Shelly.GetStatus": httpx.Response(200, json=status),
            }
        )

        result = await probe.probe(_ADDRESS)

        assert result.fragment.model == "gen2-switch"
        assert result.fragment.generation == 2
        assert result.fragment.firmware == "1.0.8"
        assert result.fragment.hardware_id == "a8032abe5c10"
        assert result.fragment.capabilities == frozenset({"0", "1"})

    @pytest.mark.asyncio
    async def test_gen2_meter_reads_rpc_status_as_unknown_model(self) -> None:
        probe = _make_probe(
            {
                "/shelly": httpx.Response(
                    200, json={"gen": 2, "model": "SPEM-003CEBEU", "app": "Pro3EM"}
                ),
                "/rpc/Shelly.GetStatus": httpx.Response(
                    200, json={"em:0": {"id": 0, "total_act_power": 812.4}}
                ),
            }
        )

        result = await probe.probe(_ADDRESS)

        assert result.fragment.model == "SPEM-003CEBEU"
        assert result.fragment.capabilities == frozenset()
        assert "em:0" in result.payload

    @pytest.mark.asyncio
    async def test_unknown_type_reads_default_status(self) -> None:
        """Unknown models are still probed; the normalizer reports them later."""
        probe = _make_probe(
            {
                "/shelly": httpx.Response(200, json={"type": "SHDM-2"}),
                "/status": httpx.Response(200, json={"lights": []}),
            }
        )

        result = await probe.probe(_ADDRESS)

        assert result.fragment.model == "SHDM-2"
        assert result.payload == {"lights": []}

    @pytest.mark.asyncio
    async def test_requests_target_address_and_port(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            if request.url.path == "/shelly":
                return httpx.Response(200, json=_PLUG_IDENTITY)
            return httpx.Response(200, json=_PLUG_METER)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        probe = DeviceProbe(timeout_s=1.0, client=client)

        await probe.probe("10.0.0.7:8080")

        assert seen == ["http://10.0.0.7:8080/shelly", "http://10.0.0.7:8080/meter/0"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestProbeFailures:
    """Every failure mode surfaces as a ProbeError carrying the address."""

    @pytest.mark.asyncio
    async def test_connection_refused_is_unreachable(self) -> None:
        probe = _make_probe({"/shelly": httpx.ConnectError("refused")})

        with pytest.raises(DeviceUnreachableError) as exc_info:
            await probe.probe(_ADDRESS)
        assert exc_info.value.address == _ADDRESS

    @pytest.mark.asyncio
    async def test_transport_timeout(self) -> None:
        probe = _make_probe({"/shelly": httpx.ReadTimeout("slow")})

        with pytest.raises(ProbeTimeoutError):
            await probe.probe(_ADDRESS)

    @pytest.mark.asyncio
    async def test_overall_timeout_bounds_the_probe(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json=_PLUG_IDENTITY)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        probe = DeviceProbe(timeout_s=0.05, client=client)

        with pytest.raises(ProbeTimeoutError):
            await probe.probe(_ADDRESS)

    @pytest.mark.asyncio
    async def test_http_error_status_is_protocol_error(self) -> None:
        probe = _make_probe(
            {
                "/shelly": httpx.Response(200, json=_PLUG_IDENTITY),
                "/meter/0": httpx.Response(401),
            }
        )

        with pytest.raises(ProtocolError, match="HTTP 401 on /meter/0"):
            await probe.probe(_ADDRESS)

    @pytest.mark.asyncio
    async def test_invalid_json_is_protocol_error(self) -> None:
        probe = _make_probe({"/shelly": httpx.Response(200, text="<html>router</html>")})

        with pytest.raises(ProtocolError, match="invalid JSON"):
            await probe.probe(_ADDRESS)

    @pytest.mark.asyncio
    async def test_non_object_json_is_protocol_error(self) -> None:
        probe = _make_probe({"/shelly": httpx.Response(200, json=[1, 2])})

        with pytest.raises(ProtocolError, match="JSON object"):
            await probe.probe(_ADDRESS)

    @pytest.mark.asyncio
    async def test_identity_without_type(self) -> None:
        probe = _make_probe({"/shelly": httpx.Response(200, json={"name": "plug"})})

        with pytest.raises(ProtocolError, match="no device type"):
            await probe.probe(_ADDRESS)

    @pytest.mark.asyncio
    async def test_errors_share_probe_error_base(self) -> None:
        probe = _make_probe({"/shelly": httpx.ConnectError("refused")})

        with pytest.raises(ProbeError):
            await probe.probe(_ADDRESS)


class TestProbeClientOwnership:
    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(404))
        )
        probe = DeviceProbe(client=client)

        await probe.close()

        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self) -> None:
        probe = DeviceProbe(timeout_s=2.0)
        assert probe.timeout_s == 2.0

        await probe.close()

        assert probe._client.is_closed
