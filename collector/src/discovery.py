"""
Device discovery: static address lists and nmap-based LAN scans.

Produces the candidate addresses fed into the device registry.  Two sources
are supported and merged:

- A static list (``SHELLY_ADDRESSES``), parsed by :func:`parse_address_list`.
- An ``nmap -sn`` ping scan of a CIDR range.  Every host that answers is
  fingerprinted over HTTP (``/shelly``, then ``/status``, then a few Gen1
  endpoints); hosts whose pages mention camera vendors are excluded since
  some IP cameras expose similar paths.

:func:`apply_discovery` turns a discovery result into registry/scheduler
add and remove events.

CHANGELOG:
- 2026-10-13: Accept Gen1 identity responses in the fingerprint
- 2026-10-12: Only deregister missing devices when pruning is enabled
- 2026-10-11: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from collector.src.device_models import resolve_model
from collector.src.errors import DiscoveryError

if TYPE_CHECKING:
    from collector.src.config import CollectorSettings
    from collector.src.registry import DeviceRegistry
    from collector.src.scheduler import PollScheduler

logger = logging.getLogger(__name__)

FINGERPRINT_TIMEOUT_S = 3.0
FALLBACK_TIMEOUT_S = 2.0

_CAMERA_MARKERS = ("picvision", "hikvision", "hik-vision", "camera", "ipcam", "video")
_STATUS_MARKERS = ("shelly", "wifi_sta", "meter", "relay")
_FALLBACK_MARKERS = ("shelly", "relay", "meter")
_FALLBACK_PATHS = ("/settings", "/ota", "/meter/0")

_REPORT_PREFIX = "Nmap scan report for"
_PAREN_RE = re.compile(r"^(?P<host>\S+)\s+\((?P<ip>[^)]+)\)$")


@dataclass(frozen=True, slots=True)
class DiscoveredHost:
    """A candidate device address, with the hostname nmap resolved (if any)."""

    address: str
    hostname: str | None = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_address_list(text: str) -> list[str]:
    """Split a comma/whitespace separated address list, dropping duplicates."""
    seen: dict[str, None] = {}
    for item in re.split(r"[,\s]+", text or ""):
        item = item.strip()
        if item:
            seen.setdefault(item, None)
    return list(seen)


def parse_nmap_line(line: str) -> DiscoveredHost | None:
    """Parse one ``Nmap scan report for ...`` line.

    Handles both ``Nmap scan report for 192.168.1.100`` and
    ``Nmap scan report for shelly-plug.lan (192.168.1.100)``.
    """
    line = line.strip()
    if not line.startswith(_REPORT_PREFIX):
        return None
    target = line[len(_REPORT_PREFIX) :].strip()
    if not target:
        return None

    match = _PAREN_RE.match(target)
    if match is not None:
        ip = match.group("ip").strip()
        host = match.group("host").strip()
        return DiscoveredHost(address=ip, hostname=host if host != ip else None)

    if target[0].isdigit():
        return DiscoveredHost(address=target)
    return None


def parse_nmap_output(text: str) -> list[DiscoveredHost]:
    """Extract every reported host from ``nmap -sn`` output."""
    hosts: list[DiscoveredHost] = []
    for line in text.splitlines():
        host = parse_nmap_line(line)
        if host is not None:
            hosts.append(host)
    return hosts


# ---------------------------------------------------------------------------
# Scanning and fingerprinting
# ---------------------------------------------------------------------------


async def scan_network(network: str) -> list[DiscoveredHost]:
    """Run an nmap ping scan over *network*.

    Raises:
        DiscoveryError: If nmap is missing or exits with an error.
    """
    logger.info("Running nmap scan on network: %s", network)
    try:
        proc = await asyncio.create_subprocess_exec(
            "nmap",
            "-sn",
            network,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise DiscoveryError("nmap is not installed") from exc

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise DiscoveryError(
            f"nmap command failed: {stderr.decode(errors='replace').strip()}"
        )
    output = stdout.decode(errors="replace")
    logger.debug("nmap output: %s", output)
    return parse_nmap_output(output)


def _is_camera(text: str) -> bool:
    return any(marker in text for marker in _CAMERA_MARKERS)


def _has_identity(response: httpx.Response) -> bool:
    """True for a Gen1 ``/shelly`` body, which never names the vendor."""
    if not response.is_success:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    return isinstance(body, dict) and resolve_model(body) is not None


async def _fetch(
    client: httpx.AsyncClient,
    url: str,
    timeout_s: float,
) -> httpx.Response | None:
    try:
        return await client.get(url, timeout=timeout_s)
    except httpx.HTTPError:
        return None


async def looks_like_shelly(client: httpx.AsyncClient, address: str) -> bool:
    """Return True if the host at *address* looks like a Shelly device."""
    response = await _fetch(
        client, f"http://{address}/shelly", FINGERPRINT_TIMEOUT_S
    )
    if response is not None:
        text = response.text.lower()
        if _is_camera(text):
            return False
        return "shelly" in text or _has_identity(response)

    response = await _fetch(
        client, f"http://{address}/status", FINGERPRINT_TIMEOUT_S
    )
    if response is None:
        return False
    text = response.text.lower()
    if text:
        if _is_camera(text):
            return False
        return any(marker in text for marker in _STATUS_MARKERS)

    for path in _FALLBACK_PATHS:
        response = await _fetch(
            client, f"http://{address}{path}", FALLBACK_TIMEOUT_S
        )
        if response is None or not response.is_success:
            continue
        text = response.text.lower()
        if _is_camera(text):
            return False
        if any(marker in text for marker in _FALLBACK_MARKERS):
            return True
    return False


async def discover_devices(
    settings: CollectorSettings,
    client: httpx.AsyncClient | None = None,
) -> list[DiscoveredHost]:
    """Return the static addresses merged with scanned Shelly hosts.

    Raises:
        DiscoveryError: If a network scan was requested and failed.
    """
    hosts: dict[str, DiscoveredHost] = {
        address: DiscoveredHost(address=address) for address in settings.address_list
    }
    if not settings.discover:
        return list(hosts.values())

    candidates = await scan_network(settings.discovery_network)
    owns_client = client is None
    client = client or httpx.AsyncClient()
    try:
        verdicts = await asyncio.gather(
            *(looks_like_shelly(client, c.address) for c in candidates)
        )
    finally:
        if owns_client:
            await client.aclose()

    for candidate, is_shelly in zip(candidates, verdicts, strict=True):
        if is_shelly:
            hosts[candidate.address] = candidate

    logger.info(
        "Discovered %d Shelly device(s) (%d scanned hosts, %d static)",
        len(hosts),
        len(candidates),
        len(settings.address_list),
    )
    return list(hosts.values())


# ---------------------------------------------------------------------------
# Registry reconciliation
# ---------------------------------------------------------------------------


async def apply_discovery(
    registry: DeviceRegistry,
    scheduler: PollScheduler,
    hosts: list[DiscoveredHost],
    *,
    prune: bool = False,
) -> tuple[list[str], list[str]]:
    """Register and start new devices; optionally remove missing ones.

    Args:
        registry: Device registry.
        scheduler: Poll scheduler.
        hosts: Current discovery result.
        prune: Stop and deregister registered devices absent from *hosts*.

    Returns:
        ``(added_device_ids, removed_device_ids)``.
    """
    added: list[str] = []
    seen: set[str] = set()
    for host in hosts:
        descriptor = registry.register(host.address, hostname=host.hostname)
        seen.add(descriptor.device_id)
        if scheduler.start(descriptor.device_id):
            added.append(descriptor.device_id)

    removed: list[str] = []
    if prune:
        for descriptor in registry.snapshot():
            if descriptor.device_id in seen:
                continue
            task = scheduler.stop(descriptor.device_id)
            registry.deregister(descriptor.device_id)
            removed.append(descriptor.device_id)
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
    return added, removed
