"""
Exception taxonomy for the collection pipeline.

Probe and normalization errors are recovered inside a device's poll loop;
sink errors drive the write buffer's retry policy. None of them is allowed
to terminate the daemon.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations


class CollectorError(Exception):
    """Base class for all collector errors."""


# ---------------------------------------------------------------------------
# Device probe
# ---------------------------------------------------------------------------


class ProbeError(CollectorError):
    """A device could not be probed."""

    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address


class DeviceUnreachableError(ProbeError):
    """Connection refused, reset, or DNS failure."""


class ProbeTimeoutError(ProbeError):
    """The device did not answer within the probe timeout."""


class ProtocolError(ProbeError):
    """The device answered with a malformed or unrecognised response."""


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class NormalizationError(CollectorError):
    """A raw payload could not be mapped onto canonical metric points."""


class UnknownModelError(NormalizationError):
    """No normalizer is registered for the device model."""

    def __init__(self, model: str) -> None:
        super().__init__(f"no normalizer for model '{model}'")
        self.model = model


class MalformedPayloadError(NormalizationError):
    """The payload does not match the declared model schema."""


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------


class SinkError(CollectorError):
    """A write to the time-series sink failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SinkTransientError(SinkError):
    """The sink is temporarily unavailable; the write may be retried."""


class SinkRejectedError(SinkError):
    """The sink rejected the batch as invalid; retrying would not help."""


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class DiscoveryError(CollectorError):
    """Network discovery could not be performed."""
