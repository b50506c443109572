"""
Device registry and health state machine.

Owns the set of known devices, keyed by device_id, and their health state.
Health transitions are a pure function of ``(state, event, failures,
threshold)`` so the policy can be tested in isolation:

    discovered --claimed--> polling
    any        --probe_succeeded--> healthy          (failures reset to 0)
    any        --probe_failed-->    degraded         (failures < threshold)
    any        --probe_failed-->    unreachable      (failures >= threshold)

Unreachable devices stay registered and keep being polled at a reduced
cadence; they are only removed by an explicit :meth:`DeviceRegistry.deregister`.

All mutating methods are synchronous and run on the event loop thread, so
every device's transitions are serialized without locks.

CHANGELOG:
- 2026-10-08: Log health changes (warning when degrading, info on recovery)
- 2026-10-04: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import UTC, datetime
from enum import StrEnum

from collector.src.models import DescriptorFragment, DeviceDescriptor, DeviceHealth

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5


class HealthEvent(StrEnum):
    """Inputs to the health state machine."""

    CLAIMED = "claimed"
    PROBE_SUCCEEDED = "probe_succeeded"
    PROBE_FAILED = "probe_failed"


def transition(
    state: DeviceHealth,
    event: HealthEvent,
    failures: int,
    threshold: int,
) -> tuple[DeviceHealth, int]:
    """Apply *event* to a device in *state*.

    Args:
        state: Current health state.
        event: Event to apply.
        failures: Consecutive failures before the event.
        threshold: Consecutive failures at which a device is unreachable.

    Returns:
        ``(new_state, new_failures)``.
    """
    if event is HealthEvent.CLAIMED:
        if state is DeviceHealth.DISCOVERED:
            return DeviceHealth.POLLING, failures
        return state, failures

    if event is HealthEvent.PROBE_SUCCEEDED:
        return DeviceHealth.HEALTHY, 0

    failures += 1
    if failures >= threshold:
        return DeviceHealth.UNREACHABLE, failures
    return DeviceHealth.DEGRADED, failures


def device_id_for(address: str) -> str:
    """Derive the stable device id for *address*."""
    return address.strip().lower()


class DeviceRegistry:
    """In-memory registry of monitored devices.

    Args:
        failure_threshold: Consecutive probe failures after which a device
            is considered unreachable.
    """

    def __init__(self, *, failure_threshold: int = DEFAULT_FAILURE_THRESHOLD) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._threshold = failure_threshold
        self._devices: dict[str, DeviceDescriptor] = {}

    @property
    def failure_threshold(self) -> int:
        return self._threshold

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def register(self, address: str, *, hostname: str | None = None) -> DeviceDescriptor:
        """Admit *address* as a Discovered device (idempotent upsert).

        Re-registering a known address never creates a second entry; it only
        refreshes the hostname when a new one is supplied.

        Returns:
            The current descriptor for the device.
        """
        address = address.strip()
        device_id = device_id_for(address)
        current = self._devices.get(device_id)
        if current is not None:
            if hostname and hostname != current.hostname:
                current = current.model_copy(update={"hostname": hostname})
                self._devices[device_id] = current
            return current

        descriptor = DeviceDescriptor(
            device_id=device_id,
            address=address,
            hostname=hostname,
            registered_at=datetime.now(tz=UTC),
        )
        self._devices[device_id] = descriptor
        logger.info("Registered device %s (%s)", device_id, hostname or address)
        return descriptor

    def deregister(self, device_id: str) -> bool:
        """Remove a device. Returns True if it was registered."""
        removed = self._devices.pop(device_id, None)
        if removed is None:
            return False
        logger.info(
            "Deregistered device %s (last health: %s)", device_id, removed.health
        )
        return True

    def get(self, device_id: str) -> DeviceDescriptor | None:
        return self._devices.get(device_id)

    def snapshot(self) -> list[DeviceDescriptor]:
        """Return the current descriptors (immutable), ordered by device_id."""
        return [self._devices[k] for k in sorted(self._devices)]

    def health_counts(self) -> dict[str, int]:
        """Return the number of devices in each health state."""
        counts = Counter(d.health.value for d in self._devices.values())
        return {state.value: counts.get(state.value, 0) for state in DeviceHealth}

    # ------------------------------------------------------------------
    # Health events
    # ------------------------------------------------------------------

    def claim(self, device_id: str) -> DeviceDescriptor | None:
        """Mark a Discovered device as claimed by the scheduler."""
        return self._apply(device_id, HealthEvent.CLAIMED)

    def record_success(
        self,
        device_id: str,
        fragment: DescriptorFragment,
        *,
        at: datetime | None = None,
    ) -> DeviceDescriptor | None:
        """Record a successful probe and refresh device metadata.

        Returns:
            The updated descriptor, or ``None`` if the device is no longer
            registered (e.g. deregistered while the probe was in flight).
        """
        descriptor = self._apply(device_id, HealthEvent.PROBE_SUCCEEDED)
        if descriptor is None:
            return None
        descriptor = descriptor.model_copy(
            update={
                "model": fragment.model,
                "device_type": fragment.device_type,
                "capabilities": fragment.capabilities,
                "hardware_id": fragment.hardware_id or descriptor.hardware_id,
                "firmware": fragment.firmware or descriptor.firmware,
                "last_success_at": at or datetime.now(tz=UTC),
            }
        )
        self._devices[device_id] = descriptor
        return descriptor

    def record_failure(self, device_id: str) -> DeviceDescriptor | None:
        """Record a failed probe.

        Returns:
            The updated descriptor, or ``None`` if the device is not registered.
        """
        return self._apply(device_id, HealthEvent.PROBE_FAILED)

    def _apply(self, device_id: str, event: HealthEvent) -> DeviceDescriptor | None:
        current = self._devices.get(device_id)
        if current is None:
            logger.debug("Ignoring %s for unknown device %s", event, device_id)
            return None

        state, failures = transition(
            current.health, event, current.consecutive_failures, self._threshold
        )
        if state is current.health and failures == current.consecutive_failures:
            return current

        updated = current.model_copy(
            update={"health": state, "consecutive_failures": failures}
        )
        self._devices[device_id] = updated
        self._log_change(current, updated)
        return updated

    @staticmethod
    def _log_change(before: DeviceDescriptor, after: DeviceDescriptor) -> None:
        if before.health is after.health:
            return
        if after.health in (DeviceHealth.DEGRADED, DeviceHealth.UNREACHABLE):
            logger.warning(
                "Device %s %s -> %s (consecutive failures: %d)",
                after.device_id,
                before.health,
                after.health,
                after.consecutive_failures,
            )
        elif before.health in (DeviceHealth.DEGRADED, DeviceHealth.UNREACHABLE):
            logger.info(
                "Device %s recovered: %s -> %s",
                after.device_id,
                before.health,
                after.health,
            )
        else:
            logger.debug(
                "Device %s %s -> %s", after.device_id, before.health, after.health
            )
