"""
Per-device poll scheduler.

Runs one independent asyncio task per registered device.  Each loop sleeps
for its current interval, probes the device, reports the outcome to the
registry and, on success, normalizes the payload and enqueues the points
into the write buffer.  Loops share nothing that can block except the
buffer's enqueue, which never waits, so a stalled or unreachable device
cannot delay any other device.

Intervals:
- ``base`` while the device has no consecutive failures.
- ``min(base * 2**failures, ceiling)`` after failures (degraded/unreachable
  devices keep being polled, at a reduced cadence).
- Randomised by +/- ``jitter_ratio`` to keep many devices from polling in
  lockstep.

Stopping a device sets its stop event; the loop exits at its next suspension
point.  An in-flight probe is not preempted; its result is discarded.
A loop also ends on its own once its device is no longer registered.

CHANGELOG:
- 2026-10-17: End a device's loop once it is deregistered from the registry
- 2026-10-09: Discard probe results that complete after the device is stopped
- 2026-10-04: Replace single poll loop with per-device task arena (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from collector.src.errors import NormalizationError, ProbeError
from collector.src.models import DEFAULT_MEASUREMENT
from collector.src.normalizer import normalize

if TYPE_CHECKING:
    from collector.src.buffer import WriteBuffer
    from collector.src.probe import DeviceProbe
    from collector.src.registry import DeviceRegistry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Interval policy
# ---------------------------------------------------------------------------


def next_poll_interval(failures: int, base: float, ceiling: float) -> float:
    """Return the poll interval after *failures* consecutive failures.

    ``base`` with no failures, otherwise ``base * 2**failures`` clamped to
    *ceiling* (never below *base*).
    """
    if failures <= 0:
        return base
    # Exponent is capped to keep the arithmetic bounded for long outages.
    return max(base, min(base * (2 ** min(failures, 32)), ceiling))


def apply_jitter(
    interval: float,
    ratio: float,
    rng: random.Random | None = None,
) -> float:
    """Scale *interval* by a uniform factor in ``[1 - ratio, 1 + ratio]``."""
    if ratio <= 0:
        return interval
    rand = rng.uniform if rng is not None else random.uniform
    return max(0.0, interval * rand(1.0 - ratio, 1.0 + ratio))


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class PollScheduler:
    """Arena of per-device poll tasks keyed by device_id.

    Args:
        registry: Device registry receiving health events.
        probe: Device probe (shared, safe for concurrent use).
        buffer: Write buffer receiving normalized points.
        base_interval_s: Poll interval for healthy devices.
        backoff_ceiling_s: Upper bound for the backed-off interval.
        jitter_ratio: Relative jitter applied to every interval.
        measurement: Measurement name for emitted points.
        rng: Optional random source (tests pass a seeded one).
    """

    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        probe: DeviceProbe,
        buffer: WriteBuffer,
        base_interval_s: float,
        backoff_ceiling_s: float,
        jitter_ratio: float = 0.1,
        measurement: str = DEFAULT_MEASUREMENT,
        rng: random.Random | None = None,
    ) -> None:
        self._registry = registry
        self._probe = probe
        self._buffer = buffer
        self._base_interval_s = base_interval_s
        self._backoff_ceiling_s = max(backoff_ceiling_s, base_interval_s)
        self._jitter_ratio = jitter_ratio
        self._measurement = measurement
        self._rng = rng
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stop_events: dict[str, asyncio.Event] = {}
        self.last_poll_at: datetime | None = None

    def running(self) -> list[str]:
        """Return the device ids with a live poll task."""
        return sorted(k for k, t in self._tasks.items() if not t.done())

    def interval_for(self, device_id: str) -> float:
        """Return the un-jittered interval for the device's next poll."""
        descriptor = self._registry.get(device_id)
        failures = descriptor.consecutive_failures if descriptor is not None else 0
        return next_poll_interval(
            failures, self._base_interval_s, self._backoff_ceiling_s
        )

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def start(self, device_id: str) -> bool:
        """Claim a registered device and start its poll loop.

        Returns:
            True if a new loop was started, False if one is already running
            or the device is not registered.
        """
        task = self._tasks.get(device_id)
        if task is not None and not task.done():
            return False
        if self._registry.claim(device_id) is None:
            logger.warning("Cannot poll unregistered device %s", device_id)
            return False

        stop_event = asyncio.Event()
        self._stop_events[device_id] = stop_event
        self._tasks[device_id] = asyncio.create_task(
            self._poll_loop(device_id, stop_event),
            name=f"poll:{device_id}",
        )
        return True

    def stop(self, device_id: str) -> asyncio.Task[None] | None:
        """Signal the device's loop to exit at its next suspension point.

        Returns:
            The task being stopped (await it to wait for exit), or None.
        """
        stop_event = self._stop_events.pop(device_id, None)
        task = self._tasks.pop(device_id, None)
        if stop_event is not None:
            stop_event.set()
        return task

    async def close(self, timeout_s: float | None = None) -> None:
        """Stop every loop and wait for them to exit.

        Loops blocked in a probe exit once the probe returns (bounded by the
        probe timeout).  Loops still running after *timeout_s* are cancelled.
        """
        tasks = [t for t in (self.stop(d) for d in list(self._tasks)) if t is not None]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Stopped %d poll loops", len(tasks))

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _poll_loop(self, device_id: str, stop_event: asyncio.Event) -> None:
        logger.info("Poll loop started for %s", device_id)
        while not stop_event.is_set():
            delay = apply_jitter(
                self.interval_for(device_id), self._jitter_ratio, self._rng
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            if stop_event.is_set():
                break
            if self._registry.get(device_id) is None:
                logger.info("Device %s deregistered; ending its poll loop", device_id)
                self._forget(device_id, stop_event)
                break
            try:
                await self.poll_once(device_id, stop_event)
            except Exception:
                logger.error("Poll cycle error for %s", device_id, exc_info=True)
        logger.info("Poll loop stopped for %s", device_id)

    def _forget(self, device_id: str, stop_event: asyncio.Event) -> None:
        # Only drop the entries if they still belong to this loop.
        if self._stop_events.get(device_id) is stop_event:
            del self._stop_events[device_id]
            self._tasks.pop(device_id, None)

    async def poll_once(
        self,
        device_id: str,
        stop_event: asyncio.Event | None = None,
    ) -> int:
        """Probe one device and forward the outcome.

        Returns:
            Number of points enqueued.
        """
        descriptor = self._registry.get(device_id)
        if descriptor is None:
            return 0

        self.last_poll_at = datetime.now(tz=UTC)
        try:
            result = await self._probe.probe(descriptor.address)
        except ProbeError as exc:
            if stop_event is not None and stop_event.is_set():
                return 0
            self._registry.record_failure(device_id)
            logger.warning(
                "Probe failed for %s (%s): %s; next poll in ~%.0fs",
                device_id,
                type(exc).__name__,
                exc,
                self.interval_for(device_id),
            )
            return 0

        if stop_event is not None and stop_event.is_set():
            logger.debug("Discarding probe result for stopped device %s", device_id)
            return 0

        updated = self._registry.record_success(
            device_id, result.fragment, at=result.collected_at
        )
        if updated is None:
            return 0

        try:
            points = normalize(
                result.fragment.model,
                result.payload,
                device_id=device_id,
                ts=result.collected_at,
                measurement=self._measurement,
            )
        except NormalizationError as exc:
            logger.warning(
                "Could not normalize payload from %s (model=%s): %s",
                device_id,
                result.fragment.model,
                exc,
            )
            return 0

        for point in points:
            self._buffer.enqueue(point)
        logger.debug("Enqueued %d points from %s", len(points), device_id)
        return len(points)
